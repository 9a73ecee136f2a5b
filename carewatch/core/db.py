from beanie import init_beanie
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase

from carewatch.core.config import settings
from carewatch.modules.activity.models import ActivityRecordDocument
from carewatch.modules.alerts.models import AlertDocument
from carewatch.modules.notifications.models import NotificationAttemptDocument
from carewatch.modules.patients.models import PatientDocument, SensorDeviceDocument

MONGO_CLIENT: AsyncIOMotorClient | None = None


async def init_db() -> AsyncIOMotorClient:
    """
    Create a single Motor client, initialize Beanie, and return the client.

    Index creation happens here, including the partial unique index that enforces one
    active alert per (patient, kind). Call exactly once at app startup.
    """
    global MONGO_CLIENT

    client = AsyncIOMotorClient(
        settings.MONGODB_URL,
        uuidRepresentation="standard",
        tz_aware=True,
        serverSelectionTimeoutMS=5000,
    )

    db: AsyncIOMotorDatabase = client[settings.MONGODB_DB_NAME]

    await init_beanie(
        database=db,
        document_models=[
            PatientDocument,
            SensorDeviceDocument,
            ActivityRecordDocument,
            AlertDocument,
            NotificationAttemptDocument,
        ],
    )

    MONGO_CLIENT = client
    return client
