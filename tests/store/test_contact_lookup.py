import re

import pytest

from carewatch.modules.patients.models import ContactRoutes, Patient
from carewatch.store.memory import MemoryStore
from carewatch.store.mongo import _email_filter


def _mongo_regex_matches(email_query: str, stored: str) -> bool:
    condition = _email_filter(email_query)["contact.email"]
    flags = re.IGNORECASE if "i" in condition["$options"] else 0
    return re.search(condition["$regex"], stored, flags) is not None


@pytest.mark.asyncio
async def test_memory_store_matches_email_ignoring_case() -> None:
    store = MemoryStore()
    patient = store.add_patient(
        Patient(display_name="Margaret", contact=ContactRoutes(email="Margaret.Smith@Example.com"))
    )

    found = await store.find_patient_by_contact(email="margaret.smith@example.com")

    assert found is not None
    assert found.id == patient.id


def test_mongo_email_filter_matches_like_the_memory_store() -> None:
    assert _mongo_regex_matches("margaret.smith@example.com", "Margaret.Smith@Example.com")
    assert _mongo_regex_matches("MARGARET.SMITH@EXAMPLE.COM", "margaret.smith@example.com")
    assert not _mongo_regex_matches("margaret.smith@example.com", "margaretXsmith@example.com")
    assert not _mongo_regex_matches("smith@example.com", "margaret.smith@example.com")
