from fastapi import APIRouter, Depends

from carewatch.engine import Engine
from carewatch.modules.monitoring.schemas import TickSummary
from carewatch.shared import deps

router = APIRouter()


@router.post("/tick", response_model=TickSummary, dependencies=[Depends(deps.verify_cron_secret)])
async def run_tick(engine: Engine = Depends(deps.get_engine)) -> TickSummary:
    """Evaluate every monitored patient once. Safe to call concurrently."""
    return await engine.evaluator.tick()
