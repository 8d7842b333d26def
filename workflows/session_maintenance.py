"""
Prefect Workflow Orchestration - Session Maintenance

Scheduled maintenance for the analytics rollups:
- Session expiry sweep for sessions that never reported an end
- Full or per-tenant rollup replay from the raw event store
"""

from typing import Optional

from prefect import flow, task, get_run_logger

from src.aggregation import SessionExpirySweeper, replay_raw_events
from src.config import get_settings
from src.database.connection import close_database, init_database

settings = get_settings()


# =============================================================================
# TASKS
# =============================================================================

@task(
    name="sweep_expired_sessions",
    description="Finalize sessions idle past the expiry timeout",
    retries=3,
    retry_delay_seconds=30,
)
async def sweep_expired_sessions(timeout_seconds: Optional[int] = None, max_passes: int = 10) -> int:
    """Sweep in batches until a pass finalizes nothing."""
    logger = get_run_logger()
    sweeper = SessionExpirySweeper(timeout_seconds=timeout_seconds)

    total = 0
    for _ in range(max_passes):
        finalized = await sweeper.sweep()
        total += finalized
        if finalized < sweeper.batch_size:
            break

    logger.info(f"Session sweep finalized {total} sessions")
    return total


@task(
    name="replay_rollups",
    description="Rebuild rollups from raw events",
    retries=1,
    retry_delay_seconds=120,
)
async def replay_rollups(tenant_id: Optional[int] = None, batch_size: int = 1000) -> dict:
    logger = get_run_logger()
    result = await replay_raw_events(tenant_id=tenant_id, batch_size=batch_size)
    logger.info(f"Replay applied {result.applied} events, {result.failed} failed")
    return {"applied": result.applied, "failed": result.failed}


# =============================================================================
# FLOWS
# =============================================================================

@flow(
    name="session_expiry_sweep",
    description="Finalize abandoned sessions so their duration and bounce reach the rollups",
)
async def session_expiry_sweep(timeout_seconds: Optional[int] = None) -> dict:
    logger = get_run_logger()
    await init_database()
    try:
        finalized = await sweep_expired_sessions(timeout_seconds)
    finally:
        await close_database()

    logger.info(f"Session expiry sweep complete: {finalized} finalized")
    return {"finalized": finalized}


@flow(
    name="replay_aggregates",
    description="Rebuild rollup tables from the raw event store",
)
async def replay_aggregates(tenant_id: Optional[int] = None, batch_size: int = 1000) -> dict:
    """
    Rollup replay.

    Clears the rollups of one tenant (or every tenant) and re-applies the
    raw events in arrival order. Pause ingestion for the affected tenants
    while this runs.
    """
    logger = get_run_logger()
    scope = f"tenant {tenant_id}" if tenant_id is not None else "all tenants"
    logger.info(f"Starting rollup replay for {scope}")

    await init_database()
    try:
        results = await replay_rollups(tenant_id, batch_size)
    finally:
        await close_database()

    results["status"] = "success" if results["failed"] == 0 else "partial"
    return results


if __name__ == "__main__":
    import asyncio

    asyncio.run(session_expiry_sweep())
