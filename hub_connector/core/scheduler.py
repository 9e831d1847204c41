"""
Background triggers for Hub sync, heartbeat and retention.

Jobs:
    job_hub_sync            every HUB_SYNC_INTERVAL_MINUTES (15)
    job_send_heartbeat      every HEARTBEAT_INTERVAL_MINUTES (60)
    job_cleanup_old_records daily at RETENTION_CRON_HOUR UTC
    job_stored_sync_request every SYNC_REQUEST_POLL_SECONDS (30); runs a sync
                            request stored by a process without a scheduler

One-shot jobs:
    hub_sync_requested      a sync asked for by the Hub (heartbeat sync_now)
                            or an administrator; never duplicated
    hub_sync_retry          backoff retry after a failed scheduled run

All sync paths call services.hub_sync.run_sync().
"""

import random
from datetime import datetime, timedelta
from typing import Callable, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger
from sqlmodel import Session

from hub_connector.core.config import settings
from hub_connector.core.errors import ErrorHandler
from hub_connector.core.logging_config import get_logger
from hub_connector.core.typing import utc_now
from hub_connector.db import engine
from hub_connector.services.options import HUB_SYNC_FAILURES, SYNC_REQUESTED, OptionsStore
from hub_connector.services.queue_storage import cleanup_old_records, lease_expires_at

logger = get_logger(__name__)

scheduler = AsyncIOScheduler(timezone="UTC")

SYNC_JOB_ID = "job_hub_sync"
HEARTBEAT_JOB_ID = "job_send_heartbeat"
CLEANUP_JOB_ID = "job_cleanup_old_records"
SYNC_NOW_JOB_ID = "hub_sync_requested"
RETRY_JOB_ID = "hub_sync_retry"
SYNC_REQUEST_JOB_ID = "job_stored_sync_request"

JITTER_RATIO = 0.2


def compute_retry_delay(
    failures: int,
    base: Optional[int] = None,
    cap: Optional[int] = None,
    rng: Callable[[], float] = random.random,
) -> float:
    """
    Seconds until the next retry: min(cap, base * 2^(failures-1)) with
    +/-20% jitter.
    """
    base = settings.SYNC_RETRY_BASE_SECONDS if base is None else base
    cap = settings.SYNC_RETRY_MAX_SECONDS if cap is None else cap

    delay = min(cap, base * 2 ** max(0, failures - 1))
    jitter = delay * JITTER_RATIO * (2 * rng() - 1)
    return max(1.0, delay + jitter)


async def _run_sync_job(trigger: str) -> Optional[dict]:
    from hub_connector.services.hub_sync import run_sync

    result = None
    with ErrorHandler("hub_sync", context={"trigger": trigger}):
        with Session(engine) as session:
            result = await run_sync(session, trigger=trigger)

            # Only failed pushes back off; "not configured" and "in progress" do not
            if not result["success"] and "stats" in result:
                failures = int(OptionsStore(session).get(HUB_SYNC_FAILURES, 0) or 0)
                schedule_retry(failures)

    return result


async def job_hub_sync():
    """Periodic sync. Failures are logged, never raised into the scheduler."""
    await _run_sync_job("scheduled")


async def job_requested_sync():
    await _run_sync_job("requested")


async def job_retry_sync():
    await _run_sync_job("retry")


async def job_send_heartbeat():
    from hub_connector.services.hub_sync import send_heartbeat

    with ErrorHandler("heartbeat"):
        with Session(engine) as session:
            result = await send_heartbeat(session)
            if not result["success"]:
                logger.warning("Heartbeat failed", message=result.get("message"))


async def job_cleanup_old_records():
    with ErrorHandler("cleanup_old_records", context={"days": settings.RETENTION_DAYS}):
        with Session(engine) as session:
            deleted = cleanup_old_records(session, settings.RETENTION_DAYS)
            logger.info("Retention sweep complete", deleted=deleted, days=settings.RETENTION_DAYS)


def schedule_retry(failures: int) -> float:
    delay = compute_retry_delay(failures)
    scheduler.add_job(
        job_retry_sync,
        DateTrigger(run_date=utc_now() + timedelta(seconds=delay)),
        id=RETRY_JOB_ID,
        max_instances=1,
        misfire_grace_time=600,
        replace_existing=True,
    )
    logger.info("Sync retry scheduled", failures=failures, delay_seconds=round(delay, 1))
    return delay


def request_immediate_sync(session: Session, reason: str = "manual") -> bool:
    """
    Schedule one out-of-band sync.

    A pending request is never duplicated. While another run holds the sync
    lease, SYNC_NOW_POLICY decides: "drop" ignores the request, "queue" runs
    it once the lease expires.

    With a running scheduler the request becomes a one-shot job. Otherwise
    (an API process started with RUN_SCHEDULER=false) it is stored in the
    options table and the worker's poll job runs it. Returns True if a sync
    was scheduled.
    """
    options = OptionsStore(session)
    if scheduler.get_job(SYNC_NOW_JOB_ID) is not None or options.get(SYNC_REQUESTED):
        logger.info("Immediate sync already pending", reason=reason)
        return False

    run_at = utc_now()
    held_until = lease_expires_at(session)
    if held_until is not None:
        if settings.SYNC_NOW_POLICY != "queue":
            logger.info("Immediate sync dropped, run in progress", reason=reason)
            return False
        run_at = held_until + timedelta(seconds=1)

    if not scheduler.running:
        options.set(SYNC_REQUESTED, {"run_at": run_at.isoformat(), "reason": reason})
        logger.info("Immediate sync stored for the worker", reason=reason, run_at=run_at.isoformat())
        return True

    scheduler.add_job(
        job_requested_sync,
        DateTrigger(run_date=run_at),
        id=SYNC_NOW_JOB_ID,
        max_instances=1,
        misfire_grace_time=settings.SYNC_LEASE_SECONDS,
        replace_existing=False,
    )
    logger.info("Immediate sync scheduled", reason=reason, run_at=run_at.isoformat())
    return True


async def job_stored_sync_request():
    """Run a sync request stored by a process without a running scheduler, once it is due."""
    with ErrorHandler("sync_request_poll"):
        with Session(engine) as session:
            options = OptionsStore(session)
            pending = options.get(SYNC_REQUESTED)
            if not pending:
                return
            if not isinstance(pending, dict):
                pending = {}
            run_at = pending.get("run_at")
            if run_at and datetime.fromisoformat(run_at) > utc_now():
                return
            options.delete(SYNC_REQUESTED)
        logger.info("Running stored sync request", reason=pending.get("reason"))
        await _run_sync_job("requested")


def cancel_pending_syncs(session: Optional[Session] = None) -> None:
    for job_id in (SYNC_NOW_JOB_ID, RETRY_JOB_ID):
        if scheduler.get_job(job_id) is not None:
            scheduler.remove_job(job_id)
    if session is not None:
        OptionsStore(session).delete(SYNC_REQUESTED)


def start_scheduler():
    # Job configuration for durability:
    # - max_instances=1: Prevent overlapping runs of the same job
    # - misfire_grace_time: Allow late execution if within grace period (then skip)
    # - coalesce=True: If multiple runs were missed, only run once when catching up

    scheduler.add_job(
        job_hub_sync,
        IntervalTrigger(minutes=settings.HUB_SYNC_INTERVAL_MINUTES),
        id=SYNC_JOB_ID,
        max_instances=1,
        misfire_grace_time=300,  # 5 minutes
        coalesce=True,
        replace_existing=True,
    )

    scheduler.add_job(
        job_send_heartbeat,
        IntervalTrigger(minutes=settings.HEARTBEAT_INTERVAL_MINUTES),
        id=HEARTBEAT_JOB_ID,
        max_instances=1,
        misfire_grace_time=900,  # 15 minutes
        coalesce=True,
        replace_existing=True,
    )

    # Picks up sync requests stored while no scheduler was running
    scheduler.add_job(
        job_stored_sync_request,
        IntervalTrigger(seconds=settings.SYNC_REQUEST_POLL_SECONDS),
        id=SYNC_REQUEST_JOB_ID,
        max_instances=1,
        misfire_grace_time=60,
        coalesce=True,
        replace_existing=True,
    )

    # Retention sweep off-peak, 2 hour grace
    scheduler.add_job(
        job_cleanup_old_records,
        CronTrigger(hour=settings.RETENTION_CRON_HOUR, minute=0),
        id=CLEANUP_JOB_ID,
        max_instances=1,
        misfire_grace_time=7200,
        coalesce=True,
        replace_existing=True,
    )

    scheduler.start()
    logger.info(
        "Scheduler started",
        sync_interval_minutes=settings.HUB_SYNC_INTERVAL_MINUTES,
        heartbeat_interval_minutes=settings.HEARTBEAT_INTERVAL_MINUTES,
        retention_hour_utc=settings.RETENTION_CRON_HOUR,
    )


def shutdown_scheduler():
    if scheduler.running:
        scheduler.shutdown(wait=False)
