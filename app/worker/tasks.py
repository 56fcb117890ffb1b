"""Scheduled job definitions: operation lock housekeeping."""

import uuid
from typing import Any

from app.core.config import get_settings
from app.core.logging import get_logger
from app.services import operations as operations_service

log = get_logger(__name__)


async def _run_with_dlq(
    job_name: str,
    job_id: str | None,
    kwargs: dict[str, Any],
    coro,
) -> Any:
    """Run coroutine; on exception persist to FailedJob then re-raise."""
    try:
        return await coro
    except Exception as e:
        from app.models.failed_job import FailedJob
        fid = job_id or str(uuid.uuid4())
        log.exception("job_failed", job=job_name, job_id=fid, reason=str(e))
        await FailedJob(
            job_name=job_name,
            job_id=fid,
            kwargs=kwargs,
            reason=str(e)[:2000],
        ).insert()
        raise


async def sweep_stale_operations() -> int:
    """Cron: mark operations left running past the stale threshold as stale."""
    count = await _run_with_dlq("sweep_stale_operations", None, {}, operations_service.sweep_stale())
    log.info("job_done", job="sweep_stale_operations", marked_stale=count)
    return count


async def cleanup_operations() -> int:
    """Cron: delete finished operations older than the cleanup threshold."""
    count = await _run_with_dlq("cleanup_operations", None, {}, operations_service.cleanup())
    log.info("job_done", job="cleanup_operations", deleted=count)
    return count


async def startup() -> None:
    from app.core.logging import configure_logging
    from app.db.init import init_db
    configure_logging(debug=get_settings().debug)
    await init_db()
    log.info("worker_startup")


async def shutdown() -> None:
    log.info("worker_shutdown")
