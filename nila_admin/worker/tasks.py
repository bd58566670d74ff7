"""arq job definitions."""

import uuid
from typing import Any
from urllib.parse import urlparse

from arq.connections import RedisSettings

from nila_admin.core.config import get_settings
from nila_admin.core.logging import get_logger

log = get_logger(__name__)


async def _dead_letter(job_name: str, job_id: str | None, kwargs: dict[str, Any], coro) -> Any:
    """Await the job; if it raises, record a FailedJob and let arq see the error."""
    try:
        return await coro
    except Exception as e:
        from nila_admin.models.failed_job import FailedJob
        fid = job_id or str(uuid.uuid4())
        await FailedJob(
            job_name=job_name,
            job_id=fid,
            kwargs=kwargs,
            error_type=type(e).__name__,
            reason=str(e)[:2000],
        ).insert()
        log.exception("job_failed", job=job_name, job_id=fid, error_type=type(e).__name__)
        raise


async def reconcile_settlements(ctx: dict[str, Any]) -> dict[str, int]:
    """Cron job: resume settlements whose debit landed but whose records are incomplete."""
    from nila_admin.services.reconciliation import reconcile_settlements as _reconcile
    job_id = ctx.get("job_id") if isinstance(ctx.get("job_id"), str) else None
    service = ctx["settlement_service"]
    batch = get_settings().reconcile_batch_size
    result = await _dead_letter("reconcile_settlements", job_id, {"limit": batch}, _reconcile(service, batch))
    return result.model_dump()


async def startup(ctx: dict) -> None:
    from nila_admin.core.logging import configure_logging
    from nila_admin.db.init import init_db
    from nila_admin.services.settlements import SettlementService
    from nila_admin.stores.mongo import mongo_stores
    settings = get_settings()
    configure_logging(debug=settings.debug)
    await init_db()
    ctx["settlement_service"] = SettlementService.from_settings(
        mongo_stores(applied_window=settings.applied_reference_window),
        settings,
    )


async def shutdown(ctx: dict) -> None:
    service = ctx.get("settlement_service")
    if service is not None:
        await service.wait_inflight()


def get_redis_settings() -> RedisSettings:
    s = get_settings()
    u = urlparse(s.redis_url)
    return RedisSettings(
        host=u.hostname or "localhost",
        port=u.port or 6379,
        password=u.password,
        database=int(u.path.lstrip("/")) if u.path.lstrip("/") else 0,
    )
