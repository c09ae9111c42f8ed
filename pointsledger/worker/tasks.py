"""ARQ job definitions."""

import uuid
from typing import Any
from urllib.parse import urlparse

from arq.connections import RedisSettings

from pointsledger.core.audit import log_event
from pointsledger.core.config import get_settings
from pointsledger.core.logging import configure_logging, get_logger
from pointsledger.models import FailedJob
from pointsledger.services import expiry as expiry_service
from pointsledger.store.base import get_store

log = get_logger(__name__)


async def _run_with_dlq(
    job_name: str,
    job_id: str | None,
    args: list[Any],
    kwargs: dict[str, Any],
    coro,
) -> Any:
    """Run coroutine; on exception persist to FailedJob then re-raise."""
    try:
        return await coro
    except Exception as e:
        fid = job_id or str(uuid.uuid4())
        await get_store().add_failed_job(
            FailedJob(
                job_name=job_name,
                job_id=fid,
                args=args,
                kwargs=kwargs,
                reason=str(e)[:2000],
                retries=0,
            )
        )
        log.exception("job_failed", job=job_name, job_id=fid, reason=str(e))
        raise


async def expire_posts(ctx: dict[str, Any]) -> dict[str, Any]:
    """Cron job: cancel posts whose travel time has passed."""
    job_id = ctx.get("job_id") if isinstance(ctx.get("job_id"), str) else None

    async def _run() -> dict[str, Any]:
        log.info("job_start", job="expire_posts")
        try:
            result = await expiry_service.expire_posts()
        except Exception as e:
            await log_event(None, "auto_expire_posts_error", "post", metadata={"error": str(e)[:2000]})
            raise
        log.info("job_done", job="expire_posts", expired_count=result.expired_count)
        return result.model_dump()

    return await _run_with_dlq("expire_posts", job_id, [], {}, _run())


async def startup(ctx: dict) -> None:
    configure_logging(debug=get_settings().debug)
    await get_store().init()


async def shutdown(ctx: dict) -> None:
    pass


def get_redis_settings() -> RedisSettings:
    s = get_settings()
    u = urlparse(s.redis_url)
    return RedisSettings(
        host=u.hostname or "localhost",
        port=u.port or 6379,
        password=u.password,
        database=int(u.path.lstrip("/") or 0),
    )
