"""Run ARQ worker. Usage: python -m pointsledger.worker.run_worker"""

from arq import run_worker
from arq.cron import cron

from pointsledger.core.config import get_settings
from pointsledger.worker.tasks import expire_posts, get_redis_settings, shutdown, startup


def sweep_minutes(every: int) -> set[int]:
    every = max(1, min(every, 60))
    return set(range(0, 60, every))


class WorkerSettings:
    redis_settings = get_redis_settings()
    cron_jobs = [
        cron(expire_posts, minute=sweep_minutes(get_settings().expiry_sweep_minutes), run_at_startup=True),
    ]
    on_startup = startup
    on_shutdown = shutdown


if __name__ == "__main__":
    run_worker(WorkerSettings)
