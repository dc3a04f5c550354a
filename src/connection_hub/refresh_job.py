"""
One-shot token refresh run for external schedulers (cron, Kubernetes CronJob).

Usage:
    python -m connection_hub.refresh_job

Prints the job payload as one JSON line and exits non-zero when the run fails,
e.g. when the credential store is unreachable.
"""
import asyncio
import json
import sys

from .container import build_container
from .core.errors import HubError
from .core.logging import get_logger
from .core.response import job_payload
from .core.security import utcnow
from .core.settings import get_settings

logger = get_logger(__name__)


async def _run_once() -> int:
    try:
        hub = build_container(get_settings())
        summary = await hub.scheduler.run()
        purged = hub.manager.purge_expired_states()
    except Exception as ex:
        code = ex.code if isinstance(ex, HubError) else type(ex).__name__
        logger.exception("Token refresh job failed", extra={"code": code})
        print(json.dumps(job_payload(False, utcnow(), error=f"Token refresh failed: {code}")))
        return 1
    print(
        json.dumps(
            job_payload(
                True,
                utcnow(),
                message="Token refresh completed",
                summary=summary.model_dump(mode="json"),
                purgedStates=purged,
            )
        )
    )
    return 0


# PUBLIC_INTERFACE
def main():
    """Run a single refresh pass and exit with its status."""
    sys.exit(asyncio.run(_run_once()))


if __name__ == "__main__":
    main()
