"""Reference refresh worker.

Periodically re-stages reference images whose external upload expires within
the grace margin, so a batch reusing them does not have to wait for an upload.
Images whose original bytes are gone are skipped and logged.
"""

import asyncio

import structlog

from promptforge.core.config import Settings
from promptforge.services.reference_cache import ReferenceImageCache, RefreshReport

logger = structlog.get_logger(__name__)

ERROR_BACKOFF_SECONDS = 5


async def refresh_once(cache: ReferenceImageCache) -> RefreshReport:
    """Run one refresh sweep and log its warnings."""
    report = await cache.refresh_expiring()
    for warning in report.warnings:
        logger.warning("reference.refresh.skipped", reason=warning)
    return report


async def run_reference_refresh_worker(cache: ReferenceImageCache, settings: Settings) -> None:
    """Main worker loop for proactive reference refresh.

    Sweeps every REFRESH_INTERVAL_SECONDS. Unexpected errors are logged and the
    loop backs off before the next sweep; cancellation stops the worker.

    Args:
        cache: Reference image cache to sweep
        settings: Application settings (refresh interval)
    """
    logger.info(
        "worker.started",
        worker="reference_refresh",
        refresh_interval=settings.refresh_interval_seconds,
        grace_hours=settings.upload_grace_hours,
    )

    try:
        while True:
            try:
                await refresh_once(cache)
                await asyncio.sleep(settings.refresh_interval_seconds)

            except asyncio.CancelledError:
                raise

            except Exception as e:
                logger.error(
                    "worker.error",
                    worker="reference_refresh",
                    error_type=type(e).__name__,
                    error_message=str(e),
                    exc_info=True,
                )
                await asyncio.sleep(ERROR_BACKOFF_SECONDS)

    except asyncio.CancelledError:
        logger.info("worker.stopped", worker="reference_refresh")
        raise
