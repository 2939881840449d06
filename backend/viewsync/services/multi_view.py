"""
Sequential sync of every configured view of one source.

Views run one at a time, in list order, so load on the source and the
warehouse stays bounded and the progress stream has a fixed order.
"""
import logging
from typing import AsyncIterator, Awaitable, Callable, Optional, Sequence

from viewsync.schemas.etl import SyncProgressEvent
from viewsync.services.sync_service import ViewSyncService

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[SyncProgressEvent], Awaitable[None]]


def configured_views(service: ViewSyncService) -> list[tuple[str, str]]:
    return [(service.default_schema, name) for name in service.allowed_views]


async def iter_sync_all(
    service: ViewSyncService,
    binding: str,
    views: Optional[Sequence[tuple[str, str]]] = None,
) -> AsyncIterator[SyncProgressEvent]:
    """Sync ``views`` (default: the allow-list) and yield one event per step."""
    views = list(views) if views is not None else configured_views(service)
    total = len(views)
    yield SyncProgressEvent(type="start", total=total, views=[name for _, name in views])

    success_count = 0
    fail_count = 0
    for current, (schema, name) in enumerate(views, start=1):
        yield SyncProgressEvent(type="progress", current=current, total=total, view=name, status="syncing")
        try:
            result = await service.trigger_sync(binding, schema, name)
        except Exception as e:
            fail_count += 1
            logger.warning("Sync-all %s: %s.%s failed: %s", binding, schema, name, e)
            yield SyncProgressEvent(
                type="progress", current=current, total=total, view=name, status="failed", error=str(e)
            )
            continue
        success_count += 1
        yield SyncProgressEvent(
            type="progress",
            current=current,
            total=total,
            view=name,
            status="success",
            rows_synced=result.rows_synced,
            duration_ms=result.duration_ms,
        )

    logger.info("Sync-all %s complete: %d succeeded, %d failed", binding, success_count, fail_count)
    yield SyncProgressEvent(type="complete", total=total, success_count=success_count, fail_count=fail_count)


async def run_sync_all(
    service: ViewSyncService,
    binding: str,
    on_event: Optional[ProgressCallback] = None,
    views: Optional[Sequence[tuple[str, str]]] = None,
) -> SyncProgressEvent:
    """Drive ``iter_sync_all`` to the end and return its ``complete`` event."""
    last = None
    async for event in iter_sync_all(service, binding, views):
        if on_event is not None:
            await on_event(event)
        last = event
    return last


async def scheduled_sync_all(service: ViewSyncService) -> None:
    """Daily job: sync every allowed view on every registered source."""
    logger.info("Scheduled full sync starting")
    for binding in service.sources.registered_names():
        summary = await run_sync_all(service, binding)
        logger.info(
            "Scheduled full sync of %s: %d/%d succeeded",
            binding, summary.success_count, summary.total,
        )
    logger.info("Scheduled full sync complete")
