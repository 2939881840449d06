"""
Per-view mutual exclusion backed by ``synced_views.status``.

A lease is a conditional ``PENDING|SYNCED|FAILED -> SYNCING`` transition on the
view's row, so it holds across processes and restarts. A view left in
SYNCING longer than the staleness window is considered abandoned and may be
taken over.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from viewsync.exceptions import SyncConflictError
from viewsync.models.sync_log import SyncLog, SyncLogStatus
from viewsync.models.synced_view import SyncedView, SyncStatus

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class SyncLease:
    view_id: int
    key: str
    acquired_at: datetime


class ConflictGuard:
    def __init__(self, session_factory: async_sessionmaker, stale_after: timedelta = timedelta(hours=1)):
        self.session_factory = session_factory
        self.stale_after = stale_after

    async def acquire(self, view_id: int, key: str) -> SyncLease:
        now = _utcnow()
        cutoff = now - self.stale_after
        async with self.session_factory() as db:
            result = await db.execute(
                update(SyncedView)
                .where(SyncedView.id == view_id)
                .where(
                    or_(
                        SyncedView.status != SyncStatus.SYNCING.value,
                        SyncedView.sync_started_at.is_(None),
                        SyncedView.sync_started_at < cutoff,
                    )
                )
                .values(status=SyncStatus.SYNCING.value, sync_started_at=now, last_error=None)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await db.rollback()
                raise SyncConflictError(f"View {key} is already being synced", details={"view": key})

            # Anything still RUNNING for this view belongs to an abandoned attempt
            abandoned = await db.execute(
                update(SyncLog)
                .where(SyncLog.synced_view_id == view_id, SyncLog.status == SyncLogStatus.RUNNING.value)
                .values(status=SyncLogStatus.FAILED.value, error="Abandoned: sync interrupted", completed_at=now)
                .execution_options(synchronize_session=False)
            )
            await db.commit()

        if abandoned.rowcount:
            logger.warning("Took over stale sync lease for %s (%d abandoned run(s))", key, abandoned.rowcount)
        return SyncLease(view_id=view_id, key=key, acquired_at=now)

    async def release(self, lease: SyncLease) -> None:
        """
        Give the lease back. The caller normally records SYNCED/FAILED first;
        a view still SYNCING under this lease is marked FAILED here.
        """
        async with self.session_factory() as db:
            result = await db.execute(
                update(SyncedView)
                .where(
                    SyncedView.id == lease.view_id,
                    SyncedView.status == SyncStatus.SYNCING.value,
                    SyncedView.sync_started_at == lease.acquired_at,
                )
                .values(
                    status=SyncStatus.FAILED.value,
                    sync_started_at=None,
                    last_error="Sync lease released without a recorded outcome",
                )
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        if result.rowcount:
            logger.warning("Released lease for %s without an outcome; marked FAILED", lease.key)

    async def recover_stale(self, now: Optional[datetime] = None) -> int:
        """Reset views stuck in SYNCING past the staleness window to FAILED."""
        now = now or _utcnow()
        cutoff = now - self.stale_after
        stale_filter = (
            SyncedView.status == SyncStatus.SYNCING.value,
            or_(SyncedView.sync_started_at.is_(None), SyncedView.sync_started_at < cutoff),
        )
        async with self.session_factory() as db:
            stale_ids = (await db.execute(select(SyncedView.id).where(*stale_filter))).scalars().all()
            if not stale_ids:
                return 0
            await db.execute(
                update(SyncedView)
                .where(SyncedView.id.in_(stale_ids))
                .values(
                    status=SyncStatus.FAILED.value,
                    sync_started_at=None,
                    last_error="Interrupted: sync lease went stale",
                )
                .execution_options(synchronize_session=False)
            )
            await db.execute(
                update(SyncLog)
                .where(SyncLog.synced_view_id.in_(stale_ids), SyncLog.status == SyncLogStatus.RUNNING.value)
                .values(status=SyncLogStatus.FAILED.value, error="Interrupted: sync lease went stale", completed_at=now)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        logger.warning("Recovered %d stale sync(s): %s", len(stale_ids), stale_ids)
        return len(stale_ids)
