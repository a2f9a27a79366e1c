from contextlib import asynccontextmanager
from dataclasses import dataclass, fields
from datetime import datetime
from typing import AsyncIterator, Callable, Dict, Iterable, List, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from lunchbox.db.models import (
    DISPATCHED_KINDS,
    ReminderEntry,
    ReminderKind,
    SentStatus,
    TERMINAL_STATUSES,
)
from lunchbox.utils.datetime_utils import naive_utc_now, to_naive_utc
from lunchbox.utils.errors import RegistryUnavailableError
from lunchbox.utils.logging import get_logger

logger = get_logger()

UPSERT_CREATED = "created"
UPSERT_UPDATED = "updated"
UPSERT_UNCHANGED = "unchanged"


@dataclass(frozen=True)
class ReminderDraft:
    """Desired state of one reminder entry, as computed by the scheduling engine"""

    id: str
    task_id: str
    user_id: str
    kind: ReminderKind
    fire_at: datetime
    message: str
    user_email: Optional[str] = None
    user_name: Optional[str] = None
    task_text: Optional[str] = None
    due_at: Optional[datetime] = None
    timezone: Optional[str] = None

    def __post_init__(self):
        # Registry timestamps are naive UTC
        object.__setattr__(self, "fire_at", to_naive_utc(self.fire_at))
        if self.due_at is not None:
            object.__setattr__(self, "due_at", to_naive_utc(self.due_at))

    def content(self) -> Dict[str, object]:
        return {f.name: getattr(self, f.name) for f in fields(self) if f.name != "id"}


class ReminderRegistry:
    """
    Durable store of reminder entries.

    Every call opens its own short-lived session. State transitions that can
    race (claim, mark sent/failed, re-arm) are conditional UPDATEs on the
    current status, so the row count tells the caller whether it won.
    Store errors surface as RegistryUnavailableError.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Callable[[], datetime] = naive_utc_now,
    ):
        self._session_factory = session_factory
        self._clock = clock

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_factory() as session:
                yield session
        except SQLAlchemyError as e:
            logger.error(f"Reminder registry operation failed: {str(e)}")
            raise RegistryUnavailableError() from e

    def _now(self) -> datetime:
        return to_naive_utc(self._clock())

    async def get(self, entry_id: str) -> Optional[ReminderEntry]:
        async with self._session() as session:
            return await session.get(ReminderEntry, entry_id)

    async def list_for_task(
        self, task_id: str, statuses: Optional[Iterable[SentStatus]] = None
    ) -> List[ReminderEntry]:
        stmt = select(ReminderEntry).where(ReminderEntry.task_id == task_id)
        if statuses is not None:
            stmt = stmt.where(ReminderEntry.sent_status.in_(list(statuses)))
        stmt = stmt.order_by(ReminderEntry.fire_at, ReminderEntry.id)

        async with self._session() as session:
            result = await session.scalars(stmt)
            return list(result.all())

    async def upsert(self, draft: ReminderDraft) -> str:
        """
        Insert or update the entry keyed by ``draft.id``.

        Existing entries follow these rules:
        - claimed: never touched, a send is in flight
        - pending with identical content: no write
        - cancelled: re-armed to pending
        - sent or failed with the same fire time: left alone
        - anything else with a new fire time: reset to pending

        Returns one of "created", "updated" or "unchanged".
        """
        for attempt in range(2):
            try:
                async with self._session() as session:
                    return await self._upsert(session, draft)
            except RegistryUnavailableError as e:
                # Lost an insert race on the same key; the retry sees the row
                if attempt == 0 and isinstance(e.__cause__, IntegrityError):
                    continue
                raise
        return UPSERT_UNCHANGED

    async def _upsert(self, session: AsyncSession, draft: ReminderDraft) -> str:
        now = self._now()
        existing = await session.get(ReminderEntry, draft.id)

        if existing is None:
            session.add(
                ReminderEntry(
                    id=draft.id,
                    **draft.content(),
                    sent_status=SentStatus.PENDING,
                    attempt_count=0,
                    created_at=now,
                    updated_at=now,
                )
            )
            await session.commit()
            return UPSERT_CREATED

        observed = existing.sent_status
        fire_changed = existing.fire_at != draft.fire_at
        same_content = all(
            getattr(existing, key) == value for key, value in draft.content().items()
        )

        if observed == SentStatus.CLAIMED:
            return UPSERT_UNCHANGED
        if observed in (SentStatus.SENT, SentStatus.FAILED) and not fire_changed:
            return UPSERT_UNCHANGED
        if observed == SentStatus.PENDING and same_content:
            return UPSERT_UNCHANGED

        values = {**draft.content(), "updated_at": now}
        if observed != SentStatus.PENDING:
            values.update(
                sent_status=SentStatus.PENDING,
                claimed_at=None,
                sent_at=None,
                provider_message_id=None,
                failure_reason=None,
                failure_detail=None,
            )

        result = await session.execute(
            update(ReminderEntry)
            .where(
                ReminderEntry.id == draft.id,
                ReminderEntry.sent_status == observed,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        return UPSERT_UPDATED if result.rowcount == 1 else UPSERT_UNCHANGED

    async def reserve(self, draft: ReminderDraft) -> bool:
        """
        Claim the entry keyed by ``draft.id`` for an immediate send.

        ``draft.fire_at`` is the version being announced. Returns False when a
        send for this or a newer version already finished, or one is in flight.
        The winner finishes with ``mark_sent`` or ``mark_failed``.
        """
        for attempt in range(2):
            try:
                async with self._session() as session:
                    return await self._reserve(session, draft)
            except RegistryUnavailableError as e:
                if attempt == 0 and isinstance(e.__cause__, IntegrityError):
                    continue
                raise
        return False

    async def _reserve(self, session: AsyncSession, draft: ReminderDraft) -> bool:
        now = self._now()
        existing = await session.get(ReminderEntry, draft.id)

        if existing is None:
            session.add(
                ReminderEntry(
                    id=draft.id,
                    **draft.content(),
                    sent_status=SentStatus.CLAIMED,
                    claimed_at=now,
                    attempt_count=1,
                    created_at=now,
                    updated_at=now,
                )
            )
            await session.commit()
            return True

        observed = existing.sent_status
        if observed == SentStatus.CLAIMED:
            return False
        if observed != SentStatus.PENDING and existing.fire_at >= draft.fire_at:
            return False

        result = await session.execute(
            update(ReminderEntry)
            .where(
                ReminderEntry.id == draft.id,
                ReminderEntry.sent_status == observed,
            )
            .values(
                **draft.content(),
                sent_status=SentStatus.CLAIMED,
                claimed_at=now,
                sent_at=None,
                provider_message_id=None,
                failure_reason=None,
                failure_detail=None,
                attempt_count=ReminderEntry.attempt_count + 1,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        return result.rowcount == 1

    async def cancel_pending(
        self, task_id: str, exclude_ids: Iterable[str] = ()
    ) -> int:
        """Move the task's pending entries (except ``exclude_ids``) to cancelled."""
        exclude = list(exclude_ids)
        stmt = update(ReminderEntry).where(
            ReminderEntry.task_id == task_id,
            ReminderEntry.sent_status == SentStatus.PENDING,
        )
        if exclude:
            stmt = stmt.where(ReminderEntry.id.notin_(exclude))
        stmt = stmt.values(
            sent_status=SentStatus.CANCELLED, updated_at=self._now()
        ).execution_options(synchronize_session=False)

        async with self._session() as session:
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount

    async def list_due(
        self, now: Optional[datetime] = None, limit: int = 200
    ) -> List[ReminderEntry]:
        """Pending entries whose fire time has passed, oldest first."""
        cutoff = to_naive_utc(now) if now is not None else self._now()
        stmt = (
            select(ReminderEntry)
            .where(
                ReminderEntry.sent_status == SentStatus.PENDING,
                ReminderEntry.fire_at <= cutoff,
                ReminderEntry.kind.in_(DISPATCHED_KINDS),
            )
            .order_by(ReminderEntry.fire_at, ReminderEntry.id)
            .limit(limit)
        )
        async with self._session() as session:
            result = await session.scalars(stmt)
            return list(result.all())

    async def claim(self, entry_id: str, now: Optional[datetime] = None) -> bool:
        """Atomically move a pending entry to claimed. False if someone else won."""
        claimed_at = to_naive_utc(now) if now is not None else self._now()
        stmt = (
            update(ReminderEntry)
            .where(
                ReminderEntry.id == entry_id,
                ReminderEntry.sent_status == SentStatus.PENDING,
            )
            .values(
                sent_status=SentStatus.CLAIMED,
                claimed_at=claimed_at,
                attempt_count=ReminderEntry.attempt_count + 1,
                updated_at=claimed_at,
            )
            .execution_options(synchronize_session=False)
        )
        async with self._session() as session:
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount == 1

    async def mark_sent(
        self,
        entry_id: str,
        provider_message_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        sent_at = to_naive_utc(now) if now is not None else self._now()
        return await self._finish_claim(
            entry_id,
            sent_status=SentStatus.SENT,
            sent_at=sent_at,
            provider_message_id=provider_message_id,
            updated_at=sent_at,
        )

    async def mark_failed(
        self,
        entry_id: str,
        reason: str,
        detail: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        failed_at = to_naive_utc(now) if now is not None else self._now()
        return await self._finish_claim(
            entry_id,
            sent_status=SentStatus.FAILED,
            failure_reason=reason,
            failure_detail=(detail or "")[:2000] or None,
            updated_at=failed_at,
        )

    async def _finish_claim(self, entry_id: str, **values) -> bool:
        stmt = (
            update(ReminderEntry)
            .where(
                ReminderEntry.id == entry_id,
                ReminderEntry.sent_status == SentStatus.CLAIMED,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        async with self._session() as session:
            result = await session.execute(stmt)
            await session.commit()

        if result.rowcount != 1:
            logger.warning(
                f"Reminder {entry_id} was no longer claimed when finishing "
                f"with status {values['sent_status'].value}"
            )
            return False
        return True

    async def release_stale_claims(self, older_than: datetime) -> int:
        """Put claims taken before ``older_than`` back to pending."""
        cutoff = to_naive_utc(older_than)
        stmt = (
            update(ReminderEntry)
            .where(
                ReminderEntry.sent_status == SentStatus.CLAIMED,
                ReminderEntry.claimed_at < cutoff,
            )
            .values(
                sent_status=SentStatus.PENDING,
                claimed_at=None,
                updated_at=self._now(),
            )
            .execution_options(synchronize_session=False)
        )
        async with self._session() as session:
            result = await session.execute(stmt)
            await session.commit()
            released = result.rowcount

        if released:
            logger.warning(f"Released {released} stale reminder claims")
        return released

    async def count_by_status(self) -> Dict[str, int]:
        stmt = select(ReminderEntry.sent_status, func.count()).group_by(
            ReminderEntry.sent_status
        )
        async with self._session() as session:
            rows = (await session.execute(stmt)).all()

        counts = {status.value: 0 for status in SentStatus}
        for status, count in rows:
            counts[status.value] = count
        counts["total"] = sum(counts.values())
        return counts

    async def purge_older_than(self, cutoff: datetime) -> int:
        """Delete sent, cancelled and failed entries last touched before ``cutoff``."""
        stmt = (
            delete(ReminderEntry)
            .where(
                ReminderEntry.sent_status.in_(TERMINAL_STATUSES),
                ReminderEntry.updated_at < to_naive_utc(cutoff),
            )
            .execution_options(synchronize_session=False)
        )
        async with self._session() as session:
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount
