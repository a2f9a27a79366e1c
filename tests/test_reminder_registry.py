import pytest
from datetime import timedelta

from lunchbox.db.models import ReminderKind, SentStatus
from lunchbox.db.session import build_async_engine, build_session_factory
from lunchbox.services.notifications.registry import (
    ReminderDraft,
    ReminderRegistry,
    UPSERT_CREATED,
    UPSERT_UNCHANGED,
    UPSERT_UPDATED,
)
from lunchbox.utils.datetime_utils import to_naive_utc
from lunchbox.utils.errors import RegistryUnavailableError


def make_draft(
    fire_at,
    task_id="task-1",
    kind=ReminderKind.DUE_REMINDER,
    message="Your task is due soon",
    entry_id=None,
):
    return ReminderDraft(
        id=entry_id or f"{task_id}:{kind.value}",
        task_id=task_id,
        user_id="user-1",
        kind=kind,
        fire_at=fire_at,
        message=message,
        user_email="ada@example.org",
        user_name="Ada",
        task_text="Write report",
        due_at=fire_at + timedelta(hours=1),
        timezone="UTC",
    )


class TestUpsert:
    """Upsert-by-derived-key rules."""

    @pytest.mark.asyncio
    async def test_creates_pending_entry(self, registry, clock):
        draft = make_draft(clock.now + timedelta(hours=2))

        assert await registry.upsert(draft) == UPSERT_CREATED

        entry = await registry.get(draft.id)
        assert entry.sent_status == SentStatus.PENDING
        assert entry.fire_at == to_naive_utc(clock.now + timedelta(hours=2))
        assert entry.attempt_count == 0

    @pytest.mark.asyncio
    async def test_identical_pending_is_left_untouched(self, registry, clock):
        draft = make_draft(clock.now + timedelta(hours=2))
        await registry.upsert(draft)
        first = await registry.get(draft.id)

        clock.advance(minutes=5)
        assert await registry.upsert(draft) == UPSERT_UNCHANGED

        second = await registry.get(draft.id)
        assert second.updated_at == first.updated_at
        assert len(await registry.list_for_task("task-1")) == 1

    @pytest.mark.asyncio
    async def test_changed_fire_time_updates_pending(self, registry, clock):
        await registry.upsert(make_draft(clock.now + timedelta(hours=2)))

        moved = make_draft(clock.now + timedelta(hours=5))
        assert await registry.upsert(moved) == UPSERT_UPDATED

        entry = await registry.get(moved.id)
        assert entry.fire_at == moved.fire_at
        assert entry.sent_status == SentStatus.PENDING

    @pytest.mark.asyncio
    async def test_cancelled_entry_is_rearmed(self, registry, clock):
        draft = make_draft(clock.now + timedelta(hours=2))
        await registry.upsert(draft)
        assert await registry.cancel_pending("task-1") == 1

        assert await registry.upsert(draft) == UPSERT_UPDATED
        assert (await registry.get(draft.id)).sent_status == SentStatus.PENDING

    @pytest.mark.asyncio
    async def test_sent_entry_with_same_fire_time_is_not_resent(self, registry, clock):
        draft = make_draft(clock.now - timedelta(minutes=1))
        await registry.upsert(draft)
        assert await registry.claim(draft.id)
        assert await registry.mark_sent(draft.id, "<msg-1>")

        assert await registry.upsert(draft) == UPSERT_UNCHANGED
        entry = await registry.get(draft.id)
        assert entry.sent_status == SentStatus.SENT
        assert entry.provider_message_id == "<msg-1>"

    @pytest.mark.asyncio
    async def test_sent_entry_with_new_fire_time_is_reset(self, registry, clock):
        draft = make_draft(clock.now - timedelta(minutes=1))
        await registry.upsert(draft)
        await registry.claim(draft.id)
        await registry.mark_sent(draft.id, "<msg-1>")

        moved = make_draft(clock.now + timedelta(days=1))
        assert await registry.upsert(moved) == UPSERT_UPDATED

        entry = await registry.get(moved.id)
        assert entry.sent_status == SentStatus.PENDING
        assert entry.sent_at is None
        assert entry.provider_message_id is None

    @pytest.mark.asyncio
    async def test_failed_entry_with_same_fire_time_stays_failed(self, registry, clock):
        draft = make_draft(clock.now - timedelta(minutes=1))
        await registry.upsert(draft)
        await registry.claim(draft.id)
        await registry.mark_failed(draft.id, "delivery_rejected", "550 mailbox full")

        assert await registry.upsert(draft) == UPSERT_UNCHANGED
        entry = await registry.get(draft.id)
        assert entry.sent_status == SentStatus.FAILED
        assert entry.failure_reason == "delivery_rejected"

    @pytest.mark.asyncio
    async def test_claimed_entry_is_never_overwritten(self, registry, clock):
        draft = make_draft(clock.now - timedelta(minutes=1))
        await registry.upsert(draft)
        await registry.claim(draft.id)

        moved = make_draft(clock.now + timedelta(days=1))
        assert await registry.upsert(moved) == UPSERT_UNCHANGED

        entry = await registry.get(draft.id)
        assert entry.sent_status == SentStatus.CLAIMED
        assert entry.fire_at == draft.fire_at


class TestClaimLifecycle:
    """Compare-and-swap transitions."""

    @pytest.mark.asyncio
    async def test_only_one_claim_wins(self, registry, clock):
        draft = make_draft(clock.now - timedelta(minutes=1))
        await registry.upsert(draft)

        assert await registry.claim(draft.id) is True
        assert await registry.claim(draft.id) is False

        entry = await registry.get(draft.id)
        assert entry.sent_status == SentStatus.CLAIMED
        assert entry.attempt_count == 1
        assert entry.claimed_at == to_naive_utc(clock.now)

    @pytest.mark.asyncio
    async def test_mark_sent_requires_claim(self, registry, clock):
        draft = make_draft(clock.now - timedelta(minutes=1))
        await registry.upsert(draft)

        assert await registry.mark_sent(draft.id, "<msg>") is False
        assert (await registry.get(draft.id)).sent_status == SentStatus.PENDING

    @pytest.mark.asyncio
    async def test_cancelled_entry_cannot_be_claimed(self, registry, clock):
        draft = make_draft(clock.now - timedelta(minutes=1))
        await registry.upsert(draft)
        await registry.cancel_pending("task-1")

        assert await registry.claim(draft.id) is False

    @pytest.mark.asyncio
    async def test_release_stale_claims(self, registry, clock):
        draft = make_draft(clock.now - timedelta(minutes=1))
        await registry.upsert(draft)
        await registry.claim(draft.id)

        clock.advance(minutes=10)
        assert await registry.release_stale_claims(clock.now - timedelta(minutes=30)) == 0
        assert await registry.release_stale_claims(clock.now - timedelta(minutes=5)) == 1

        entry = await registry.get(draft.id)
        assert entry.sent_status == SentStatus.PENDING
        assert entry.claimed_at is None


class TestQueries:
    """Due listing, cancellation, stats and purge."""

    @pytest.mark.asyncio
    async def test_list_due_returns_only_past_pending_oldest_first(self, registry, clock):
        late = make_draft(clock.now - timedelta(minutes=5), task_id="a")
        later = make_draft(clock.now - timedelta(minutes=30), task_id="b")
        future = make_draft(clock.now + timedelta(minutes=5), task_id="c")
        cancelled = make_draft(clock.now - timedelta(minutes=50), task_id="d")
        for draft in (late, later, future, cancelled):
            await registry.upsert(draft)
        await registry.cancel_pending("d")

        due = await registry.list_due(clock.now)

        assert [entry.id for entry in due] == [later.id, late.id]

    @pytest.mark.asyncio
    async def test_cancel_pending_respects_exclusions(self, registry, clock):
        due = make_draft(clock.now + timedelta(hours=1))
        overdue = make_draft(
            clock.now + timedelta(hours=3), kind=ReminderKind.OVERDUE_ALERT
        )
        await registry.upsert(due)
        await registry.upsert(overdue)

        assert await registry.cancel_pending("task-1", exclude_ids=[due.id]) == 1
        assert (await registry.get(due.id)).sent_status == SentStatus.PENDING
        assert (await registry.get(overdue.id)).sent_status == SentStatus.CANCELLED

        # Second call has nothing left to cancel
        assert await registry.cancel_pending("task-1", exclude_ids=[due.id]) == 0

    @pytest.mark.asyncio
    async def test_count_by_status(self, registry, clock):
        await registry.upsert(make_draft(clock.now - timedelta(minutes=1), task_id="a"))
        await registry.upsert(make_draft(clock.now + timedelta(hours=1), task_id="b"))
        await registry.claim("a:due_reminder")
        await registry.mark_sent("a:due_reminder", "<msg>")

        counts = await registry.count_by_status()

        assert counts == {
            "pending": 1,
            "claimed": 0,
            "sent": 1,
            "cancelled": 0,
            "failed": 0,
            "total": 2,
        }

    @pytest.mark.asyncio
    async def test_purge_removes_only_old_finished_entries(self, registry, clock):
        now = clock.now
        clock.set(now - timedelta(days=10))
        await registry.upsert(make_draft(clock.now, task_id="old-sent"))
        await registry.claim("old-sent:due_reminder")
        await registry.mark_sent("old-sent:due_reminder", "<msg>")
        await registry.upsert(make_draft(clock.now, task_id="old-pending"))

        clock.set(now)
        await registry.upsert(make_draft(clock.now, task_id="new-sent"))
        await registry.claim("new-sent:due_reminder")
        await registry.mark_sent("new-sent:due_reminder", "<msg>")

        purged = await registry.purge_older_than(now - timedelta(days=7))

        assert purged == 1
        assert await registry.get("old-sent:due_reminder") is None
        assert await registry.get("old-pending:due_reminder") is not None
        assert await registry.get("new-sent:due_reminder") is not None


class TestReserve:
    """Immediate-send claims versioned by fire time."""

    @pytest.mark.asyncio
    async def test_first_reserve_creates_claimed_entry(self, registry, clock):
        draft = make_draft(clock.now, kind=ReminderKind.COMPLETION_EMAIL)

        assert await registry.reserve(draft) is True
        assert await registry.reserve(draft) is False

        entry = await registry.get(draft.id)
        assert entry.sent_status == SentStatus.CLAIMED
        assert entry.attempt_count == 1
        assert entry.claimed_at == to_naive_utc(clock.now)

    @pytest.mark.asyncio
    async def test_finished_version_is_not_reserved_again(self, registry, clock):
        draft = make_draft(clock.now, kind=ReminderKind.COMPLETION_EMAIL)
        await registry.reserve(draft)
        await registry.mark_sent(draft.id, "<msg>")

        assert await registry.reserve(draft) is False
        older = make_draft(clock.now - timedelta(minutes=5), kind=ReminderKind.COMPLETION_EMAIL)
        assert await registry.reserve(older) is False

    @pytest.mark.asyncio
    async def test_newer_version_reopens_failed_entry(self, registry, clock):
        draft = make_draft(clock.now, kind=ReminderKind.COMPLETION_EMAIL)
        await registry.reserve(draft)
        await registry.mark_failed(draft.id, "transport_unavailable", "down")

        newer = make_draft(clock.now + timedelta(minutes=1), kind=ReminderKind.COMPLETION_EMAIL)
        assert await registry.reserve(newer) is True

        entry = await registry.get(draft.id)
        assert entry.sent_status == SentStatus.CLAIMED
        assert entry.attempt_count == 2
        assert entry.failure_reason is None
        assert entry.fire_at == to_naive_utc(clock.now + timedelta(minutes=1))

    @pytest.mark.asyncio
    async def test_list_due_skips_on_request_kinds(self, registry, clock):
        await registry.upsert(
            make_draft(clock.now - timedelta(minutes=1), kind=ReminderKind.COMPLETION_EMAIL)
        )
        await registry.upsert(make_draft(clock.now - timedelta(minutes=1)))

        due = await registry.list_due(clock.now)

        assert [entry.kind for entry in due] == [ReminderKind.DUE_REMINDER]


class TestUnavailableStore:
    @pytest.mark.asyncio
    async def test_store_errors_surface_as_registry_unavailable(self, tmp_path, clock):
        engine = build_async_engine(
            f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'nowhere.db'}"
        )
        registry = ReminderRegistry(build_session_factory(engine), clock=clock)

        try:
            with pytest.raises(RegistryUnavailableError):
                await registry.list_due(clock.now)
        finally:
            await engine.dispose()
