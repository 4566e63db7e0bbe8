"""Tests for the progression ledger (XP awards, leveling, passive updates)"""
import asyncio

import pytest

from campussynq.errors import Unauthenticated, ValidationFailure
from campussynq.models import Profile
from campussynq.progression import (
    NOTIFICATIONS_TABLE,
    PATH_CREDIT,
    PATH_DIRECT,
    PROFILES_TABLE,
    ProgressionLedger,
)
from campussynq.realtime import INSERT, UPDATE, ChangeEvent


def _row(db, user_id):
    db.expire_all()
    return db.get(Profile, user_id)


class TestLoadProfile:
    def test_unauthenticated_caller_gets_nothing(self, db, ledger):
        assert ledger.load_profile(db, None) is None
        assert db.query(Profile).count() == 0

    def test_missing_profile_is_created_lazily(self, db, ledger, alice):
        state = ledger.load_profile(db, alice)

        assert (state.xp, state.level) == (0, 1)
        row = _row(db, alice.id)
        assert (row.xp, row.level, row.username) == (0, 1, "alice")
        assert ledger.state_for(alice.id) == state

    def test_existing_profile_is_read(self, db, ledger, alice, make_profile):
        make_profile(alice.id, xp=1200, level=3)
        state = ledger.load_profile(db, alice)
        assert (state.xp, state.level) == (1200, 3)


class TestAwardXP:
    async def test_crossing_threshold_levels_up_and_notifies(self, db, ledger, hub, alice, make_profile):
        make_profile(alice.id, xp=450, level=1)
        notes = hub.subscribe(NOTIFICATIONS_TABLE, INSERT)

        result = await ledger.award_xp(db, alice, 100, "task")

        assert (result.xp, result.level) == (550, 2)
        assert result.leveled_up
        assert [n.kind for n in result.notifications] == ["xp_gained", "level_up"]
        assert (_row(db, alice.id).xp, _row(db, alice.id).level) == (550, 2)
        assert ledger.state_for(alice.id).xp == 550

        first = await asyncio.wait_for(notes.next(), 1)
        second = await asyncio.wait_for(notes.next(), 1)
        assert first.new["kind"] == "xp_gained" and first.new["description"] == "task"
        assert second.new["kind"] == "level_up"
        assert "level 2" in second.new["description"]

    async def test_no_level_up_notification_below_threshold(self, db, ledger, alice, make_profile):
        make_profile(alice.id, xp=100, level=1)
        result = await ledger.award_xp(db, alice, 50, "Read a blog")
        assert not result.leveled_up
        assert [n.kind for n in result.notifications] == ["xp_gained"]

    async def test_unauthenticated_award_changes_nothing(self, db, ledger, hub):
        sub = hub.subscribe(PROFILES_TABLE)

        with pytest.raises(Unauthenticated) as exc:
            await ledger.award_xp(db, None, 50)

        assert exc.value.redirect == "/auth"
        assert db.query(Profile).count() == 0
        sub.cancel()
        assert await sub.next() is None

    async def test_negative_amount_rejected(self, db, ledger, alice):
        with pytest.raises(ValidationFailure):
            await ledger.award_xp(db, alice, -5)

    async def test_award_creates_missing_profile(self, db, ledger, alice):
        result = await ledger.award_xp(db, alice, 20)
        assert (result.previous_xp, result.xp, result.level) == (0, 20, 1)

    async def test_repeated_calls_are_not_deduplicated(self, db, ledger, alice):
        await ledger.award_xp(db, alice, 300, "same action")
        await ledger.award_xp(db, alice, 300, "same action")
        assert (_row(db, alice.id).xp, _row(db, alice.id).level) == (600, 2)

    async def test_level_invariant_after_award_sequence(self, db, ledger, alice):
        for amount in [5, 495, 0, 1, 999, 250, 2500]:
            await ledger.award_xp(db, alice, amount)
        row = _row(db, alice.id)
        assert row.xp == 4250
        assert row.level == row.xp // 500 + 1

    async def test_direct_path_when_not_privileged(self, db, ledger, alice):
        result = await ledger.award_xp(db, alice, 10)
        assert result.path == PATH_DIRECT

    async def test_privileged_path_credits_atomically(self, db, hub, alice, make_profile):
        ledger = ProgressionLedger(hub, xp_per_level=500, privileged=True)
        make_profile(alice.id, xp=990, level=2)

        result = await ledger.award_xp(db, alice, 20)

        assert result.path == PATH_CREDIT
        assert (result.previous_xp, result.previous_level, result.xp, result.level) == (990, 2, 1010, 3)

    async def test_privileged_failure_falls_back_to_direct_write(self, db, hub, alice, monkeypatch):
        ledger = ProgressionLedger(hub, xp_per_level=500, privileged=True)

        def broken_credit(*args, **kwargs):
            from sqlalchemy.exc import OperationalError
            raise OperationalError("credit_xp", {}, Exception("function missing"))

        monkeypatch.setattr(ledger, "credit_xp", broken_credit)
        result = await ledger.award_xp(db, alice, 40)

        assert result.path == PATH_DIRECT
        assert _row(db, alice.id).xp == 40

    async def test_lost_races_exhaust_retries_and_drop_the_award(self, db, hub, alice, make_profile):
        class StaleLedger(ProgressionLedger):
            reads = 0

            def _read_latest(self, db, user_id):
                # always sees an xp value another device already moved past
                self.reads += 1
                return 0, 1

        ledger = StaleLedger(hub, xp_per_level=500, privileged=False, write_retries=3)
        make_profile(alice.id, xp=700, level=2)
        ledger.load_profile(db, alice)

        result = await ledger.award_xp(db, alice, 50)

        assert result is None
        assert ledger.reads == 3
        assert ledger.state_for(alice.id).xp == 700
        assert _row(db, alice.id).xp == 700

    async def test_award_publishes_profile_change(self, db, ledger, hub, alice):
        changes = hub.subscribe(PROFILES_TABLE, UPDATE, {"id": alice.id})
        await ledger.award_xp(db, alice, 75)
        change = await asyncio.wait_for(changes.next(), 1)
        assert change.new == {"id": alice.id, "xp": 75, "level": 1}
        assert change.old["xp"] == 0


class TestPassiveUpdates:
    def test_remote_change_overwrites_without_rederiving_level(self, ledger, alice):
        state = ledger.apply_remote_change(
            ChangeEvent(PROFILES_TABLE, UPDATE, new={"id": alice.id, "xp": 5000, "level": 1})
        )
        assert (state.xp, state.level) == (5000, 1)
        assert ledger.state_for(alice.id) == state

    def test_remote_change_defaults_missing_columns(self, ledger, alice):
        state = ledger.apply_remote_change(ChangeEvent(PROFILES_TABLE, UPDATE, new={"id": alice.id}))
        assert (state.xp, state.level) == (0, 1)

    async def test_follow_tracks_only_the_watched_user(self, ledger, hub, alice, bob):
        updates = ledger.follow(alice.id)
        pending = asyncio.ensure_future(updates.__anext__())
        await asyncio.sleep(0)

        hub.publish(ChangeEvent(PROFILES_TABLE, UPDATE, new={"id": bob.id, "xp": 10, "level": 1}))
        hub.publish(ChangeEvent(PROFILES_TABLE, UPDATE, new={"id": alice.id, "xp": 900, "level": 2}))

        state = await asyncio.wait_for(pending, 1)
        assert (state.user_id, state.xp, state.level) == (alice.id, 900, 2)
        assert ledger.state_for(bob.id) is None
        await updates.aclose()
        assert hub.subscriber_count(PROFILES_TABLE) == 0


class TestProfileCache:
    def test_least_recently_used_profile_is_evicted(self, db, hub, alice, bob, make_profile):
        ledger = ProgressionLedger(hub, xp_per_level=500, privileged=False, cache_size=2)
        make_profile(alice.id, xp=40)
        ledger.load_profile(db, alice)
        ledger.load_profile(db, bob)
        # touching alice makes bob the oldest entry
        assert ledger.state_for(alice.id).xp == 40

        ledger.apply_remote_change(ChangeEvent(PROFILES_TABLE, UPDATE, new={"id": "u-carol", "xp": 10, "level": 1}))

        assert ledger.state_for(bob.id) is None
        assert ledger.state_for(alice.id).xp == 40
        assert ledger.state_for("u-carol").xp == 10

    def test_evicted_profile_reloads_from_the_table(self, db, hub, alice, bob, make_profile):
        ledger = ProgressionLedger(hub, xp_per_level=500, privileged=False, cache_size=1)
        make_profile(alice.id, xp=700, level=2)
        ledger.load_profile(db, alice)
        ledger.load_profile(db, bob)
        assert ledger.state_for(alice.id) is None

        state = ledger.load_profile(db, alice)
        assert (state.xp, state.level) == (700, 2)
