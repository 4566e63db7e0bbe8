"""Tests for the activity stream, the live feed and today's top movers"""
import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import OperationalError

from campussynq.activity import (
    ACTIVITIES_TABLE,
    ANONYMOUS,
    ActivityFeed,
    ActivityView,
    local_midnight,
    top_movers,
)
from campussynq.errors import ValidationFailure
from campussynq.models import UserActivity
from campussynq.realtime import INSERT, ChangeEvent

BASE = datetime(2026, 10, 19, 9, 0, 0)


def _seed(db, count, user_id="u-alice", start=BASE):
    for i in range(count):
        db.add(UserActivity(
            user_id=user_id,
            activity_type="challenge",
            activity_description=f"entry {i}",
            xp_earned=i,
            created_at=start + timedelta(minutes=i),
        ))
    db.commit()


def _view(id, user_id, xp, username=None, created_at=BASE):
    profile = {"username": username, "full_name": None} if username else None
    return ActivityView(id, user_id, "challenge", "did a thing", xp, created_at, profile)


class TestLoadRecent:
    def test_newest_first_and_capped(self, db, stream):
        _seed(db, 25)
        views = stream.load_recent(db)
        assert len(views) == 20
        assert views[0].activity_description == "entry 24"
        assert views[-1].activity_description == "entry 5"

    def test_profiles_resolved_in_batch_with_anonymous_fallback(self, db, stream, make_profile):
        make_profile("u-alice", username="alice", full_name="Alice Doe")
        _seed(db, 2, user_id="u-alice")
        _seed(db, 1, user_id="u-ghost", start=BASE + timedelta(hours=1))

        views = stream.load_recent(db)

        assert views[0].user_id == "u-ghost"
        assert views[0].profile is None
        assert views[0].display_name == ANONYMOUS
        assert views[1].profile == {"username": "alice", "full_name": "Alice Doe"}
        assert views[1].to_dict()["display_name"] == "alice"


class TestLogActivity:
    async def test_unauthenticated_is_a_silent_no_op(self, db, stream, hub):
        sub = hub.subscribe(ACTIVITIES_TABLE)
        assert stream.log_activity(db, None, "forum", "posted") is None
        assert db.query(UserActivity).count() == 0
        # nothing was queued ahead of the marker
        hub.publish(ChangeEvent(ACTIVITIES_TABLE, INSERT, new={"id": "marker"}))
        assert (await asyncio.wait_for(sub.next(), 1)).new["id"] == "marker"

    async def test_inserts_and_publishes(self, db, stream, hub, alice, make_profile):
        make_profile(alice.id, username="alice")
        sub = hub.subscribe(ACTIVITIES_TABLE)
        view = stream.log_activity(db, alice, "wellness", "Logged 8h of sleep", 15)

        change = await asyncio.wait_for(sub.next(), 1)
        assert change.type == INSERT
        assert change.new["id"] == view.id
        assert change.new["user_id"] == alice.id

        assert view.id is not None
        assert view.display_name == "alice"
        row = db.get(UserActivity, view.id)
        assert (row.activity_type, row.xp_earned) == ("wellness", 15)

    def test_unknown_activity_types_are_kept(self, db, stream, alice):
        view = stream.log_activity(db, alice, "hackathon", "Joined a hackathon")
        assert view.activity_type == "hackathon"

    def test_invalid_input_rejected(self, db, stream, alice):
        with pytest.raises(ValidationFailure) as exc:
            stream.log_activity(db, alice, "forum", "  ", -1)
        fields = {d["field"] for d in exc.value.details}
        assert fields == {"activity_description", "xp_earned"}


class TestActivityFeed:
    async def test_logged_entry_arrives_at_head_enriched(self, db, stream, session_factory, alice, make_profile):
        make_profile(alice.id, username="alice")
        _seed(db, 3, user_id="u-other")
        feed = ActivityFeed(stream, session_factory)
        feed.load()
        feed.attach()

        stream.log_activity(db, alice, "ai_usage", "Asked Synq AI for a study plan", 10)
        view = await asyncio.wait_for(feed.pump_once(), 1)

        assert feed.entries[0] is view
        assert view.display_name == "alice"
        assert len(feed.entries) == 4
        feed.close()

    async def test_unresolved_author_shows_as_anonymous(self, db, stream, session_factory, alice):
        feed = ActivityFeed(stream, session_factory)
        feed.attach()
        stream.log_activity(db, alice, "forum", "Replied to a thread")
        view = await asyncio.wait_for(feed.pump_once(), 1)
        assert view.profile is None
        assert view.display_name == ANONYMOUS

    async def test_twenty_five_loaded_plus_one_pushed_keeps_twenty_most_recent(self, db, stream, session_factory, alice):
        _seed(db, 25)
        feed = ActivityFeed(stream, session_factory)
        feed.load()
        feed.attach()

        pushed = stream.log_activity(db, alice, "challenge", "Finished a micro challenge", 20)
        await asyncio.wait_for(feed.pump_once(), 1)

        assert len(feed.entries) == 20
        assert feed.entries[0].id == pushed.id
        assert [e.activity_description for e in feed.entries[1:3]] == ["entry 24", "entry 23"]
        assert feed.entries[-1].activity_description == "entry 6"

    async def test_view_never_exceeds_limit(self, db, stream, session_factory, alice):
        feed = ActivityFeed(stream, session_factory, limit=20)
        feed.attach()
        for i in range(30):
            stream.log_activity(db, alice, "forum", f"post {i}")
        for _ in range(30):
            await asyncio.wait_for(feed.pump_once(), 1)
            assert len(feed.entries) <= 20
        assert feed.entries[0].activity_description == "post 29"

    async def test_pushed_entries_keep_arrival_order(self, stream, session_factory):
        feed = ActivityFeed(stream, session_factory)
        feed.push(_view(2, "u-a", 5, created_at=BASE))
        feed.push(_view(1, "u-a", 5, created_at=BASE + timedelta(hours=1)))
        assert [e.id for e in feed.entries] == [1, 2]

    def test_duplicate_push_ignored(self, stream, session_factory):
        feed = ActivityFeed(stream, session_factory)
        feed.push(_view(1, "u-a", 5))
        feed.push(_view(1, "u-a", 5))
        assert len(feed.entries) == 1

    def test_load_failure_degrades_to_empty(self, stream):
        class BrokenSession:
            def execute(self, *args, **kwargs):
                raise OperationalError("select", {}, Exception("database is locked"))

            def close(self):
                pass

        feed = ActivityFeed(stream, BrokenSession)
        feed.entries = [_view(1, "u-a", 5)]
        assert feed.load() == []

    async def test_follow_ends_when_closed(self, stream, session_factory):
        feed = ActivityFeed(stream, session_factory)

        async def collect():
            return [v async for v in feed.follow()]

        task = asyncio.ensure_future(collect())
        await asyncio.sleep(0)
        feed.close()
        assert await asyncio.wait_for(task, 1) == []

    async def test_pump_requires_attach(self, stream, session_factory):
        feed = ActivityFeed(stream, session_factory)
        with pytest.raises(RuntimeError):
            await feed.pump_once()


class TestTopMovers:
    def test_sums_per_author_and_ranks_descending(self):
        entries = [
            _view(1, "u-a", 10, "ana"),
            _view(2, "u-b", 40, "ben"),
            _view(3, "u-a", 35, "ana"),
            _view(4, "u-c", 5, "cy"),
            _view(5, "u-d", 1, "dee"),
        ]
        movers = top_movers(entries, since=BASE, limit=3)
        assert [(m.username, m.xp) for m in movers] == [("ana", 45), ("ben", 40), ("cy", 5)]

    def test_ties_keep_first_appearance_order(self):
        entries = [_view(1, "u-z", 20, "zed"), _view(2, "u-a", 20, "ana"), _view(3, "u-m", 20, "max")]
        movers = top_movers(entries, since=BASE, limit=3)
        assert [m.username for m in movers] == ["zed", "ana", "max"]

    def test_only_entries_since_midnight_count(self):
        entries = [
            _view(1, "u-a", 100, "ana", created_at=BASE - timedelta(days=1)),
            _view(2, "u-b", 10, "ben"),
        ]
        movers = top_movers(entries, since=BASE - timedelta(hours=1))
        assert [m.username for m in movers] == ["ben"]

    def test_distinct_unnamed_authors_are_not_merged(self):
        entries = [_view(1, "u-x", 30), _view(2, "u-y", 25), _view(3, "u-named", 40, "nia")]
        movers = top_movers(entries, since=BASE)
        assert [(m.user_id, m.username, m.xp) for m in movers] == [
            ("u-named", "nia", 40),
            ("u-x", ANONYMOUS, 30),
            ("u-y", ANONYMOUS, 25),
        ]

    def test_empty_feed(self):
        assert top_movers([], since=BASE) == []


def test_local_midnight_is_naive_utc():
    now = datetime(2026, 10, 19, 15, 30, tzinfo=timezone(timedelta(hours=2)))
    assert local_midnight(now) == datetime(2026, 10, 18, 22, 0)


def test_local_midnight_accepts_naive_times():
    assert local_midnight(datetime(2026, 10, 19, 8, 15)) == datetime(2026, 10, 19)
