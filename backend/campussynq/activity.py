"""Activity stream: an append-only log of user actions and the live feed built on it."""
from __future__ import annotations
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, AsyncIterator, Callable, Dict, Iterable, List, Mapping, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .errors import ValidationFailure
from .models import Profile, UserActivity
from .realtime import INSERT, ChangeEvent, ChangeHub, Subscription, get_hub
from .settings import settings

if TYPE_CHECKING:
	from .routers.auth import User

logger = logging.getLogger(__name__)

ACTIVITIES_TABLE = "user_activities"
ANONYMOUS = "Anonymous"

# Known tags; any other string is stored as given
ACTIVITY_TYPES = ("skill_swap", "challenge", "ai_usage", "wellness", "forum", "other")


@dataclass
class ActivityView:
	id: int
	user_id: str
	activity_type: str
	activity_description: str
	xp_earned: int
	created_at: datetime
	profile: Optional[Dict[str, Optional[str]]] = None

	@property
	def display_name(self) -> str:
		return (self.profile or {}).get("username") or ANONYMOUS

	@classmethod
	def from_mapping(cls, data: Mapping[str, Any], profile: Optional[Dict[str, Optional[str]]]) -> "ActivityView":
		return cls(
			id=data["id"],
			user_id=data["user_id"],
			activity_type=data["activity_type"],
			activity_description=data["activity_description"],
			xp_earned=data.get("xp_earned") or 0,
			created_at=data["created_at"],
			profile=profile,
		)

	def to_dict(self) -> Dict[str, Any]:
		return {
			"id": self.id,
			"user_id": self.user_id,
			"activity_type": self.activity_type,
			"activity_description": self.activity_description,
			"xp_earned": self.xp_earned,
			"created_at": self.created_at.isoformat(),
			"profile": self.profile,
			"display_name": self.display_name,
		}


@dataclass(frozen=True)
class TopMover:
	user_id: str
	username: str
	xp: int

	def to_dict(self) -> Dict[str, Any]:
		return {"user_id": self.user_id, "username": self.username, "xp": self.xp}


def _row_dict(row: UserActivity) -> Dict[str, Any]:
	return {
		"id": row.id,
		"user_id": row.user_id,
		"activity_type": row.activity_type,
		"activity_description": row.activity_description,
		"xp_earned": row.xp_earned or 0,
		"created_at": row.created_at,
	}


def local_midnight(now: Optional[datetime] = None) -> datetime:
	"""Start of the current local day as naive UTC, comparable with created_at."""
	now = now or datetime.now().astimezone()
	midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
	if midnight.tzinfo is None:
		return midnight
	return midnight.astimezone(timezone.utc).replace(tzinfo=None)


def top_movers(entries: Iterable[ActivityView], since: Optional[datetime] = None, limit: Optional[int] = None) -> List[TopMover]:
	"""Sum same-day XP per author and rank it.

	Buckets are keyed by user id so that distinct unnamed authors are not
	merged; each bucket is labelled with the author's display name. Ties keep
	the order in which authors first appear in ``entries``.
	"""
	since = since or local_midnight()
	limit = settings.top_movers_limit if limit is None else limit
	totals: Dict[str, Dict[str, Any]] = {}
	for entry in entries:
		if entry.created_at < since:
			continue
		bucket = totals.get(entry.user_id)
		if bucket is None:
			bucket = totals[entry.user_id] = {"username": entry.display_name, "xp": 0}
		bucket["xp"] += entry.xp_earned
	ranked = sorted(totals.items(), key=lambda item: item[1]["xp"], reverse=True)
	return [TopMover(user_id, b["username"], b["xp"]) for user_id, b in ranked[:limit]]


class ActivityStream:
	def __init__(self, hub: ChangeHub, *, limit: Optional[int] = None) -> None:
		self.hub = hub
		self.limit = limit or settings.activity_feed_limit

	def load_recent(self, db: Session, limit: Optional[int] = None) -> List[ActivityView]:
		rows = db.execute(
			select(UserActivity)
			.order_by(UserActivity.created_at.desc(), UserActivity.id.desc())
			.limit(limit or self.limit)
		).scalars().all()
		# One batched lookup for all distinct authors
		user_ids = list(dict.fromkeys(r.user_id for r in rows))
		profiles: Dict[str, Dict[str, Optional[str]]] = {}
		if user_ids:
			found = db.execute(
				select(Profile.id, Profile.username, Profile.full_name).where(Profile.id.in_(user_ids))
			).all()
			profiles = {p.id: {"username": p.username, "full_name": p.full_name} for p in found}
		return [ActivityView.from_mapping(_row_dict(r), profiles.get(r.user_id)) for r in rows]

	def lookup_profile(self, db: Session, user_id: str) -> Optional[Dict[str, Optional[str]]]:
		found = db.execute(
			select(Profile.username, Profile.full_name).where(Profile.id == user_id)
		).one_or_none()
		if found is None:
			return None
		return {"username": found.username, "full_name": found.full_name}

	def enrich_one(self, db: Session, data: Mapping[str, Any]) -> ActivityView:
		return ActivityView.from_mapping(data, self.lookup_profile(db, data["user_id"]))

	def log_activity(
		self,
		db: Session,
		user: Optional["User"],
		activity_type: str,
		description: str,
		xp_earned: int = 0,
	) -> Optional[ActivityView]:
		if user is None:
			return None
		details = []
		if not (activity_type or "").strip():
			details.append({"field": "activity_type", "message": "is required"})
		if not (description or "").strip():
			details.append({"field": "activity_description", "message": "is required"})
		if xp_earned < 0:
			details.append({"field": "xp_earned", "message": "must be a non-negative integer"})
		if details:
			raise ValidationFailure("Invalid activity", details=details)

		row = UserActivity(
			user_id=user.id,
			activity_type=activity_type.strip(),
			activity_description=description.strip(),
			xp_earned=xp_earned,
		)
		try:
			db.add(row)
			db.commit()
			db.refresh(row)
		except SQLAlchemyError:
			db.rollback()
			logger.exception("Error logging activity for %s", user.id)
			return None
		data = _row_dict(row)
		self.hub.publish(ChangeEvent(ACTIVITIES_TABLE, INSERT, new=data))
		return ActivityView.from_mapping(data, self.lookup_profile(db, user.id))


class ActivityFeed:
	"""Bounded, newest-first view of the stream for one connected client.

	Pushed entries are prepended in arrival order and the view is cut back to
	``limit`` entries; nothing is re-sorted by timestamp.
	"""

	def __init__(
		self,
		stream: ActivityStream,
		session_factory: Callable[[], Session],
		*,
		limit: Optional[int] = None,
		top_limit: Optional[int] = None,
	) -> None:
		self.stream = stream
		self._session_factory = session_factory
		self.limit = limit or stream.limit
		self.top_limit = settings.top_movers_limit if top_limit is None else top_limit
		self.entries: List[ActivityView] = []
		self._subscription: Optional[Subscription] = None

	def load(self) -> List[ActivityView]:
		db = self._session_factory()
		try:
			self.entries = self.stream.load_recent(db, self.limit)
		except SQLAlchemyError:
			logger.exception("Error loading activities")
			self.entries = []
		finally:
			db.close()
		return self.entries

	def attach(self) -> Subscription:
		if self._subscription is None or self._subscription.cancelled:
			self._subscription = self.stream.hub.subscribe(ACTIVITIES_TABLE, INSERT)
		return self._subscription

	def _enrich(self, data: Mapping[str, Any]) -> ActivityView:
		db = self._session_factory()
		try:
			return self.stream.enrich_one(db, data)
		except SQLAlchemyError:
			logger.exception("Error resolving profile for activity %s", data.get("id"))
			return ActivityView.from_mapping(data, None)
		finally:
			db.close()

	def push(self, view: ActivityView) -> None:
		# already present when it was committed between attach() and load()
		if any(e.id == view.id for e in self.entries):
			return
		self.entries = [view, *self.entries][: self.limit]

	async def pump_once(self) -> Optional[ActivityView]:
		if self._subscription is None:
			raise RuntimeError("feed is not attached")
		change = await self._subscription.next()
		if change is None:
			return None
		view = self._enrich(change.new)
		self.push(view)
		return view

	async def follow(self) -> AsyncIterator[ActivityView]:
		self.attach()
		while True:
			view = await self.pump_once()
			if view is None:
				return
			yield view

	def close(self) -> None:
		if self._subscription is not None:
			self._subscription.cancel()

	def top_movers(self, since: Optional[datetime] = None) -> List[TopMover]:
		return top_movers(self.entries, since, self.top_limit)


_stream: Optional[ActivityStream] = None


def get_stream() -> ActivityStream:
	global _stream
	if _stream is None:
		_stream = ActivityStream(get_hub())
	return _stream
