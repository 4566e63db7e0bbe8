"""Progression ledger: XP and level per user.

Awards go through the privileged credit path (a single-transaction
increment-and-relevel) when the server holds the service role key, and
otherwise through a direct compare-and-swap update retried a few times. There
is no dedup key: two identical calls credit twice.

Write failures are logged and swallowed; the caller gets ``None`` back and the
in-memory view keeps its old values.
"""
from __future__ import annotations
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, AsyncIterator, Dict, List, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from .errors import TransientWriteFailure, Unauthenticated, ValidationFailure
from .leveling import next_level, progress_to_next_level, xp_to_next_level
from .models import Profile
from .realtime import INSERT, UPDATE, ChangeEvent, ChangeHub, Subscription, get_hub
from .settings import settings

if TYPE_CHECKING:
	from .routers.auth import User

logger = logging.getLogger(__name__)

PROFILES_TABLE = "profiles"
NOTIFICATIONS_TABLE = "notifications"

PATH_CREDIT = "credit"
PATH_DIRECT = "direct"


@dataclass
class ProfileState:
	user_id: str
	xp: int = 0
	level: int = 1

	def to_dict(self, step: Optional[int] = None) -> Dict[str, Any]:
		return {
			"user_id": self.user_id,
			"xp": self.xp,
			"level": self.level,
			"xp_to_next_level": xp_to_next_level(self.xp, self.level, step),
			"progress": progress_to_next_level(self.xp, self.level, step),
		}


@dataclass(frozen=True)
class Notification:
	user_id: str
	kind: str
	title: str
	description: str = ""

	def to_dict(self) -> Dict[str, Any]:
		return {"user_id": self.user_id, "kind": self.kind, "title": self.title, "description": self.description}


@dataclass
class AwardResult:
	user_id: str
	amount: int
	reason: Optional[str]
	previous_xp: int
	previous_level: int
	xp: int
	level: int
	path: str
	notifications: List[Notification] = field(default_factory=list)

	@property
	def leveled_up(self) -> bool:
		return self.level > self.previous_level

	def to_dict(self) -> Dict[str, Any]:
		return {
			"awarded": True,
			"amount": self.amount,
			"reason": self.reason,
			"previous_xp": self.previous_xp,
			"previous_level": self.previous_level,
			"xp": self.xp,
			"level": self.level,
			"leveled_up": self.leveled_up,
			"path": self.path,
			"notifications": [n.to_dict() for n in self.notifications],
		}


class ProgressionLedger:
	def __init__(
		self,
		hub: ChangeHub,
		*,
		xp_per_level: Optional[int] = None,
		privileged: Optional[bool] = None,
		write_retries: Optional[int] = None,
		sign_in_path: Optional[str] = None,
		cache_size: Optional[int] = None,
	) -> None:
		self.hub = hub
		self.xp_per_level = xp_per_level or settings.xp_per_level
		self.privileged = bool(settings.service_role_key) if privileged is None else privileged
		self.write_retries = max(1, write_retries or settings.xp_write_retries)
		self.sign_in_path = sign_in_path or settings.sign_in_path
		self.cache_size = max(1, cache_size or settings.profile_cache_size)
		# Per-process view of recently seen profiles, least recently used evicted first.
		# The profiles table stays authoritative.
		self._states: "OrderedDict[str, ProfileState]" = OrderedDict()

	def state_for(self, user_id: str) -> Optional[ProfileState]:
		state = self._states.get(user_id)
		if state is not None:
			self._states.move_to_end(user_id)
		return state

	def _remember(self, state: ProfileState) -> ProfileState:
		self._states[state.user_id] = state
		self._states.move_to_end(state.user_id)
		while len(self._states) > self.cache_size:
			self._states.popitem(last=False)
		return state

	def ensure_profile(self, db: Session, user: "User") -> Profile:
		row = db.get(Profile, user.id)
		if row is not None:
			return row
		row = Profile(
			id=user.id,
			username=getattr(user, "username", None),
			full_name=getattr(user, "full_name", None),
			xp=0,
			level=1,
		)
		db.add(row)
		try:
			db.commit()
		except IntegrityError:
			# created concurrently by another request
			db.rollback()
			row = db.get(Profile, user.id)
		return row

	def load_profile(self, db: Session, user: Optional["User"]) -> Optional[ProfileState]:
		if user is None:
			return None
		try:
			row = self.ensure_profile(db, user)
			state = ProfileState(user.id, row.xp or 0, row.level or 1)
		except SQLAlchemyError:
			logger.exception("Failed to load profile for %s", user.id)
			db.rollback()
			state = ProfileState(user.id)
		return self._remember(state)

	def credit_xp(self, db: Session, user_id: str, amount: int) -> Tuple[int, int, int, int]:
		"""Trusted increment-and-relevel in one transaction.

		Returns ``(previous_xp, previous_level, xp, level)``.
		"""
		res = db.execute(
			update(Profile)
			.where(Profile.id == user_id)
			.values(xp=Profile.xp + amount)
			.execution_options(synchronize_session=False)
		)
		if res.rowcount != 1:
			db.rollback()
			raise TransientWriteFailure(f"No profile row for {user_id}")
		xp, level = db.execute(select(Profile.xp, Profile.level).where(Profile.id == user_id)).one()
		new_level = next_level(xp, level, self.xp_per_level)
		if new_level != level:
			db.execute(
				update(Profile)
				.where(Profile.id == user_id)
				.values(level=new_level)
				.execution_options(synchronize_session=False)
			)
		db.commit()
		return xp - amount, level, xp, new_level

	def _read_latest(self, db: Session, user_id: str) -> Optional[Tuple[int, int]]:
		row = db.execute(select(Profile.xp, Profile.level).where(Profile.id == user_id)).one_or_none()
		if row is None:
			return None
		return row[0] or 0, row[1] or 1

	def _write_direct(self, db: Session, user_id: str, amount: int) -> Tuple[int, int, int, int]:
		for attempt in range(1, self.write_retries + 1):
			latest = self._read_latest(db, user_id)
			if latest is None:
				raise TransientWriteFailure(f"No profile row for {user_id}")
			current_xp, current_level = latest
			new_xp = current_xp + amount
			new_level = next_level(new_xp, current_level, self.xp_per_level)
			res = db.execute(
				update(Profile)
				.where(Profile.id == user_id, Profile.xp == current_xp, Profile.level == current_level)
				.values(xp=new_xp, level=new_level)
				.execution_options(synchronize_session=False)
			)
			if res.rowcount == 1:
				db.commit()
				return current_xp, current_level, new_xp, new_level
			db.rollback()
			logger.info("XP write for %s lost a race (attempt %d/%d)", user_id, attempt, self.write_retries)
		raise TransientWriteFailure(f"XP write for {user_id} did not settle after {self.write_retries} attempts")

	async def award_xp(
		self,
		db: Session,
		user: Optional["User"],
		amount: int,
		reason: Optional[str] = None,
	) -> Optional[AwardResult]:
		if user is None:
			raise Unauthenticated("You need to be logged in to earn XP", redirect=self.sign_in_path)
		if amount < 0:
			raise ValidationFailure(
				"Invalid amount",
				details=[{"field": "amount", "message": "must be a non-negative integer"}],
			)
		try:
			self.ensure_profile(db, user)
			outcome = None
			path = PATH_CREDIT
			if self.privileged:
				try:
					outcome = self.credit_xp(db, user.id, amount)
				except (SQLAlchemyError, TransientWriteFailure) as err:
					db.rollback()
					logger.warning("Privileged XP credit failed for %s, writing directly: %s", user.id, err)
			if outcome is None:
				path = PATH_DIRECT
				outcome = self._write_direct(db, user.id, amount)
		except (SQLAlchemyError, TransientWriteFailure):
			db.rollback()
			logger.exception("Failed to update XP for %s", user.id)
			return None

		return self.settle(user.id, amount, reason, outcome, path)

	def settle(
		self,
		user_id: str,
		amount: int,
		reason: Optional[str],
		outcome: Tuple[int, int, int, int],
		path: str,
	) -> AwardResult:
		"""Record a committed award in memory and notify subscribers."""
		previous_xp, previous_level, xp, level = outcome
		self._remember(ProfileState(user_id, xp, level))
		self.hub.publish(ChangeEvent(
			PROFILES_TABLE,
			UPDATE,
			new={"id": user_id, "xp": xp, "level": level},
			old={"id": user_id, "xp": previous_xp, "level": previous_level},
		))

		notifications = [Notification(user_id, "xp_gained", f"+{amount} XP", reason or "")]
		if level > previous_level:
			notifications.append(Notification(user_id, "level_up", "Level Up!", f"You've reached level {level}"))
		for note in notifications:
			self.hub.publish(ChangeEvent(NOTIFICATIONS_TABLE, INSERT, new=note.to_dict()))

		logger.info("Awarded %d XP to %s via %s (level %d -> %d)", amount, user_id, path, previous_level, level)
		return AwardResult(
			user_id=user_id,
			amount=amount,
			reason=reason,
			previous_xp=previous_xp,
			previous_level=previous_level,
			xp=xp,
			level=level,
			path=path,
			notifications=notifications,
		)

	def watch(self, user_id: str) -> Subscription:
		return self.hub.subscribe(PROFILES_TABLE, UPDATE, {"id": user_id})

	def apply_remote_change(self, change: ChangeEvent) -> Optional[ProfileState]:
		# Taken as-is; the level is not re-derived from xp here
		new = change.new or {}
		user_id = new.get("id")
		if not user_id:
			return None
		return self._remember(ProfileState(user_id, new.get("xp") or 0, new.get("level") or 1))

	async def follow(self, user_id: str) -> AsyncIterator[ProfileState]:
		sub = self.watch(user_id)
		try:
			async for change in sub:
				state = self.apply_remote_change(change)
				if state is not None:
					yield state
		finally:
			sub.cancel()


_ledger: Optional[ProgressionLedger] = None


def get_ledger() -> ProgressionLedger:
	global _ledger
	if _ledger is None:
		_ledger = ProgressionLedger(get_hub())
	return _ledger
