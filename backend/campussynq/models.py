from __future__ import annotations
import uuid
from datetime import datetime, timezone
from sqlalchemy import JSON, Boolean, Column, String, DateTime, Integer, Text, UniqueConstraint, Index
from .db import Base


def utcnow() -> datetime:
	# Naive UTC, matching what SQLite round-trips
	return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
	return uuid.uuid4().hex


class AuthUser(Base):
	__tablename__ = "auth_users"
	# Stable opaque identifier; profiles.id points at it
	id = Column(String(32), primary_key=True, default=new_id)
	username = Column(String(128), unique=True, index=True, nullable=False)
	password_hash = Column(String(256), nullable=False)
	email = Column(String(256), nullable=True)
	full_name = Column(String(256), nullable=True)
	created_at = Column(DateTime, default=utcnow, nullable=False)
	updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class AuthSession(Base):
	__tablename__ = "auth_sessions"
	session_id = Column(String(64), primary_key=True)
	user_id = Column(String(32), index=True, nullable=False)
	created_at = Column(DateTime, default=utcnow, nullable=False)
	last_activity_at = Column(DateTime, default=utcnow, nullable=False)


class Profile(Base):
	__tablename__ = "profiles"
	id = Column(String(32), primary_key=True)
	username = Column(String(128), nullable=True)
	full_name = Column(String(256), nullable=True)
	# level is derived from xp; see leveling.level_for_xp
	xp = Column(Integer, default=0, nullable=False)
	level = Column(Integer, default=1, nullable=False)
	created_at = Column(DateTime, default=utcnow, nullable=False)
	updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class UserActivity(Base):
	__tablename__ = "user_activities"
	id = Column(Integer, primary_key=True, autoincrement=True)
	user_id = Column(String(32), nullable=False, index=True)
	activity_type = Column(String(32), nullable=False)
	activity_description = Column(Text, nullable=False)
	# Informational only; profiles.xp is the source of truth
	xp_earned = Column(Integer, default=0, nullable=False)
	created_at = Column(DateTime, default=utcnow, nullable=False)

	__table_args__ = (
		Index("idx_user_activities_created_at", "created_at"),
	)


class Feature(Base):
	__tablename__ = "features"
	id = Column(String(32), primary_key=True, default=new_id)
	feature_name = Column(String(128), nullable=False)
	feature_type = Column(String(64), nullable=False)
	description = Column(Text, nullable=False)
	icon_name = Column(String(64), nullable=False, default="sparkles")
	gradient_start = Column(String(32), nullable=False, default="#6366f1")
	gradient_end = Column(String(32), nullable=False, default="#a855f7")
	is_active = Column(Boolean, default=True, nullable=False)
	created_at = Column(DateTime, default=utcnow, nullable=False)


class UserFeature(Base):
	__tablename__ = "user_features"
	id = Column(Integer, primary_key=True, autoincrement=True)
	user_id = Column(String(32), nullable=False, index=True)
	feature_id = Column(String(32), nullable=False)
	is_favorite = Column(Boolean, default=False, nullable=False)
	usage_count = Column(Integer, default=0, nullable=False)
	last_accessed = Column(DateTime, nullable=True)

	__table_args__ = (
		UniqueConstraint("user_id", "feature_id", name="uq_user_features_user_feature"),
	)


class FeatureUsage(Base):
	__tablename__ = "feature_usage"
	id = Column(Integer, primary_key=True, autoincrement=True)
	user_id = Column(String(32), nullable=False, index=True)
	feature_name = Column(String(64), nullable=False)
	usage_count = Column(Integer, default=1, nullable=False)
	last_used_at = Column(DateTime, default=utcnow, nullable=False)

	__table_args__ = (
		UniqueConstraint("user_id", "feature_name", name="uq_feature_usage_user_feature"),
	)


class ExchangeSession(Base):
	__tablename__ = "exchange_sessions"
	id = Column(Integer, primary_key=True, autoincrement=True)
	participant_id = Column(String(32), nullable=False, index=True)
	partner_id = Column(String(32), nullable=True)
	session_type = Column(String(16), nullable=False)
	skill_name = Column(String(256), nullable=False)
	duration_minutes = Column(Integer, nullable=False)
	notes = Column(Text, nullable=True)
	xp_earned = Column(Integer, default=0, nullable=False)
	trust_earned = Column(Integer, default=0, nullable=False)
	created_at = Column(DateTime, default=utcnow, nullable=False)


class StudyGroup(Base):
	__tablename__ = "study_groups"
	id = Column(String(32), primary_key=True, default=new_id)
	name = Column(String(200), nullable=False)
	subject = Column(String(200), nullable=True)
	schedule = Column(String(200), nullable=True)
	creator_id = Column(String(32), nullable=True, index=True)
	created_at = Column(DateTime, default=utcnow, nullable=False)


class StudyGroupMember(Base):
	__tablename__ = "study_group_members"
	id = Column(Integer, primary_key=True, autoincrement=True)
	group_id = Column(String(32), nullable=False, index=True)
	user_id = Column(String(32), nullable=False, index=True)
	joined_at = Column(DateTime, default=utcnow, nullable=False)

	__table_args__ = (
		UniqueConstraint("group_id", "user_id", name="uq_study_group_members_group_user"),
	)


class GroupMessage(Base):
	__tablename__ = "group_messages"
	id = Column(Integer, primary_key=True, autoincrement=True)
	group_id = Column(String(32), nullable=False)
	user_id = Column(String(32), nullable=False)
	content = Column(Text, nullable=False)
	created_at = Column(DateTime, default=utcnow, nullable=False)

	__table_args__ = (
		Index("idx_group_messages_group_created", "group_id", "created_at"),
	)


class GymBuddyRequest(Base):
	__tablename__ = "gym_buddy_requests"
	id = Column(String(32), primary_key=True, default=new_id)
	user_id = Column(String(32), nullable=False, index=True)
	location = Column(String(200), nullable=False)
	preferences = Column(JSON, nullable=False, default=dict)
	# searching -> matched
	status = Column(String(16), nullable=False, default="searching")
	matched_with = Column(String(32), nullable=True)
	matched_at = Column(DateTime, nullable=True)
	created_at = Column(DateTime, default=utcnow, nullable=False)

	__table_args__ = (
		Index("idx_gym_buddy_requests_location_status", "location", "status"),
	)
