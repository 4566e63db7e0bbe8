from __future__ import annotations
import logging
from typing import Dict, Iterable, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..db import get_db
from ..errors import ValidationFailure
from ..models import GroupMessage, StudyGroup, StudyGroupMember
from ..realtime import INSERT, ChangeEvent, ChangeHub, get_hub
from ..settings import settings
from .auth import User, get_current_user

router = APIRouter(prefix="/groups", tags=["groups"])

logger = logging.getLogger(__name__)

GROUP_MESSAGES_TABLE = "group_messages"


class GroupRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    subject: Optional[str] = Field(default=None, max_length=200)
    schedule: Optional[str] = Field(default=None, max_length=200)


class MessageRequest(BaseModel):
    content: str


def _group_dict(group: StudyGroup, members_count: int, is_member: bool) -> dict:
    return {
        "id": group.id,
        "name": group.name,
        "subject": group.subject,
        "schedule": group.schedule,
        "creator_id": group.creator_id,
        "members_count": members_count,
        "is_member": is_member,
        "created_at": group.created_at.isoformat(),
    }


def message_dict(row: GroupMessage) -> dict:
    return {
        "id": row.id,
        "group_id": row.group_id,
        "user_id": row.user_id,
        "content": row.content,
        "created_at": row.created_at.isoformat(),
    }


def _get_group(db: Session, group_id: str) -> StudyGroup:
    group = db.get(StudyGroup, group_id)
    if group is None:
        raise HTTPException(status_code=404, detail="group not found")
    return group


def is_member(db: Session, group_id: str, user_id: str) -> bool:
    return db.execute(
        select(StudyGroupMember.id).where(StudyGroupMember.group_id == group_id, StudyGroupMember.user_id == user_id)
    ).first() is not None


def _member_counts(db: Session, group_ids: Iterable[str]) -> Dict[str, int]:
    ids = list(group_ids)
    if not ids:
        return {}
    rows = db.execute(
        select(StudyGroupMember.group_id, func.count(StudyGroupMember.id))
        .where(StudyGroupMember.group_id.in_(ids))
        .group_by(StudyGroupMember.group_id)
    ).all()
    return {group_id: count for group_id, count in rows}


def _require_member(db: Session, group_id: str, user: User) -> None:
    _get_group(db, group_id)
    if not is_member(db, group_id, user.id):
        raise HTTPException(status_code=403, detail="join the group first")


@router.get("")
async def list_groups(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    groups = db.query(StudyGroup).order_by(StudyGroup.created_at.desc(), StudyGroup.id).all()
    counts = _member_counts(db, (g.id for g in groups))
    mine = {
        r.group_id for r in db.query(StudyGroupMember.group_id).filter(StudyGroupMember.user_id == user.id).all()
    }
    return [_group_dict(g, counts.get(g.id, 0), g.id in mine) for g in groups]


@router.post("", status_code=201)
async def create_group(req: GroupRequest, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    name = req.name.strip()
    if not name:
        raise ValidationFailure("Invalid group", details=[{"field": "name", "message": "is required"}])
    group = StudyGroup(
        name=name,
        subject=(req.subject or "").strip() or None,
        schedule=(req.schedule or "").strip() or None,
        creator_id=user.id,
    )
    db.add(group)
    db.flush()
    # the creator is the first member
    db.add(StudyGroupMember(group_id=group.id, user_id=user.id))
    db.commit()
    logger.info("Study group %s created by %s", group.id, user.id)
    return _group_dict(group, 1, True)


@router.get("/{group_id}")
async def get_group(group_id: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    group = _get_group(db, group_id)
    return _group_dict(group, _member_counts(db, [group_id]).get(group_id, 0), is_member(db, group_id, user.id))


@router.post("/{group_id}/join")
async def join_group(group_id: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    group = _get_group(db, group_id)
    if is_member(db, group_id, user.id):
        raise HTTPException(status_code=409, detail="already a member")
    db.add(StudyGroupMember(group_id=group_id, user_id=user.id))
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=409, detail="already a member")
    return _group_dict(group, _member_counts(db, [group_id]).get(group_id, 0), True)


@router.post("/{group_id}/leave")
async def leave_group(group_id: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    _get_group(db, group_id)
    removed = (
        db.query(StudyGroupMember)
        .filter(StudyGroupMember.group_id == group_id, StudyGroupMember.user_id == user.id)
        .delete()
    )
    db.commit()
    if not removed:
        raise HTTPException(status_code=404, detail="not a member")
    return {"ok": True}


@router.get("/{group_id}/messages")
async def list_messages(group_id: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)) -> List[dict]:
    _require_member(db, group_id, user)
    rows = (
        db.query(GroupMessage)
        .filter(GroupMessage.group_id == group_id)
        .order_by(GroupMessage.created_at.asc(), GroupMessage.id.asc())
        .all()
    )
    return [message_dict(r) for r in rows]


@router.post("/{group_id}/messages", status_code=201)
async def post_message(
    group_id: str,
    req: MessageRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    hub: ChangeHub = Depends(get_hub),
):
    _require_member(db, group_id, user)
    content = (req.content or "").strip()
    if not content:
        raise ValidationFailure("Invalid message", details=[{"field": "content", "message": "is required"}])
    if len(content) > settings.group_message_max_length:
        raise ValidationFailure(
            "Invalid message",
            details=[{"field": "content", "message": f"must be at most {settings.group_message_max_length} characters"}],
        )
    row = GroupMessage(group_id=group_id, user_id=user.id, content=content)
    db.add(row)
    db.commit()
    db.refresh(row)
    message = message_dict(row)
    hub.publish(ChangeEvent(GROUP_MESSAGES_TABLE, INSERT, new=message))
    return message
