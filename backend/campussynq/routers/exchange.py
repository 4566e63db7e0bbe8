from __future__ import annotations
import math
from typing import Literal, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..activity import ActivityStream, get_stream
from ..db import get_db
from ..errors import ValidationFailure
from ..models import ExchangeSession
from ..progression import ProgressionLedger, get_ledger
from .auth import User, get_current_user

router = APIRouter(prefix="/exchange", tags=["exchange"])


class SessionRequest(BaseModel):
    session_type: Literal["teach", "learn", "collaborate"] = "learn"
    skill_name: str
    duration_seconds: int = Field(..., ge=0)
    notes: Optional[str] = None


def session_rewards(session_type: str, duration_minutes: int) -> tuple[int, int]:
    """XP and trust for a finished session: teaching pays double XP plus trust."""
    multiplier = 2 if session_type == "teach" else 1.5
    xp = math.floor(duration_minutes * multiplier)
    trust = duration_minutes // 10 if session_type == "teach" else 0
    return xp, trust


def _session_dict(row: ExchangeSession) -> dict:
    return {
        "id": row.id,
        "session_type": row.session_type,
        "skill_name": row.skill_name,
        "duration_minutes": row.duration_minutes,
        "notes": row.notes,
        "xp_earned": row.xp_earned,
        "trust_earned": row.trust_earned,
        "created_at": row.created_at.isoformat(),
    }


@router.post("/sessions", status_code=201)
async def save_session(
    req: SessionRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    ledger: ProgressionLedger = Depends(get_ledger),
    stream: ActivityStream = Depends(get_stream),
):
    skill = (req.skill_name or "").strip()
    if not skill:
        raise ValidationFailure("Please enter a skill name", details=[{"field": "skill_name", "message": "is required"}])
    # half-up, so 150s counts as 3 minutes
    minutes = math.floor(req.duration_seconds / 60 + 0.5)
    xp, trust = session_rewards(req.session_type, minutes)
    row = ExchangeSession(
        participant_id=user.id,
        session_type=req.session_type,
        skill_name=skill,
        duration_minutes=minutes,
        notes=(req.notes or "").strip() or None,
        xp_earned=xp,
        trust_earned=trust,
    )
    db.add(row)
    db.commit()
    db.refresh(row)
    session = _session_dict(row)

    award = await ledger.award_xp(db, user, xp, f"Completed {minutes}min {req.session_type} session")
    stream.log_activity(db, user, "skill_swap", f"Completed a {minutes}min {req.session_type} session on {skill}", xp)
    return {"session": session, "xp": award.to_dict() if award else None}


@router.get("/sessions")
async def list_sessions(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    rows = (
        db.query(ExchangeSession)
        .filter(ExchangeSession.participant_id == user.id)
        .order_by(ExchangeSession.created_at.desc(), ExchangeSession.id.desc())
        .all()
    )
    return [_session_dict(r) for r in rows]
