from __future__ import annotations
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy import update
from sqlalchemy.orm import Session

from ..db import get_db
from ..errors import Unauthenticated, ValidationFailure
from ..models import AuthUser, GymBuddyRequest, Profile, utcnow
from ..settings import settings
from .auth import User, optional_oauth2_scheme, user_from_token

router = APIRouter(prefix="/functions/v1", tags=["gym-buddy"])

logger = logging.getLogger(__name__)

SEARCHING = "searching"
MATCHED = "matched"

# Claims lost to a concurrent matcher before giving up and queueing
MATCH_ATTEMPTS = 3


class MatchRequest(BaseModel):
    location: Optional[str] = None
    preferences: Optional[Dict[str, Any]] = None


def _caller(db: Session, token: Optional[str]) -> User:
    if not token:
        raise Unauthenticated("No authorization header", redirect=settings.sign_in_path)
    user = user_from_token(db, token)
    if user is None:
        raise Unauthenticated("Unauthorized", redirect=settings.sign_in_path)
    return user


def _match_dict(db: Session, user_id: str, location: str) -> Dict[str, Any]:
    profile = db.get(Profile, user_id)
    account = db.get(AuthUser, user_id) if profile is None else None
    source = profile or account
    return {
        "id": user_id,
        "username": getattr(source, "username", None),
        "full_name": getattr(source, "full_name", None),
        "location": location,
    }


def _claim(db: Session, user: User, location: str) -> Optional[GymBuddyRequest]:
    """Pair the caller with the oldest same-location request still searching."""
    for _ in range(MATCH_ATTEMPTS):
        candidate = (
            db.query(GymBuddyRequest)
            .filter(
                GymBuddyRequest.location == location,
                GymBuddyRequest.status == SEARCHING,
                GymBuddyRequest.user_id != user.id,
            )
            .order_by(GymBuddyRequest.created_at.asc(), GymBuddyRequest.id)
            .first()
        )
        if candidate is None:
            return None
        res = db.execute(
            update(GymBuddyRequest)
            .where(GymBuddyRequest.id == candidate.id, GymBuddyRequest.status == SEARCHING)
            .values(status=MATCHED, matched_with=user.id, matched_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if res.rowcount == 1:
            return candidate
        db.rollback()
        logger.info("Gym buddy request %s was claimed concurrently", candidate.id)
    return None


@router.post("/gym-buddy-matching")
async def find_gym_buddy(
    req: MatchRequest,
    token: Optional[str] = Depends(optional_oauth2_scheme),
    db: Session = Depends(get_db),
):
    user = _caller(db, token)
    location = (req.location or "").strip()
    if not location:
        raise ValidationFailure("Location is required", details=[{"field": "location", "message": "is required"}])

    partner = _claim(db, user, location)
    if partner is None:
        row = GymBuddyRequest(user_id=user.id, location=location, preferences=req.preferences or {}, status=SEARCHING)
        db.add(row)
        db.commit()
        return {"status": SEARCHING, "requestId": row.id}

    partner_id = partner.user_id
    row = GymBuddyRequest(
        user_id=user.id,
        location=location,
        preferences=req.preferences or {},
        status=MATCHED,
        matched_with=partner_id,
        matched_at=utcnow(),
    )
    db.add(row)
    db.commit()
    logger.info("Matched gym buddies %s and %s at %s", user.id, partner_id, location)
    return {"status": MATCHED, "requestId": row.id, "match": _match_dict(db, partner_id, location)}


@router.get("/gym-buddy-matching")
async def gym_buddy_status(
    requestId: Optional[str] = None,
    token: Optional[str] = Depends(optional_oauth2_scheme),
    db: Session = Depends(get_db),
):
    user = _caller(db, token)
    if not requestId:
        raise ValidationFailure("Request ID is required", details=[{"field": "requestId", "message": "is required"}])
    row = db.get(GymBuddyRequest, requestId)
    if row is None or row.user_id != user.id:
        raise HTTPException(status_code=404, detail="request not found")
    if row.status == MATCHED and row.matched_with:
        return {"status": MATCHED, "match": _match_dict(db, row.matched_with, row.location)}
    return {"status": SEARCHING}
