from __future__ import annotations
import logging
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from ..db import get_db
from ..leveling import XP_ACTIONS
from ..models import Feature, FeatureUsage, UserFeature, utcnow
from ..progression import ProgressionLedger, get_ledger
from .auth import User, get_current_user, get_optional_user

router = APIRouter(prefix="/features", tags=["features"])

logger = logging.getLogger(__name__)

# Areas nudged by the discovery popup, keyed by usage name
TRACKED_FEATURES: Dict[str, str] = {
    "marketplace": "Skill Exchange",
    "wellness": "Wellness Tools",
    "forum": "Peer Support",
    "synqai": "Synq AI",
}


class FavoriteRequest(BaseModel):
    is_favorite: bool


def _feature_dict(feature: Feature, is_favorite: bool) -> dict:
    return {
        "id": feature.id,
        "feature_name": feature.feature_name,
        "feature_type": feature.feature_type,
        "description": feature.description,
        "icon_name": feature.icon_name,
        "gradient_start": feature.gradient_start,
        "gradient_end": feature.gradient_end,
        "is_active": feature.is_active,
        "created_at": feature.created_at.isoformat(),
        "is_favorite": is_favorite,
    }


def _get_feature(db: Session, feature_id: str) -> Feature:
    feature = db.get(Feature, feature_id)
    if feature is None:
        raise HTTPException(status_code=404, detail="feature not found")
    return feature


@router.get("")
async def list_features(user: Optional[User] = Depends(get_optional_user), db: Session = Depends(get_db)):
    features = db.query(Feature).filter(Feature.is_active.is_(True)).order_by(Feature.created_at.asc()).all()
    favorites: Dict[str, bool] = {}
    if user is not None:
        rows = db.query(UserFeature).filter(UserFeature.user_id == user.id).all()
        favorites = {r.feature_id: r.is_favorite for r in rows}
    return [_feature_dict(f, favorites.get(f.id, False)) for f in features]


# Fixed paths go first so "usage" is never taken as a feature id
@router.get("/unused")
async def unused_features(user: User = Depends(get_current_user), db: Session = Depends(get_db)) -> List[str]:
    used = {r.feature_name for r in db.query(FeatureUsage).filter(FeatureUsage.user_id == user.id).all()}
    return [display for name, display in TRACKED_FEATURES.items() if name not in used]


@router.post("/usage/{feature_name}")
async def track_feature_use(feature_name: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    row = db.query(FeatureUsage).filter(FeatureUsage.user_id == user.id, FeatureUsage.feature_name == feature_name).first()
    if row is None:
        row = FeatureUsage(user_id=user.id, feature_name=feature_name, usage_count=1)
    else:
        row.usage_count = (row.usage_count or 0) + 1
        row.last_used_at = utcnow()
    db.add(row)
    db.commit()
    return {"feature_name": feature_name, "usage_count": row.usage_count}


@router.post("/{feature_id}/favorite")
async def toggle_favorite(
    feature_id: str,
    req: FavoriteRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    ledger: ProgressionLedger = Depends(get_ledger),
):
    _get_feature(db, feature_id)
    row = db.query(UserFeature).filter(UserFeature.user_id == user.id, UserFeature.feature_id == feature_id).first()
    if row is None:
        row = UserFeature(user_id=user.id, feature_id=feature_id, is_favorite=req.is_favorite, usage_count=0)
    else:
        row.is_favorite = req.is_favorite
    db.add(row)
    db.commit()
    award = None
    if req.is_favorite:
        award = await ledger.award_xp(db, user, XP_ACTIONS["FEATURE_FAVORITE"], "Marked feature as favorite")
    return {"feature_id": feature_id, "is_favorite": req.is_favorite, "xp": award.to_dict() if award else None}


@router.post("/{feature_id}/access")
async def track_access(
    feature_id: str,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    ledger: ProgressionLedger = Depends(get_ledger),
):
    _get_feature(db, feature_id)
    row = db.query(UserFeature).filter(UserFeature.user_id == user.id, UserFeature.feature_id == feature_id).first()
    if row is None:
        row = UserFeature(user_id=user.id, feature_id=feature_id, usage_count=1, last_accessed=utcnow())
    else:
        row.usage_count = (row.usage_count or 0) + 1
        row.last_accessed = utcnow()
    db.add(row)
    db.commit()
    usage_count = row.usage_count
    award = await ledger.award_xp(db, user, XP_ACTIONS["COLLEGE_VIEW"], "Explored a feature")
    return {"feature_id": feature_id, "usage_count": usage_count, "xp": award.to_dict() if award else None}
