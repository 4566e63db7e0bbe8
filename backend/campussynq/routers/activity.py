from __future__ import annotations
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..activity import ActivityStream, get_stream, top_movers
from ..db import get_db
from .auth import User, get_optional_user

router = APIRouter(prefix="/activity", tags=["activity"])


class LogActivityRequest(BaseModel):
	activity_type: str
	activity_description: str
	xp_earned: int = Field(default=0, ge=0)


@router.get("/recent")
async def recent(db: Session = Depends(get_db), stream: ActivityStream = Depends(get_stream)):
	return [view.to_dict() for view in stream.load_recent(db)]


@router.get("/top-movers")
async def today_top_movers(db: Session = Depends(get_db), stream: ActivityStream = Depends(get_stream)):
	# Same window the live feed shows
	return [m.to_dict() for m in top_movers(stream.load_recent(db))]


@router.post("")
async def log_activity(
	req: LogActivityRequest,
	user: Optional[User] = Depends(get_optional_user),
	db: Session = Depends(get_db),
	stream: ActivityStream = Depends(get_stream),
):
	view = stream.log_activity(db, user, req.activity_type, req.activity_description, req.xp_earned)
	if view is None:
		return {"logged": False}
	return {"logged": True, "activity": view.to_dict()}
