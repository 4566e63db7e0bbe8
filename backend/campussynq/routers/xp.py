from __future__ import annotations
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..db import get_db
from ..errors import NotConfigured, SynqError, TransientWriteFailure, Unauthenticated, ValidationFailure
from ..leveling import XP_ACTIONS
from ..progression import PATH_CREDIT, ProgressionLedger, get_ledger
from ..settings import settings
from .auth import User, get_optional_user, optional_oauth2_scheme, user_from_token

router = APIRouter(tags=["xp"])

logger = logging.getLogger(__name__)


class AwardRequest(BaseModel):
	amount: int = Field(..., ge=0)
	reason: Optional[str] = None


@router.get("/xp/profile")
async def get_profile(
	user: Optional[User] = Depends(get_optional_user),
	db: Session = Depends(get_db),
	ledger: ProgressionLedger = Depends(get_ledger),
):
	state = ledger.load_profile(db, user)
	if state is None:
		raise Unauthenticated(redirect=ledger.sign_in_path)
	return state.to_dict(ledger.xp_per_level)


@router.post("/xp/award")
async def award(
	req: AwardRequest,
	user: Optional[User] = Depends(get_optional_user),
	db: Session = Depends(get_db),
	ledger: ProgressionLedger = Depends(get_ledger),
):
	result = await ledger.award_xp(db, user, req.amount, req.reason)
	if result is None:
		return {"awarded": False}
	return result.to_dict()


@router.get("/xp/actions")
def xp_actions() -> Dict[str, int]:
	return XP_ACTIONS


def _parse_amount(body: Any) -> int:
	raw = body.get("amount") if isinstance(body, dict) else None
	if isinstance(raw, bool) or not isinstance(raw, (int, float)) or raw <= 0 or int(raw) != raw:
		raise ValidationFailure("Invalid amount", details=[{"field": "amount", "message": "must be a positive integer"}])
	return int(raw)


@router.post("/functions/v1/credit-xp")
async def credit_xp(
	request: Request,
	token: Optional[str] = Depends(optional_oauth2_scheme),
	db: Session = Depends(get_db),
	ledger: ProgressionLedger = Depends(get_ledger),
):
	"""Privileged increment-and-relevel for the bearer's own profile."""
	if not settings.service_role_key:
		raise NotConfigured("Server not configured")
	if not token:
		raise Unauthenticated("Missing Authorization", redirect=ledger.sign_in_path)
	user = user_from_token(db, token)
	if user is None:
		raise Unauthenticated("Invalid session", redirect=ledger.sign_in_path)
	try:
		body = await request.json()
	except ValueError:
		body = {}
	amount = _parse_amount(body)
	try:
		ledger.ensure_profile(db, user)
		outcome = ledger.credit_xp(db, user.id, amount)
	except (SQLAlchemyError, TransientWriteFailure) as err:
		db.rollback()
		logger.error("credit_xp failed for %s: %s", user.id, err)
		raise SynqError("RPC failed")
	ledger.settle(user.id, amount, None, outcome, PATH_CREDIT)
	return {"ok": True}
