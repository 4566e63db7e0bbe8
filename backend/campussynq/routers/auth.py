from __future__ import annotations
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple

from fastapi import APIRouter, Depends, HTTPException
from fastapi.security import OAuth2PasswordBearer, OAuth2PasswordRequestForm
from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..db import get_db
from ..models import AuthSession, AuthUser, utcnow
from ..settings import settings

router = APIRouter(prefix="/auth", tags=["auth"])

logger = logging.getLogger(__name__)
logging.getLogger('passlib').setLevel(logging.ERROR)
pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/token")
# Same scheme, but a missing header resolves to None instead of a 401
optional_oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/token", auto_error=False)


class Token(BaseModel):
	access_token: str
	token_type: str = "bearer"


class User(BaseModel):
	"""The caller identity handed to every operation; ``id`` is the profile key."""
	id: str
	username: str
	full_name: Optional[str] = None


class RegisterRequest(BaseModel):
	username: str = Field(..., min_length=3, max_length=128)
	password: str = Field(..., min_length=1)
	email: str = Field(..., min_length=3, max_length=256)
	full_name: Optional[str] = Field(default=None, max_length=256)


def _to_user(row: AuthUser) -> User:
	return User(id=row.id, username=row.username, full_name=row.full_name)


def authenticate_user(db: Session, username: str, password: str) -> Optional[User]:
	row = db.query(AuthUser).filter(AuthUser.username == username).first()
	if row is None or not pwd_context.verify(password, row.password_hash):
		return None
	return _to_user(row)


def issue_token(db: Session, user: User, lifetime: Optional[timedelta] = None) -> str:
	"""Persist a new server-side session and sign a JWT pointing at it."""
	session_id = uuid.uuid4().hex
	db.add(AuthSession(session_id=session_id, user_id=user.id))
	db.commit()
	lifetime = lifetime or timedelta(minutes=max(1, settings.access_token_expire_minutes))
	claims = {"sub": user.id, "jti": session_id, "exp": datetime.now(timezone.utc) + lifetime}
	return jwt.encode(claims, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def _decode(token: Optional[str]) -> Optional[Tuple[str, str]]:
	if not token:
		return None
	try:
		claims = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
	except JWTError:
		return None
	user_id, session_id = claims.get("sub"), claims.get("jti")
	if not user_id or not session_id:
		return None
	return user_id, session_id


def user_from_token(db: Session, token: Optional[str]) -> Optional[User]:
	"""Resolve a bearer token to its user; None when missing, invalid or revoked."""
	decoded = _decode(token)
	if decoded is None:
		return None
	user_id, session_id = decoded
	try:
		session = db.get(AuthSession, session_id)
		account = db.get(AuthUser, user_id) if session is not None and session.user_id == user_id else None
		if account is None:
			return None
		session.last_activity_at = utcnow()
		db.commit()
	except SQLAlchemyError:
		# fail closed
		db.rollback()
		logger.exception("Session lookup failed")
		return None
	return _to_user(account)


def get_current_user(token: str = Depends(oauth2_scheme), db: Session = Depends(get_db)) -> User:
	user = user_from_token(db, token)
	if user is None:
		raise HTTPException(status_code=401, detail="Could not validate credentials")
	return user


def get_optional_user(token: Optional[str] = Depends(optional_oauth2_scheme), db: Session = Depends(get_db)) -> Optional[User]:
	return user_from_token(db, token)


@router.post("/register", status_code=201)
async def register(req: RegisterRequest, db: Session = Depends(get_db)):
	username = req.username.strip()
	if db.query(AuthUser.id).filter(AuthUser.username == username).first() is not None:
		raise HTTPException(status_code=409, detail="username already exists")
	row = AuthUser(
		username=username,
		password_hash=pwd_context.hash(req.password),
		email=req.email.strip(),
		full_name=(req.full_name or "").strip() or None,
	)
	db.add(row)
	db.commit()
	logger.info("Registered %s", username)
	return {"ok": True, "id": row.id}


@router.post("/token", response_model=Token)
async def login(form_data: OAuth2PasswordRequestForm = Depends(), db: Session = Depends(get_db)):
	user = authenticate_user(db, form_data.username, form_data.password)
	if user is None:
		raise HTTPException(status_code=401, detail="Incorrect username or password")
	try:
		return Token(access_token=issue_token(db, user))
	except SQLAlchemyError:
		db.rollback()
		logger.exception("Failed to open session for %s", user.username)
		raise HTTPException(status_code=500, detail="Could not open session")


@router.get("/me", response_model=User)
async def me(user: User = Depends(get_current_user)):
	return user


@router.post("/logout")
async def logout(token: str = Depends(oauth2_scheme), db: Session = Depends(get_db)):
	decoded = _decode(token)
	if decoded is None:
		raise HTTPException(status_code=401, detail="Could not validate credentials")
	# Deleting the session row revokes every copy of the token
	db.query(AuthSession).filter(AuthSession.session_id == decoded[1]).delete()
	db.commit()
	return {"ok": True}
