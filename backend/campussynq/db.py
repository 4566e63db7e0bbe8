from __future__ import annotations
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, declarative_base
from .settings import settings


DATABASE_URL = settings.database_url or "sqlite:///./campussynq.db"


def make_engine(url: str, **kwargs) -> Engine:
	# SQLite connections are shared with the websocket threads
	if url.startswith("sqlite"):
		kwargs.setdefault("connect_args", {"check_same_thread": False})
	return create_engine(url, future=True, **kwargs)


engine = make_engine(DATABASE_URL)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine, future=True)
Base = declarative_base()


def get_db():
	db = SessionLocal()
	try:
		yield db
	finally:
		db.close()


def get_session_factory():
	"""Session factory for consumers that outlive a request, such as websocket feeds."""
	return SessionLocal
