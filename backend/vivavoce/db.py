from __future__ import annotations
from typing import Iterator

from fastapi import Request
from sqlalchemy import create_engine, inspect
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker, declarative_base


DEFAULT_DATABASE_URL = "sqlite:///./vivavoce.db"

Base = declarative_base()


def create_session_factory(database_url: str | None = None) -> sessionmaker:
	"""Build an engine and bound session factory.

	The factory is created once by the application lifespan (or a test fixture)
	and handed to every component that persists anything.
	"""
	url = database_url or DEFAULT_DATABASE_URL
	connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
	engine = create_engine(url, connect_args=connect_args, future=True)
	return sessionmaker(autocommit=False, autoflush=False, bind=engine, future=True)


def init_schema(session_factory: sessionmaker) -> None:
	# Import registers the ORM classes on Base.metadata
	from . import models  # noqa: F401

	engine = session_factory.kw["bind"]
	Base.metadata.create_all(bind=engine)
	ensure_schema(engine)


def get_db(request: Request) -> Iterator[Session]:
	db = request.app.state.session_factory()
	try:
		yield db
	finally:
		db.close()


# Best-effort lightweight migrations for development (SQLite-friendly)
def ensure_schema(engine: Engine) -> None:
	try:
		inspector = inspect(engine)
		tables = set(inspector.get_table_names())
	except Exception:
		return
	if "video_conversations" in tables:
		cols = {c["name"] for c in inspector.get_columns("video_conversations")}
		with engine.begin() as conn:
			if "module_index" not in cols:
				conn.exec_driver_sql("ALTER TABLE video_conversations ADD COLUMN module_index INTEGER DEFAULT 0 NOT NULL")
			if "failure_code" not in cols:
				conn.exec_driver_sql("ALTER TABLE video_conversations ADD COLUMN failure_code VARCHAR(64)")
	if "certificates" in tables:
		cols = {c["name"] for c in inspector.get_columns("certificates")}
		if "ledger_ref" not in cols:
			with engine.begin() as conn:
				conn.exec_driver_sql("ALTER TABLE certificates ADD COLUMN ledger_ref VARCHAR(128)")
