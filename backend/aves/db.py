from __future__ import annotations
from sqlalchemy import create_engine, inspect
from sqlalchemy.orm import sessionmaker, declarative_base
from .settings import settings


DATABASE_URL = settings.database_url or "sqlite:///./aves.db"

_connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(DATABASE_URL, connect_args=_connect_args, future=True)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine, future=True)
Base = declarative_base()


def get_db():
	db = SessionLocal()
	try:
		yield db
	finally:
		db.close()


# Lightweight additive migrations for databases created by older builds
def ensure_schema() -> None:
	inspector = inspect(engine)
	tables = set(inspector.get_table_names())
	if "images" in tables:
		cols = {c["name"] for c in inspector.get_columns("images")}
		with engine.begin() as conn:
			if "quality_score" not in cols:
				conn.exec_driver_sql("ALTER TABLE images ADD COLUMN quality_score INTEGER")
	if "exercise_results" in tables:
		cols = {c["name"] for c in inspector.get_columns("exercise_results")}
		with engine.begin() as conn:
			if "user_id" not in cols:
				conn.exec_driver_sql("ALTER TABLE exercise_results ADD COLUMN user_id VARCHAR(128)")
