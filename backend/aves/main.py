from __future__ import annotations
import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from .cleanup import purge_expired
from .db import Base, SessionLocal, engine, ensure_schema
from .errors import setup_exception_handlers
from .log import setup_logging
from .routers import (
	admin_images,
	ai_annotations,
	ai_exercises,
	annotations,
	auth,
	exercises,
	feedback_analytics,
	health,
	mastery,
	species,
	srs,
	vocabulary,
)

logger = logging.getLogger(__name__)

CLEANUP_INTERVAL_SECONDS = 60 * 60


def run_cleanup() -> None:
	db = SessionLocal()
	try:
		purge_expired(db)
	except Exception:
		db.rollback()
		logger.exception("Cleanup pass failed")
	finally:
		db.close()


async def _cleanup_watcher() -> None:
	while True:
		await asyncio.sleep(CLEANUP_INTERVAL_SECONDS)
		run_cleanup()


@asynccontextmanager
async def lifespan(app: FastAPI):
	Base.metadata.create_all(bind=engine)
	ensure_schema()
	run_cleanup()
	watcher = asyncio.create_task(_cleanup_watcher())
	logger.info("AVES API started")
	try:
		yield
	finally:
		watcher.cancel()


def create_app() -> FastAPI:
	setup_logging()
	app = FastAPI(title="AVES API", lifespan=lifespan)
	setup_exception_handlers(app)
	app.include_router(health.router)
	app.include_router(auth.router)
	app.include_router(species.router)
	app.include_router(annotations.router)
	app.include_router(ai_annotations.router)
	app.include_router(admin_images.router)
	app.include_router(srs.router)
	app.include_router(vocabulary.router)
	app.include_router(mastery.router)
	app.include_router(exercises.router)
	app.include_router(ai_exercises.router)
	app.include_router(feedback_analytics.router)
	return app


app = create_app()
