from __future__ import annotations
import logging
from datetime import datetime

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .. import unsplash_client, vision_client
from ..db import get_db
from .auth import supabase_configured

router = APIRouter(tags=["health"])

logger = logging.getLogger(__name__)


@router.get("/health")
def health(db: Session = Depends(get_db)):
	try:
		db.execute(text("SELECT 1"))
		database = "ok"
	except SQLAlchemyError as e:
		logger.error("Database health check failed: %s", e)
		database = "error"
	return {"status": "ok", "timestamp": datetime.utcnow().isoformat(), "database": database}


@router.get("/info")
def info():
	return {
		"status": "ok",
		"unsplashConfigured": unsplash_client.unsplash_configured(),
		"visionConfigured": vision_client.vision_configured(),
		"supabaseConfigured": supabase_configured(),
	}
