from __future__ import annotations
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import Field
from sqlalchemy.orm import Session

from .. import spaced_repetition
from ..db import get_db
from ..models import Annotation
from ..schemas import CamelModel
from .auth import User, get_current_user

router = APIRouter(prefix="/api/srs", tags=["srs"])

logger = logging.getLogger(__name__)

DEFAULT_DUE_LIMIT = 20
MAX_DUE_LIMIT = 100


class ReviewRequest(CamelModel):
	term_id: str = Field(min_length=1)
	quality: int = Field(ge=0, le=5)
	response_time_ms: Optional[int] = Field(default=None, ge=0)


class DiscoverRequest(CamelModel):
	term_id: str = Field(min_length=1)


def _require_term(db: Session, term_id: str) -> None:
	if db.get(Annotation, term_id) is None:
		raise HTTPException(status_code=404, detail="Term not found")


@router.get("/due")
def due_terms(limit: int = DEFAULT_DUE_LIMIT, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	limit = max(1, min(MAX_DUE_LIMIT, limit))
	terms = spaced_repetition.get_due_terms(db, user.user_id, limit=limit)
	return {"terms": terms, "count": len(terms)}


@router.get("/stats")
def stats(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	return spaced_repetition.get_user_stats(db, user.user_id)


@router.post("/review")
def review(req: ReviewRequest, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	_require_term(db, req.term_id)
	progress = spaced_repetition.record_review(db, user.user_id, req.term_id, req.quality)
	return {"success": True, "progress": progress}


@router.post("/discover")
def discover(req: DiscoverRequest, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	_require_term(db, req.term_id)
	created = spaced_repetition.mark_term_discovered(db, user.user_id, req.term_id)
	return {"success": True, "created": created}


@router.get("/term/{term_id}")
def term_progress(term_id: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	progress = spaced_repetition.get_term_progress(db, user.user_id, term_id)
	if progress is None:
		raise HTTPException(status_code=404, detail="No progress found for this term")
	return {"progress": progress}
