from __future__ import annotations
from typing import Literal, Optional, Tuple

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import Field
from sqlalchemy.orm import Session

from .. import annotation_mastery
from ..annotation_mastery import mastery_payload
from ..db import get_db
from ..schemas import CamelModel, iso
from .annotations import annotation_payload

router = APIRouter(prefix="/api/mastery", tags=["mastery"])

DEFAULT_LIMIT = 10
MAX_LIMIT = 100

AnnotationType = Literal["anatomical", "behavioral", "color", "pattern"]


class UpdateMasteryRequest(CamelModel):
	user_id: str = Field(min_length=1)
	annotation_id: str = Field(min_length=1)
	correct: bool
	response_time_ms: int = Field(gt=0)
	session_id: Optional[str] = None


def _with_mastery(annotation, mastery=None):
	data = annotation_payload(annotation)
	data["masteryData"] = mastery_payload(mastery) if mastery is not None else None
	return data


def _difficulty_range(low: Optional[int], high: Optional[int]) -> Optional[Tuple[int, int]]:
	return (low, high) if low is not None and high is not None else None


@router.post("/update")
def update(req: UpdateMasteryRequest, db: Session = Depends(get_db)):
	try:
		row = annotation_mastery.update_mastery(db, req.user_id, req.annotation_id, req.correct, req.response_time_ms)
	except annotation_mastery.AnnotationNotFound:
		raise HTTPException(status_code=404, detail="Annotation not found")
	return {
		"success": True,
		"mastery": {
			"annotationId": row.annotation_id,
			"masteryScore": round(row.mastery_score, 4),
			"confidenceLevel": row.confidence_level,
			"exposureCount": row.exposure_count,
			"correctCount": row.correct_count,
			"nextReviewAt": iso(row.next_review_at),
		},
	}


@router.get("/weak/{user_id}")
def weak(
	user_id: str,
	limit: int = Query(default=DEFAULT_LIMIT, ge=1, le=MAX_LIMIT),
	type: Optional[AnnotationType] = None,
	db: Session = Depends(get_db),
):
	rows = annotation_mastery.weak_annotations(db, user_id, limit, type)
	return {"success": True, "count": len(rows), "annotations": [_with_mastery(a, m) for a, m in rows]}


@router.get("/due/{user_id}")
def due(user_id: str, limit: int = Query(default=DEFAULT_LIMIT, ge=1, le=MAX_LIMIT), db: Session = Depends(get_db)):
	rows = annotation_mastery.due_annotations(db, user_id, limit)
	return {"success": True, "count": len(rows), "annotations": [_with_mastery(a, m) for a, m in rows]}


@router.get("/new/{user_id}")
def new(
	user_id: str,
	limit: int = Query(default=DEFAULT_LIMIT, ge=1, le=MAX_LIMIT),
	difficultyMin: Optional[int] = Query(default=None, ge=1, le=5),
	difficultyMax: Optional[int] = Query(default=None, ge=1, le=5),
	db: Session = Depends(get_db),
):
	rows = annotation_mastery.new_annotations(db, user_id, limit, _difficulty_range(difficultyMin, difficultyMax))
	return {"success": True, "count": len(rows), "annotations": [annotation_payload(a) for a in rows]}


@router.get("/recommended/{user_id}")
def recommended(
	user_id: str,
	count: int = Query(default=5, ge=1, le=20),
	focusType: Optional[AnnotationType] = None,
	difficultyMin: Optional[int] = Query(default=None, ge=1, le=5),
	difficultyMax: Optional[int] = Query(default=None, ge=1, le=5),
	includeNew: bool = True,
	db: Session = Depends(get_db),
):
	picks = annotation_mastery.recommend(
		db,
		user_id,
		count,
		focus_type=focusType,
		difficulty_range=_difficulty_range(difficultyMin, difficultyMax),
		include_new=includeNew,
	)
	return {
		"success": True,
		"count": len(picks),
		"recommendations": [
			{
				"annotation": annotation_payload(p["annotation"]),
				"masteryData": mastery_payload(p["mastery"]) if p["mastery"] is not None else None,
				"reason": p["reason"],
				"priority": p["priority"],
			}
			for p in picks
		],
	}


@router.get("/score/{user_id}/{annotation_id}")
def score(user_id: str, annotation_id: str, db: Session = Depends(get_db)):
	return {
		"success": True,
		"userId": user_id,
		"annotationId": annotation_id,
		"masteryScore": annotation_mastery.get_mastery_score(db, user_id, annotation_id),
	}


@router.get("/stats/{user_id}")
def stats(user_id: str, db: Session = Depends(get_db)):
	return {"success": True, "userId": user_id, "stats": annotation_mastery.user_stats(db, user_id)}
