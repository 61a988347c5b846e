from __future__ import annotations
import logging
import time
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import Field
from sqlalchemy.orm import Session

from ..db import get_db
from ..models import Annotation, ExerciseResult, ExerciseSession
from ..schemas import CamelModel, iso

router = APIRouter(prefix="/api/exercises", tags=["exercises"])

logger = logging.getLogger(__name__)

DIFFICULT_MIN_ATTEMPTS = 3
DIFFICULT_LIMIT = 10


class SessionStartRequest(CamelModel):
	session_id: Optional[str] = Field(default=None, max_length=128)
	user_id: Optional[str] = None


class ResultRequest(CamelModel):
	session_id: str = Field(min_length=1)
	exercise_type: str = Field(min_length=1, max_length=40)
	annotation_id: Optional[str] = None
	spanish_term: Optional[str] = Field(default=None, max_length=200)
	user_answer: Any = None
	is_correct: bool
	time_taken: Optional[int] = Field(default=None, ge=0)
	user_id: Optional[str] = None


@router.post("/session/start")
def start_session(req: Optional[SessionStartRequest] = None, db: Session = Depends(get_db)):
	req = req or SessionStartRequest()
	session_id = req.session_id or f"session_{int(time.time() * 1000)}"
	row = db.query(ExerciseSession).filter(ExerciseSession.session_id == session_id).first()
	if row is None:
		row = ExerciseSession(session_id=session_id, user_id=req.user_id)
		db.add(row)
		db.commit()
		db.refresh(row)
	return {"session": {"id": row.session_id, "userId": row.user_id, "createdAt": iso(row.started_at)}}


@router.post("/result")
def record_result(req: ResultRequest, db: Session = Depends(get_db)):
	session = db.query(ExerciseSession).filter(ExerciseSession.session_id == req.session_id).first()
	if session is None:
		raise HTTPException(status_code=404, detail="Session not found")
	try:
		db.add(ExerciseResult(
			session_id=req.session_id,
			user_id=req.user_id or session.user_id,
			exercise_type=req.exercise_type,
			annotation_id=req.annotation_id,
			spanish_term=req.spanish_term,
			user_answer=req.user_answer,
			is_correct=req.is_correct,
			time_taken=req.time_taken or 0,
		))
		session.exercises_completed += 1
		if req.is_correct:
			session.correct_answers += 1
		db.commit()
	except Exception:
		db.rollback()
		raise
	return {"success": True}


@router.get("/session/{session_id}/progress")
def session_progress(session_id: str, db: Session = Depends(get_db)):
	rows = (
		db.query(ExerciseResult.is_correct, ExerciseResult.time_taken)
		.filter(ExerciseResult.session_id == session_id)
		.all()
	)
	total = len(rows)
	correct = sum(1 for is_correct, _ in rows if is_correct)
	avg_time = sum(t or 0 for _, t in rows) / total if total else 0
	accuracy = correct / total * 100 if total else 0.0
	return {
		"sessionId": session_id,
		"totalExercises": total,
		"correctAnswers": correct,
		"avgTimePerExercise": round(float(avg_time or 0), 2),
		"accuracy": f"{accuracy:.1f}",
	}


@router.get("/difficult-terms")
def difficult_terms(db: Session = Depends(get_db)):
	rows = (
		db.query(ExerciseResult.spanish_term, ExerciseResult.annotation_id, ExerciseResult.is_correct)
		.filter(ExerciseResult.spanish_term.isnot(None))
		.all()
	)
	attempts: dict = {}
	for term, annotation_id, is_correct in rows:
		entry = attempts.setdefault(term, {"attempts": 0, "correct": 0, "annotationId": annotation_id})
		entry["attempts"] += 1
		entry["correct"] += 1 if is_correct else 0
	english = dict(
		db.query(Annotation.spanish_term, Annotation.english_term)
		.filter(Annotation.spanish_term.in_(list(attempts)))
		.all()
	) if attempts else {}
	terms = [
		{
			"spanishTerm": term,
			"englishTerm": english.get(term),
			"attempts": e["attempts"],
			"successRate": round(e["correct"] / e["attempts"], 4),
		}
		for term, e in attempts.items()
		if e["attempts"] >= DIFFICULT_MIN_ATTEMPTS
	]
	terms.sort(key=lambda t: (t["successRate"], -t["attempts"]))
	return {"difficultTerms": terms[:DIFFICULT_LIMIT]}
