from __future__ import annotations
import logging
import time
from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from .. import exercise_cache
from ..db import get_db
from ..exercise_generator import NotEnoughAnnotations, build_user_context, generate_exercise
from ..schemas import CamelModel
from .auth import User, get_optional_user, optional_admin

router = APIRouter(prefix="/api/ai/exercises", tags=["ai-exercises"])

logger = logging.getLogger(__name__)

ExerciseType = Literal["contextual_fill", "term_matching", "spatial_identification", "category_sorting"]


class GenerateExerciseRequest(CamelModel):
	user_id: Optional[str] = None
	type: ExerciseType = "contextual_fill"


@router.post("/generate")
def generate(req: GenerateExerciseRequest, user: User = Depends(get_optional_user), db: Session = Depends(get_db)):
	user_id = req.user_id or (None if user.is_anonymous else user.user_id)
	context = build_user_context(db, user_id)
	cache_key = exercise_cache.generate_cache_key(req.type, context.difficulty, context.focus_topics, user_id)

	cached = exercise_cache.lookup(db, cache_key)
	if cached is not None:
		return {
			"exercise": cached,
			"metadata": {"generated": False, "cacheKey": cache_key, "cost": 0, "difficulty": context.difficulty},
		}

	started = time.perf_counter()
	try:
		exercise = generate_exercise(db, req.type, context)
	except NotEnoughAnnotations as e:
		raise HTTPException(status_code=404, detail=str(e))
	elapsed_ms = int((time.perf_counter() - started) * 1000)
	exercise_cache.store(
		db,
		cache_key,
		exercise,
		exercise_type=req.type,
		difficulty=context.difficulty,
		topics=context.focus_topics,
		user_id=user_id,
		generation_time_ms=elapsed_ms,
	)
	logger.info("Generated %s exercise for %s at difficulty %s", req.type, user_id or "anonymous", context.difficulty)
	return {
		"exercise": exercise,
		"metadata": {
			"generated": True,
			"cacheKey": cache_key,
			"cost": exercise_cache.GENERATION_COST,
			"difficulty": context.difficulty,
		},
	}


@router.get("/stats")
def stats(user: User = Depends(optional_admin), db: Session = Depends(get_db)):
	return {"data": exercise_cache.stats(db)}


@router.delete("/cache/{user_id}")
def clear_cache(user_id: str, user: User = Depends(optional_admin), db: Session = Depends(get_db)):
	deleted = exercise_cache.clear_user(db, user_id)
	logger.info("Cleared %s cached exercises for %s", deleted, user_id)
	return {"message": f"Cleared {deleted} cached exercises", "deleted": deleted}
