"""Per-annotation mastery tracking and practice recommendations.

Every answer updates an ``annotation_mastery`` row: exposure counters,
response times, a 0..1 mastery score (accuracy weighted with a recency
bonus and a perfect-streak boost), a 1..5 confidence level, and the next
review time.
"""

from __future__ import annotations
import logging
import math
import random
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.orm import Session

from .models import Annotation, AnnotationMastery
from .schemas import iso

logger = logging.getLogger(__name__)

WEAK_SCORE = 0.7
MASTERED_SCORE = 0.8
RECENCY_BONUS = 0.2
RECENCY_WINDOW = timedelta(days=7)
STREAK_MULTIPLIER = 1.15
MAX_REVIEW_DAYS = 90

PRIORITY_DUE = 10
PRIORITY_WEAK = 8
PRIORITY_NEW = 5


class AnnotationNotFound(Exception):
	pass


def mastery_score(
	exposure_count: int,
	correct_count: int,
	incorrect_count: int,
	last_correct_at: Optional[datetime],
	now: datetime,
) -> float:
	if exposure_count <= 0:
		return 0.0
	accuracy = min(1.0, correct_count / exposure_count)
	bonus = 0.0
	if last_correct_at is not None:
		elapsed = max(0.0, (now - last_correct_at).total_seconds())
		bonus = RECENCY_BONUS - min(RECENCY_BONUS, elapsed / RECENCY_WINDOW.total_seconds())
	multiplier = STREAK_MULTIPLIER if incorrect_count == 0 and correct_count >= 3 else 1.0
	return round(min(1.0, (accuracy * 0.7 + bonus) * multiplier), 4)


def confidence_level(score: float) -> int:
	if score >= 0.9:
		return 5
	if score >= 0.75:
		return 4
	if score >= 0.5:
		return 3
	if score >= 0.25:
		return 2
	return 1


def review_interval_days(score: float, correct_count: int) -> float:
	"""Grow the interval faster the better the term is known; capped at 90 days."""
	if score >= 0.8:
		days = 2.5 ** min(correct_count, 10)
	elif score >= 0.5:
		days = 1.8 ** min(correct_count, 7)
	else:
		days = 1.3 ** min(correct_count, 5)
	return min(days, MAX_REVIEW_DAYS)


def mastery_payload(row: AnnotationMastery) -> Dict[str, Any]:
	return {
		"id": row.id,
		"userId": row.user_id,
		"annotationId": row.annotation_id,
		"exposureCount": row.exposure_count,
		"correctCount": row.correct_count,
		"incorrectCount": row.incorrect_count,
		"firstSeenAt": iso(row.first_seen_at),
		"lastSeenAt": iso(row.last_seen_at),
		"lastCorrectAt": iso(row.last_correct_at),
		"nextReviewAt": iso(row.next_review_at),
		"masteryScore": round(row.mastery_score, 4),
		"confidenceLevel": row.confidence_level,
		"avgResponseTimeMs": row.avg_response_time_ms,
		"fastestResponseTimeMs": row.fastest_response_time_ms,
	}


def update_mastery(
	db: Session,
	user_id: str,
	annotation_id: str,
	correct: bool,
	response_time_ms: int,
	now: Optional[datetime] = None,
) -> AnnotationMastery:
	"""Record one answer and reschedule the annotation. Commits."""
	now = now or datetime.utcnow()
	if db.get(Annotation, annotation_id) is None:
		raise AnnotationNotFound(annotation_id)
	row = (
		db.query(AnnotationMastery)
		.filter(AnnotationMastery.user_id == user_id, AnnotationMastery.annotation_id == annotation_id)
		.first()
	)
	if row is None:
		row = AnnotationMastery(
			user_id=user_id,
			annotation_id=annotation_id,
			exposure_count=0,
			correct_count=0,
			incorrect_count=0,
			first_seen_at=now,
		)
		db.add(row)

	previous = row.exposure_count
	if row.avg_response_time_ms is None:
		row.avg_response_time_ms = response_time_ms
	else:
		row.avg_response_time_ms = (row.avg_response_time_ms * previous + response_time_ms) // (previous + 1)
	if row.fastest_response_time_ms is None or response_time_ms < row.fastest_response_time_ms:
		row.fastest_response_time_ms = response_time_ms

	row.exposure_count = previous + 1
	if correct:
		row.correct_count += 1
		row.last_correct_at = now
	else:
		row.incorrect_count += 1
	row.last_seen_at = now
	row.mastery_score = mastery_score(row.exposure_count, row.correct_count, row.incorrect_count, row.last_correct_at, now)
	row.confidence_level = confidence_level(row.mastery_score)
	row.next_review_at = now + timedelta(days=review_interval_days(row.mastery_score, row.correct_count))
	db.commit()
	db.refresh(row)
	logger.info(
		"Mastery for %s on %s: correct=%s score=%.3f level=%s",
		user_id, annotation_id, correct, row.mastery_score, row.confidence_level,
	)
	return row


def weak_annotations(
	db: Session, user_id: str, limit: int = 10, annotation_type: Optional[str] = None,
) -> List[Tuple[Annotation, AnnotationMastery]]:
	query = (
		db.query(Annotation, AnnotationMastery)
		.join(AnnotationMastery, AnnotationMastery.annotation_id == Annotation.id)
		.filter(AnnotationMastery.user_id == user_id, AnnotationMastery.mastery_score < WEAK_SCORE)
	)
	if annotation_type:
		query = query.filter(Annotation.annotation_type == annotation_type)
	return (
		query.order_by(AnnotationMastery.mastery_score.asc(), AnnotationMastery.last_seen_at.asc())
		.limit(limit)
		.all()
	)


def due_annotations(
	db: Session, user_id: str, limit: int = 10, now: Optional[datetime] = None,
) -> List[Tuple[Annotation, AnnotationMastery]]:
	now = now or datetime.utcnow()
	return (
		db.query(Annotation, AnnotationMastery)
		.join(AnnotationMastery, AnnotationMastery.annotation_id == Annotation.id)
		.filter(AnnotationMastery.user_id == user_id, AnnotationMastery.next_review_at <= now)
		.order_by(AnnotationMastery.next_review_at.asc())
		.limit(limit)
		.all()
	)


def new_annotations(
	db: Session,
	user_id: str,
	limit: int = 10,
	difficulty_range: Optional[Tuple[int, int]] = None,
	rng: Optional[random.Random] = None,
) -> List[Annotation]:
	"""Visible annotations the user has never answered, in random order."""
	seen = select(AnnotationMastery.annotation_id).where(AnnotationMastery.user_id == user_id)
	query = db.query(Annotation).filter(Annotation.is_visible.is_(True), Annotation.id.notin_(seen))
	if difficulty_range:
		low, high = difficulty_range
		query = query.filter(Annotation.difficulty_level.between(low, high))
	rows = query.order_by(Annotation.id.asc()).all()
	rng = rng or random.Random()
	return rng.sample(rows, min(limit, len(rows)))


def recommend(
	db: Session,
	user_id: str,
	count: int = 5,
	*,
	focus_type: Optional[str] = None,
	difficulty_range: Optional[Tuple[int, int]] = None,
	include_new: bool = True,
	now: Optional[datetime] = None,
	rng: Optional[random.Random] = None,
) -> List[Dict[str, Any]]:
	"""Mix due, weak and new annotations (roughly 40/40/20), highest priority first."""
	picks: List[Tuple[Annotation, Optional[AnnotationMastery], str, int]] = []
	for annotation, mastery in due_annotations(db, user_id, math.ceil(count * 0.4), now=now):
		picks.append((annotation, mastery, "due_for_review", PRIORITY_DUE))
	for annotation, mastery in weak_annotations(db, user_id, math.ceil(count * 0.4), focus_type):
		picks.append((annotation, mastery, "weak", PRIORITY_WEAK))
	if include_new:
		for annotation in new_annotations(db, user_id, math.ceil(count * 0.2), difficulty_range, rng=rng):
			picks.append((annotation, None, "new", PRIORITY_NEW))

	best: Dict[str, Tuple[Annotation, Optional[AnnotationMastery], str, int]] = {}
	for pick in picks:
		current = best.get(pick[0].id)
		if current is None or pick[3] > current[3]:
			best[pick[0].id] = pick
	ranked = sorted(best.values(), key=lambda p: -p[3])[:count]
	logger.info(
		"Recommended %s annotations for %s (due=%s weak=%s new=%s)",
		len(ranked), user_id,
		sum(1 for p in ranked if p[2] == "due_for_review"),
		sum(1 for p in ranked if p[2] == "weak"),
		sum(1 for p in ranked if p[2] == "new"),
	)
	return [
		{"annotation": a, "mastery": m, "reason": reason, "priority": priority}
		for a, m, reason, priority in ranked
	]


def get_mastery_score(db: Session, user_id: str, annotation_id: str) -> float:
	row = (
		db.query(AnnotationMastery.mastery_score)
		.filter(AnnotationMastery.user_id == user_id, AnnotationMastery.annotation_id == annotation_id)
		.first()
	)
	return round(row[0], 4) if row else 0.0


def user_stats(db: Session, user_id: str) -> Dict[str, Any]:
	scores = [
		(r.mastery_score, r.confidence_level)
		for r in db.query(AnnotationMastery.mastery_score, AnnotationMastery.confidence_level)
		.filter(AnnotationMastery.user_id == user_id)
		.all()
	]
	by_level = {str(level): 0 for level in range(1, 6)}
	for _, level in scores:
		by_level[str(level)] = by_level.get(str(level), 0) + 1
	return {
		"totalAnnotationsSeen": len(scores),
		"averageMasteryScore": round(sum(s for s, _ in scores) / len(scores), 4) if scores else 0.0,
		"annotationsByConfidence": by_level,
		"weakAnnotationsCount": sum(1 for s, _ in scores if s < WEAK_SCORE),
		"masteredAnnotationsCount": sum(1 for s, _ in scores if s >= MASTERED_SCORE),
	}
