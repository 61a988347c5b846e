"""SM-2 scheduling and per-user term progress.

``calculate_next_review`` is the pure SuperMemo-2 step; the functions below
it persist the result in ``user_term_progress``.
"""

from __future__ import annotations
import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from .models import Annotation, Image, UserTermProgress

logger = logging.getLogger(__name__)

MIN_EASE_FACTOR = 1.3
DEFAULT_EASE_FACTOR = 2.5
MASTERED_THRESHOLD = 80


@dataclass
class ReviewOutcome:
	interval_days: int
	ease_factor: float
	repetitions: int
	next_review_at: datetime
	mastery_delta: int


def calculate_next_review(
	quality: int,
	interval_days: int,
	ease_factor: float,
	repetitions: int,
	now: Optional[datetime] = None,
) -> ReviewOutcome:
	now = now or datetime.utcnow()
	q = max(0, min(5, int(quality)))
	if q < 3:
		repetitions = 0
		interval_days = 1
		ease_factor = max(MIN_EASE_FACTOR, ease_factor - 0.2)
		mastery_delta = -10
	else:
		repetitions += 1
		if repetitions == 1:
			interval_days = 1
		elif repetitions == 2:
			interval_days = 6
		else:
			interval_days = int(interval_days * ease_factor + 0.5)
		ease_factor = max(MIN_EASE_FACTOR, ease_factor + 0.1 - (5 - q) * (0.08 + (5 - q) * 0.02))
		mastery_delta = (q - 2) * 5
	return ReviewOutcome(
		interval_days=interval_days,
		ease_factor=ease_factor,
		repetitions=repetitions,
		next_review_at=now + timedelta(days=interval_days),
		mastery_delta=mastery_delta,
	)


def _progress_payload(row: UserTermProgress, annotation: Optional[Annotation] = None, image: Optional[Image] = None) -> Dict[str, Any]:
	data: Dict[str, Any] = {
		"termId": row.term_id,
		"easeFactor": round(row.ease_factor, 4),
		"intervalDays": row.interval_days,
		"repetitions": row.repetitions,
		"nextReviewAt": row.next_review_at.isoformat() if row.next_review_at else None,
		"lastReviewedAt": row.last_reviewed_at.isoformat() if row.last_reviewed_at else None,
		"masteryLevel": row.mastery_level,
		"timesCorrect": row.times_correct,
		"timesIncorrect": row.times_incorrect,
	}
	if annotation is not None:
		data.update({
			"spanishTerm": annotation.spanish_term,
			"englishTerm": annotation.english_term,
			"pronunciation": annotation.pronunciation,
			"annotationType": annotation.annotation_type,
			"difficultyLevel": annotation.difficulty_level,
		})
	if image is not None:
		data["imageUrl"] = image.url
	return data


def record_review(db: Session, user_id: str, term_id: str, quality: int, now: Optional[datetime] = None) -> Dict[str, Any]:
	now = now or datetime.utcnow()
	row = (
		db.query(UserTermProgress)
		.filter(UserTermProgress.user_id == user_id, UserTermProgress.term_id == term_id)
		.first()
	)
	if row is None:
		row = UserTermProgress(
			user_id=user_id,
			term_id=term_id,
			ease_factor=DEFAULT_EASE_FACTOR,
			interval_days=0,
			repetitions=0,
			mastery_level=0,
			times_correct=0,
			times_incorrect=0,
			first_seen_at=now,
		)
		db.add(row)
	outcome = calculate_next_review(quality, row.interval_days, row.ease_factor, row.repetitions, now=now)
	row.interval_days = outcome.interval_days
	row.ease_factor = outcome.ease_factor
	row.repetitions = outcome.repetitions
	row.next_review_at = outcome.next_review_at
	row.last_reviewed_at = now
	row.mastery_level = max(0, min(100, row.mastery_level + outcome.mastery_delta))
	if quality >= 3:
		row.times_correct += 1
	else:
		row.times_incorrect += 1
	db.commit()
	db.refresh(row)
	logger.info("Recorded review user=%s term=%s quality=%s interval=%s", user_id, term_id, quality, row.interval_days)
	return _progress_payload(row)


def mark_term_discovered(db: Session, user_id: str, term_id: str, now: Optional[datetime] = None) -> bool:
	"""Start tracking a term, first review tomorrow. False when already tracked."""
	now = now or datetime.utcnow()
	existing = (
		db.query(UserTermProgress.id)
		.filter(UserTermProgress.user_id == user_id, UserTermProgress.term_id == term_id)
		.first()
	)
	if existing:
		return False
	db.add(UserTermProgress(user_id=user_id, term_id=term_id, next_review_at=now + timedelta(days=1), first_seen_at=now))
	db.commit()
	return True


def get_due_terms(db: Session, user_id: str, limit: int = 20, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
	now = now or datetime.utcnow()
	rows = (
		db.query(UserTermProgress, Annotation, Image)
		.join(Annotation, UserTermProgress.term_id == Annotation.id)
		.join(Image, Annotation.image_id == Image.id)
		.filter(UserTermProgress.user_id == user_id, UserTermProgress.next_review_at <= now)
		.order_by(UserTermProgress.next_review_at.asc())
		.limit(limit)
		.all()
	)
	return [_progress_payload(p, a, i) for p, a, i in rows]


def get_term_progress(db: Session, user_id: str, term_id: str) -> Optional[Dict[str, Any]]:
	row = (
		db.query(UserTermProgress, Annotation, Image)
		.join(Annotation, UserTermProgress.term_id == Annotation.id)
		.join(Image, Annotation.image_id == Image.id)
		.filter(UserTermProgress.user_id == user_id, UserTermProgress.term_id == term_id)
		.first()
	)
	if row is None:
		return None
	return _progress_payload(*row)


def review_streak(review_dates: List[date]) -> int:
	"""Length of the run of consecutive days ending at the latest review."""
	days = sorted(set(review_dates), reverse=True)
	if not days:
		return 0
	streak = 1
	for prev, cur in zip(days, days[1:]):
		if prev - cur == timedelta(days=1):
			streak += 1
		else:
			break
	return streak


def get_user_stats(db: Session, user_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
	now = now or datetime.utcnow()
	base = db.query(UserTermProgress).filter(UserTermProgress.user_id == user_id)
	total = base.count()
	mastered = base.filter(UserTermProgress.mastery_level >= MASTERED_THRESHOLD).count()
	learning = base.filter(
		UserTermProgress.mastery_level > 0, UserTermProgress.mastery_level < MASTERED_THRESHOLD
	).count()
	due = base.filter(UserTermProgress.next_review_at <= now).count()
	avg_mastery = (
		db.query(func.avg(UserTermProgress.mastery_level)).filter(UserTermProgress.user_id == user_id).scalar() or 0
	)
	reviewed = (
		db.query(UserTermProgress.last_reviewed_at)
		.filter(UserTermProgress.user_id == user_id, UserTermProgress.last_reviewed_at.isnot(None))
		.all()
	)
	return {
		"totalTerms": total,
		"mastered": mastered,
		"learning": learning,
		"dueForReview": due,
		"averageMastery": round(float(avg_mastery), 2),
		"streak": review_streak([r[0].date() for r in reviewed]),
	}
