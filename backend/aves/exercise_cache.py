"""Database-backed cache for generated exercises.

Entries carry an ``expires_at`` checked on every read; expired rows are
ignored until the cleanup loop deletes them.
"""

from __future__ import annotations
import hashlib
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, func
from sqlalchemy.orm import Session

from .models import ExerciseCacheEntry
from .settings import settings

logger = logging.getLogger(__name__)

GENERATION_COST = 0.003


def generate_cache_key(exercise_type: str, difficulty: int, topics: List[str], user_id: Optional[str] = None) -> str:
	key_string = f"{exercise_type}_{difficulty}_{'_'.join(sorted(topics))}"
	digest = hashlib.sha256(key_string.encode("utf-8")).hexdigest()
	return f"{user_id}_{digest}" if user_id else digest


def lookup(db: Session, cache_key: str, now: Optional[datetime] = None) -> Optional[Dict[str, Any]]:
	now = now or datetime.utcnow()
	row = (
		db.query(ExerciseCacheEntry)
		.filter(ExerciseCacheEntry.cache_key == cache_key, ExerciseCacheEntry.expires_at > now)
		.first()
	)
	if row is None:
		logger.debug("Cache miss %s", cache_key[:16])
		return None
	row.usage_count += 1
	row.last_used_at = now
	db.commit()
	logger.info("Cache hit %s (usage %s)", cache_key[:16], row.usage_count)
	return row.exercise_data


def store(
	db: Session,
	cache_key: str,
	exercise: Dict[str, Any],
	*,
	exercise_type: str,
	difficulty: int,
	topics: Optional[List[str]] = None,
	user_id: Optional[str] = None,
	ttl_seconds: Optional[int] = None,
	generation_time_ms: Optional[int] = None,
	now: Optional[datetime] = None,
) -> ExerciseCacheEntry:
	now = now or datetime.utcnow()
	ttl = settings.exercise_cache_ttl_seconds if ttl_seconds is None else ttl_seconds
	expires_at = now + timedelta(seconds=ttl)
	row = db.query(ExerciseCacheEntry).filter(ExerciseCacheEntry.cache_key == cache_key).first()
	if row is None:
		row = ExerciseCacheEntry(
			cache_key=cache_key,
			user_id=user_id,
			exercise_type=exercise_type,
			exercise_data=exercise,
			difficulty=difficulty,
			topics=list(topics or []),
			usage_count=0,
			last_used_at=now,
			created_at=now,
			expires_at=expires_at,
			generation_cost=GENERATION_COST,
			generation_time_ms=generation_time_ms,
		)
		db.add(row)
	else:
		row.exercise_data = exercise
		row.usage_count += 1
		row.last_used_at = now
		row.expires_at = expires_at
	db.commit()
	evict_if_needed(db, now=now)
	return row


def evict_lru(db: Session, max_size: int, now: Optional[datetime] = None) -> int:
	"""Delete the least recently used active entries beyond ``max_size``."""
	now = now or datetime.utcnow()
	active = (
		db.query(ExerciseCacheEntry.id)
		.filter(ExerciseCacheEntry.expires_at > now)
		.order_by(ExerciseCacheEntry.last_used_at.desc())
		.all()
	)
	victims = [row[0] for row in active[max_size:]]
	if not victims:
		return 0
	db.execute(delete(ExerciseCacheEntry).where(ExerciseCacheEntry.id.in_(victims)))
	db.commit()
	logger.info("Evicted %s exercise cache entries", len(victims))
	return len(victims)


def evict_if_needed(db: Session, now: Optional[datetime] = None) -> int:
	now = now or datetime.utcnow()
	max_size = settings.exercise_cache_max_entries
	current = db.query(func.count(ExerciseCacheEntry.id)).filter(ExerciseCacheEntry.expires_at > now).scalar() or 0
	if current <= max_size:
		return 0
	return evict_lru(db, max_size, now=now)


def cleanup_expired(db: Session, now: Optional[datetime] = None) -> int:
	now = now or datetime.utcnow()
	res = db.execute(delete(ExerciseCacheEntry).where(ExerciseCacheEntry.expires_at <= now))
	db.commit()
	return res.rowcount or 0


def clear_user(db: Session, user_id: str) -> int:
	res = db.execute(delete(ExerciseCacheEntry).where(ExerciseCacheEntry.user_id == user_id))
	db.commit()
	return res.rowcount or 0


def stats(db: Session, now: Optional[datetime] = None) -> Dict[str, Any]:
	now = now or datetime.utcnow()
	rows = db.query(ExerciseCacheEntry).all()
	total = len(rows)
	active = sum(1 for r in rows if r.expires_at > now)
	total_usage = sum(r.usage_count for r in rows)
	reused = sum(1 for r in rows if r.usage_count > 0)
	# Every stored entry cost one generation; each reuse is a saved one
	retrievals = total + total_usage
	hit_rate = total_usage / retrievals if retrievals else 0.0
	timings = [r.generation_time_ms for r in rows if r.generation_time_ms is not None]
	return {
		"totalEntries": total,
		"activeEntries": active,
		"expiredEntries": total - active,
		"reusedEntries": reused,
		"totalUsage": total_usage,
		"cacheHitRate": round(hit_rate, 4),
		"totalCost": round(total * GENERATION_COST, 4),
		"totalCostSaved": round(total_usage * GENERATION_COST, 4),
		"avgGenerationTimeMs": round(sum(timings) / len(timings), 2) if timings else 0,
	}
