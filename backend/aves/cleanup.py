from __future__ import annotations
import logging
from datetime import datetime
from typing import Dict, Optional

from sqlalchemy.orm import Session

from . import exercise_cache
from .jobs import job_store

logger = logging.getLogger(__name__)


def purge_expired(db: Session, now: Optional[datetime] = None) -> Dict[str, int]:
	"""Drop expired exercise cache rows and jobs finished more than a day ago."""
	now = now or datetime.utcnow()
	removed = {
		"exerciseCache": exercise_cache.cleanup_expired(db, now=now),
		"jobs": job_store.cleanup(now=now),
	}
	if any(removed.values()):
		logger.info("Cleanup removed %s expired cache entries and %s old jobs", removed["exerciseCache"], removed["jobs"])
	return removed
