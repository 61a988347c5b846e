"""In-memory progress tracking for bulk admin operations.

Jobs live only in this process and are lost on restart.
"""

from __future__ import annotations
import asyncio
import logging
import random
import string
import time
from datetime import datetime, timedelta
from typing import Any, Coroutine, Dict, List, Optional, Set

logger = logging.getLogger(__name__)

JOB_RETENTION = timedelta(hours=24)
CANCELLABLE = ("pending", "processing")
MAX_ERRORS_REPORTED = 10


class JobNotFound(KeyError):
	pass


class InvalidJobTransition(ValueError):
	pass


def generate_job_id(prefix: str) -> str:
	suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
	return f"{prefix}_{int(time.time() * 1000)}_{suffix}"


class JobProgress:
	def __init__(self, job_id: str, job_type: str, total_items: int, metadata: Optional[Dict[str, Any]] = None) -> None:
		self.job_id: str = job_id
		self.type: str = job_type  # collect | annotate
		self.status: str = "pending"
		self.total_items: int = total_items
		self.processed_items: int = 0
		self.successful_items: int = 0
		self.failed_items: int = 0
		self.errors: List[Dict[str, str]] = []
		self.started_at: datetime = datetime.utcnow()
		self.completed_at: Optional[datetime] = None
		self.metadata: Dict[str, Any] = dict(metadata or {})

	@property
	def cancelled(self) -> bool:
		return self.status == "cancelled"

	@property
	def percentage(self) -> int:
		if self.total_items <= 0:
			return 0
		# Halves round up: 2.5 reports as 3
		return int(self.processed_items / self.total_items * 100 + 0.5)

	def to_dict(self) -> Dict[str, Any]:
		return {
			"jobId": self.job_id,
			"type": self.type,
			"status": self.status,
			"progress": {
				"total": self.total_items,
				"processed": self.processed_items,
				"successful": self.successful_items,
				"failed": self.failed_items,
				"percentage": self.percentage,
			},
			"errors": self.errors[-MAX_ERRORS_REPORTED:],
			"startedAt": self.started_at.isoformat(),
			"completedAt": self.completed_at.isoformat() if self.completed_at else None,
			"metadata": self.metadata,
		}


class JobStore:
	def __init__(self) -> None:
		self._jobs: Dict[str, JobProgress] = {}

	def create(self, job_type: str, total_items: int, metadata: Optional[Dict[str, Any]] = None, prefix: Optional[str] = None) -> JobProgress:
		job = JobProgress(generate_job_id(prefix or job_type), job_type, total_items, metadata)
		self._jobs[job.job_id] = job
		logger.info("Job %s created (%s, %s items)", job.job_id, job_type, total_items)
		return job

	def get(self, job_id: str) -> Optional[JobProgress]:
		return self._jobs.get(job_id)

	def list(self) -> List[JobProgress]:
		return sorted(self._jobs.values(), key=lambda j: j.started_at, reverse=True)

	def start(self, job: JobProgress) -> None:
		if job.status == "pending":
			job.status = "processing"

	def record_success(self, job: JobProgress) -> None:
		job.processed_items += 1
		job.successful_items += 1

	def record_failure(self, job: JobProgress, item: str, error: str) -> None:
		job.processed_items += 1
		job.failed_items += 1
		job.errors.append({"item": item, "error": error, "timestamp": datetime.utcnow().isoformat()})

	def finish(self, job: JobProgress) -> None:
		if job.cancelled:
			return
		if job.failed_items > 0 and job.successful_items == 0:
			job.status = "failed"
		else:
			job.status = "completed"
		job.completed_at = datetime.utcnow()
		logger.info(
			"Job %s %s: %s ok, %s failed",
			job.job_id,
			job.status,
			job.successful_items,
			job.failed_items,
		)

	def fail(self, job: JobProgress, error: str) -> None:
		if job.cancelled:
			return
		job.status = "failed"
		job.errors.append({"item": "job", "error": error, "timestamp": datetime.utcnow().isoformat()})
		job.completed_at = datetime.utcnow()

	def cancel(self, job_id: str) -> JobProgress:
		job = self._jobs.get(job_id)
		if job is None:
			raise JobNotFound(job_id)
		if job.status not in CANCELLABLE:
			raise InvalidJobTransition(f"Cannot cancel job with status: {job.status}")
		job.status = "cancelled"
		job.completed_at = datetime.utcnow()
		logger.info("Job %s cancelled", job_id)
		return job

	def cleanup(self, now: Optional[datetime] = None) -> int:
		now = now or datetime.utcnow()
		cutoff = now - JOB_RETENTION
		stale = [jid for jid, j in self._jobs.items() if j.completed_at is not None and j.completed_at < cutoff]
		for jid in stale:
			del self._jobs[jid]
		return len(stale)

	def clear(self) -> None:
		self._jobs.clear()


job_store = JobStore()

_background_tasks: Set[asyncio.Task] = set()


def spawn(coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
	"""Run a coroutine in the background, holding a reference until it ends."""
	task = asyncio.create_task(coro)
	_background_tasks.add(task)
	task.add_done_callback(_background_tasks.discard)
	return task
