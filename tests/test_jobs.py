"""Tests for the in-memory job store."""

import re
from datetime import datetime, timedelta

import pytest

from aves.jobs import InvalidJobTransition, JobNotFound, JobStore, generate_job_id


@pytest.fixture
def store():
	return JobStore()


class TestJobIds:
	"""Tests for job id generation."""

	def test_format(self):
		"""Ids are prefix, millisecond timestamp and a random suffix."""
		assert re.fullmatch(r"batch_\d{13}_[a-z0-9]{9}", generate_job_id("batch"))

	def test_unique(self):
		"""Consecutive ids differ."""
		assert generate_job_id("job") != generate_job_id("job")


class TestJobLifecycle:
	"""Tests for progress and status transitions."""

	def test_create_is_pending(self, store):
		"""New jobs start pending with zero progress."""
		job = store.create("collect", 4)
		assert job.status == "pending"
		assert job.to_dict()["progress"] == {"total": 4, "processed": 0, "successful": 0, "failed": 0, "percentage": 0}

	def test_progress_percentage(self, store):
		"""Percentage follows processed items."""
		job = store.create("annotate", 4)
		store.start(job)
		store.record_success(job)
		store.record_failure(job, "img-2", "boom")
		data = job.to_dict()
		assert data["status"] == "processing"
		assert data["progress"]["percentage"] == 50
		assert data["errors"][0]["item"] == "img-2"

	@pytest.mark.parametrize("total,processed,percentage", [(40, 1, 3), (8, 1, 13), (3, 1, 33), (3, 2, 67)])
	def test_percentage_rounds_half_up(self, store, total, processed, percentage):
		"""Half percentages round up."""
		job = store.create("annotate", total)
		for _ in range(processed):
			store.record_success(job)
		assert job.percentage == percentage

	def test_finish_completed(self, store):
		"""Any success completes the job."""
		job = store.create("collect", 2)
		store.start(job)
		store.record_success(job)
		store.record_failure(job, "x", "bad")
		store.finish(job)
		assert job.status == "completed"
		assert job.completed_at is not None

	def test_finish_failed_without_successes(self, store):
		"""Only failures means the job failed."""
		job = store.create("collect", 1)
		store.start(job)
		store.record_failure(job, "x", "bad")
		store.finish(job)
		assert job.status == "failed"

	def test_errors_are_truncated(self, store):
		"""Only the last ten errors are reported."""
		job = store.create("annotate", 15)
		for n in range(15):
			store.record_failure(job, f"img-{n}", "bad")
		errors = job.to_dict()["errors"]
		assert len(errors) == 10
		assert errors[-1]["item"] == "img-14"

	def test_list_newest_first(self, store):
		"""Listing orders jobs by start time, newest first."""
		older = store.create("collect", 1)
		older.started_at = datetime.utcnow() - timedelta(minutes=5)
		newer = store.create("annotate", 1)
		assert [j.job_id for j in store.list()] == [newer.job_id, older.job_id]


class TestCancel:
	"""Tests for cancellation."""

	def test_cancel_pending(self, store):
		"""Pending jobs can be cancelled."""
		job = store.create("collect", 1)
		store.cancel(job.job_id)
		assert job.status == "cancelled"
		assert job.completed_at is not None

	def test_cancel_unknown(self, store):
		"""Unknown jobs raise JobNotFound."""
		with pytest.raises(JobNotFound):
			store.cancel("nope")

	def test_cancel_twice_rejected(self, store):
		"""A cancelled job cannot be cancelled again and is left unchanged."""
		job = store.create("collect", 1)
		store.cancel(job.job_id)
		stamp = job.completed_at
		with pytest.raises(InvalidJobTransition):
			store.cancel(job.job_id)
		assert job.status == "cancelled"
		assert job.completed_at == stamp

	def test_cancel_completed_rejected(self, store):
		"""Finished jobs cannot be cancelled."""
		job = store.create("collect", 1)
		store.start(job)
		store.record_success(job)
		store.finish(job)
		with pytest.raises(InvalidJobTransition):
			store.cancel(job.job_id)

	def test_finish_keeps_cancelled(self, store):
		"""A loop finishing after cancellation does not overwrite the status."""
		job = store.create("annotate", 2)
		store.start(job)
		store.cancel(job.job_id)
		store.record_success(job)
		store.finish(job)
		assert job.status == "cancelled"


class TestCleanup:
	"""Tests for retention."""

	def test_removes_old_finished_jobs(self, store):
		"""Jobs finished over a day ago are removed, others kept."""
		now = datetime.utcnow()
		old = store.create("collect", 1)
		store.finish(old)
		old.completed_at = now - timedelta(hours=25)
		recent = store.create("collect", 1)
		store.finish(recent)
		running = store.create("annotate", 1)
		store.start(running)
		assert store.cleanup(now=now) == 1
		assert store.get(old.job_id) is None
		assert store.get(recent.job_id) is not None
		assert store.get(running.job_id) is not None
