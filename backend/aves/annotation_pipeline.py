from __future__ import annotations
import asyncio
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from . import vision_client
from .db import SessionLocal
from .feedback import apply_adjustments, get_positioning_adjustments
from .models import AIAnnotation, AIAnnotationItem, Image, Species

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 3
BACKOFF_BASE_SECONDS = 1.0
JOB_TIMEOUT_SECONDS = 5 * 60


async def generate_with_retry(
	client: "vision_client.VisionClient",
	image_url: str,
	*,
	attempts: int = MAX_ATTEMPTS,
	base_delay: Optional[float] = None,
) -> List[Dict[str, Any]]:
	"""Call the vision model, backing off 1s, 2s, 4s... between attempts."""
	if base_delay is None:
		base_delay = BACKOFF_BASE_SECONDS
	last_error: Optional[Exception] = None
	for attempt in range(1, attempts + 1):
		try:
			return await client.annotate_image(image_url)
		except Exception as e:
			last_error = e
			logger.warning("Annotation attempt %s/%s failed for %s: %s", attempt, attempts, image_url, e)
			if attempt < attempts:
				await asyncio.sleep(base_delay * 2 ** (attempt - 1))
	raise last_error or RuntimeError("annotation generation failed")


def species_name_for_image(db: Session, image_id: str) -> Optional[str]:
	row = (
		db.query(Species.english_name)
		.join(Image, Image.species_id == Species.id)
		.filter(Image.id == image_id)
		.first()
	)
	return row[0] if row else None


def store_generated_items(db: Session, job: AIAnnotation, annotations: List[Dict[str, Any]]) -> List[AIAnnotationItem]:
	"""Insert items for a job and move it to ``pending``. Caller commits."""
	species = species_name_for_image(db, job.image_id)
	items: List[AIAnnotationItem] = []
	for ann in annotations:
		box = ann["boundingBox"]
		adjustments = get_positioning_adjustments(db, species, ann["spanishTerm"])
		if adjustments:
			box = apply_adjustments(box, adjustments)
		item = AIAnnotationItem(
			job_id=job.job_id,
			image_id=job.image_id,
			spanish_term=ann["spanishTerm"],
			english_term=ann["englishTerm"],
			bounding_box=box,
			annotation_type=ann["type"],
			difficulty_level=ann["difficultyLevel"],
			pronunciation=ann.get("pronunciation"),
			confidence=ann.get("confidence", vision_client.DEFAULT_CONFIDENCE),
			status="pending",
		)
		db.add(item)
		items.append(item)
	job.annotation_data = annotations
	job.status = "pending"
	job.confidence_score = (sum(a.get("confidence", 0) for a in annotations) / len(annotations)) if annotations else 0.0
	return items


def _mark_failed(job_id: str, message: str) -> None:
	db = SessionLocal()
	try:
		job = db.query(AIAnnotation).filter(AIAnnotation.job_id == job_id).first()
		if job is not None and job.status == "processing":
			job.status = "failed"
			job.error_message = message
			db.commit()
	finally:
		db.close()


async def _generate_and_store(job_id: str, image_url: str) -> None:
	client = vision_client.VisionClient()
	try:
		annotations = await generate_with_retry(client, image_url)
	finally:
		await client.aclose()
	db = SessionLocal()
	try:
		job = db.query(AIAnnotation).filter(AIAnnotation.job_id == job_id).first()
		if job is None or job.status != "processing":
			return
		items = store_generated_items(db, job, annotations)
		db.commit()
		logger.info("Job %s produced %s annotation items", job_id, len(items))
	finally:
		db.close()


async def run_generation_job(job_id: str, image_url: str, timeout: float = JOB_TIMEOUT_SECONDS) -> None:
	try:
		await asyncio.wait_for(_generate_and_store(job_id, image_url), timeout=timeout)
	except asyncio.TimeoutError:
		logger.error("Job %s timed out after %ss", job_id, timeout)
		_mark_failed(job_id, "Job timed out")
	except Exception as e:
		logger.exception("Job %s failed", job_id)
		_mark_failed(job_id, str(e))
