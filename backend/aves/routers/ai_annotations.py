from __future__ import annotations
import logging
import re
from collections import Counter
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import Field, model_validator
from sqlalchemy import func
from sqlalchemy.orm import Session

from .. import annotation_pipeline, feedback, jobs, vision_client
from ..bbox import BoundingBox, bbox_area, normalize_bounding_box
from ..db import get_db
from ..models import AIAnnotation, AIAnnotationItem, AIAnnotationReview, Annotation, Image, Species
from ..ratelimit import enforce_ai_rate_limit
from ..schemas import CamelModel, iso
from .auth import User, get_optional_user, optional_admin

router = APIRouter(
	prefix="/api/ai/annotations",
	tags=["ai-annotations"],
	dependencies=[Depends(enforce_ai_rate_limit)],
)

logger = logging.getLogger(__name__)

PENDING_DEFAULT_LIMIT = 50
PENDING_MAX_LIMIT = 100
TOO_SMALL_AREA = 0.02
LOW_CONFIDENCE = 0.70
_NOTE_CATEGORY = re.compile(r"^\[([A-Z_]+)\]")

AnnotationType = Literal["anatomical", "behavioral", "color", "pattern"]


class GenerateRequest(CamelModel):
	image_url: str = Field(min_length=1)


class ApproveRequest(CamelModel):
	notes: Optional[str] = None


class RejectRequest(CamelModel):
	category: Optional[str] = None
	reason: Optional[str] = None
	notes: Optional[str] = None

	@model_validator(mode="after")
	def _require_something(self):
		if not (self.category or self.reason or self.notes):
			raise ValueError("At least one of category, reason or notes is required")
		return self


class ItemUpdate(CamelModel):
	spanish_term: Optional[str] = Field(default=None, min_length=1, max_length=200)
	english_term: Optional[str] = Field(default=None, min_length=1, max_length=200)
	bounding_box: Optional[BoundingBox] = None
	type: Optional[AnnotationType] = None
	difficulty_level: Optional[int] = Field(default=None, ge=1, le=5)
	pronunciation: Optional[str] = Field(default=None, max_length=200)


class EditRequest(ItemUpdate):
	notes: Optional[str] = None


class BulkApproveRequest(CamelModel):
	job_ids: List[str] = Field(min_length=1, max_length=50)
	notes: Optional[str] = None


# request field -> item column
_ITEM_FIELDS = {
	"spanish_term": "spanish_term",
	"english_term": "english_term",
	"bounding_box": "bounding_box",
	"type": "annotation_type",
	"difficulty_level": "difficulty_level",
	"pronunciation": "pronunciation",
}


def item_payload(item: AIAnnotationItem) -> Dict[str, Any]:
	return {
		"id": item.id,
		"jobId": item.job_id,
		"imageId": item.image_id,
		"spanishTerm": item.spanish_term,
		"englishTerm": item.english_term,
		"boundingBox": normalize_bounding_box(item.bounding_box),
		"type": item.annotation_type,
		"difficultyLevel": item.difficulty_level,
		"pronunciation": item.pronunciation,
		"confidence": item.confidence,
		"status": item.status,
		"approvedAnnotationId": item.approved_annotation_id,
		"createdAt": iso(item.created_at),
	}


def job_payload(job: AIAnnotation) -> Dict[str, Any]:
	return {
		"jobId": job.job_id,
		"imageId": job.image_id,
		"status": job.status,
		"confidenceScore": job.confidence_score,
		"errorMessage": job.error_message,
		"reviewedBy": job.reviewed_by,
		"reviewedAt": iso(job.reviewed_at),
		"createdAt": iso(job.created_at),
		"updatedAt": iso(job.updated_at),
	}


def promote_item(db: Session, item: AIAnnotationItem, values: Optional[Dict[str, Any]] = None) -> Annotation:
	"""Copy a reviewed item into the public annotations table. Caller commits."""
	values = values or {}
	box = values.get("bounding_box", item.bounding_box)
	ann = Annotation(
		image_id=item.image_id,
		bounding_box=normalize_bounding_box(box),
		annotation_type=values.get("annotation_type", item.annotation_type),
		spanish_term=values.get("spanish_term", item.spanish_term),
		english_term=values.get("english_term", item.english_term),
		pronunciation=values.get("pronunciation", item.pronunciation),
		difficulty_level=values.get("difficulty_level", item.difficulty_level),
		is_visible=True,
	)
	db.add(ann)
	db.flush()
	image = db.get(Image, item.image_id)
	if image is not None:
		image.annotation_count = (image.annotation_count or 0) + 1
	return ann


def _pending_item(db: Session, item_id: str) -> AIAnnotationItem:
	item = (
		db.query(AIAnnotationItem)
		.filter(AIAnnotationItem.id == item_id, AIAnnotationItem.status == "pending")
		.first()
	)
	if item is None:
		raise HTTPException(status_code=404, detail="Annotation not found or already reviewed")
	return item


def _review(db: Session, job_id: str, user: User, action: str, notes: Optional[str], affected: int = 1) -> None:
	db.add(AIAnnotationReview(job_id=job_id, reviewer_id=user.user_id, action=action, affected_items=affected, notes=notes))


@router.post("/generate/{image_id}", status_code=202)
async def generate(image_id: str, req: GenerateRequest, user: User = Depends(get_optional_user), db: Session = Depends(get_db)):
	if not vision_client.vision_configured():
		raise HTTPException(status_code=503, detail="Vision AI service is not configured")
	if db.get(Image, image_id) is None:
		raise HTTPException(status_code=404, detail="Image not found")
	job_id = jobs.generate_job_id("job")
	db.add(AIAnnotation(job_id=job_id, image_id=image_id, status="processing"))
	db.commit()
	logger.info("AI annotation job %s started for image %s by %s", job_id, image_id, user.user_id)
	jobs.spawn(annotation_pipeline.run_generation_job(job_id, req.image_url))
	return {
		"jobId": job_id,
		"status": "processing",
		"imageId": image_id,
		"message": "Annotation generation started. Check status with GET /api/ai/annotations/{jobId}",
	}


@router.get("/pending")
def list_pending(
	limit: int = Query(default=PENDING_DEFAULT_LIMIT, ge=1),
	offset: int = Query(default=0, ge=0),
	status: str = "pending",
	user: User = Depends(optional_admin),
	db: Session = Depends(get_db),
):
	limit = min(limit, PENDING_MAX_LIMIT)
	query = db.query(AIAnnotationItem).filter(AIAnnotationItem.status == status)
	total = query.count()
	rows = query.order_by(AIAnnotationItem.created_at.desc()).offset(offset).limit(limit).all()
	return {
		"annotations": [item_payload(i) for i in rows],
		"total": total,
		"limit": limit,
		"offset": offset,
		"status": status,
	}


@router.get("/stats")
def stats(user: User = Depends(optional_admin), db: Session = Depends(get_db)):
	data: Dict[str, Any] = {"total": 0, "pending": 0, "approved": 0, "rejected": 0, "edited": 0}
	for status, count in db.query(AIAnnotationItem.status, func.count(AIAnnotationItem.id)).group_by(AIAnnotationItem.status).all():
		data[status] = count
		data["total"] += count
	avg_conf = db.query(func.avg(AIAnnotationItem.confidence)).scalar()
	data["avgConfidence"] = round(float(avg_conf), 2) if avg_conf is not None else 0
	reviews = db.query(AIAnnotationReview).order_by(AIAnnotationReview.created_at.desc()).limit(10).all()
	data["recentActivity"] = [
		{
			"action": r.action,
			"affectedItems": r.affected_items,
			"reviewerId": r.reviewer_id,
			"createdAt": iso(r.created_at),
		}
		for r in reviews
	]
	return {"data": data}


@router.get("/analytics")
def analytics(user: User = Depends(optional_admin), db: Session = Depends(get_db)):
	items = db.query(AIAnnotationItem).all()
	status_counts = Counter(i.status for i in items)
	confidences = [i.confidence for i in items if i.confidence is not None]
	overview = {
		"total": len(items),
		"pending": status_counts.get("pending", 0),
		"approved": status_counts.get("approved", 0),
		"rejected": status_counts.get("rejected", 0),
		"edited": status_counts.get("edited", 0),
		"avgConfidence": f"{(sum(confidences) / len(confidences)) if confidences else 0:.2f}",
	}
	species_rows = (
		db.query(Species.english_name, func.count(AIAnnotationItem.id))
		.join(Image, Image.species_id == Species.id)
		.join(AIAnnotationItem, AIAnnotationItem.image_id == Image.id)
		.group_by(Species.english_name)
		.all()
	)
	by_species = dict(sorted(((name, count) for name, count in species_rows if name), key=lambda kv: -kv[1]))
	by_type = dict(Counter(i.annotation_type for i in items if i.annotation_type).most_common())

	rejections: Counter = Counter()
	for (notes,) in db.query(AIAnnotationReview.notes).filter(AIAnnotationReview.action == "reject", AIAnnotationReview.notes.isnot(None)):
		match = _NOTE_CATEGORY.match(notes)
		if match:
			rejections[match.group(1)] += 1

	pending = [i for i in items if i.status == "pending"]
	too_small = sum(1 for i in pending if bbox_area(i.bounding_box) < TOO_SMALL_AREA)
	low_confidence = sum(1 for i in pending if i.confidence is not None and i.confidence < LOW_CONFIDENCE)
	return {
		"overview": overview,
		"bySpecies": by_species,
		"byType": by_type,
		"rejectionsByCategory": dict(rejections),
		"qualityFlags": {"tooSmall": too_small, "lowConfidence": low_confidence},
	}


@router.post("/batch/approve")
def bulk_approve(req: BulkApproveRequest, user: User = Depends(optional_admin), db: Session = Depends(get_db)):
	approved = 0
	failed = 0
	details: List[Dict[str, Any]] = []
	for job_id in req.job_ids:
		try:
			job = db.query(AIAnnotation).filter(AIAnnotation.job_id == job_id).first()
			if job is None:
				failed += 1
				details.append({"jobId": job_id, "success": False, "error": "Job not found"})
				continue
			items = (
				db.query(AIAnnotationItem)
				.filter(AIAnnotationItem.job_id == job_id, AIAnnotationItem.status == "pending")
				.all()
			)
			for item in items:
				ann = promote_item(db, item)
				item.status = "approved"
				item.approved_annotation_id = ann.id
			job.status = "approved"
			job.reviewed_by = user.user_id
			job.reviewed_at = datetime.utcnow()
			_review(db, job_id, user, "bulk_approve", req.notes, affected=len(items))
			db.commit()
			approved += len(items)
			details.append({"jobId": job_id, "success": True, "itemsApproved": len(items)})
		except Exception as e:
			db.rollback()
			logger.exception("Bulk approve failed for job %s", job_id)
			failed += 1
			details.append({"jobId": job_id, "success": False, "error": str(e)})
	logger.info("Bulk approve by %s: %s items approved, %s jobs failed", user.user_id, approved, failed)
	return {
		"message": f"Bulk approval completed: {approved} annotations approved, {failed} jobs failed",
		"approved": approved,
		"failed": failed,
		"details": details,
	}


@router.get("/{job_id}")
def get_job(job_id: str, db: Session = Depends(get_db)):
	job = db.query(AIAnnotation).filter(AIAnnotation.job_id == job_id).first()
	if job is None:
		raise HTTPException(status_code=404, detail="Job not found")
	items = (
		db.query(AIAnnotationItem)
		.filter(AIAnnotationItem.job_id == job_id)
		.order_by(AIAnnotationItem.confidence.desc())
		.all()
	)
	return {**job_payload(job), "annotations": [item_payload(i) for i in items]}


@router.post("/{item_id}/approve")
def approve_item(item_id: str, req: Optional[ApproveRequest] = None, user: User = Depends(optional_admin), db: Session = Depends(get_db)):
	notes = req.notes if req else None
	item = _pending_item(db, item_id)
	try:
		ann = promote_item(db, item)
		item.status = "approved"
		item.approved_annotation_id = ann.id
		_review(db, item.job_id, user, "approve", notes)
		species = annotation_pipeline.species_name_for_image(db, item.image_id)
		feedback.record_approval(db, item, species)
		db.commit()
	except Exception:
		db.rollback()
		raise
	logger.info("AI annotation %s approved as %s by %s", item_id, ann.id, user.user_id)
	return {"message": "Annotation approved successfully", "annotationId": item_id, "approvedAnnotationId": ann.id}


@router.post("/{item_id}/reject")
def reject_item(item_id: str, req: RejectRequest, user: User = Depends(optional_admin), db: Session = Depends(get_db)):
	item = _pending_item(db, item_id)
	text = req.notes or req.reason or ""
	if req.category:
		notes = f"[{req.category.upper()}] {text}".strip()
	else:
		notes = text
	try:
		item.status = "rejected"
		_review(db, item.job_id, user, "reject", notes)
		species = annotation_pipeline.species_name_for_image(db, item.image_id)
		category = feedback.record_rejection(db, item, species, notes, user.user_id)
		db.commit()
	except Exception:
		db.rollback()
		raise
	logger.info("AI annotation %s rejected (%s) by %s", item_id, category, user.user_id)
	return {"message": "Annotation rejected", "annotationId": item_id, "category": category}


@router.patch("/{item_id}")
def update_item(item_id: str, req: ItemUpdate, user: User = Depends(optional_admin), db: Session = Depends(get_db)):
	changes = req.model_dump(exclude_unset=True, exclude_none=True)
	if not changes:
		raise HTTPException(status_code=400, detail="No fields to update")
	item = _pending_item(db, item_id)
	for field, value in changes.items():
		setattr(item, _ITEM_FIELDS[field], value)
	db.commit()
	db.refresh(item)
	return {"message": "Annotation updated", "annotation": item_payload(item)}


@router.post("/{item_id}/edit")
def edit_item(item_id: str, req: EditRequest, user: User = Depends(optional_admin), db: Session = Depends(get_db)):
	item = _pending_item(db, item_id)
	changes = req.model_dump(exclude_unset=True, exclude_none=True)
	notes = changes.pop("notes", None)
	values = {_ITEM_FIELDS[k]: v for k, v in changes.items()}
	original_box = normalize_bounding_box(item.bounding_box)
	new_box = values.get("bounding_box")
	try:
		ann = promote_item(db, item, values)
		item.status = "edited"
		item.approved_annotation_id = ann.id
		_review(db, item.job_id, user, "edit", notes)
		if new_box is not None and new_box != original_box:
			species = annotation_pipeline.species_name_for_image(db, item.image_id)
			feedback.record_position_fix(db, item, species, original_box, new_box, user.user_id)
		db.commit()
	except Exception:
		db.rollback()
		raise
	logger.info("AI annotation %s edited and approved as %s", item_id, ann.id)
	return {"message": "Annotation edited and approved successfully", "annotationId": item_id, "approvedAnnotationId": ann.id}
