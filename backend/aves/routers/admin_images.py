from __future__ import annotations
import logging
import math
from typing import Any, Dict, List, Literal, Optional

import anthropic
import httpx
from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse
from pydantic import Field
from sqlalchemy import func
from sqlalchemy.orm import Session

from .. import image_jobs, jobs, unsplash_client, vision_client
from ..db import get_db
from ..models import AIAnnotation, AIAnnotationItem, Annotation, Image, Species
from ..schemas import CamelModel, iso
from ..settings import settings
from .ai_annotations import item_payload, job_payload
from .annotations import annotation_payload
from .auth import User, optional_admin

router = APIRouter(prefix="/api/admin/images", tags=["admin-images"])

logger = logging.getLogger(__name__)

PENDING_LIMIT = 100
HIGH_QUALITY = 80


class CollectRequest(CamelModel):
	species_ids: Optional[List[str]] = None
	count: int = Field(default=2, ge=1, le=10)


class AnnotateRequest(CamelModel):
	image_ids: Optional[List[str]] = None
	all: bool = False


class BulkDeleteRequest(CamelModel):
	image_ids: List[str] = Field(min_length=1, max_length=100)


def image_payload(image: Image, species: Optional[Species] = None) -> Dict[str, Any]:
	data = {
		"id": image.id,
		"speciesId": image.species_id,
		"unsplashId": image.unsplash_id,
		"url": image.url,
		"width": image.width,
		"height": image.height,
		"color": image.color,
		"description": image.description,
		"photographer": image.photographer,
		"photographerUsername": image.photographer_username,
		"annotationCount": image.annotation_count,
		"qualityScore": image.quality_score,
		"createdAt": iso(image.created_at),
	}
	if species is not None:
		data["speciesName"] = species.english_name
		data["spanishName"] = species.spanish_name
	return data


def _delete_image(db: Session, image: Image) -> None:
	"""Remove an image and everything hanging off it. Caller commits."""
	db.query(AIAnnotationItem).filter(AIAnnotationItem.image_id == image.id).delete(synchronize_session=False)
	db.query(AIAnnotation).filter(AIAnnotation.image_id == image.id).delete(synchronize_session=False)
	db.query(Annotation).filter(Annotation.image_id == image.id).delete(synchronize_session=False)
	db.delete(image)


@router.post("/collect", status_code=202)
async def collect(req: CollectRequest, user: User = Depends(optional_admin), db: Session = Depends(get_db)):
	if not unsplash_client.unsplash_configured():
		raise HTTPException(status_code=503, detail="Unsplash API is not configured")
	species_list = image_jobs.select_species(db, req.species_ids)
	if not species_list:
		raise HTTPException(status_code=400, detail="No valid species found")
	job = jobs.job_store.create(
		"collect",
		len(species_list) * req.count,
		metadata={"species": [s["englishName"] for s in species_list], "imagesPerSpecies": req.count, "startedBy": user.user_id},
	)
	jobs.spawn(image_jobs.run_collection(job, species_list, req.count))
	return {
		"jobId": job.job_id,
		"status": job.status,
		"message": f"Collecting images for {len(species_list)} species",
		"totalSpecies": len(species_list),
		"imagesPerSpecies": req.count,
		"estimatedImages": len(species_list) * req.count,
	}


@router.post("/annotate", status_code=202)
async def annotate(req: AnnotateRequest, user: User = Depends(optional_admin), db: Session = Depends(get_db)):
	if not vision_client.vision_configured():
		raise HTTPException(status_code=503, detail="Vision AI service is not configured")
	if not req.image_ids and not req.all:
		raise HTTPException(status_code=400, detail="Provide imageIds or set all to true")
	if req.all:
		annotated = db.query(AIAnnotation.image_id).filter(AIAnnotation.status != "failed")
		image_ids = [row[0] for row in db.query(Image.id).filter(~Image.id.in_(annotated)).order_by(Image.created_at.asc()).all()]
	else:
		image_ids = list(dict.fromkeys(req.image_ids or []))
	if not image_ids:
		return JSONResponse(status_code=200, content={"message": "No images to annotate", "totalImages": 0})
	job = jobs.job_store.create("annotate", len(image_ids), metadata={"startedBy": user.user_id})
	jobs.spawn(image_jobs.run_batch_annotation(job, image_ids))
	return {
		"jobId": job.job_id,
		"status": job.status,
		"totalImages": len(image_ids),
		"message": f"Annotating {len(image_ids)} images",
	}


@router.get("/jobs")
def list_jobs(user: User = Depends(optional_admin)):
	all_jobs = [j.to_dict() for j in jobs.job_store.list()]
	return {"jobs": all_jobs, "count": len(all_jobs)}


@router.get("/jobs/{job_id}")
def get_job(job_id: str, user: User = Depends(optional_admin), db: Session = Depends(get_db)):
	job = jobs.job_store.get(job_id)
	if job is not None:
		return job.to_dict()
	row = db.query(AIAnnotation).filter(AIAnnotation.job_id == job_id).first()
	if row is None:
		raise HTTPException(status_code=404, detail="Job not found")
	return job_payload(row)


@router.post("/jobs/{job_id}/cancel")
def cancel_job(job_id: str, user: User = Depends(optional_admin)):
	try:
		job = jobs.job_store.cancel(job_id)
	except jobs.JobNotFound:
		raise HTTPException(status_code=404, detail="Job not found")
	except jobs.InvalidJobTransition as e:
		raise HTTPException(status_code=400, detail=str(e))
	return {"message": "Job cancelled", "job": job.to_dict()}


@router.get("/stats")
def stats(user: User = Depends(optional_admin), db: Session = Depends(get_db)):
	total_images = db.query(func.count(Image.id)).scalar() or 0
	annotated = db.query(func.count(func.distinct(Annotation.image_id))).scalar() or 0
	job_rows = db.query(AIAnnotation.status, func.count(AIAnnotation.id)).group_by(AIAnnotation.status).all()
	by_species = (
		db.query(Species.english_name, func.count(Image.id))
		.join(Image, Image.species_id == Species.id)
		.group_by(Species.english_name)
		.all()
	)
	running = [j for j in jobs.job_store.list() if j.status in jobs.CANCELLABLE]
	return {
		"images": {
			"total": total_images,
			"annotated": annotated,
			"unannotated": total_images - annotated,
			"bySpecies": {name: count for name, count in by_species},
		},
		"annotations": {
			"total": db.query(func.count(Annotation.id)).scalar() or 0,
			"pendingReview": db.query(func.count(AIAnnotationItem.id)).filter(AIAnnotationItem.status == "pending").scalar() or 0,
		},
		"jobs": {
			"byStatus": {status: count for status, count in job_rows},
			"active": len(running),
			"tracked": len(jobs.job_store.list()),
		},
	}


@router.get("/sources")
async def sources(user: User = Depends(optional_admin)):
	quota: Dict[str, Any] = {"configured": unsplash_client.unsplash_configured()}
	if quota["configured"]:
		client = unsplash_client.UnsplashClient()
		try:
			quota.update(await client.quota_status())
		finally:
			await client.aclose()
	return {
		"unsplash": quota,
		"visionConfigured": vision_client.vision_configured(),
		"defaultSpecies": image_jobs.DEFAULT_BIRD_SPECIES,
	}


@router.get("/pending")
def pending_images(user: User = Depends(optional_admin), db: Session = Depends(get_db)):
	annotated = db.query(AIAnnotation.image_id)
	rows = (
		db.query(Image, Species)
		.join(Species, Species.id == Image.species_id)
		.filter(~Image.id.in_(annotated))
		.order_by(Image.created_at.desc())
		.limit(PENDING_LIMIT)
		.all()
	)
	return {"images": [image_payload(i, s) for i, s in rows], "count": len(rows)}


@router.post("/bulk/delete")
def bulk_delete(req: BulkDeleteRequest, user: User = Depends(optional_admin), db: Session = Depends(get_db)):
	deleted: List[str] = []
	failed: List[Dict[str, str]] = []
	for image_id in req.image_ids:
		image = db.get(Image, image_id)
		if image is None:
			failed.append({"id": image_id, "error": "Image not found"})
			continue
		_delete_image(db, image)
		db.commit()
		deleted.append(image_id)
	logger.info("Bulk delete by %s: %s deleted, %s failed", user.user_id, len(deleted), len(failed))
	return {"deleted": len(deleted), "failed": len(failed), "deletedIds": deleted, "errors": failed}


_SORT_COLUMNS = {
	"createdAt": Image.created_at,
	"speciesName": Species.english_name,
	"annotationCount": Image.annotation_count,
	"qualityScore": Image.quality_score,
}


@router.get("")
def list_images(
	page: int = Query(1, ge=1),
	pageSize: int = Query(20, ge=1, le=100),
	speciesId: Optional[str] = None,
	annotationStatus: Optional[Literal["annotated", "unannotated", "pending"]] = None,
	qualityFilter: Optional[Literal["high", "medium", "low", "unscored"]] = None,
	sortBy: Literal["createdAt", "speciesName", "annotationCount", "qualityScore"] = "createdAt",
	sortOrder: Literal["asc", "desc"] = "desc",
	user: User = Depends(optional_admin),
	db: Session = Depends(get_db),
):
	query = db.query(Image, Species).join(Species, Species.id == Image.species_id)
	if speciesId:
		query = query.filter(Image.species_id == speciesId)
	if annotationStatus == "annotated":
		query = query.filter(Image.annotation_count > 0)
	elif annotationStatus == "unannotated":
		query = query.filter(Image.annotation_count == 0)
	elif annotationStatus == "pending":
		pending = db.query(AIAnnotationItem.image_id).filter(AIAnnotationItem.status == "pending")
		query = query.filter(Image.id.in_(pending))
	threshold = settings.annotation_quality_threshold
	if qualityFilter == "high":
		query = query.filter(Image.quality_score >= HIGH_QUALITY)
	elif qualityFilter == "medium":
		query = query.filter(Image.quality_score >= threshold, Image.quality_score < HIGH_QUALITY)
	elif qualityFilter == "low":
		query = query.filter(Image.quality_score < threshold)
	elif qualityFilter == "unscored":
		query = query.filter(Image.quality_score.is_(None))

	total = query.count()
	column = _SORT_COLUMNS[sortBy]
	order = column.asc() if sortOrder == "asc" else column.desc()
	rows = query.order_by(order, Image.id.asc()).offset((page - 1) * pageSize).limit(pageSize).all()
	return {
		"data": {
			"images": [image_payload(i, s) for i, s in rows],
			"pagination": {
				"total": total,
				"page": page,
				"pageSize": pageSize,
				"totalPages": math.ceil(total / pageSize),
			},
		}
	}


@router.get("/{image_id}")
def get_image(image_id: str, user: User = Depends(optional_admin), db: Session = Depends(get_db)):
	image = db.get(Image, image_id)
	if image is None:
		raise HTTPException(status_code=404, detail="Image not found")
	species = db.get(Species, image.species_id)
	annotations = db.query(Annotation).filter(Annotation.image_id == image_id).order_by(Annotation.created_at.asc()).all()
	items = (
		db.query(AIAnnotationItem)
		.filter(AIAnnotationItem.image_id == image_id)
		.order_by(AIAnnotationItem.confidence.desc())
		.all()
	)
	return {
		"image": image_payload(image, species),
		"annotations": [annotation_payload(a) for a in annotations],
		"aiAnnotations": [item_payload(i) for i in items],
	}


@router.delete("/{image_id}")
def delete_image(image_id: str, user: User = Depends(optional_admin), db: Session = Depends(get_db)):
	image = db.get(Image, image_id)
	if image is None:
		raise HTTPException(status_code=404, detail="Image not found")
	_delete_image(db, image)
	db.commit()
	logger.info("Image %s deleted by %s", image_id, user.user_id)
	return {"message": "Image deleted successfully", "id": image_id}


def _low_quality(score: int) -> HTTPException:
	threshold = settings.annotation_quality_threshold
	return HTTPException(status_code=422, detail=f"Image quality score {score} is below the threshold of {threshold}")


@router.post("/{image_id}/annotate", status_code=201)
async def annotate_one(image_id: str, user: User = Depends(optional_admin), db: Session = Depends(get_db)):
	image = db.get(Image, image_id)
	if image is None:
		raise HTTPException(status_code=404, detail="Image not found")
	if image_jobs.below_quality_threshold(image.quality_score):
		raise _low_quality(image.quality_score)
	if not vision_client.vision_configured():
		raise HTTPException(status_code=503, detail="Vision AI service is not configured")
	if image_jobs.has_annotation_job(db, image_id):
		raise HTTPException(status_code=409, detail="Image already has AI annotations")

	client = vision_client.VisionClient()
	try:
		score = await image_jobs.ensure_quality_score(db, client, image)
		if image_jobs.below_quality_threshold(score):
			raise _low_quality(score)
		job = await image_jobs.annotate_image(db, client, image)
	except (anthropic.APIError, httpx.HTTPError, ValueError) as e:
		db.rollback()
		logger.warning("Vision annotation failed for image %s: %s", image_id, e)
		raise HTTPException(status_code=502, detail=f"Vision AI request failed: {e}")
	finally:
		await client.aclose()
	count = len(job.annotation_data or [])
	logger.info("Image %s annotated by %s: %s items in %s", image_id, user.user_id, count, job.job_id)
	return {"jobId": job.job_id, "annotationCount": count}
