from __future__ import annotations
import logging
from typing import Any, Dict, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import Field
from sqlalchemy.orm import Session

from ..bbox import BoundingBox, normalize_bounding_box
from ..db import get_db
from ..models import Annotation, AnnotationInteraction, Image
from ..schemas import CamelModel, iso

router = APIRouter(prefix="/api/annotations", tags=["annotations"])

logger = logging.getLogger(__name__)

AnnotationType = Literal["anatomical", "behavioral", "color", "pattern"]


class AnnotationCreate(CamelModel):
	image_id: str
	bounding_box: BoundingBox
	type: AnnotationType
	spanish_term: str = Field(min_length=1, max_length=200)
	english_term: str = Field(min_length=1, max_length=200)
	pronunciation: Optional[str] = Field(default=None, max_length=200)
	difficulty_level: int = Field(default=1, ge=1, le=5)


class AnnotationUpdate(CamelModel):
	bounding_box: Optional[BoundingBox] = None
	type: Optional[AnnotationType] = None
	spanish_term: Optional[str] = Field(default=None, min_length=1, max_length=200)
	english_term: Optional[str] = Field(default=None, min_length=1, max_length=200)
	pronunciation: Optional[str] = Field(default=None, max_length=200)
	difficulty_level: Optional[int] = Field(default=None, ge=1, le=5)
	is_visible: Optional[bool] = None


class InteractionRequest(CamelModel):
	interaction_type: Literal["hover", "click", "reveal"]
	revealed: bool = False
	user_id: Optional[str] = None


# request field -> column
_UPDATABLE = {
	"bounding_box": "bounding_box",
	"type": "annotation_type",
	"spanish_term": "spanish_term",
	"english_term": "english_term",
	"pronunciation": "pronunciation",
	"difficulty_level": "difficulty_level",
	"is_visible": "is_visible",
}


def annotation_payload(a: Annotation) -> Dict[str, Any]:
	return {
		"id": a.id,
		"imageId": a.image_id,
		"boundingBox": normalize_bounding_box(a.bounding_box),
		"type": a.annotation_type,
		"spanishTerm": a.spanish_term,
		"englishTerm": a.english_term,
		"pronunciation": a.pronunciation,
		"difficultyLevel": a.difficulty_level,
		"isVisible": a.is_visible,
		"createdAt": iso(a.created_at),
		"updatedAt": iso(a.updated_at),
	}


@router.get("")
def list_annotations(imageId: Optional[str] = None, db: Session = Depends(get_db)):
	query = db.query(Annotation).filter(Annotation.is_visible.is_(True))
	if imageId:
		query = query.filter(Annotation.image_id == imageId)
	rows = query.order_by(Annotation.created_at.asc()).all()
	return {"data": [annotation_payload(a) for a in rows]}


@router.get("/{image_id}")
def annotations_for_image(image_id: str, db: Session = Depends(get_db)):
	rows = (
		db.query(Annotation)
		.filter(Annotation.image_id == image_id, Annotation.is_visible.is_(True))
		.order_by(Annotation.created_at.asc())
		.all()
	)
	return {"annotations": [annotation_payload(a) for a in rows]}


@router.post("", status_code=201)
def create_annotation(req: AnnotationCreate, db: Session = Depends(get_db)):
	image = db.get(Image, req.image_id)
	if image is None:
		raise HTTPException(status_code=404, detail="Image not found")
	row = Annotation(
		image_id=req.image_id,
		bounding_box=req.bounding_box.model_dump(),
		annotation_type=req.type,
		spanish_term=req.spanish_term,
		english_term=req.english_term,
		pronunciation=req.pronunciation,
		difficulty_level=req.difficulty_level,
		is_visible=True,
	)
	db.add(row)
	image.annotation_count = (image.annotation_count or 0) + 1
	db.commit()
	db.refresh(row)
	logger.info("Created annotation %s on image %s", row.id, row.image_id)
	return {"annotation": annotation_payload(row)}


@router.put("/{annotation_id}")
def update_annotation(annotation_id: str, req: AnnotationUpdate, db: Session = Depends(get_db)):
	changes = req.model_dump(exclude_unset=True, exclude_none=True)
	if not changes:
		raise HTTPException(status_code=400, detail="No valid fields to update")
	row = db.get(Annotation, annotation_id)
	if row is None:
		raise HTTPException(status_code=404, detail="Annotation not found")
	for field, value in changes.items():
		setattr(row, _UPDATABLE[field], value)
	db.commit()
	db.refresh(row)
	return {"annotation": annotation_payload(row)}


@router.delete("/{annotation_id}")
def delete_annotation(annotation_id: str, db: Session = Depends(get_db)):
	row = db.get(Annotation, annotation_id)
	if row is None:
		raise HTTPException(status_code=404, detail="Annotation not found")
	image = db.get(Image, row.image_id)
	if image is not None and image.annotation_count:
		image.annotation_count -= 1
	db.delete(row)
	db.commit()
	return {"message": "Annotation deleted successfully", "id": annotation_id}


@router.post("/{annotation_id}/interaction", status_code=201)
def record_interaction(annotation_id: str, req: InteractionRequest, db: Session = Depends(get_db)):
	if db.get(Annotation, annotation_id) is None:
		raise HTTPException(status_code=404, detail="Annotation not found")
	row = AnnotationInteraction(
		annotation_id=annotation_id,
		user_id=req.user_id,
		interaction_type=req.interaction_type,
		revealed=req.revealed,
	)
	db.add(row)
	db.commit()
	db.refresh(row)
	return {"message": "Interaction recorded", "interactionId": row.id, "timestamp": iso(row.timestamp)}
