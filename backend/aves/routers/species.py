from __future__ import annotations
import logging
from collections import Counter
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import Field
from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from ..db import get_db
from ..models import Annotation, Image, Species
from ..schemas import CamelModel

router = APIRouter(prefix="/api/species", tags=["species"])

logger = logging.getLogger(__name__)

SEARCH_LIMIT = 20


class SpeciesCreate(CamelModel):
	scientific_name: str = Field(min_length=1, max_length=255)
	spanish_name: str = Field(min_length=1, max_length=255)
	english_name: str = Field(min_length=1, max_length=255)
	order_name: str = Field(min_length=1, max_length=100)
	family_name: str = Field(min_length=1, max_length=100)
	genus: Optional[str] = None
	size_category: Optional[str] = Field(default=None, pattern="^(small|medium|large)$")
	primary_colors: List[str] = Field(default_factory=list)
	habitats: List[str] = Field(default_factory=list)
	conservation_status: str = "LC"
	description_spanish: Optional[str] = None
	description_english: Optional[str] = None
	fun_fact: Optional[str] = None


def species_payload(s: Species) -> Dict[str, Any]:
	return {
		"id": s.id,
		"scientificName": s.scientific_name,
		"spanishName": s.spanish_name,
		"englishName": s.english_name,
		"orderName": s.order_name,
		"familyName": s.family_name,
		"genus": s.genus,
		"sizeCategory": s.size_category,
		"primaryColors": s.primary_colors or [],
		"habitats": s.habitats or [],
		"conservationStatus": s.conservation_status,
		"descriptionSpanish": s.description_spanish,
		"descriptionEnglish": s.description_english,
		"funFact": s.fun_fact,
	}


@router.get("")
def list_species(db: Session = Depends(get_db)):
	rows = (
		db.query(Species, func.count(Image.id))
		.outerjoin(Image, Image.species_id == Species.id)
		.group_by(Species.id)
		.order_by(Species.spanish_name.asc())
		.all()
	)
	return {"species": [{**species_payload(s), "annotationCount": count} for s, count in rows]}


@router.get("/search")
def search_species(q: Optional[str] = None, db: Session = Depends(get_db)):
	term = (q or "").strip().lower()
	if not term:
		return {"results": []}
	escaped = term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
	pattern = f"%{escaped}%"
	rows = (
		db.query(Species)
		.filter(
			or_(
				func.lower(Species.spanish_name).like(pattern, escape="\\"),
				func.lower(Species.english_name).like(pattern, escape="\\"),
				func.lower(Species.scientific_name).like(pattern, escape="\\"),
			)
		)
		.all()
	)

	def rank(s: Species) -> tuple:
		if term in s.spanish_name.lower():
			group = 1
		elif term in s.english_name.lower():
			group = 2
		else:
			group = 3
		return (group, s.spanish_name)

	results = sorted(rows, key=rank)[:SEARCH_LIMIT]
	return {
		"results": [
			{
				"id": s.id,
				"scientificName": s.scientific_name,
				"spanishName": s.spanish_name,
				"englishName": s.english_name,
				"orderName": s.order_name,
				"familyName": s.family_name,
				"sizeCategory": s.size_category,
			}
			for s in results
		]
	}


@router.get("/stats")
def species_stats(db: Session = Depends(get_db)):
	species = db.query(Species).all()
	total_images = db.query(func.count(Image.id)).scalar() or 0
	total_annotations = db.query(func.count(Annotation.id)).scalar() or 0
	by_order = Counter(s.order_name for s in species)
	by_habitat = Counter(h for s in species for h in (s.habitats or []))
	by_size = Counter(s.size_category for s in species if s.size_category)
	return {
		"totalSpecies": len(species),
		"totalImages": total_images,
		"totalAnnotations": total_annotations,
		"byOrder": dict(by_order.most_common()),
		"byHabitat": dict(by_habitat.most_common()),
		"bySize": dict(by_size),
	}


@router.get("/{species_id}")
def get_species(species_id: str, db: Session = Depends(get_db)):
	s = db.get(Species, species_id)
	if s is None:
		raise HTTPException(status_code=404, detail="Species not found")
	images = (
		db.query(Image, func.count(Annotation.id))
		.outerjoin(Annotation, Annotation.image_id == Image.id)
		.filter(Image.species_id == species_id)
		.group_by(Image.id)
		.all()
	)
	return {
		**species_payload(s),
		"images": [{"id": i.id, "url": i.url, "annotationCount": count} for i, count in images],
	}


@router.post("", status_code=201)
def create_species(req: SpeciesCreate, db: Session = Depends(get_db)):
	existing = db.query(Species.id).filter(Species.scientific_name == req.scientific_name).first()
	if existing:
		raise HTTPException(status_code=409, detail="Species already exists")
	row = Species(**req.model_dump())
	db.add(row)
	db.commit()
	db.refresh(row)
	logger.info("Created species %s (%s)", row.id, row.scientific_name)
	return {"species": species_payload(row)}
