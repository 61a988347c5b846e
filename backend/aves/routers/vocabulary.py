from __future__ import annotations
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import Field
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..db import get_db
from ..models import Annotation, LearningEvent, VocabularyEnrichment, VocabularyMastery
from ..schemas import CamelModel, iso
from ..spaced_repetition import DEFAULT_EASE_FACTOR, calculate_next_review

router = APIRouter(prefix="/api/vocabulary", tags=["vocabulary"])

logger = logging.getLogger(__name__)

REVIEW_QUEUE_LIMIT = 20
RELATED_TERMS_LIMIT = 3


class LearningEventRequest(CamelModel):
	user_id: Optional[str] = None
	annotation_id: Optional[str] = None
	event_type: str = Field(min_length=1, max_length=32)
	disclosure_level: Optional[int] = Field(default=None, ge=0, le=4)
	interaction_duration: Optional[int] = Field(default=None, ge=0)
	correct_response: Optional[bool] = None
	metadata: Optional[Dict[str, Any]] = None


class VocabularyReviewRequest(CamelModel):
	user_id: str = Field(min_length=1)
	annotation_id: str = Field(min_length=1)
	quality: int = Field(ge=0, le=5)


def enrichment_payload(row: VocabularyEnrichment) -> Dict[str, Any]:
	return {
		"spanishTerm": row.spanish_term,
		"etymology": row.etymology,
		"mnemonic": row.mnemonic,
		"relatedTerms": row.related_terms or [],
		"commonPhrases": row.common_phrases or [],
		"usageExamples": row.usage_examples or [],
	}


def generate_enrichment(db: Session, term: str) -> Dict[str, Any]:
	"""Build learning aids for a term from the annotations that use it."""
	source = db.query(Annotation).filter(Annotation.spanish_term == term).first()
	english = source.english_term if source else None
	related = []
	if source is not None:
		siblings = (
			db.query(Annotation.spanish_term, Annotation.english_term)
			.filter(Annotation.annotation_type == source.annotation_type, Annotation.spanish_term != term)
			.distinct()
			.limit(RELATED_TERMS_LIMIT)
			.all()
		)
		related = [
			{"term": s, "relationship": source.annotation_type, "definition": e}
			for s, e in siblings
		]
	gloss = f" ({english})" if english else ""
	return {
		"etymology": f'The word "{term}"{gloss} comes to Spanish through Latin roots.',
		"mnemonic": f'Picture the bird while saying "{term}" out loud{gloss}.',
		"relatedTerms": related,
		"commonPhrases": [
			{"spanish": f"{term} del pájaro", "english": f"the bird's {english or term}", "literal": f"{term} of the bird"},
		],
		"usageExamples": [
			f"Mira {term}.",
			f"¿Dónde está {term}?",
		],
	}


def mastery_payload(row: Optional[VocabularyMastery]) -> Dict[str, Any]:
	if row is None:
		return {
			"disclosureLevel": 0,
			"viewCount": 0,
			"totalTimeSpent": 0,
			"masteryScore": 0,
			"nextReviewDate": None,
			"reviewInterval": 1,
			"easeFactor": DEFAULT_EASE_FACTOR,
			"repetitionNumber": 0,
		}
	return {
		"disclosureLevel": row.disclosure_level,
		"viewCount": row.view_count,
		"totalTimeSpent": row.total_time_spent,
		"masteryScore": row.mastery_score,
		"nextReviewDate": iso(row.next_review_date),
		"reviewInterval": row.review_interval,
		"easeFactor": round(row.ease_factor, 4),
		"repetitionNumber": row.repetition_number,
	}


@router.get("/enrichment/{term}")
def enrichment(term: str, db: Session = Depends(get_db)):
	row = db.query(VocabularyEnrichment).filter(VocabularyEnrichment.spanish_term == term).first()
	if row is not None:
		return enrichment_payload(row)
	data = generate_enrichment(db, term)
	row = VocabularyEnrichment(
		spanish_term=term,
		etymology=data["etymology"],
		mnemonic=data["mnemonic"],
		related_terms=data["relatedTerms"],
		common_phrases=data["commonPhrases"],
		usage_examples=data["usageExamples"],
	)
	db.add(row)
	try:
		db.commit()
	except IntegrityError:
		# Another request stored the term first.
		db.rollback()
		row = db.query(VocabularyEnrichment).filter(VocabularyEnrichment.spanish_term == term).one()
		row.etymology = data["etymology"]
		row.mnemonic = data["mnemonic"]
		row.related_terms = data["relatedTerms"]
		row.common_phrases = data["commonPhrases"]
		row.usage_examples = data["usageExamples"]
		db.commit()
	logger.info("Generated vocabulary enrichment for %r", term)
	return {"spanishTerm": term, **data}


@router.post("/learning-event", status_code=201)
def learning_event(req: LearningEventRequest, db: Session = Depends(get_db)):
	row = LearningEvent(
		user_id=req.user_id,
		annotation_id=req.annotation_id,
		event_type=req.event_type,
		disclosure_level=req.disclosure_level,
		interaction_duration=req.interaction_duration,
		correct_response=req.correct_response,
		metadata_json=req.metadata,
	)
	db.add(row)
	db.commit()
	db.refresh(row)
	return {"eventId": row.id, "timestamp": iso(row.created_at)}


@router.get("/mastery/{user_id}/{annotation_id}")
def mastery(user_id: str, annotation_id: str, db: Session = Depends(get_db)):
	row = (
		db.query(VocabularyMastery)
		.filter(VocabularyMastery.user_id == user_id, VocabularyMastery.annotation_id == annotation_id)
		.first()
	)
	return mastery_payload(row)


@router.post("/review")
def review(req: VocabularyReviewRequest, db: Session = Depends(get_db)):
	annotation = db.get(Annotation, req.annotation_id)
	if annotation is None:
		raise HTTPException(status_code=404, detail="Annotation not found")
	now = datetime.utcnow()
	row = (
		db.query(VocabularyMastery)
		.filter(VocabularyMastery.user_id == req.user_id, VocabularyMastery.annotation_id == req.annotation_id)
		.first()
	)
	if row is None:
		row = VocabularyMastery(
			user_id=req.user_id,
			annotation_id=req.annotation_id,
			spanish_term=annotation.spanish_term,
			ease_factor=DEFAULT_EASE_FACTOR,
			review_interval=1,
			repetition_number=0,
		)
		db.add(row)
	outcome = calculate_next_review(req.quality, row.review_interval, row.ease_factor, row.repetition_number, now=now)
	row.ease_factor = outcome.ease_factor
	row.review_interval = outcome.interval_days
	row.repetition_number = outcome.repetitions
	row.next_review_date = outcome.next_review_at
	db.add(LearningEvent(
		user_id=req.user_id,
		annotation_id=req.annotation_id,
		event_type="review",
		correct_response=req.quality >= 3,
	))
	db.commit()
	return {
		"success": True,
		"nextReviewDate": iso(outcome.next_review_at),
		"interval": outcome.interval_days,
		"easeFactor": round(outcome.ease_factor, 4),
		"repetition": outcome.repetitions,
	}


@router.get("/review-queue/{user_id}")
def review_queue(user_id: str, db: Session = Depends(get_db)):
	rows = (
		db.query(VocabularyMastery, Annotation)
		.join(Annotation, Annotation.id == VocabularyMastery.annotation_id)
		.filter(VocabularyMastery.user_id == user_id, VocabularyMastery.next_review_date <= datetime.utcnow())
		.order_by(VocabularyMastery.next_review_date.asc())
		.limit(REVIEW_QUEUE_LIMIT)
		.all()
	)
	queue = [
		{
			"annotationId": m.annotation_id,
			"spanishTerm": m.spanish_term,
			"englishTerm": a.english_term,
			"nextReviewDate": iso(m.next_review_date),
			"interval": m.review_interval,
			"repetition": m.repetition_number,
		}
		for m, a in rows
	]
	return {"queue": queue, "count": len(queue)}
