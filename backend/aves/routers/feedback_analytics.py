from __future__ import annotations
import logging
import statistics
from collections import Counter, defaultdict
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Literal, Optional, Tuple

from fastapi import APIRouter, Depends
from pydantic import Field
from sqlalchemy.orm import Session

from .. import feedback
from ..db import get_db
from ..models import AIAnnotationItem, AnnotationCorrection, Image, PositioningModel, RejectionPattern, Species
from ..schemas import CamelModel, iso
from .auth import User, optional_admin

router = APIRouter(prefix="/api/feedback", tags=["feedback"])

logger = logging.getLogger(__name__)

REVIEWED_STATUSES = ("approved", "edited", "rejected")
WINDOW_DAYS = {"7d": 7, "30d": 30, "90d": 90}
TREND_COMPARE_DAYS = 7
_DELTA_FIELDS = (("x", "delta_x"), ("y", "delta_y"), ("width", "delta_width"), ("height", "delta_height"))


class RetrainRequest(CamelModel):
	min_sample_size: int = Field(default=5, ge=1)
	species: Optional[str] = None
	feature_type: Optional[str] = None


def _r4(value: float) -> float:
	return round(float(value), 4)


def _breakdown(items: Iterable[AIAnnotationItem]) -> Dict[str, Any]:
	items = list(items)
	statuses = Counter(i.status for i in items)
	return {
		"total": len(items),
		"approved": statuses["approved"],
		"corrected": statuses["edited"],
		"rejected": statuses["rejected"],
		"avgConfidence": _r4(sum(i.confidence for i in items) / len(items)) if items else 0,
	}


def _rates(items: List[AIAnnotationItem]) -> Dict[str, float]:
	total = len(items)
	statuses = Counter(i.status for i in items)
	if not total:
		return {"approvalRate": 0, "correctionRate": 0, "rejectionRate": 0}
	return {
		"approvalRate": _r4(statuses["approved"] / total),
		"correctionRate": _r4(statuses["edited"] / total),
		"rejectionRate": _r4(statuses["rejected"] / total),
	}


def _stdev(values: List[float]) -> float:
	return statistics.stdev(values) if len(values) > 1 else 0.0


def correction_stats(corrections: List[AnnotationCorrection]) -> Dict[str, Any]:
	stats: Dict[str, Any] = {"totalCorrections": len(corrections)}
	for name, column in _DELTA_FIELDS:
		values = [getattr(c, column) for c in corrections]
		key = name[0].upper() + name[1:]
		stats[f"avgDelta{key}"] = _r4(sum(values) / len(values)) if values else 0
		stats[f"stdDelta{key}"] = _r4(_stdev(values))
	return stats


def daily_trends(items: List[AIAnnotationItem]) -> List[Dict[str, Any]]:
	by_day: Dict[Any, List[AIAnnotationItem]] = defaultdict(list)
	for item in items:
		by_day[item.created_at.date()].append(item)
	trends = []
	for day in sorted(by_day):
		rows = by_day[day]
		trends.append({
			"date": day.isoformat(),
			**_rates(rows),
			"avgConfidence": _r4(sum(r.confidence for r in rows) / len(rows)),
			"totalFeedback": len(rows),
		})
	return trends


def compare_weeks(trends: List[Dict[str, Any]]) -> Dict[str, float]:
	"""Mean daily change between the first and last seven days of data."""
	keys = (
		("approvalRateChange", "approvalRate"),
		("correctionRateChange", "correctionRate"),
		("rejectionRateChange", "rejectionRate"),
		("avgConfidenceChange", "avgConfidence"),
	)
	improvements = {name: 0.0 for name, _ in keys}
	if len(trends) < TREND_COMPARE_DAYS * 2:
		return improvements
	first, last = trends[:TREND_COMPARE_DAYS], trends[-TREND_COMPARE_DAYS:]
	for name, field in keys:
		before = sum(t[field] for t in first) / TREND_COMPARE_DAYS
		after = sum(t[field] for t in last) / TREND_COMPARE_DAYS
		improvements[name] = _r4(after - before)
	return improvements


def magnitude_reduction(corrections: List[AnnotationCorrection]) -> Dict[str, float]:
	"""Drop in mean absolute delta from the first to the last week with corrections."""
	weeks: Dict[Tuple[int, int], List[AnnotationCorrection]] = defaultdict(list)
	for c in corrections:
		year, week, _ = c.created_at.isocalendar()
		weeks[(year, week)].append(c)
	reduction = {f"delta{n[0].upper() + n[1:]}Reduction": 0.0 for n, _ in _DELTA_FIELDS}
	if len(weeks) < 2:
		return reduction
	ordered = [weeks[k] for k in sorted(weeks)]
	first, last = ordered[0], ordered[-1]
	for name, column in _DELTA_FIELDS:
		before = sum(abs(getattr(c, column)) for c in first) / len(first)
		after = sum(abs(getattr(c, column)) for c in last) / len(last)
		reduction[f"delta{name[0].upper() + name[1:]}Reduction"] = _r4(before - after)
	return reduction


@router.get("/analytics")
def analytics(user: User = Depends(optional_admin), db: Session = Depends(get_db)):
	rows = (
		db.query(AIAnnotationItem, Species.english_name)
		.join(Image, Image.id == AIAnnotationItem.image_id)
		.outerjoin(Species, Species.id == Image.species_id)
		.filter(AIAnnotationItem.status.in_(REVIEWED_STATUSES))
		.all()
	)
	items = [item for item, _ in rows]
	by_species: Dict[str, List[AIAnnotationItem]] = defaultdict(list)
	by_feature: Dict[str, List[AIAnnotationItem]] = defaultdict(list)
	for item, species in rows:
		by_species[species or feedback.UNKNOWN_SPECIES].append(item)
		by_feature[item.annotation_type].append(item)

	patterns = Counter(r[0] for r in db.query(RejectionPattern.rejection_category).all())
	corrections = db.query(AnnotationCorrection).all()
	overview = {"totalFeedback": len(items), **_rates(items)}
	logger.info("Feedback analytics generated: %s reviewed items", len(items))
	return {
		"overview": overview,
		"bySpecies": {k: _breakdown(v) for k, v in sorted(by_species.items(), key=lambda kv: -len(kv[1]))},
		"byFeatureType": {k: _breakdown(v) for k, v in sorted(by_feature.items(), key=lambda kv: -len(kv[1]))},
		"rejectionPatterns": dict(patterns.most_common()),
		"correctionStats": correction_stats(corrections),
	}


@router.get("/positioning-model")
def positioning_model(user: User = Depends(optional_admin), db: Session = Depends(get_db)):
	rows = (
		db.query(PositioningModel)
		.order_by(PositioningModel.confidence.desc(), PositioningModel.sample_count.desc())
		.all()
	)
	models = [
		{
			"species": m.species,
			"featureType": m.feature_type,
			"adjustments": {
				"x": _r4(m.avg_delta_x),
				"y": _r4(m.avg_delta_y),
				"width": _r4(m.avg_delta_width),
				"height": _r4(m.avg_delta_height),
			},
			"standardDeviations": {
				"x": _r4(m.std_dev_x or 0),
				"y": _r4(m.std_dev_y or 0),
				"width": _r4(m.std_dev_width or 0),
				"height": _r4(m.std_dev_height or 0),
			},
			"sampleCount": m.sample_count,
			"confidence": _r4(m.confidence),
			"lastTrained": iso(m.last_trained),
		}
		for m in rows
	]
	return {
		"trained": bool(models),
		"totalModels": len(models),
		"models": models,
		"summary": {
			"avgConfidence": _r4(sum(m["confidence"] for m in models) / len(models)) if models else 0,
			"totalSamples": sum(m["sampleCount"] for m in models),
			"speciesCoverage": len({m["species"] for m in models}),
			"featureTypesCovered": sorted({m["featureType"] for m in models}),
		},
	}


@router.get("/improvement-trends")
def improvement_trends(
	window: Literal["7d", "30d", "90d"] = "30d",
	user: User = Depends(optional_admin),
	db: Session = Depends(get_db),
):
	since = datetime.utcnow() - timedelta(days=WINDOW_DAYS[window])
	items = (
		db.query(AIAnnotationItem)
		.filter(AIAnnotationItem.status.in_(REVIEWED_STATUSES), AIAnnotationItem.created_at >= since)
		.all()
	)
	corrections = db.query(AnnotationCorrection).filter(AnnotationCorrection.created_at >= since).all()
	trends = daily_trends(items)
	return {
		"timeWindow": window,
		"trends": trends,
		"improvements": compare_weeks(trends),
		"correctionMagnitudeReduction": magnitude_reduction(corrections),
	}


@router.post("/retrain")
def retrain(req: Optional[RetrainRequest] = None, user: User = Depends(optional_admin), db: Session = Depends(get_db)):
	req = req or RetrainRequest()
	logger.info("Positioning model retrain requested by %s", user.user_id)
	return feedback.retrain(db, min_sample_size=req.min_sample_size, species=req.species, feature_type=req.feature_type)
