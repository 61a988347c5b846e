"""Reviewer feedback capture and the bounding-box positioning model.

Every review action on an AI annotation item is turned into feedback rows:
approvals and rejections become metrics (plus a categorized rejection
pattern), and box corrections are stored as deltas that feed a per
(species, feature) positioning model. The model is updated online on every
correction and can be rebuilt from all stored corrections with ``retrain``.
"""

from __future__ import annotations
import logging
import math
import re
import statistics
from collections import defaultdict
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from .bbox import bbox_deltas, normalize_bounding_box
from .models import (
	AIAnnotationItem,
	AnnotationCorrection,
	FeedbackMetric,
	PositioningModel,
	RejectionPattern,
)

logger = logging.getLogger(__name__)

MIN_SAMPLES_FOR_ADJUSTMENT = 3
ONLINE_CONFIDENCE_SAMPLES = 10
RETRAIN_CONFIDENCE_SAMPLES = 50
UNKNOWN_SPECIES = "unknown"

REJECTION_CATEGORIES = (
	"incorrect_species",
	"incorrect_feature",
	"poor_localization",
	"false_positive",
	"duplicate",
	"low_quality",
	"other",
)

# Checked in order; first match wins
_CATEGORY_KEYWORDS: List[Tuple[str, Tuple[str, ...]]] = [
	("incorrect_species", ("species", "wrong bird")),
	("incorrect_feature", ("feature", "part", "anatomy")),
	("poor_localization", ("position", "localization", "bounding box", "box")),
	("false_positive", ("false", "not found", "doesn't exist")),
	("duplicate", ("duplicate", "already exists")),
	("low_quality", ("quality", "blurry", "unclear")),
]

_CATEGORY_PREFIX = re.compile(r"^\[([A-Z_]+)\]")


def categorize_rejection(reason: str) -> str:
	lower = (reason or "").lower()
	for category, keywords in _CATEGORY_KEYWORDS:
		if any(k in lower for k in keywords):
			return category
	return "other"


def extract_rejection_category(notes: Optional[str]) -> str:
	"""Read a ``[CATEGORY]`` prefix, falling back to keyword inference."""
	if not notes:
		return "other"
	match = _CATEGORY_PREFIX.match(notes.strip())
	if match:
		return match.group(1).lower()
	return categorize_rejection(notes)


def _record_metric(db: Session, metric_type: str, value: float, species: Optional[str], feature: Optional[str]) -> None:
	db.add(FeedbackMetric(metric_type=metric_type, species=species, feature_type=feature, value=value, sample_size=1))


def record_approval(db: Session, item: AIAnnotationItem, species: Optional[str]) -> None:
	_record_metric(db, "approval_rate", 1.0, species, item.spanish_term)


def record_rejection(
	db: Session,
	item: AIAnnotationItem,
	species: Optional[str],
	notes: Optional[str],
	user_id: Optional[str],
) -> str:
	category = extract_rejection_category(notes)
	db.add(
		RejectionPattern(
			ai_annotation_item_id=item.id,
			species=species,
			feature_type=item.spanish_term,
			rejection_category=category,
			rejection_notes=notes,
			bounding_box=normalize_bounding_box(item.bounding_box),
			confidence=item.confidence,
			rejected_by=user_id,
		)
	)
	_record_metric(db, "rejection_rate", 1.0, species, item.spanish_term)
	return category


def apply_online_update(model: PositioningModel, deltas: Dict[str, float]) -> None:
	n = model.sample_count or 0
	model.avg_delta_x = ((model.avg_delta_x or 0.0) * n + deltas["x"]) / (n + 1)
	model.avg_delta_y = ((model.avg_delta_y or 0.0) * n + deltas["y"]) / (n + 1)
	model.avg_delta_width = ((model.avg_delta_width or 0.0) * n + deltas["width"]) / (n + 1)
	model.avg_delta_height = ((model.avg_delta_height or 0.0) * n + deltas["height"]) / (n + 1)
	model.sample_count = n + 1
	model.confidence = min(1.0, model.sample_count / ONLINE_CONFIDENCE_SAMPLES)


def _get_model(db: Session, species: str, feature: str) -> Optional[PositioningModel]:
	return (
		db.query(PositioningModel)
		.filter(PositioningModel.species == species, PositioningModel.feature_type == feature)
		.first()
	)


def record_position_fix(
	db: Session,
	item: AIAnnotationItem,
	species: Optional[str],
	original_bbox: Dict[str, Any],
	corrected_bbox: Dict[str, Any],
	user_id: Optional[str],
) -> Dict[str, float]:
	"""Store a correction and fold it into the positioning model. Caller commits."""
	species = species or UNKNOWN_SPECIES
	feature = item.spanish_term
	deltas = bbox_deltas(original_bbox, corrected_bbox)
	db.add(
		AnnotationCorrection(
			ai_annotation_item_id=item.id,
			species=species,
			feature_type=feature,
			original_bbox=normalize_bounding_box(original_bbox),
			corrected_bbox=normalize_bounding_box(corrected_bbox),
			delta_x=deltas["x"],
			delta_y=deltas["y"],
			delta_width=deltas["width"],
			delta_height=deltas["height"],
			corrected_by=user_id,
		)
	)
	model = _get_model(db, species, feature)
	if model is None:
		model = PositioningModel(
			species=species,
			feature_type=feature,
			avg_delta_x=0.0,
			avg_delta_y=0.0,
			avg_delta_width=0.0,
			avg_delta_height=0.0,
			sample_count=0,
			confidence=0.0,
		)
		db.add(model)
	apply_online_update(model, deltas)
	model.last_trained = datetime.utcnow()
	magnitude = math.sqrt(sum(d * d for d in deltas.values()))
	_record_metric(db, "correction_rate", 1.0, species, feature)
	_record_metric(db, "avg_correction_magnitude", magnitude, species, feature)
	logger.info("Position fix recorded species=%s feature=%s magnitude=%.4f", species, feature, magnitude)
	return deltas


def get_positioning_adjustments(db: Session, species: Optional[str], feature: str) -> Optional[Dict[str, float]]:
	model = _get_model(db, species or UNKNOWN_SPECIES, feature)
	if model is None or model.sample_count < MIN_SAMPLES_FOR_ADJUSTMENT:
		return None
	return {
		"x": model.avg_delta_x,
		"y": model.avg_delta_y,
		"width": model.avg_delta_width,
		"height": model.avg_delta_height,
		"confidence": model.confidence,
	}


def apply_adjustments(bbox: Dict[str, Any], adjustments: Dict[str, float]) -> Dict[str, float]:
	box = normalize_bounding_box(bbox) or {}

	def clamp(v: float) -> float:
		return max(0.0, min(1.0, v))

	return {
		"x": clamp(float(box.get("x", 0)) + adjustments["x"]),
		"y": clamp(float(box.get("y", 0)) + adjustments["y"]),
		"width": clamp(float(box.get("width", 0)) + adjustments["width"]),
		"height": clamp(float(box.get("height", 0)) + adjustments["height"]),
	}


def _stdev(values: List[float]) -> float:
	return statistics.stdev(values) if len(values) > 1 else 0.0


def retrain_confidence(sample_count: int, std_devs: List[float]) -> float:
	avg_std = sum(std_devs) / len(std_devs) if std_devs else 0.0
	sample_confidence = min(sample_count / RETRAIN_CONFIDENCE_SAMPLES, 1.0)
	consistency_confidence = max(0.0, 1 - avg_std)
	return round(sample_confidence * 0.6 + consistency_confidence * 0.4, 4)


def retrain(
	db: Session,
	min_sample_size: int = 5,
	species: Optional[str] = None,
	feature_type: Optional[str] = None,
) -> Dict[str, Any]:
	"""Rebuild positioning models from every stored correction in one transaction."""
	query = db.query(AnnotationCorrection)
	if species:
		query = query.filter(AnnotationCorrection.species == species)
	if feature_type:
		query = query.filter(AnnotationCorrection.feature_type == feature_type)

	groups: Dict[Tuple[str, str], List[AnnotationCorrection]] = defaultdict(list)
	for row in query.all():
		groups[(row.species, row.feature_type)].append(row)

	now = datetime.utcnow()
	results: List[Dict[str, Any]] = []
	trained = 0
	skipped = 0
	try:
		for (group_species, group_feature), rows in sorted(groups.items()):
			n = len(rows)
			if n < min_sample_size:
				skipped += 1
				continue
			columns = {
				"x": [r.delta_x for r in rows],
				"y": [r.delta_y for r in rows],
				"width": [r.delta_width for r in rows],
				"height": [r.delta_height for r in rows],
			}
			means = {k: sum(v) / n for k, v in columns.items()}
			stds = {k: _stdev(v) for k, v in columns.items()}
			confidence = retrain_confidence(n, list(stds.values()))

			model = _get_model(db, group_species, group_feature)
			if model is None:
				model = PositioningModel(species=group_species, feature_type=group_feature)
				db.add(model)
			model.avg_delta_x = means["x"]
			model.avg_delta_y = means["y"]
			model.avg_delta_width = means["width"]
			model.avg_delta_height = means["height"]
			model.std_dev_x = stds["x"]
			model.std_dev_y = stds["y"]
			model.std_dev_width = stds["width"]
			model.std_dev_height = stds["height"]
			model.sample_count = n
			model.confidence = confidence
			model.last_trained = now

			trained += 1
			results.append({
				"species": group_species,
				"featureType": group_feature,
				"sampleCount": n,
				"confidence": confidence,
				"adjustments": {k: round(v, 4) for k, v in means.items()},
			})
		db.commit()
	except Exception:
		db.rollback()
		raise
	logger.info("Positioning model retrained: trained=%s skipped=%s", trained, skipped)
	return {
		"success": True,
		"trained": trained,
		"skipped": skipped,
		"results": results,
		"trainedAt": now.isoformat(),
	}
