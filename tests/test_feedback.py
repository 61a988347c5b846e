"""Tests for feedback capture and the positioning model."""

import pytest

from aves import feedback
from aves.bbox import bbox_area, bbox_deltas, normalize_bounding_box
from aves.models import (
	AIAnnotation,
	AIAnnotationItem,
	AnnotationCorrection,
	FeedbackMetric,
	PositioningModel,
	RejectionPattern,
)


def _item(db, image, spanish_term="el pico", box=None):
	job = AIAnnotation(job_id=f"job_{image.id[:8]}_{spanish_term[:3]}", image_id=image.id, status="pending")
	db.add(job)
	item = AIAnnotationItem(
		job_id=job.job_id,
		image_id=image.id,
		spanish_term=spanish_term,
		english_term="beak",
		bounding_box=box or {"x": 0.4, "y": 0.3, "width": 0.1, "height": 0.1},
		annotation_type="anatomical",
		confidence=0.9,
	)
	db.add(item)
	db.commit()
	return item


def _correction(db, dx, species="Blue Jay", feature="el pico"):
	db.add(AnnotationCorrection(
		species=species,
		feature_type=feature,
		original_bbox={"x": 0.1, "y": 0.1, "width": 0.1, "height": 0.1},
		corrected_bbox={"x": 0.1 + dx, "y": 0.1, "width": 0.1, "height": 0.1},
		delta_x=dx,
		delta_y=0.0,
		delta_width=0.0,
		delta_height=0.0,
	))


class TestBoundingBoxes:
	"""Tests for bounding box helpers."""

	def test_normalize_corner_shape(self):
		"""topLeft/bottomRight becomes x/y/width/height."""
		box = normalize_bounding_box({"topLeft": {"x": 0.1, "y": 0.2}, "bottomRight": {"x": 0.4, "y": 0.6}})
		assert box["x"] == 0.1 and box["y"] == 0.2
		assert box["width"] == pytest.approx(0.3)
		assert box["height"] == pytest.approx(0.4)

	def test_normalize_top_left_with_size(self):
		"""topLeft plus width/height is accepted."""
		box = normalize_bounding_box({"topLeft": {"x": 0.1, "y": 0.2}, "width": 0.3, "height": 0.1})
		assert box == {"x": 0.1, "y": 0.2, "width": 0.3, "height": 0.1}

	def test_normalize_passthrough(self):
		"""Already-normalized boxes and None are returned unchanged."""
		box = {"x": 0.1, "y": 0.2, "width": 0.3, "height": 0.1}
		assert normalize_bounding_box(box) is box
		assert normalize_bounding_box(None) is None

	def test_area_and_deltas(self):
		"""Area multiplies the sides; deltas subtract component-wise."""
		assert bbox_area({"x": 0, "y": 0, "width": 0.1, "height": 0.1}) == pytest.approx(0.01)
		deltas = bbox_deltas({"x": 0.1, "y": 0.1, "width": 0.2, "height": 0.2}, {"x": 0.15, "y": 0.1, "width": 0.1, "height": 0.3})
		assert deltas["x"] == pytest.approx(0.05)
		assert deltas["width"] == pytest.approx(-0.1)
		assert deltas["height"] == pytest.approx(0.1)


class TestRejectionCategories:
	"""Tests for rejection categorization."""

	def test_prefix_wins(self):
		"""A [CATEGORY] prefix is used verbatim, lowercased."""
		assert feedback.extract_rejection_category("[POOR_LOCALIZATION] wrong species anyway") == "poor_localization"

	@pytest.mark.parametrize("reason,expected", [
		("This is the wrong bird", "incorrect_species"),
		("Labelled the wrong body part", "incorrect_feature"),
		("Box is too far left", "poor_localization"),
		("Nothing there, not found in the photo", "false_positive"),
		("Duplicate of another label", "duplicate"),
		("Image is blurry", "low_quality"),
		("meh", "other"),
	])
	def test_keyword_inference(self, reason, expected):
		"""Free-text reasons map onto categories by keyword."""
		assert feedback.extract_rejection_category(reason) == expected

	def test_empty_notes(self):
		"""Missing notes fall into other."""
		assert feedback.extract_rejection_category(None) == "other"


class TestOnlineUpdate:
	"""Tests for the incremental positioning model update."""

	def test_running_mean_and_confidence(self):
		"""The mean folds in each delta; confidence grows with samples."""
		model = PositioningModel(species="s", feature_type="f", avg_delta_x=0.1, avg_delta_y=0.0,
			avg_delta_width=0.0, avg_delta_height=0.0, sample_count=1, confidence=0.1)
		feedback.apply_online_update(model, {"x": 0.3, "y": 0.2, "width": 0.0, "height": -0.1})
		assert model.avg_delta_x == pytest.approx(0.2)
		assert model.avg_delta_y == pytest.approx(0.1)
		assert model.avg_delta_height == pytest.approx(-0.05)
		assert model.sample_count == 2
		assert model.confidence == pytest.approx(0.2)

	def test_confidence_caps_at_one(self):
		"""Confidence never exceeds 1."""
		model = PositioningModel(species="s", feature_type="f", avg_delta_x=0.0, avg_delta_y=0.0,
			avg_delta_width=0.0, avg_delta_height=0.0, sample_count=20, confidence=1.0)
		feedback.apply_online_update(model, {"x": 0.0, "y": 0.0, "width": 0.0, "height": 0.0})
		assert model.confidence == 1.0

	def test_position_fix_updates_model(self, db, make_species, make_image):
		"""A correction is stored, folded into the model and measured."""
		item = _item(db, make_image(make_species()))
		corrected = {"x": 0.43, "y": 0.34, "width": 0.1, "height": 0.1}
		deltas = feedback.record_position_fix(db, item, "Northern Cardinal", item.bounding_box, corrected, "admin")
		db.commit()
		assert deltas["x"] == pytest.approx(0.03)
		model = db.query(PositioningModel).one()
		assert model.species == "Northern Cardinal"
		assert model.feature_type == "el pico"
		assert model.sample_count == 1
		assert model.avg_delta_y == pytest.approx(0.04)
		metrics = {m.metric_type: m.value for m in db.query(FeedbackMetric).all()}
		assert metrics["correction_rate"] == 1.0
		assert metrics["avg_correction_magnitude"] == pytest.approx(0.05)

	def test_adjustments_need_three_samples(self, db, make_species, make_image):
		"""Adjustments are returned only from the third sample on."""
		item = _item(db, make_image(make_species()))
		corrected = {"x": 0.5, "y": 0.3, "width": 0.1, "height": 0.1}
		for _ in range(3):
			assert feedback.get_positioning_adjustments(db, "Blue Jay", "el pico") is None
			feedback.record_position_fix(db, item, "Blue Jay", item.bounding_box, corrected, None)
			db.commit()
		adjustments = feedback.get_positioning_adjustments(db, "Blue Jay", "el pico")
		assert adjustments["x"] == pytest.approx(0.1)

	def test_apply_adjustments_clamps(self):
		"""Adjusted boxes stay inside the image."""
		box = feedback.apply_adjustments({"x": 0.95, "y": 0.02, "width": 0.1, "height": 0.1},
			{"x": 0.1, "y": -0.05, "width": 0.0, "height": 0.0})
		assert box["x"] == 1.0
		assert box["y"] == 0.0


class TestCaptureFeedback:
	"""Tests for approval and rejection capture."""

	def test_rejection_records_pattern(self, db, make_species, make_image):
		"""Rejections store a categorized pattern and a metric."""
		item = _item(db, make_image(make_species()))
		category = feedback.record_rejection(db, item, "Northern Cardinal", "[DUPLICATE] twice", "admin")
		db.commit()
		assert category == "duplicate"
		pattern = db.query(RejectionPattern).one()
		assert pattern.rejection_category == "duplicate"
		assert db.query(FeedbackMetric).filter(FeedbackMetric.metric_type == "rejection_rate").count() == 1

	def test_approval_records_metric(self, db, make_species, make_image):
		"""Approvals store an approval_rate metric."""
		item = _item(db, make_image(make_species()))
		feedback.record_approval(db, item, None)
		db.commit()
		assert db.query(FeedbackMetric).one().metric_type == "approval_rate"


class TestRetrain:
	"""Tests for full positioning model retraining."""

	def test_confidence_formula(self):
		"""Confidence blends sample size and consistency."""
		assert feedback.retrain_confidence(50, [0.0, 0.0]) == 1.0
		assert feedback.retrain_confidence(25, [0.1, 0.1, 0.1, 0.1]) == pytest.approx(0.3 + 0.36)
		assert feedback.retrain_confidence(5, [2.0]) == pytest.approx(0.06)

	def test_groups_and_skips(self, db):
		"""Groups below the minimum are skipped; others get mean and sample stdev."""
		for dx in (0.1, 0.2, 0.3, 0.2, 0.2):
			_correction(db, dx)
		_correction(db, 0.5, species="House Sparrow")
		db.commit()
		result = feedback.retrain(db, min_sample_size=5)
		assert result["success"] is True
		assert result["trained"] == 1
		assert result["skipped"] == 1
		model = db.query(PositioningModel).one()
		assert model.species == "Blue Jay"
		assert model.sample_count == 5
		assert model.avg_delta_x == pytest.approx(0.2)
		assert model.std_dev_x == pytest.approx(0.0707107, rel=1e-4)
		assert model.std_dev_y == 0.0

	def test_filters(self, db):
		"""Species and feature filters restrict the corrections used."""
		for _ in range(2):
			_correction(db, 0.1, species="Blue Jay")
			_correction(db, 0.1, species="House Sparrow")
		db.commit()
		result = feedback.retrain(db, min_sample_size=1, species="House Sparrow")
		assert result["trained"] == 1
		assert result["results"][0]["species"] == "House Sparrow"
