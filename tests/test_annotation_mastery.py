"""Tests for per-annotation mastery tracking and /api/mastery."""

import random
from datetime import datetime, timedelta

import pytest

from aves import annotation_mastery
from aves.annotation_mastery import confidence_level, mastery_score, review_interval_days, update_mastery
from aves.models import AnnotationMastery

BASE = "/api/mastery"
T0 = datetime(2026, 3, 2, 12, 0, 0)


@pytest.fixture
def terms(make_species, make_image, make_annotation):
	image = make_image(make_species())
	return {
		"pico": make_annotation(image, spanish_term="el pico", english_term="beak", difficulty_level=1),
		"cola": make_annotation(image, spanish_term="la cola", english_term="tail", difficulty_level=2),
		"rojo": make_annotation(image, spanish_term="rojo", english_term="red", annotation_type="color", difficulty_level=4),
	}


def _mastery(db, user_id, annotation, score, next_review_at=None, level=1, last_seen_at=T0):
	row = AnnotationMastery(
		user_id=user_id,
		annotation_id=annotation.id,
		exposure_count=3,
		correct_count=1,
		incorrect_count=2,
		mastery_score=score,
		confidence_level=level,
		next_review_at=next_review_at,
		last_seen_at=last_seen_at,
	)
	db.add(row)
	db.commit()
	return row


class TestScoring:
	"""Tests for the score, level and interval formulas."""

	def test_unseen_scores_zero(self):
		"""No exposures means no mastery."""
		assert mastery_score(0, 0, 0, None, T0) == 0.0

	def test_recent_correct_answer(self):
		"""A fresh correct answer earns the full recency bonus."""
		assert mastery_score(1, 1, 0, T0, T0) == 0.9

	def test_recency_bonus_fades(self):
		"""After a week the bonus is gone."""
		assert mastery_score(2, 1, 1, T0, T0 + timedelta(days=8)) == 0.35

	def test_perfect_streak_boost(self):
		"""Three or more answers with no misses get a 15% boost, capped at 1."""
		assert mastery_score(3, 3, 0, T0 - timedelta(days=7), T0) == pytest.approx(0.805)
		assert mastery_score(3, 3, 0, T0, T0) == 1.0

	@pytest.mark.parametrize("score,level", [(0.95, 5), (0.9, 5), (0.8, 4), (0.6, 3), (0.3, 2), (0.1, 1)])
	def test_confidence_level(self, score, level):
		"""Levels step at 0.25, 0.5, 0.75 and 0.9."""
		assert confidence_level(score) == level

	def test_review_interval(self):
		"""Intervals grow with mastery and cap at 90 days."""
		assert review_interval_days(0.9, 1) == 2.5
		assert review_interval_days(0.6, 2) == pytest.approx(3.24)
		assert review_interval_days(0.2, 1) == pytest.approx(1.3)
		assert review_interval_days(0.9, 10) == 90


class TestUpdateMastery:
	"""Tests for update_mastery."""

	def test_answers_accumulate(self, db, terms):
		"""Counters, timing and schedule follow each answer."""
		ann = terms["pico"]
		row = update_mastery(db, "learner-1", ann.id, True, 3000, now=T0)
		assert (row.exposure_count, row.correct_count, row.incorrect_count) == (1, 1, 0)
		assert row.mastery_score == 0.9
		assert row.confidence_level == 5
		assert row.next_review_at == T0 + timedelta(days=2.5)

		later = T0 + timedelta(hours=1)
		row = update_mastery(db, "learner-1", ann.id, False, 1000, now=later)
		assert (row.exposure_count, row.correct_count, row.incorrect_count) == (2, 1, 1)
		assert row.mastery_score == pytest.approx(0.544, abs=1e-4)
		assert row.confidence_level == 3
		assert row.avg_response_time_ms == 2000
		assert row.fastest_response_time_ms == 1000
		assert row.last_correct_at == T0
		assert row.next_review_at == later + timedelta(days=1.8)
		assert db.query(AnnotationMastery).count() == 1

	def test_unknown_annotation(self, db):
		"""Unknown annotations raise AnnotationNotFound."""
		with pytest.raises(annotation_mastery.AnnotationNotFound):
			update_mastery(db, "learner-1", "missing", True, 1000)


class TestMasteryQueries:
	"""Tests for the weak, due and new selections."""

	def test_weak_ordered_and_filtered(self, db, terms):
		"""Only scores under 0.7 count, weakest first."""
		_mastery(db, "learner-1", terms["pico"], 0.6)
		_mastery(db, "learner-1", terms["cola"], 0.3)
		_mastery(db, "learner-1", terms["rojo"], 0.85)
		_mastery(db, "learner-2", terms["rojo"], 0.1)
		rows = annotation_mastery.weak_annotations(db, "learner-1")
		assert [a.spanish_term for a, _ in rows] == ["la cola", "el pico"]
		assert annotation_mastery.weak_annotations(db, "learner-2", annotation_type="anatomical") == []

	def test_due(self, db, terms):
		"""Overdue rows come back oldest first."""
		_mastery(db, "learner-1", terms["pico"], 0.5, next_review_at=T0 - timedelta(days=1))
		_mastery(db, "learner-1", terms["cola"], 0.5, next_review_at=T0 - timedelta(days=3))
		_mastery(db, "learner-1", terms["rojo"], 0.5, next_review_at=T0 + timedelta(days=1))
		rows = annotation_mastery.due_annotations(db, "learner-1", now=T0)
		assert [a.spanish_term for a, _ in rows] == ["la cola", "el pico"]

	def test_new_excludes_seen(self, db, terms):
		"""Answered annotations are not new; difficulty can be bounded."""
		_mastery(db, "learner-1", terms["pico"], 0.5)
		found = annotation_mastery.new_annotations(db, "learner-1", rng=random.Random(1))
		assert sorted(a.spanish_term for a in found) == ["la cola", "rojo"]
		easy = annotation_mastery.new_annotations(db, "learner-1", difficulty_range=(1, 3))
		assert [a.spanish_term for a in easy] == ["la cola"]

	def test_recommend_prefers_due(self, db, terms):
		"""An item that is both due and weak is recommended once as due."""
		_mastery(db, "learner-1", terms["pico"], 0.5, next_review_at=T0 - timedelta(hours=2))
		_mastery(db, "learner-1", terms["cola"], 0.4, next_review_at=T0 + timedelta(days=2))
		picks = annotation_mastery.recommend(db, "learner-1", 5, now=T0)
		assert [(p["annotation"].spanish_term, p["reason"], p["priority"]) for p in picks] == [
			("el pico", "due_for_review", 10),
			("la cola", "weak", 8),
			("rojo", "new", 5),
		]
		assert len(annotation_mastery.recommend(db, "learner-1", 5, include_new=False, now=T0)) == 2


class TestMasteryRoutes:
	"""Tests for /api/mastery."""

	def test_update(self, client, terms):
		"""Answers are recorded and summarized."""
		r = client.post(f"{BASE}/update", json={
			"userId": "learner-1",
			"annotationId": terms["pico"].id,
			"correct": True,
			"responseTimeMs": 2500,
		})
		assert r.status_code == 200
		mastery = r.json()["mastery"]
		assert mastery["exposureCount"] == 1
		assert mastery["correctCount"] == 1
		assert mastery["nextReviewAt"] is not None

	def test_update_validation(self, client, terms):
		"""Unknown annotations are a 404; response times must be positive."""
		body = {"userId": "learner-1", "annotationId": "missing", "correct": True, "responseTimeMs": 100}
		assert client.post(f"{BASE}/update", json=body).status_code == 404
		body.update(annotationId=terms["pico"].id, responseTimeMs=0)
		r = client.post(f"{BASE}/update", json=body)
		assert r.status_code == 400
		assert r.json()["details"][0]["field"] == "responseTimeMs"

	def test_weak_due_and_new(self, client, db, terms):
		"""Listings carry the annotation with its mastery data."""
		_mastery(db, "learner-1", terms["cola"], 0.2, next_review_at=datetime.utcnow() - timedelta(days=1))
		weak = client.get(f"{BASE}/weak/learner-1").json()
		assert weak["count"] == 1
		assert weak["annotations"][0]["spanishTerm"] == "la cola"
		assert weak["annotations"][0]["masteryData"]["masteryScore"] == 0.2
		assert client.get(f"{BASE}/weak/learner-1", params={"type": "color"}).json()["count"] == 0
		assert client.get(f"{BASE}/due/learner-1").json()["count"] == 1
		new = client.get(f"{BASE}/new/learner-1", params={"difficultyMin": 3, "difficultyMax": 5}).json()
		assert [a["spanishTerm"] for a in new["annotations"]] == ["rojo"]

	def test_recommended(self, client, db, terms):
		"""Recommendations carry a reason and priority; count is capped at 20."""
		_mastery(db, "learner-1", terms["pico"], 0.3, next_review_at=datetime.utcnow() + timedelta(days=3))
		body = client.get(f"{BASE}/recommended/learner-1", params={"count": 2}).json()
		assert [r["reason"] for r in body["recommendations"]] == ["weak", "new"]
		assert body["recommendations"][1]["masteryData"] is None
		assert client.get(f"{BASE}/recommended/learner-1", params={"count": 21}).status_code == 400
		assert client.get(f"{BASE}/recommended/learner-1", params={"focusType": "habitat"}).status_code == 400

	def test_score_and_stats(self, client, db, terms):
		"""Scores default to zero; stats bucket by confidence level."""
		_mastery(db, "learner-1", terms["pico"], 0.95, level=5)
		_mastery(db, "learner-1", terms["cola"], 0.4, level=2)
		assert client.get(f"{BASE}/score/learner-1/{terms['pico'].id}").json()["masteryScore"] == 0.95
		assert client.get(f"{BASE}/score/learner-1/{terms['rojo'].id}").json()["masteryScore"] == 0.0
		stats = client.get(f"{BASE}/stats/learner-1").json()["stats"]
		assert stats == {
			"totalAnnotationsSeen": 2,
			"averageMasteryScore": 0.675,
			"annotationsByConfidence": {"1": 0, "2": 1, "3": 0, "4": 0, "5": 1},
			"weakAnnotationsCount": 1,
			"masteredAnnotationsCount": 1,
		}
