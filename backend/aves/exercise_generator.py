"""Build practice exercises from approved annotations.

The learner context (level and target difficulty) is derived from the
learner's recorded exercise results.
"""

from __future__ import annotations
import random
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from .models import Annotation, ExerciseResult, Image

EXERCISE_TYPES = ("contextual_fill", "term_matching", "spatial_identification", "category_sorting")

TOPIC_HISTORY = 20
MIN_TOPIC_ATTEMPTS = 3
WEAK_TOPIC_ACCURACY = 0.70
MASTERED_TOPIC_ACCURACY = 0.90
TOPIC_LIMIT = 5
NEW_TOPIC_LIMIT = 10

CATEGORY_LABELS = {
	"anatomical": "Anatomía",
	"behavioral": "Comportamiento",
	"color": "Colores",
	"pattern": "Patrones",
}


class NotEnoughAnnotations(Exception):
	pass


@dataclass
class UserContext:
	user_id: Optional[str]
	level: str
	difficulty: int
	total_exercises: int
	accuracy: float
	weak_topics: List[str] = field(default_factory=list)
	mastered_topics: List[str] = field(default_factory=list)
	new_topics: List[str] = field(default_factory=list)

	@property
	def focus_topics(self) -> List[str]:
		"""Terms to steer practice towards: weak ones first, then unseen ones."""
		return self.weak_topics + [t for t in self.new_topics if t not in self.weak_topics]


def calculate_level(total_exercises: int, accuracy: float) -> str:
	if total_exercises < 20 or accuracy < 60:
		return "beginner"
	if total_exercises > 50 and accuracy > 85:
		return "advanced"
	return "intermediate"


def current_streak(history: List[bool]) -> int:
	"""Consecutive correct answers, newest first."""
	streak = 0
	for correct in history:
		if not correct:
			break
		streak += 1
	return streak


def calculate_difficulty(history: List[bool], total_exercises: int, accuracy: float) -> int:
	recent = history[:10]
	recent_accuracy = sum(recent) / len(recent) if recent else 0.5
	streak = current_streak(history)

	if total_exercises < 10:
		base = 1.0
	elif accuracy > 85:
		base = 4.0
	elif accuracy < 60:
		base = 2.0
	else:
		base = 3.0

	adjusted = base
	if recent_accuracy > 0.85 and streak > 5:
		adjusted = min(5.0, base + 1)
	if recent_accuracy < 0.60:
		adjusted = max(1.0, base - 1)
	if 0.75 <= recent_accuracy <= 0.85 and streak > 10:
		adjusted = min(5.0, base + 0.5)
	# Round half up so 3.5 becomes 4
	return max(1, min(5, int(adjusted + 0.5)))


def topic_accuracy(results: List[Tuple[Optional[str], bool]]) -> Dict[str, Tuple[float, int]]:
	"""Map each practised term to (accuracy, attempts)."""
	tally: Dict[str, List[int]] = {}
	for term, correct in results:
		if not term:
			continue
		counts = tally.setdefault(term, [0, 0])
		counts[0] += int(correct)
		counts[1] += 1
	return {term: (hits / total, total) for term, (hits, total) in tally.items()}


def weak_and_mastered(stats: Dict[str, Tuple[float, int]]) -> Tuple[List[str], List[str]]:
	rated = [(term, acc) for term, (acc, count) in stats.items() if count >= MIN_TOPIC_ATTEMPTS]
	weak = sorted((t for t in rated if t[1] < WEAK_TOPIC_ACCURACY), key=lambda t: (t[1], t[0]))
	mastered = sorted((t for t in rated if t[1] > MASTERED_TOPIC_ACCURACY), key=lambda t: (-t[1], t[0]))
	return [t for t, _ in weak[:TOPIC_LIMIT]], [t for t, _ in mastered[:TOPIC_LIMIT]]


def unexplored_terms(db: Session, user_id: str) -> List[str]:
	seen = {
		r[0]
		for r in db.query(ExerciseResult.spanish_term).filter(ExerciseResult.user_id == user_id).distinct()
		if r[0]
	}
	terms = (
		db.query(Annotation.spanish_term)
		.filter(Annotation.is_visible.is_(True))
		.distinct()
		.order_by(Annotation.spanish_term.asc())
		.all()
	)
	return [r[0] for r in terms if r[0] not in seen][:NEW_TOPIC_LIMIT]


def build_user_context(db: Session, user_id: Optional[str]) -> UserContext:
	if not user_id:
		return UserContext(user_id=None, level="beginner", difficulty=calculate_difficulty([], 0, 0.0),
			total_exercises=0, accuracy=0.0)
	rows = (
		db.query(ExerciseResult.spanish_term, ExerciseResult.is_correct)
		.filter(ExerciseResult.user_id == user_id)
		.order_by(ExerciseResult.created_at.desc(), ExerciseResult.id.desc())
		.all()
	)
	history = [bool(r[1]) for r in rows]
	total = len(history)
	accuracy = (sum(history) / total * 100) if total else 0.0
	weak, mastered = weak_and_mastered(topic_accuracy([(r[0], bool(r[1])) for r in rows[:TOPIC_HISTORY]]))
	return UserContext(
		user_id=user_id,
		level=calculate_level(total, accuracy),
		difficulty=calculate_difficulty(history, total, accuracy),
		total_exercises=total,
		accuracy=round(accuracy, 1),
		weak_topics=weak,
		mastered_topics=mastered,
		new_topics=unexplored_terms(db, user_id),
	)


def _exercise_id(kind: str) -> str:
	return f"{kind}_{int(time.time() * 1000)}_{random.randint(1000, 9999)}"


def _annotation_dict(a: Annotation) -> Dict[str, Any]:
	return {
		"id": a.id,
		"imageId": a.image_id,
		"spanishTerm": a.spanish_term,
		"englishTerm": a.english_term,
		"boundingBox": a.bounding_box,
		"type": a.annotation_type,
		"difficultyLevel": a.difficulty_level,
		"pronunciation": a.pronunciation,
	}


def _pool(db: Session, difficulty: int) -> List[Annotation]:
	rows = db.query(Annotation).filter(Annotation.is_visible.is_(True)).all()
	# Prefer terms within one level of the target difficulty
	near = [a for a in rows if abs(a.difficulty_level - difficulty) <= 1]
	return near if len(near) >= 4 else rows


def _focus_candidates(pool: List[Annotation], focus: List[str]) -> List[Annotation]:
	for term in focus:
		matches = [a for a in pool if a.spanish_term == term]
		if matches:
			return matches
	return []


def _contextual_fill(pool: List[Annotation], rng: random.Random, focus: List[str]) -> Dict[str, Any]:
	if len(pool) < 4:
		raise NotEnoughAnnotations("contextual_fill needs at least 4 annotations")
	candidates = _focus_candidates(pool, focus)
	others = [a for a in pool if a.spanish_term != candidates[0].spanish_term] if candidates else []
	if len(others) >= 3:
		target = rng.choice(candidates)
		distractors = rng.sample(others, 3)
	else:
		target, *distractors = rng.sample(pool, 4)
	options = [target.spanish_term] + [d.spanish_term for d in distractors]
	rng.shuffle(options)
	return {
		"id": _exercise_id("contextual_fill"),
		"type": "contextual_fill",
		"prompt": f"Completa: El pájaro tiene ___ ({target.english_term}).",
		"options": options,
		"correctAnswer": target.spanish_term,
		"annotationId": target.id,
	}


def _term_matching(pool: List[Annotation], rng: random.Random) -> Dict[str, Any]:
	if len(pool) < 4:
		raise NotEnoughAnnotations("term_matching needs at least 4 annotations")
	chosen = rng.sample(pool, min(5, len(pool)))
	english = [a.english_term for a in chosen]
	rng.shuffle(english)
	return {
		"id": _exercise_id("term_matching"),
		"type": "term_matching",
		"prompt": "Empareja cada término con su traducción",
		"spanishTerms": [a.spanish_term for a in chosen],
		"englishTerms": english,
		"correctPairs": [{"spanish": a.spanish_term, "english": a.english_term} for a in chosen],
	}


def _tolerance(difficulty_level: int) -> float:
	# Level 1 is the most forgiving (0.25), level 5 the strictest (0.05)
	return round(0.25 - (max(1, min(5, difficulty_level)) - 1) * 0.05, 2)


def _spatial_identification(db: Session, pool: List[Annotation], rng: random.Random, focus: List[str]) -> Dict[str, Any]:
	if not pool:
		raise NotEnoughAnnotations("spatial_identification needs an annotation")
	target = rng.choice(_focus_candidates(pool, focus) or pool)
	image = db.get(Image, target.image_id)
	if image is None:
		raise NotEnoughAnnotations("annotation image is missing")
	return {
		"id": _exercise_id("spatial_identification"),
		"type": "spatial_identification",
		"imageId": image.id,
		"imageUrl": image.url,
		"prompt": f"Haz clic en {target.spanish_term}",
		"targetAnnotation": _annotation_dict(target),
		"tolerance": _tolerance(target.difficulty_level),
	}


def _category_sorting(pool: List[Annotation], rng: random.Random) -> Dict[str, Any]:
	by_type: Dict[str, List[Annotation]] = {}
	for a in pool:
		by_type.setdefault(a.annotation_type, []).append(a)
	viable = [(t, anns) for t, anns in sorted(by_type.items()) if len(anns) >= 2]
	if len(viable) < 2:
		raise NotEnoughAnnotations("category_sorting needs two categories with two terms each")
	selected = viable[:3]
	terms = []
	categories = []
	for kind, anns in selected:
		picked = anns[:3]
		terms.extend({"id": a.id, "term": a.spanish_term} for a in picked)
		categories.append({"id": kind, "label": CATEGORY_LABELS.get(kind, kind), "acceptedTermIds": [a.id for a in picked]})
	rng.shuffle(terms)
	return {
		"id": _exercise_id("category_sorting"),
		"type": "category_sorting",
		"prompt": "Agrupa estos términos por categoría",
		"terms": terms,
		"categories": categories,
	}


def generate_exercise(db: Session, exercise_type: str, context: UserContext, rng: Optional[random.Random] = None) -> Dict[str, Any]:
	rng = rng or random.Random()
	pool = _pool(db, context.difficulty)
	if exercise_type == "contextual_fill":
		exercise = _contextual_fill(pool, rng, context.focus_topics)
	elif exercise_type == "term_matching":
		exercise = _term_matching(pool, rng)
	elif exercise_type == "spatial_identification":
		exercise = _spatial_identification(db, pool, rng, context.focus_topics)
	elif exercise_type == "category_sorting":
		exercise = _category_sorting(pool, rng)
	else:
		raise ValueError(f"Unknown exercise type: {exercise_type}")
	exercise["difficulty"] = context.difficulty
	return exercise
