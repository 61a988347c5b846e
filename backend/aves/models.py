from __future__ import annotations
import uuid
from datetime import datetime
from sqlalchemy import (
	JSON,
	Boolean,
	Column,
	DateTime,
	Float,
	ForeignKey,
	Integer,
	String,
	Text,
	UniqueConstraint,
)
from .db import Base


def _uuid() -> str:
	return str(uuid.uuid4())


class User(Base):
	__tablename__ = "users"
	id = Column(String(36), primary_key=True, default=_uuid)
	email = Column(String(256), unique=True, index=True, nullable=False)
	password_hash = Column(String(256), nullable=False)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
	updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class Species(Base):
	__tablename__ = "species"
	id = Column(String(36), primary_key=True, default=_uuid)
	scientific_name = Column(String(255), unique=True, nullable=False)
	english_name = Column(String(255), nullable=False, index=True)
	spanish_name = Column(String(255), nullable=False, index=True)
	order_name = Column(String(100), nullable=False)
	family_name = Column(String(100), nullable=False)
	genus = Column(String(100), nullable=True)
	habitats = Column(JSON, default=list, nullable=False)
	size_category = Column(String(20), nullable=True)  # small | medium | large
	primary_colors = Column(JSON, default=list, nullable=False)
	conservation_status = Column(String(10), default="LC", nullable=False)
	description_spanish = Column(Text, nullable=True)
	description_english = Column(Text, nullable=True)
	fun_fact = Column(Text, nullable=True)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
	updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class Image(Base):
	__tablename__ = "images"
	id = Column(String(36), primary_key=True, default=_uuid)
	species_id = Column(String(36), ForeignKey("species.id", ondelete="CASCADE"), nullable=False, index=True)
	unsplash_id = Column(String(50), unique=True, nullable=False)
	url = Column(Text, nullable=False)
	width = Column(Integer, nullable=False)
	height = Column(Integer, nullable=False)
	color = Column(String(20), nullable=True)
	description = Column(Text, nullable=True)
	photographer = Column(String(255), nullable=True)
	photographer_username = Column(String(255), nullable=True)
	download_location = Column(Text, nullable=True)
	view_count = Column(Integer, default=0, nullable=False)
	annotation_count = Column(Integer, default=0, nullable=False)
	quality_score = Column(Integer, nullable=True)  # 0-100, null when never scored
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
	updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class Annotation(Base):
	__tablename__ = "annotations"
	id = Column(String(36), primary_key=True, default=_uuid)
	image_id = Column(String(36), ForeignKey("images.id", ondelete="CASCADE"), nullable=False, index=True)
	bounding_box = Column(JSON, nullable=False)  # {x, y, width, height} normalized 0-1
	annotation_type = Column(String(20), nullable=False)
	spanish_term = Column(String(200), nullable=False)
	english_term = Column(String(200), nullable=False)
	pronunciation = Column(String(200), nullable=True)
	difficulty_level = Column(Integer, default=1, nullable=False)
	is_visible = Column(Boolean, default=True, nullable=False)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
	updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class AnnotationInteraction(Base):
	__tablename__ = "annotation_interactions"
	id = Column(String(36), primary_key=True, default=_uuid)
	annotation_id = Column(String(36), ForeignKey("annotations.id", ondelete="CASCADE"), nullable=False)
	user_id = Column(String(128), nullable=True)
	interaction_type = Column(String(32), nullable=False)
	revealed = Column(Boolean, default=False, nullable=False)
	timestamp = Column(DateTime, default=datetime.utcnow, nullable=False)


class AIAnnotation(Base):
	"""One AI generation job for one image."""
	__tablename__ = "ai_annotations"
	id = Column(String(36), primary_key=True, default=_uuid)
	job_id = Column(String(64), unique=True, nullable=False, index=True)
	image_id = Column(String(36), ForeignKey("images.id", ondelete="CASCADE"), nullable=False, index=True)
	annotation_data = Column(JSON, nullable=True)
	status = Column(String(20), default="processing", nullable=False)  # processing | pending | approved | failed
	confidence_score = Column(Float, nullable=True)
	error_message = Column(Text, nullable=True)
	reviewed_by = Column(String(128), nullable=True)
	reviewed_at = Column(DateTime, nullable=True)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
	updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class AIAnnotationItem(Base):
	__tablename__ = "ai_annotation_items"
	id = Column(String(36), primary_key=True, default=_uuid)
	job_id = Column(String(64), ForeignKey("ai_annotations.job_id", ondelete="CASCADE"), nullable=False, index=True)
	image_id = Column(String(36), ForeignKey("images.id", ondelete="CASCADE"), nullable=False, index=True)
	spanish_term = Column(String(200), nullable=False)
	english_term = Column(String(200), nullable=False)
	bounding_box = Column(JSON, nullable=False)
	annotation_type = Column(String(20), nullable=False)
	difficulty_level = Column(Integer, default=1, nullable=False)
	pronunciation = Column(String(200), nullable=True)
	confidence = Column(Float, default=0.8, nullable=False)
	status = Column(String(20), default="pending", nullable=False)  # pending | approved | rejected | edited
	approved_annotation_id = Column(String(36), ForeignKey("annotations.id", ondelete="SET NULL"), nullable=True)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
	updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class AIAnnotationReview(Base):
	__tablename__ = "ai_annotation_reviews"
	id = Column(String(36), primary_key=True, default=_uuid)
	job_id = Column(String(64), nullable=False, index=True)
	reviewer_id = Column(String(128), nullable=False)
	action = Column(String(20), nullable=False)  # approve | reject | edit | bulk_approve
	affected_items = Column(Integer, default=1, nullable=False)
	notes = Column(Text, nullable=True)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class AnnotationCorrection(Base):
	__tablename__ = "annotation_corrections"
	id = Column(String(36), primary_key=True, default=_uuid)
	ai_annotation_item_id = Column(String(36), nullable=True)
	species = Column(String(255), nullable=False)
	feature_type = Column(String(200), nullable=False)
	original_bbox = Column(JSON, nullable=False)
	corrected_bbox = Column(JSON, nullable=False)
	delta_x = Column(Float, nullable=False)
	delta_y = Column(Float, nullable=False)
	delta_width = Column(Float, nullable=False)
	delta_height = Column(Float, nullable=False)
	corrected_by = Column(String(128), nullable=True)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class RejectionPattern(Base):
	__tablename__ = "rejection_patterns"
	id = Column(String(36), primary_key=True, default=_uuid)
	ai_annotation_item_id = Column(String(36), nullable=True)
	species = Column(String(255), nullable=True)
	feature_type = Column(String(200), nullable=True)
	rejection_category = Column(String(40), nullable=False, index=True)
	rejection_notes = Column(Text, nullable=True)
	bounding_box = Column(JSON, nullable=True)
	confidence = Column(Float, nullable=True)
	rejected_by = Column(String(128), nullable=True)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class FeedbackMetric(Base):
	__tablename__ = "feedback_metrics"
	id = Column(String(36), primary_key=True, default=_uuid)
	metric_type = Column(String(40), nullable=False, index=True)
	species = Column(String(255), nullable=True)
	feature_type = Column(String(200), nullable=True)
	value = Column(Float, nullable=False)
	sample_size = Column(Integer, default=1, nullable=False)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class PositioningModel(Base):
	__tablename__ = "positioning_model"
	__table_args__ = (UniqueConstraint("species", "feature_type", name="uq_positioning_species_feature"),)
	id = Column(String(36), primary_key=True, default=_uuid)
	species = Column(String(255), nullable=False)
	feature_type = Column(String(200), nullable=False)
	avg_delta_x = Column(Float, default=0.0, nullable=False)
	avg_delta_y = Column(Float, default=0.0, nullable=False)
	avg_delta_width = Column(Float, default=0.0, nullable=False)
	avg_delta_height = Column(Float, default=0.0, nullable=False)
	std_dev_x = Column(Float, nullable=True)
	std_dev_y = Column(Float, nullable=True)
	std_dev_width = Column(Float, nullable=True)
	std_dev_height = Column(Float, nullable=True)
	sample_count = Column(Integer, default=0, nullable=False)
	confidence = Column(Float, default=0.0, nullable=False)
	last_trained = Column(DateTime, default=datetime.utcnow, nullable=False)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
	updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class UserTermProgress(Base):
	__tablename__ = "user_term_progress"
	__table_args__ = (UniqueConstraint("user_id", "term_id", name="uq_progress_user_term"),)
	id = Column(String(36), primary_key=True, default=_uuid)
	user_id = Column(String(128), nullable=False, index=True)
	term_id = Column(String(36), ForeignKey("annotations.id", ondelete="CASCADE"), nullable=False)
	ease_factor = Column(Float, default=2.5, nullable=False)
	interval_days = Column(Integer, default=0, nullable=False)
	repetitions = Column(Integer, default=0, nullable=False)
	next_review_at = Column(DateTime, default=datetime.utcnow, nullable=False)
	last_reviewed_at = Column(DateTime, nullable=True)
	mastery_level = Column(Integer, default=0, nullable=False)
	times_correct = Column(Integer, default=0, nullable=False)
	times_incorrect = Column(Integer, default=0, nullable=False)
	first_seen_at = Column(DateTime, default=datetime.utcnow, nullable=False)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
	updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class VocabularyMastery(Base):
	__tablename__ = "vocabulary_mastery"
	__table_args__ = (UniqueConstraint("user_id", "annotation_id", name="uq_mastery_user_annotation"),)
	id = Column(String(36), primary_key=True, default=_uuid)
	user_id = Column(String(128), nullable=False, index=True)
	annotation_id = Column(String(36), ForeignKey("annotations.id", ondelete="CASCADE"), nullable=False)
	spanish_term = Column(String(200), nullable=False)
	disclosure_level = Column(Integer, default=0, nullable=False)
	view_count = Column(Integer, default=0, nullable=False)
	total_time_spent = Column(Integer, default=0, nullable=False)
	mastery_score = Column(Float, default=0.0, nullable=False)
	next_review_date = Column(DateTime, nullable=True)
	review_interval = Column(Integer, default=1, nullable=False)
	ease_factor = Column(Float, default=2.5, nullable=False)
	repetition_number = Column(Integer, default=0, nullable=False)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
	updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class AnnotationMastery(Base):
	__tablename__ = "annotation_mastery"
	__table_args__ = (UniqueConstraint("user_id", "annotation_id", name="uq_annotation_mastery_user_annotation"),)
	id = Column(String(36), primary_key=True, default=_uuid)
	user_id = Column(String(255), nullable=False, index=True)
	annotation_id = Column(String(36), ForeignKey("annotations.id", ondelete="CASCADE"), nullable=False, index=True)
	exposure_count = Column(Integer, default=0, nullable=False)
	correct_count = Column(Integer, default=0, nullable=False)
	incorrect_count = Column(Integer, default=0, nullable=False)
	first_seen_at = Column(DateTime, default=datetime.utcnow, nullable=False)
	last_seen_at = Column(DateTime, default=datetime.utcnow, nullable=False)
	last_correct_at = Column(DateTime, nullable=True)
	next_review_at = Column(DateTime, nullable=True)
	mastery_score = Column(Float, default=0.0, nullable=False)  # 0..1
	confidence_level = Column(Integer, default=1, nullable=False)  # 1..5
	avg_response_time_ms = Column(Integer, nullable=True)
	fastest_response_time_ms = Column(Integer, nullable=True)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
	updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class LearningEvent(Base):
	__tablename__ = "learning_events"
	id = Column(String(36), primary_key=True, default=_uuid)
	user_id = Column(String(128), nullable=True, index=True)
	annotation_id = Column(String(36), nullable=True)
	event_type = Column(String(32), nullable=False)
	disclosure_level = Column(Integer, nullable=True)
	interaction_duration = Column(Integer, nullable=True)
	correct_response = Column(Boolean, nullable=True)
	metadata_json = Column("metadata", JSON, nullable=True)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class VocabularyEnrichment(Base):
	__tablename__ = "vocabulary_enrichment"
	id = Column(String(36), primary_key=True, default=_uuid)
	spanish_term = Column(String(200), unique=True, nullable=False)
	etymology = Column(Text, nullable=True)
	mnemonic = Column(Text, nullable=True)
	related_terms = Column(JSON, default=list, nullable=False)
	common_phrases = Column(JSON, default=list, nullable=False)
	usage_examples = Column(JSON, default=list, nullable=False)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
	updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class ExerciseSession(Base):
	__tablename__ = "exercise_sessions"
	id = Column(Integer, primary_key=True, autoincrement=True)
	session_id = Column(String(128), unique=True, nullable=False, index=True)
	user_id = Column(String(128), nullable=True)
	exercises_completed = Column(Integer, default=0, nullable=False)
	correct_answers = Column(Integer, default=0, nullable=False)
	started_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class ExerciseResult(Base):
	__tablename__ = "exercise_results"
	id = Column(Integer, primary_key=True, autoincrement=True)
	session_id = Column(String(128), ForeignKey("exercise_sessions.session_id", ondelete="CASCADE"), nullable=False, index=True)
	user_id = Column(String(128), nullable=True, index=True)
	exercise_type = Column(String(40), nullable=False)
	annotation_id = Column(String(36), nullable=True)
	spanish_term = Column(String(200), nullable=True)
	user_answer = Column(JSON, nullable=True)
	is_correct = Column(Boolean, nullable=False)
	time_taken = Column(Integer, nullable=True)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class ExerciseCacheEntry(Base):
	__tablename__ = "exercise_cache"
	id = Column(String(36), primary_key=True, default=_uuid)
	cache_key = Column(String(255), unique=True, nullable=False, index=True)
	user_id = Column(String(128), nullable=True, index=True)
	exercise_type = Column(String(50), nullable=False)
	exercise_data = Column(JSON, nullable=False)
	difficulty = Column(Integer, nullable=False)
	topics = Column(JSON, default=list, nullable=False)
	usage_count = Column(Integer, default=0, nullable=False)
	last_used_at = Column(DateTime, default=datetime.utcnow, nullable=False)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
	expires_at = Column(DateTime, nullable=False, index=True)
	generation_cost = Column(Float, default=0.003, nullable=False)
	generation_time_ms = Column(Integer, nullable=True)
