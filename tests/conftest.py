"""Shared fixtures.

The database URL and external service keys are fixed before ``aves`` is
imported, so every module binds to a throwaway SQLite file.
"""

import os
import tempfile

_DB_DIR = tempfile.mkdtemp(prefix="aves-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_DB_DIR, 'aves-test.db')}"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["ADMIN_EMAILS"] = "admin@aves.app"
os.environ["UNSPLASH_ACCESS_KEY"] = ""
os.environ["ANTHROPIC_API_KEY"] = ""
os.environ["SUPABASE_URL"] = ""
os.environ["SUPABASE_SERVICE_ROLE_KEY"] = ""

import pytest
from fastapi.testclient import TestClient

from aves import annotation_pipeline, image_jobs, jobs, unsplash_client, vision_client
from aves.db import Base, SessionLocal, engine
from aves.main import app
from aves.models import Annotation, Image, Species
from aves.ratelimit import ai_limiter
from aves.routers.auth import create_access_token
from aves.settings import settings


SAMPLE_ANNOTATIONS = [
	{
		"spanishTerm": "el pico",
		"englishTerm": "beak",
		"boundingBox": {"x": 0.4, "y": 0.3, "width": 0.1, "height": 0.08},
		"type": "anatomical",
		"difficultyLevel": 1,
		"pronunciation": "el PEE-koh",
		"confidence": 0.95,
	},
	{
		"spanishTerm": "las plumas rojas",
		"englishTerm": "red feathers",
		"boundingBox": {"x": 0.2, "y": 0.2, "width": 0.5, "height": 0.5},
		"type": "color",
		"difficultyLevel": 2,
		"pronunciation": None,
		"confidence": 0.65,
	},
]


class FakeVisionClient:
	"""Stands in for VisionClient; returns canned annotations or raises."""

	def __init__(self, annotations=None, error=None, quality=85):
		self.annotations = SAMPLE_ANNOTATIONS if annotations is None else annotations
		self.error = error
		self.quality = quality
		self.quality_error = None
		self.calls = []
		self.quality_calls = []
		self.closed = False

	async def annotate_image(self, image_url):
		self.calls.append(image_url)
		if self.error is not None:
			raise self.error
		return [dict(a) for a in self.annotations]

	async def assess_quality(self, image_url):
		self.quality_calls.append(image_url)
		if self.quality_error is not None:
			raise self.quality_error
		return {"score": self.quality, "suitable": self.quality >= 60, "skipReason": None, "issues": []}

	async def aclose(self):
		self.closed = True


class FakeUnsplashClient:
	"""Serves one photo per call with ids unique to the query."""

	def __init__(self, empty_for=()):
		self.empty_for = set(empty_for)
		self.queries = []

	async def search(self, query, per_page=2):
		self.queries.append(query)
		if query in self.empty_for:
			return []
		slug = query.replace(" ", "-")
		return [
			{
				"id": f"{slug}-{n}",
				"width": 1200,
				"height": 800,
				"color": "#aa3322",
				"alt_description": f"photo of {query}",
				"urls": {"regular": f"https://images.example/{slug}-{n}.jpg"},
				"user": {"name": "Ana Photo", "username": "anaphoto"},
				"links": {"download_location": f"https://api.example/{slug}-{n}/download"},
			}
			for n in range(per_page)
		]

	async def quota_status(self):
		return {"available": True, "limit": 50, "remaining": 42}

	async def aclose(self):
		pass


@pytest.fixture(autouse=True)
def fresh_state(monkeypatch):
	"""Empty schema, job store and rate limiter; background tasks never start."""
	Base.metadata.drop_all(bind=engine)
	Base.metadata.create_all(bind=engine)
	jobs.job_store.clear()
	ai_limiter.reset()
	monkeypatch.setattr(jobs, "spawn", lambda coro: coro.close())
	monkeypatch.setattr(annotation_pipeline, "BACKOFF_BASE_SECONDS", 0)
	for name in ("IMAGE_DELAY_SECONDS", "SPECIES_DELAY_SECONDS", "ANNOTATE_DELAY_SECONDS", "BATCH_DELAY_SECONDS"):
		monkeypatch.setattr(image_jobs, name, 0)
	yield


@pytest.fixture
def client():
	return TestClient(app)


@pytest.fixture
def db():
	session = SessionLocal()
	try:
		yield session
	finally:
		session.close()


@pytest.fixture
def auth_headers():
	token = create_access_token({"userId": "learner-1", "email": "learner@aves.app"})
	return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def fake_vision(monkeypatch):
	fake = FakeVisionClient()
	monkeypatch.setattr(settings, "anthropic_api_key", "test-key")
	monkeypatch.setattr(vision_client, "VisionClient", lambda *a, **k: fake)
	return fake


@pytest.fixture
def fake_unsplash(monkeypatch):
	fake = FakeUnsplashClient()
	monkeypatch.setattr(settings, "unsplash_access_key", "test-key")
	monkeypatch.setattr(unsplash_client, "UnsplashClient", lambda *a, **k: fake)
	return fake


@pytest.fixture
def make_species(db):
	def _make(scientific_name="Cardinalis cardinalis", english_name="Northern Cardinal", spanish_name="Cardenal Norteño", **extra):
		row = Species(
			scientific_name=scientific_name,
			english_name=english_name,
			spanish_name=spanish_name,
			order_name=extra.pop("order_name", "Passeriformes"),
			family_name=extra.pop("family_name", "Cardinalidae"),
			habitats=extra.pop("habitats", ["forest"]),
			primary_colors=extra.pop("primary_colors", ["red"]),
			size_category=extra.pop("size_category", "small"),
			**extra,
		)
		db.add(row)
		db.commit()
		db.refresh(row)
		return row
	return _make


@pytest.fixture
def make_image(db):
	counter = {"n": 0}

	def _make(species, **extra):
		counter["n"] += 1
		row = Image(
			species_id=species.id,
			unsplash_id=extra.pop("unsplash_id", f"photo-{counter['n']}"),
			url=extra.pop("url", f"https://images.example/photo-{counter['n']}.jpg"),
			width=1200,
			height=800,
			**extra,
		)
		db.add(row)
		db.commit()
		db.refresh(row)
		return row
	return _make


@pytest.fixture
def make_annotation(db):
	def _make(image, spanish_term="el pico", english_term="beak", annotation_type="anatomical", difficulty_level=1, **extra):
		row = Annotation(
			image_id=image.id,
			bounding_box=extra.pop("bounding_box", {"x": 0.1, "y": 0.1, "width": 0.2, "height": 0.2}),
			annotation_type=annotation_type,
			spanish_term=spanish_term,
			english_term=english_term,
			difficulty_level=difficulty_level,
			**extra,
		)
		db.add(row)
		image.annotation_count = (image.annotation_count or 0) + 1
		db.commit()
		db.refresh(row)
		return row
	return _make
