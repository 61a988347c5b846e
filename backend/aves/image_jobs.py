"""Background image collection (Unsplash) and batch annotation (vision).

Both loops run sequentially with fixed pauses between calls to stay under the
third-party rate limits, and check the job's cancelled flag between items.
"""

from __future__ import annotations
import asyncio
import logging
from typing import Any, Dict, List, Optional

import anthropic
import httpx
from sqlalchemy.orm import Session

from . import annotation_pipeline, jobs, unsplash_client, vision_client
from .db import SessionLocal
from .models import AIAnnotation, Image, Species
from .settings import settings

logger = logging.getLogger(__name__)

IMAGE_DELAY_SECONDS = 0.5
SPECIES_DELAY_SECONDS = 1.0
ANNOTATE_DELAY_SECONDS = 2.0
BATCH_DELAY_SECONDS = 3.0
ANNOTATE_BATCH_SIZE = 5

DEFAULT_BIRD_SPECIES: List[Dict[str, Any]] = [
	{
		"scientificName": "Cardinalis cardinalis",
		"englishName": "Northern Cardinal",
		"spanishName": "Cardenal Norteño",
		"order": "Passeriformes",
		"family": "Cardinalidae",
		"searchTerms": "northern cardinal red bird",
		"habitats": ["forest", "urban", "garden"],
		"sizeCategory": "small",
		"primaryColors": ["red", "black"],
		"conservationStatus": "LC",
	},
	{
		"scientificName": "Cyanocitta cristata",
		"englishName": "Blue Jay",
		"spanishName": "Arrendajo Azul",
		"order": "Passeriformes",
		"family": "Corvidae",
		"searchTerms": "blue jay bird",
		"habitats": ["forest", "urban"],
		"sizeCategory": "small",
		"primaryColors": ["blue", "white", "black"],
		"conservationStatus": "LC",
	},
	{
		"scientificName": "Turdus migratorius",
		"englishName": "American Robin",
		"spanishName": "Petirrojo Americano",
		"order": "Passeriformes",
		"family": "Turdidae",
		"searchTerms": "american robin bird",
		"habitats": ["forest", "urban", "garden"],
		"sizeCategory": "small",
		"primaryColors": ["red", "brown", "gray"],
		"conservationStatus": "LC",
	},
	{
		"scientificName": "Zenaida macroura",
		"englishName": "Mourning Dove",
		"spanishName": "Paloma Huilota",
		"order": "Columbiformes",
		"family": "Columbidae",
		"searchTerms": "mourning dove bird",
		"habitats": ["urban", "grassland"],
		"sizeCategory": "small",
		"primaryColors": ["brown", "gray"],
		"conservationStatus": "LC",
	},
	{
		"scientificName": "Passer domesticus",
		"englishName": "House Sparrow",
		"spanishName": "Gorrión Común",
		"order": "Passeriformes",
		"family": "Passeridae",
		"searchTerms": "house sparrow bird",
		"habitats": ["urban"],
		"sizeCategory": "small",
		"primaryColors": ["brown", "gray"],
		"conservationStatus": "LC",
	},
]


def select_species(db: Session, species_ids: Optional[List[str]]) -> List[Dict[str, Any]]:
	"""Resolve requested ids/names to species definitions; all defaults when none given."""
	if not species_ids:
		return list(DEFAULT_BIRD_SPECIES)
	wanted = {s.strip().lower() for s in species_ids if s.strip()}
	selected = [
		s for s in DEFAULT_BIRD_SPECIES
		if s["englishName"].lower() in wanted or s["scientificName"].lower() in wanted
	]
	known = {s["scientificName"] for s in selected}
	for row in db.query(Species).filter(Species.id.in_(species_ids)).all():
		if row.scientific_name in known:
			continue
		selected.append({
			"scientificName": row.scientific_name,
			"englishName": row.english_name,
			"spanishName": row.spanish_name,
			"order": row.order_name,
			"family": row.family_name,
			"searchTerms": f"{row.english_name} bird",
			"habitats": row.habitats or [],
			"sizeCategory": row.size_category,
			"primaryColors": row.primary_colors or [],
			"conservationStatus": row.conservation_status,
		})
	return selected


def insert_species(db: Session, data: Dict[str, Any]) -> Species:
	row = db.query(Species).filter(Species.scientific_name == data["scientificName"]).first()
	if row is None:
		row = Species(scientific_name=data["scientificName"])
		db.add(row)
	row.english_name = data["englishName"]
	row.spanish_name = data["spanishName"]
	row.order_name = data["order"]
	row.family_name = data["family"]
	row.habitats = list(data.get("habitats") or [])
	row.size_category = data.get("sizeCategory")
	row.primary_colors = list(data.get("primaryColors") or [])
	row.conservation_status = data.get("conservationStatus") or "LC"
	db.commit()
	db.refresh(row)
	return row


def insert_image(db: Session, species_id: str, photo: Dict[str, Any]) -> Image:
	row = db.query(Image).filter(Image.unsplash_id == photo["id"]).first()
	if row is None:
		row = Image(unsplash_id=photo["id"], species_id=species_id)
		db.add(row)
	urls = photo.get("urls") or {}
	user = photo.get("user") or {}
	links = photo.get("links") or {}
	row.url = urls.get("regular") or urls.get("full") or ""
	row.width = int(photo.get("width") or 0)
	row.height = int(photo.get("height") or 0)
	row.color = photo.get("color")
	row.description = photo.get("description") or photo.get("alt_description")
	row.photographer = user.get("name")
	row.photographer_username = user.get("username")
	row.download_location = links.get("download_location")
	db.commit()
	db.refresh(row)
	return row


async def run_collection(job: jobs.JobProgress, species_list: List[Dict[str, Any]], per_species: int) -> None:
	store = jobs.job_store
	store.start(job)
	client = unsplash_client.UnsplashClient()
	db = SessionLocal()
	try:
		for index, entry in enumerate(species_list):
			if job.cancelled:
				break
			try:
				species = insert_species(db, entry)
			except Exception as e:
				db.rollback()
				logger.exception("Failed to store species %s", entry["englishName"])
				for _ in range(per_species):
					store.record_failure(job, entry["englishName"], str(e))
				continue
			photos = await client.search(entry.get("searchTerms") or entry["englishName"], per_page=per_species)
			if not photos:
				store.record_failure(job, entry["englishName"], "No images found")
			for photo in photos[:per_species]:
				if job.cancelled:
					break
				try:
					insert_image(db, species.id, photo)
					store.record_success(job)
				except Exception as e:
					db.rollback()
					store.record_failure(job, str(photo.get("id")), str(e))
				await asyncio.sleep(IMAGE_DELAY_SECONDS)
			if index < len(species_list) - 1:
				await asyncio.sleep(SPECIES_DELAY_SECONDS)
		store.finish(job)
	except Exception as e:
		logger.exception("Collection job %s crashed", job.job_id)
		store.fail(job, str(e))
	finally:
		db.close()
		await client.aclose()


def has_annotation_job(db: Session, image_id: str) -> bool:
	return (
		db.query(AIAnnotation.id)
		.filter(AIAnnotation.image_id == image_id, AIAnnotation.status != "failed")
		.first()
		is not None
	)


async def ensure_quality_score(db: Session, client: "vision_client.VisionClient", image: Image) -> Optional[int]:
	"""Score an unscored image and store the result.

	A failed assessment is logged and leaves the score empty; annotation can
	still go ahead in that case.
	"""
	if image.quality_score is not None:
		return image.quality_score
	try:
		assessment = await client.assess_quality(image.url)
	except (anthropic.APIError, httpx.HTTPError, ValueError) as e:
		logger.warning("Quality assessment failed for image %s: %s", image.id, e)
		return None
	image.quality_score = assessment["score"]
	db.commit()
	logger.info("Image %s scored %s (suitable=%s)", image.id, image.quality_score, assessment["suitable"])
	return image.quality_score


def below_quality_threshold(score: Optional[int]) -> bool:
	return score is not None and score < settings.annotation_quality_threshold


async def annotate_image(db: Session, client: "vision_client.VisionClient", image: Image) -> AIAnnotation:
	"""Annotate one image and store a ``batch_`` job with its pending items."""
	annotations = await annotation_pipeline.generate_with_retry(client, image.url)
	job = AIAnnotation(job_id=jobs.generate_job_id("batch"), image_id=image.id, status="pending")
	db.add(job)
	annotation_pipeline.store_generated_items(db, job, annotations)
	db.commit()
	db.refresh(job)
	return job


async def run_batch_annotation(job: jobs.JobProgress, image_ids: List[str]) -> None:
	store = jobs.job_store
	store.start(job)
	client = vision_client.VisionClient()
	db = SessionLocal()
	try:
		batches = [image_ids[i:i + ANNOTATE_BATCH_SIZE] for i in range(0, len(image_ids), ANNOTATE_BATCH_SIZE)]
		for batch_index, batch in enumerate(batches):
			if job.cancelled:
				break
			for image_id in batch:
				if job.cancelled:
					break
				image = db.get(Image, image_id)
				if image is None:
					store.record_failure(job, image_id, "Image not found")
					continue
				if has_annotation_job(db, image_id):
					store.record_success(job)
					job.metadata["skipped"] = job.metadata.get("skipped", 0) + 1
					continue
				try:
					score = await ensure_quality_score(db, client, image)
					if below_quality_threshold(score):
						store.record_failure(job, image_id, f"Quality score {score} is below the threshold")
						job.metadata["lowQuality"] = job.metadata.get("lowQuality", 0) + 1
						continue
					created = await annotate_image(db, client, image)
					store.record_success(job)
					job.metadata["annotationsCreated"] = job.metadata.get("annotationsCreated", 0) + len(created.annotation_data or [])
				except Exception as e:
					db.rollback()
					logger.warning("Annotation failed for image %s: %s", image_id, e)
					store.record_failure(job, image_id, str(e))
				await asyncio.sleep(ANNOTATE_DELAY_SECONDS)
			if batch_index < len(batches) - 1:
				await asyncio.sleep(BATCH_DELAY_SECONDS)
		store.finish(job)
	except Exception as e:
		logger.exception("Annotation job %s crashed", job.job_id)
		store.fail(job, str(e))
	finally:
		db.close()
		await client.aclose()
