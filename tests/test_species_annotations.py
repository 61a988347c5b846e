"""Tests for /api/species and /api/annotations."""

import pytest

from aves.models import AnnotationInteraction, Image


@pytest.fixture
def birds(make_species):
	return {
		"cardinal": make_species(),
		"jay": make_species(
			scientific_name="Cyanocitta cristata",
			english_name="Blue Jay",
			spanish_name="Arrendajo Azul",
			family_name="Corvidae",
			habitats=["forest", "urban"],
		),
		"dove": make_species(
			scientific_name="Zenaida macroura",
			english_name="Mourning Dove",
			spanish_name="Paloma Huilota",
			order_name="Columbiformes",
			family_name="Columbidae",
			habitats=["urban"],
			size_category="medium",
		),
	}


class TestSpeciesList:
	"""Tests for listing and fetching species."""

	def test_list_ordered_by_spanish_name(self, client, birds, make_image):
		"""Species come back ordered by Spanish name with image counts."""
		make_image(birds["jay"])
		make_image(birds["jay"])
		body = client.get("/api/species").json()
		names = [s["spanishName"] for s in body["species"]]
		assert names == ["Arrendajo Azul", "Cardenal Norteño", "Paloma Huilota"]
		assert body["species"][0]["annotationCount"] == 2

	def test_get_with_images(self, client, birds, make_image, make_annotation):
		"""A species includes its images and their annotation counts."""
		image = make_image(birds["cardinal"])
		make_annotation(image)
		body = client.get(f"/api/species/{birds['cardinal'].id}").json()
		assert body["englishName"] == "Northern Cardinal"
		assert body["images"][0]["annotationCount"] == 1

	def test_get_missing(self, client):
		"""Unknown species are a 404."""
		assert client.get("/api/species/nope").status_code == 404


class TestSpeciesSearch:
	"""Tests for GET /api/species/search."""

	def test_empty_query(self, client, birds):
		"""An empty query returns no results."""
		assert client.get("/api/species/search", params={"q": "  "}).json() == {"results": []}

	def test_spanish_matches_rank_first(self, client, birds):
		"""Spanish-name matches outrank English and scientific ones."""
		results = client.get("/api/species/search", params={"q": "jay"}).json()["results"]
		assert [r["englishName"] for r in results] == ["Blue Jay"]
		results = client.get("/api/species/search", params={"q": "AR"}).json()["results"]
		assert [r["englishName"] for r in results] == ["Blue Jay", "Northern Cardinal"]

	def test_english_before_scientific(self, client, make_species):
		"""English-name matches outrank scientific-name matches."""
		make_species(scientific_name="Turdus migratorius", english_name="American Robin", spanish_name="Mirlo Primavera")
		make_species(scientific_name="Robinia avis", english_name="Test Bird", spanish_name="Zorzal")
		results = client.get("/api/species/search", params={"q": "robin"}).json()["results"]
		assert [r["spanishName"] for r in results] == ["Mirlo Primavera", "Zorzal"]

	def test_scientific_match(self, client, birds):
		"""Scientific names are searched too."""
		results = client.get("/api/species/search", params={"q": "zenaida"}).json()["results"]
		assert [r["spanishName"] for r in results] == ["Paloma Huilota"]

	def test_limit(self, client, make_species):
		"""At most 20 results are returned."""
		for n in range(25):
			make_species(scientific_name=f"Avis {n}", english_name=f"Bird {n}", spanish_name=f"Pájaro {n}")
		assert len(client.get("/api/species/search", params={"q": "avis"}).json()["results"]) == 20

	def test_wildcards_match_literally(self, client, birds, make_species):
		"""Percent and underscore in the query are not LIKE wildcards."""
		assert client.get("/api/species/search", params={"q": "%"}).json() == {"results": []}
		assert client.get("/api/species/search", params={"q": "_"}).json() == {"results": []}
		make_species(scientific_name="Avis_rara", english_name="Rare 100% Bird", spanish_name="Ave Rara")
		results = client.get("/api/species/search", params={"q": "0%"}).json()["results"]
		assert [r["spanishName"] for r in results] == ["Ave Rara"]
		results = client.get("/api/species/search", params={"q": "s_r"}).json()["results"]
		assert [r["spanishName"] for r in results] == ["Ave Rara"]


class TestSpeciesStatsAndCreate:
	"""Tests for stats and creation."""

	def test_stats(self, client, birds, make_image, make_annotation):
		"""Stats group species by order, habitat and size."""
		make_annotation(make_image(birds["dove"]))
		body = client.get("/api/species/stats").json()
		assert body["totalSpecies"] == 3
		assert body["totalImages"] == 1
		assert body["totalAnnotations"] == 1
		assert body["byOrder"] == {"Passeriformes": 2, "Columbiformes": 1}
		assert body["byHabitat"]["urban"] == 2
		assert body["bySize"] == {"small": 2, "medium": 1}

	def test_create_and_duplicate(self, client):
		"""Creating returns 201; the same scientific name again is a 409."""
		payload = {
			"scientificName": "Passer domesticus",
			"spanishName": "Gorrión Común",
			"englishName": "House Sparrow",
			"orderName": "Passeriformes",
			"familyName": "Passeridae",
			"habitats": ["urban"],
		}
		r = client.post("/api/species", json=payload)
		assert r.status_code == 201
		assert r.json()["species"]["conservationStatus"] == "LC"
		assert client.post("/api/species", json=payload).status_code == 409

	def test_create_invalid(self, client):
		"""Missing fields are a 400 with field details."""
		r = client.post("/api/species", json={"scientificName": "X"})
		assert r.status_code == 400
		fields = {d["field"] for d in r.json()["details"]}
		assert "spanishName" in fields


class TestAnnotations:
	"""Tests for annotation CRUD."""

	def _payload(self, image_id, **extra):
		payload = {
			"imageId": image_id,
			"boundingBox": {"x": 0.1, "y": 0.2, "width": 0.3, "height": 0.2},
			"type": "anatomical",
			"spanishTerm": "la cola",
			"englishTerm": "tail",
			"difficultyLevel": 2,
		}
		payload.update(extra)
		return payload

	def test_create_and_list(self, client, db, birds, make_image):
		"""Created annotations show up for their image and bump its count."""
		image = make_image(birds["cardinal"])
		r = client.post("/api/annotations", json=self._payload(image.id))
		assert r.status_code == 201
		created = r.json()["annotation"]
		assert created["spanishTerm"] == "la cola"
		assert client.get("/api/annotations", params={"imageId": image.id}).json()["data"][0]["id"] == created["id"]
		assert client.get(f"/api/annotations/{image.id}").json()["annotations"][0]["type"] == "anatomical"
		db.expire_all()
		assert db.get(Image, image.id).annotation_count == 1

	def test_create_rejects_out_of_range_box(self, client, birds, make_image):
		"""Box values outside 0..1 are a 400."""
		image = make_image(birds["cardinal"])
		payload = self._payload(image.id, boundingBox={"x": 1.2, "y": 0, "width": 0.1, "height": 0.1})
		assert client.post("/api/annotations", json=payload).status_code == 400

	def test_create_unknown_image(self, client):
		"""Annotating a missing image is a 404."""
		assert client.post("/api/annotations", json=self._payload("missing")).status_code == 404

	def test_update(self, client, birds, make_image, make_annotation):
		"""Partial updates change only the given fields."""
		ann = make_annotation(make_image(birds["cardinal"]))
		r = client.put(f"/api/annotations/{ann.id}", json={"englishTerm": "bill", "difficultyLevel": 3})
		assert r.status_code == 200
		body = r.json()["annotation"]
		assert body["englishTerm"] == "bill"
		assert body["spanishTerm"] == "el pico"
		assert body["difficultyLevel"] == 3

	def test_update_empty_and_missing(self, client, birds, make_image, make_annotation):
		"""An empty update is a 400; a missing annotation is a 404."""
		ann = make_annotation(make_image(birds["cardinal"]))
		assert client.put(f"/api/annotations/{ann.id}", json={}).status_code == 400
		assert client.put("/api/annotations/missing", json={"englishTerm": "x"}).status_code == 404

	def test_hidden_annotations_not_listed(self, client, birds, make_image, make_annotation):
		"""Invisible annotations are excluded from listings."""
		image = make_image(birds["cardinal"])
		ann = make_annotation(image)
		client.put(f"/api/annotations/{ann.id}", json={"isVisible": False})
		assert client.get("/api/annotations", params={"imageId": image.id}).json()["data"] == []

	def test_delete(self, client, birds, make_image, make_annotation):
		"""Deleting returns the id; deleting again is a 404."""
		ann = make_annotation(make_image(birds["cardinal"]))
		r = client.delete(f"/api/annotations/{ann.id}")
		assert r.json() == {"message": "Annotation deleted successfully", "id": ann.id}
		assert client.delete(f"/api/annotations/{ann.id}").status_code == 404

	def test_interaction(self, client, db, birds, make_image, make_annotation):
		"""Interactions are recorded with a timestamp."""
		ann = make_annotation(make_image(birds["cardinal"]))
		r = client.post(f"/api/annotations/{ann.id}/interaction", json={"interactionType": "reveal", "revealed": True})
		assert r.status_code == 201
		assert r.json()["interactionId"]
		assert db.query(AnnotationInteraction).one().interaction_type == "reveal"

	def test_interaction_bad_type(self, client, birds, make_image, make_annotation):
		"""Unknown interaction types are a 400."""
		ann = make_annotation(make_image(birds["cardinal"]))
		r = client.post(f"/api/annotations/{ann.id}/interaction", json={"interactionType": "swipe"})
		assert r.status_code == 400
