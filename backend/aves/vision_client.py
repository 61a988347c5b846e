from __future__ import annotations
import base64
import json
import logging
import re
from typing import Any, Dict, List, Optional

import anthropic
import httpx

from .settings import settings

logger = logging.getLogger(__name__)

ANNOTATION_TYPES = ("anatomical", "behavioral", "color", "pattern")
SUPPORTED_MEDIA_TYPES = ("image/jpeg", "image/png", "image/gif", "image/webp")
DEFAULT_CONFIDENCE = 0.8
MIN_SUITABLE_SCORE = 60

ANNOTATION_PROMPT = """
Analyze this bird image and identify visible features that would be useful for Spanish language learning.
Return between 3 and 8 annotations as a JSON array with this EXACT structure (valid JSON only, no markdown):

[{
  "spanishTerm": "el pico",
  "englishTerm": "beak",
  "boundingBox": {"x": 0.45, "y": 0.30, "width": 0.10, "height": 0.08},
  "type": "anatomical",
  "difficultyLevel": 1,
  "pronunciation": "el PEE-koh",
  "confidence": 0.95
}]

Rules:
- boundingBox values are fractions of the image size between 0 and 1; x/y is the top-left corner.
- type is one of: anatomical, behavioral, color, pattern.
- difficultyLevel is an integer from 1 (basic) to 5 (advanced).
- Include the Spanish article with nouns (el/la/los/las).
- Only annotate features that are clearly visible.
""".strip()

QUALITY_PROMPT = """
Assess the quality of this bird image for educational annotation generation.

Score it from 0 to 100:
- Bird visibility (40 points): a clearly visible bird, large enough to annotate, in focus and well lit.
- Feature clarity (30 points): beak, wings, eyes and tail visible and distinct enough to box.
- Technical quality (20 points): adequate resolution, exposure and contrast, no obstructions.
- Educational value (10 points): several annotatable features, a good representative of the species.

Reject (suitable false) images with no bird, a bird under 15% of the frame, heavy blur,
severe over or underexposure, overlapping birds, silhouettes or stylized art.

Return ONLY a JSON object (no markdown):
{"suitable": true, "score": 85, "skipReason": null, "issues": []}

Set "suitable" to false if score < 60.
""".strip()


def vision_configured() -> bool:
	return bool(settings.anthropic_api_key)


def _strip_fences(text: str) -> str:
	text = text.strip()
	fenced = re.search(r"```(?:json)?\s*([\s\S]*?)```", text)
	if fenced:
		return fenced.group(1).strip()
	return text


def _valid_box(box: Any) -> bool:
	if not isinstance(box, dict):
		return False
	try:
		values = [float(box[k]) for k in ("x", "y", "width", "height")]
	except (KeyError, TypeError, ValueError):
		return False
	return all(0 <= v <= 1 for v in values)


def parse_annotation_response(text: str) -> List[Dict[str, Any]]:
	"""Parse Claude's JSON array, keeping only well-formed annotations."""
	body = _strip_fences(text)
	try:
		data = json.loads(body)
	except json.JSONDecodeError:
		match = re.search(r"\[[\s\S]*\]", body)
		if not match:
			raise ValueError("No JSON array found in vision response")
		data = json.loads(match.group(0))
	if not isinstance(data, list):
		raise ValueError("Vision response is not a JSON array")

	annotations: List[Dict[str, Any]] = []
	for index, item in enumerate(data):
		if not isinstance(item, dict):
			continue
		spanish = str(item.get("spanishTerm") or "").strip()
		english = str(item.get("englishTerm") or "").strip()
		box = item.get("boundingBox")
		kind = item.get("type")
		try:
			difficulty = int(item.get("difficultyLevel"))
		except (TypeError, ValueError):
			difficulty = 0
		if not spanish or not english or not _valid_box(box) or kind not in ANNOTATION_TYPES or not 1 <= difficulty <= 5:
			logger.warning("Dropping invalid annotation #%s from vision response", index)
			continue
		try:
			confidence = float(item.get("confidence", DEFAULT_CONFIDENCE))
		except (TypeError, ValueError):
			confidence = DEFAULT_CONFIDENCE
		annotations.append({
			"spanishTerm": spanish,
			"englishTerm": english,
			"boundingBox": {k: float(box[k]) for k in ("x", "y", "width", "height")},
			"type": kind,
			"difficultyLevel": difficulty,
			"pronunciation": item.get("pronunciation"),
			"confidence": max(0.0, min(1.0, confidence)),
		})
	return annotations


def parse_quality_response(text: str) -> Dict[str, Any]:
	"""Parse a quality assessment object; the score is clamped to 0..100."""
	body = _strip_fences(text)
	try:
		data = json.loads(body)
	except json.JSONDecodeError:
		match = re.search(r"\{[\s\S]*\}", body)
		if not match:
			raise ValueError("No JSON object found in quality response")
		data = json.loads(match.group(0))
	if not isinstance(data, dict):
		raise ValueError("Quality response is not a JSON object")
	score = data.get("score")
	if isinstance(score, bool) or not isinstance(score, (int, float)):
		raise ValueError('Missing or invalid "score" field')
	score = int(max(0, min(100, score)) + 0.5)
	suitable = bool(data.get("suitable", True)) and score >= MIN_SUITABLE_SCORE
	issues = data.get("issues")
	return {
		"score": score,
		"suitable": suitable,
		"skipReason": None if suitable else (data.get("skipReason") or "Image quality below threshold"),
		"issues": issues if isinstance(issues, list) else [],
	}


class VisionClient:
	def __init__(self, api_key: Optional[str] = None, *, model: Optional[str] = None) -> None:
		self.api_key = api_key or settings.anthropic_api_key
		if not self.api_key:
			raise ValueError("ANTHROPIC_API_KEY is not configured")
		self.model = model or settings.anthropic_model
		self._client = anthropic.AsyncAnthropic(api_key=self.api_key)
		self._http = httpx.AsyncClient(timeout=30, follow_redirects=True)

	async def _fetch_image(self, image_url: str) -> tuple[str, str]:
		r = await self._http.get(image_url)
		r.raise_for_status()
		media_type = r.headers.get("content-type", "image/jpeg").split(";")[0].strip()
		if media_type not in SUPPORTED_MEDIA_TYPES:
			media_type = "image/jpeg"
		return base64.b64encode(r.content).decode("ascii"), media_type

	async def _ask(self, image_url: str, prompt: str, *, max_tokens: int, temperature: float) -> str:
		data, media_type = await self._fetch_image(image_url)
		response = await self._client.messages.create(
			model=self.model,
			max_tokens=max_tokens,
			temperature=temperature,
			messages=[
				{
					"role": "user",
					"content": [
						{"type": "image", "source": {"type": "base64", "media_type": media_type, "data": data}},
						{"type": "text", "text": prompt},
					],
				}
			],
		)
		text = "".join(block.text for block in response.content if block.type == "text")
		if not text:
			raise ValueError("No text content returned from vision model")
		return text

	async def annotate_image(self, image_url: str) -> List[Dict[str, Any]]:
		text = await self._ask(image_url, ANNOTATION_PROMPT, max_tokens=4096, temperature=0.3)
		annotations = parse_annotation_response(text)
		logger.info("Vision model returned %s annotations for %s", len(annotations), image_url)
		return annotations

	async def assess_quality(self, image_url: str) -> Dict[str, Any]:
		"""Score an image 0-100 for how well it suits annotation."""
		text = await self._ask(image_url, QUALITY_PROMPT, max_tokens=1024, temperature=0.2)
		assessment = parse_quality_response(text)
		logger.info("Quality score %s for %s", assessment["score"], image_url)
		return assessment

	async def aclose(self) -> None:
		await self._http.aclose()
		await self._client.close()
