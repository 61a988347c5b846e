from __future__ import annotations
import logging
from typing import Any, Dict, List, Optional

import httpx

from .settings import settings

logger = logging.getLogger(__name__)


def unsplash_configured() -> bool:
	return bool(settings.unsplash_access_key)


class UnsplashClient:
	def __init__(self, access_key: Optional[str] = None, *, base_url: Optional[str] = None) -> None:
		self.access_key = access_key or settings.unsplash_access_key
		if not self.access_key:
			raise ValueError("UNSPLASH_ACCESS_KEY is not configured")
		self.base_url = (base_url or settings.unsplash_base_url).rstrip("/")
		self._client = httpx.AsyncClient(
			timeout=30,
			headers={"Authorization": f"Client-ID {self.access_key}", "Accept-Version": "v1"},
		)

	async def search(self, query: str, per_page: int = 2) -> List[Dict[str, Any]]:
		"""Landscape photos for ``query``; an empty list on any API failure."""
		params = {
			"query": query,
			"per_page": per_page,
			"orientation": "landscape",
			"content_filter": "high",
		}
		try:
			r = await self._client.get(f"{self.base_url}/search/photos", params=params)
			r.raise_for_status()
			return list(r.json().get("results") or [])
		except (httpx.HTTPError, ValueError) as e:
			logger.error("Unsplash search failed for %r: %s", query, e)
			return []

	async def quota_status(self) -> Dict[str, Any]:
		try:
			r = await self._client.get(f"{self.base_url}/me")
		except httpx.RequestError as e:
			logger.warning("Unsplash quota check failed: %s", e)
			return {"available": False, "error": str(e)}
		limit = r.headers.get("x-ratelimit-limit")
		remaining = r.headers.get("x-ratelimit-remaining")
		return {
			"available": r.status_code < 500,
			"limit": int(limit) if limit and limit.isdigit() else None,
			"remaining": int(remaining) if remaining and remaining.isdigit() else None,
		}

	async def aclose(self) -> None:
		await self._client.aclose()
