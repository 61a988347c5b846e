from __future__ import annotations
import time
from collections import deque
from typing import Deque, Dict, Optional

from fastapi import HTTPException, Request

from .settings import settings


class SlidingWindowLimiter:
	"""In-memory per-client limiter over a sliding window."""

	def __init__(self, limit: int, window_seconds: float = 3600.0) -> None:
		self.limit = limit
		self.window_seconds = window_seconds
		self._hits: Dict[str, Deque[float]] = {}

	def hit(self, key: str, now: Optional[float] = None) -> bool:
		"""Record a request; False when the client is over the limit."""
		now = time.monotonic() if now is None else now
		hits = self._hits.setdefault(key, deque())
		cutoff = now - self.window_seconds
		while hits and hits[0] <= cutoff:
			hits.popleft()
		if len(hits) >= self.limit:
			return False
		hits.append(now)
		return True

	def reset(self) -> None:
		self._hits.clear()


ai_limiter = SlidingWindowLimiter(settings.ai_rate_limit_per_hour)


async def enforce_ai_rate_limit(request: Request) -> None:
	client = request.client.host if request.client else "unknown"
	if not ai_limiter.hit(client):
		raise HTTPException(status_code=429, detail="Too many AI annotation requests, please try again later")
