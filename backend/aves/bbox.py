from __future__ import annotations
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class BoundingBox(BaseModel):
	x: float = Field(ge=0, le=1)
	y: float = Field(ge=0, le=1)
	width: float = Field(ge=0, le=1)
	height: float = Field(ge=0, le=1)


def normalize_bounding_box(bbox: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
	"""Convert the legacy topLeft/bottomRight shape to x/y/width/height."""
	if bbox and "topLeft" in bbox:
		top_left = bbox["topLeft"]
		if "bottomRight" in bbox:
			bottom_right = bbox["bottomRight"]
			width = bottom_right["x"] - top_left["x"]
			height = bottom_right["y"] - top_left["y"]
		else:
			width = bbox.get("width", 0)
			height = bbox.get("height", 0)
		return {"x": top_left["x"], "y": top_left["y"], "width": width, "height": height}
	return bbox


def bbox_area(bbox: Optional[Dict[str, Any]]) -> float:
	box = normalize_bounding_box(bbox) or {}
	return float(box.get("width", 0)) * float(box.get("height", 0))


def bbox_deltas(original: Dict[str, Any], corrected: Dict[str, Any]) -> Dict[str, float]:
	a = normalize_bounding_box(original) or {}
	b = normalize_bounding_box(corrected) or {}
	return {
		"x": float(b.get("x", 0)) - float(a.get("x", 0)),
		"y": float(b.get("y", 0)) - float(a.get("y", 0)),
		"width": float(b.get("width", 0)) - float(a.get("width", 0)),
		"height": float(b.get("height", 0)) - float(a.get("height", 0)),
	}
