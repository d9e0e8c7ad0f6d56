"""Credit prices per generation."""
from __future__ import annotations

from typing import Dict

from .models import GenerationKind, GenerationRequest

CREDIT_COSTS: Dict[str, int] = {
    "image_1k": 6,
    "image_2k": 10,
    "image_4k": 16,
    "video_5s": 30,
    "video_10s": 60,
}


def cost_key(request: GenerationRequest) -> str:
    if request.kind == GenerationKind.IMAGE:
        return f"image_{(request.resolution or '').lower()}"
    return f"video_{request.duration_seconds}s"


def credit_cost(request: GenerationRequest) -> int:
    """Credits charged for a single generation of ``request``."""

    key = cost_key(request)
    try:
        return CREDIT_COSTS[key]
    except KeyError as exc:
        raise ValueError(f"No credit price configured for {key}") from exc


__all__ = ["CREDIT_COSTS", "cost_key", "credit_cost"]
