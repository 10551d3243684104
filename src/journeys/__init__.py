"""Journey registry with lazy loading.

Usage:
    from src.journeys import get_journey

    journey = get_journey("organic")
    outcome = await journey.execute(ctx)
"""

import importlib
import logging

from src.journeys.base import Journey, JourneyContext, JourneyState, Outcome

__all__ = [
    "Journey",
    "JourneyContext",
    "JourneyState",
    "Outcome",
    "available_journeys",
    "get_journey",
    "resolve_journey",
]

logger = logging.getLogger(__name__)

# Lazy registry: maps journey type -> (module_path, class_name)
_REGISTRY: dict[str, tuple[str, str]] = {
    "mixed": ("src.journeys.mixed", "MixedJourney"),
    "organic": ("src.journeys.organic", "OrganicJourney"),
    "images": ("src.journeys.images", "ImagesJourney"),
    "knowledge_panel": ("src.journeys.knowledge_panel", "KnowledgePanelJourney"),
    "lens": ("src.journeys.lens", "LensJourney"),
    "local_profile": ("src.journeys.local_profile", "LocalProfileJourney"),
    "tiered": ("src.journeys.tiered", "TieredJourney"),
}


def get_journey(name: str) -> Journey:
    """Instantiate and return a journey by type.

    Raises:
        ValueError: If the journey type is unknown.
    """
    if name not in _REGISTRY:
        valid = ", ".join(sorted(_REGISTRY))
        msg = f"Unknown journey type '{name}'. Available: {valid}"
        raise ValueError(msg)

    module_path, class_name = _REGISTRY[name]
    module = importlib.import_module(module_path)
    cls = getattr(module, class_name)
    return cls()  # type: ignore[no-any-return]


def resolve_journey(name: str | None, default: str) -> Journey:
    """Like get_journey, but unknown or missing types fall back to ``default``."""
    if name and name in _REGISTRY:
        return get_journey(name)
    if name:
        logger.warning("Unknown journey type '%s', falling back to '%s'", name, default)
    return get_journey(default)


def available_journeys() -> list[str]:
    """Return sorted list of registered journey types."""
    return sorted(_REGISTRY)
