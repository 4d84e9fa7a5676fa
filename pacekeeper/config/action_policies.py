"""Action category policy models and YAML loader.

Provides typed Pydantic models for per-category quota policies (e.g.
"connect", "message") and a loader function that parses the YAML config
into those models.
"""

from __future__ import annotations

import logging
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)


class OperatingHours(BaseModel):
    """Local hour window during which actions may be attempted."""

    start: int = Field(ge=0, le=23)
    end: int = Field(ge=0, le=23)


class ActionPolicy(BaseModel):
    """Quota policy for a single action category."""

    daily_limit: int = Field(default=15, ge=0)
    weekly_limit: int = Field(default=80, ge=0)


_DEFAULT_POLICY = ActionPolicy()


def load_action_policies(
    yaml_path: str,
    default: ActionPolicy | None = None,
) -> dict[str, ActionPolicy]:
    """Parse an action policies YAML file into typed ActionPolicy objects.

    A category entry inherits any limit it does not set from *default*, so
    the configured daily/weekly limits apply to every category that does not
    pin its own.

    Args:
        yaml_path: Path to the YAML configuration file.
        default: Policy used for unset fields and for the "default" entry
            when the file does not define one. Falls back to the built-in
            policy.

    Returns:
        A dict mapping category names (and "default") to ActionPolicy instances.
        If the file is not found or unreadable, returns just the default policy.
    """
    fallback = default or _DEFAULT_POLICY
    path = Path(yaml_path)

    if not path.exists():
        logger.warning("Action policies file not found at %s — using defaults", yaml_path)
        return {"default": fallback}

    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        logger.error("Failed to read action policies YAML at %s: %s", yaml_path, exc)
        return {"default": fallback}

    if not isinstance(raw, dict) or "categories" not in raw:
        logger.warning("Action policies YAML missing 'categories' key — using defaults")
        return {"default": fallback}

    categories = raw["categories"] or {}
    if not isinstance(categories, dict):
        logger.warning("Action policies 'categories' is not a mapping — using defaults")
        return {"default": fallback}

    policies: dict[str, ActionPolicy] = {}
    for category, config in categories.items():
        if not isinstance(config, dict) and config is not None:
            logger.error("Invalid policy for category '%s': not a mapping — skipping", category)
            continue
        try:
            policies[category] = ActionPolicy.model_validate(
                {**fallback.model_dump(), **(config or {})}
            )
        except ValidationError as exc:
            logger.error("Invalid policy for category '%s': %s — skipping", category, exc)

    if "default" not in policies:
        policies["default"] = fallback

    return policies
