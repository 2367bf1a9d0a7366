"""Configuration for the feature gating engine."""

from fyla_gating.config.gating_settings import (
    GatingSettings,
    load_gating_settings,
)

__all__ = [
    "GatingSettings",
    "load_gating_settings",
]
