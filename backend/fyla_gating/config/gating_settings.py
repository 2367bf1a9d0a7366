"""
Feature gating configuration loader.

Loads cache lifetimes, the activation grace period and HTTP provider settings
from config/feature_gating.yml, then applies FEATURE_GATING_* environment
overrides.

Missing or malformed configuration never prevents startup: every bad value
falls back to its default with a warning.

Usage:
    from fyla_gating.config.gating_settings import load_gating_settings

    settings = load_gating_settings()
    store = SubscriptionStore(provider, ttl_seconds=settings.subscription_ttl_seconds)
"""

import logging
import math
import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

logger = logging.getLogger(__name__)

ENV_PREFIX = "FEATURE_GATING_"
CONFIG_FILENAME = "feature_gating.yml"

DEFAULT_API_BASE_URL = "https://api.fyla.app/api"


@dataclass(frozen=True)
class GatingSettings:
    """Tunables for one entitlement session."""

    subscription_ttl_seconds: float = 600.0
    usage_ttl_seconds: float = 300.0
    failure_retry_seconds: float = 30.0
    activation_grace_seconds: float = 2.0
    api_base_url: str = DEFAULT_API_BASE_URL
    request_timeout_seconds: float = 15.0
    connect_timeout_seconds: float = 5.0

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


def _resolve_path(config_path: Optional[str]) -> Optional[Path]:
    if config_path:
        return Path(config_path)

    candidates = [
        # Repository root (backend/fyla_gating/config -> ../../..)
        Path(__file__).parent.parent.parent.parent / "config" / CONFIG_FILENAME,
        Path(os.getcwd()) / "config" / CONFIG_FILENAME,
        Path(os.getcwd()) / ".." / "config" / CONFIG_FILENAME,
    ]
    for p in candidates:
        resolved = p.resolve()
        if resolved.exists():
            return resolved
    return None


def _coerce(name: str, raw: Any, default: Any) -> Any:
    """Convert raw to the type of default; raises ValueError/TypeError."""
    if isinstance(default, str):
        if not isinstance(raw, str) or not raw.strip():
            raise ValueError(f"{name} must be a non-empty string")
        return raw.strip()

    if isinstance(raw, bool):
        raise TypeError(f"{name} must be a number, got {raw!r}")
    value = float(raw)
    if not math.isfinite(value):
        raise ValueError(f"{name} must be finite, got {value}")
    if value < 0:
        raise ValueError(f"{name} must be >= 0, got {value}")
    return value


def _apply(settings: GatingSettings, values: Mapping[str, Any], source: str) -> GatingSettings:
    updates: Dict[str, Any] = {}
    known = {f.name for f in fields(GatingSettings)}

    for name, raw in values.items():
        if name not in known:
            logger.warning("Unknown feature gating setting ignored", extra={
                "setting": name,
                "source": source,
            })
            continue
        if raw is None:
            continue
        try:
            updates[name] = _coerce(name, raw, getattr(settings, name))
        except (TypeError, ValueError) as exc:
            logger.warning("Invalid feature gating setting, using default", extra={
                "setting": name,
                "value": repr(raw),
                "source": source,
                "error": str(exc),
            })

    return replace(settings, **updates) if updates else settings


def _read_yaml(path: Path) -> Dict[str, Any]:
    try:
        with open(path, "r") as f:
            raw = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as exc:
        logger.warning("Could not read feature gating config, using defaults", extra={
            "path": str(path),
            "error": str(exc),
        })
        return {}

    if not isinstance(raw, dict):
        logger.warning("Feature gating config must be a mapping, using defaults", extra={
            "path": str(path),
        })
        return {}

    # Settings may sit at the top level or under a "feature_gating" key
    section = raw.get("feature_gating", raw)
    return section if isinstance(section, dict) else {}


def _env_values(environ: Mapping[str, str]) -> Dict[str, str]:
    values = {}
    for key, value in environ.items():
        if key.startswith(ENV_PREFIX):
            values[key[len(ENV_PREFIX):].lower()] = value
    return values


def load_gating_settings(
    config_path: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> GatingSettings:
    """
    Build GatingSettings from YAML and environment.

    Resolution order: defaults → YAML file → FEATURE_GATING_* env vars.

    Args:
        config_path: Explicit YAML path (default: search config/feature_gating.yml)
        environ: Environment mapping (default: os.environ)
    """
    settings = GatingSettings()

    path = _resolve_path(config_path)
    if path is None:
        logger.info("No feature gating config file found, using defaults")
    elif not path.exists():
        logger.warning("Feature gating config not found, using defaults", extra={
            "path": str(path),
        })
    else:
        settings = _apply(settings, _read_yaml(path), source=str(path))
        logger.info("Loaded feature gating config from %s", path)

    env = os.environ if environ is None else environ
    settings = _apply(settings, _env_values(env), source="environment")

    return settings
