"""
Entitlement engine configuration loader.

Loads route classes, plan periods and timing defaults from
config/entitlements.yml, then applies ENTITLEMENT_* environment overrides.

Usage:
    from ferrodesk.config.settings import get_settings

    settings = get_settings()
    settings.remote_timeout_seconds
    settings.routes.subscription
"""

import logging
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Mapping, Optional, Tuple

import yaml

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path(__file__).parent / "entitlements.yml"

# env var -> (settings attribute, parser)
_ENV_OVERRIDES = {
    "ENTITLEMENT_REMOTE_TIMEOUT_SECONDS": ("remote_timeout_seconds", float),
    "ENTITLEMENT_REMOTE_MAX_RETRIES": ("remote_max_retries", int),
    "ENTITLEMENT_RETRY_BASE_DELAY_SECONDS": ("retry_base_delay_seconds", float),
    "ENTITLEMENT_CACHE_TRUST_SECONDS": ("cache_trust_seconds", int),
    "ENTITLEMENT_TRIAL_PROPAGATION_DELAY_SECONDS": ("trial_propagation_delay_seconds", float),
    "ENTITLEMENT_INVALIDATION_DEBOUNCE_SECONDS": ("invalidation_debounce_seconds", float),
    "ENTITLEMENT_GUARDED_PREFIX": ("guarded_prefix", str),
}


@dataclass(frozen=True)
class RouteTable:
    """Route classes consumed by the access guard."""

    landing: str = "/landing"
    home: str = "/"
    public: Tuple[str, ...] = ()
    redirect_when_authenticated: Tuple[str, ...] = ()
    auth_only: Tuple[str, ...] = ()
    subscription: Tuple[str, ...] = ()
    admin_only: Tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RouteTable":
        return cls(
            landing=data.get("landing", "/landing"),
            home=data.get("home", "/"),
            public=tuple(data.get("public") or ()),
            redirect_when_authenticated=tuple(data.get("redirect_when_authenticated") or ()),
            auth_only=tuple(data.get("auth_only") or ()),
            subscription=tuple(data.get("subscription") or ()),
            admin_only=tuple(data.get("admin_only") or ()),
        )


@dataclass(frozen=True)
class OfferLinks:
    """Links rendered on the blocking offer."""

    plans_path: str = "/planos"
    guide_path: str = "/guia-completo"
    trial_endpoint: str = "/api/entitlements/trial"


@dataclass(frozen=True)
class EntitlementSettings:
    """Resolved engine settings. Immutable once loaded."""

    routes: RouteTable = field(default_factory=RouteTable)
    offer: OfferLinks = field(default_factory=OfferLinks)
    plan_period_days: Dict[str, int] = field(default_factory=dict)
    remote_timeout_seconds: float = 5.0
    remote_max_retries: int = 2
    retry_base_delay_seconds: float = 0.25
    cache_trust_seconds: int = 86400
    trial_propagation_delay_seconds: float = 0.5
    invalidation_debounce_seconds: float = 1.0
    guarded_prefix: str = "/app"

    @property
    def cache_trust_window_enabled(self) -> bool:
        return self.cache_trust_seconds > 0

    def with_overrides(self, **kwargs: Any) -> "EntitlementSettings":
        """Return a copy with the given fields replaced (used by tests)."""
        return replace(self, **kwargs)


def _read_yaml(path: Path) -> Dict[str, Any]:
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.warning("Entitlement config not found, using defaults", extra={"path": str(path)})
        return {}
    except yaml.YAMLError as e:
        logger.error("Entitlement config is not valid YAML", extra={"path": str(path), "error": str(e)})
        raise
    if not isinstance(data, dict):
        raise ValueError(f"Entitlement config must be a mapping: {path}")
    return data


def load_settings(
    config_path: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> EntitlementSettings:
    """
    Build settings from YAML and environment.

    Args:
        config_path: Override path to the YAML file
        environ: Environment mapping (defaults to os.environ)

    Returns:
        EntitlementSettings
    """
    environ = os.environ if environ is None else environ
    raw = _read_yaml(Path(config_path) if config_path else DEFAULT_CONFIG_PATH)

    timing = raw.get("timing") or {}
    guard = raw.get("guard") or {}
    values: Dict[str, Any] = {
        "routes": RouteTable.from_dict(raw.get("routes") or {}),
        "offer": OfferLinks(**(raw.get("offer") or {})),
        "plan_period_days": {str(k): int(v) for k, v in (raw.get("plans") or {}).items()},
    }
    for key in (
        "remote_timeout_seconds",
        "remote_max_retries",
        "retry_base_delay_seconds",
        "cache_trust_seconds",
        "trial_propagation_delay_seconds",
        "invalidation_debounce_seconds",
    ):
        if key in timing:
            values[key] = timing[key]
    if "guarded_prefix" in guard:
        values["guarded_prefix"] = guard["guarded_prefix"]

    for env_var, (attr, parser) in _ENV_OVERRIDES.items():
        value = environ.get(env_var)
        if value is None or value == "":
            continue
        try:
            values[attr] = parser(value)
        except ValueError:
            logger.warning(
                "Ignoring invalid entitlement setting override",
                extra={"env_var": env_var, "value": value},
            )

    return EntitlementSettings(**values)


_settings: Optional[EntitlementSettings] = None
_settings_lock = Lock()


def get_settings() -> EntitlementSettings:
    """Get the process-wide settings, loading them on first use."""
    global _settings
    if _settings is None:
        with _settings_lock:
            if _settings is None:
                _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """Drop cached settings so the next get_settings() reloads."""
    global _settings
    with _settings_lock:
        _settings = None
