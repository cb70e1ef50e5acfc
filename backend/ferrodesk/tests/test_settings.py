"""Tests for the entitlement settings loader."""

import pytest
import yaml

from ferrodesk.config.settings import (
    EntitlementSettings,
    get_settings,
    load_settings,
    reset_settings,
)


class TestLoadSettings:
    """YAML defaults and environment overrides."""

    def test_packaged_config(self):
        settings = load_settings(environ={})

        assert settings.routes.landing == "/landing"
        assert "/covildomal" in settings.routes.admin_only
        assert settings.plan_period_days == {"trial": 7, "monthly": 30, "quarterly": 90, "annual": 365}
        assert settings.cache_trust_seconds == 86400
        assert settings.guarded_prefix == "/app"
        assert settings.offer.trial_endpoint == "/api/entitlements/trial"

    def test_env_overrides_yaml(self):
        settings = load_settings(environ={
            "ENTITLEMENT_REMOTE_TIMEOUT_SECONDS": "1.5",
            "ENTITLEMENT_REMOTE_MAX_RETRIES": "4",
            "ENTITLEMENT_GUARDED_PREFIX": "/painel",
        })

        assert settings.remote_timeout_seconds == 1.5
        assert settings.remote_max_retries == 4
        assert settings.guarded_prefix == "/painel"

    def test_invalid_override_ignored(self):
        settings = load_settings(environ={"ENTITLEMENT_REMOTE_MAX_RETRIES": "many"})

        assert settings.remote_max_retries == 2

    def test_custom_file(self, tmp_path):
        path = tmp_path / "entitlements.yml"
        path.write_text(yaml.safe_dump({
            "routes": {"public": ["/welcome"], "subscription": ["/ledger"]},
            "timing": {"cache_trust_seconds": 0},
        }))

        settings = load_settings(str(path), environ={})

        assert settings.routes.public == ("/welcome",)
        assert settings.routes.subscription == ("/ledger",)
        assert settings.cache_trust_window_enabled is False

    def test_missing_file_falls_back_to_defaults(self, tmp_path):
        settings = load_settings(str(tmp_path / "absent.yml"), environ={})

        assert settings == EntitlementSettings()

    def test_non_mapping_file_rejected(self, tmp_path):
        path = tmp_path / "entitlements.yml"
        path.write_text("- just\n- a list\n")

        with pytest.raises(ValueError):
            load_settings(str(path), environ={})


class TestSettingsObject:

    def test_with_overrides_returns_copy(self):
        base = load_settings(environ={})

        changed = base.with_overrides(cache_trust_seconds=0)

        assert base.cache_trust_window_enabled is True
        assert changed.cache_trust_window_enabled is False
        assert changed.routes == base.routes

    def test_get_settings_is_cached_until_reset(self, monkeypatch):
        reset_settings()
        try:
            first = get_settings()
            assert get_settings() is first

            monkeypatch.setenv("ENTITLEMENT_CACHE_TRUST_SECONDS", "60")
            reset_settings()
            assert get_settings().cache_trust_seconds == 60
        finally:
            reset_settings()
