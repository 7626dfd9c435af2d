"""
Unit tests for configuration loading and validation.
"""
import pytest
import yaml

from beacon.core.config import ConfigurationError, ConfigurationManager


class TestConfigurationManager:
    """Test source merging, environment overrides and validation"""

    @pytest.fixture(autouse=True)
    def _clean_env(self, monkeypatch):
        for name in ("BEACON_DEBUG", "BEACON_WEB_PORT", "BEACON_DISPATCH_RADIUS",
                     "BEACON_CORS_ORIGINS", "BEACON_JWT_SECRET", "BEACON_MAPBOX_TOKEN",
                     "BEACON_DB_PATH", "BEACON_LOG_LEVEL", "BEACON_WEB_HOST"):
            monkeypatch.delenv(name, raising=False)

    def _manager(self, temp_dir, default=None, local=None):
        if default is not None:
            (temp_dir / "default.yaml").write_text(yaml.safe_dump(default))
        if local is not None:
            (temp_dir / "config.yaml").write_text(yaml.safe_dump(local))
        manager = ConfigurationManager(str(temp_dir))
        manager.defaults['database']['path'] = str(temp_dir / "data" / "beacon.db")
        return manager

    def test_builtin_defaults(self, temp_dir):
        manager = self._manager(temp_dir)
        manager.load_config()

        assert manager.get('dispatch.radius_meters') == 5000
        assert manager.get('dispatch.freshness_minutes') == 30
        assert manager.get('dispatch.sos_requires_availability') is False
        assert manager.get('web.port') == 3000
        assert manager.get('lookup.routing_profile') == 'driving'

    def test_local_file_overrides_default_file(self, temp_dir):
        manager = self._manager(
            temp_dir,
            default={"dispatch": {"radius_meters": 3000, "freshness_minutes": 15}},
            local={"dispatch": {"radius_meters": 8000}}
        )
        manager.load_config()

        assert manager.get('dispatch.radius_meters') == 8000
        assert manager.get('dispatch.freshness_minutes') == 15
        assert manager.get('dispatch.notification_list_limit') == 50

    def test_environment_overrides_files(self, temp_dir, monkeypatch):
        monkeypatch.setenv("BEACON_WEB_PORT", "8080")
        monkeypatch.setenv("BEACON_DEBUG", "true")
        monkeypatch.setenv("BEACON_JWT_SECRET", "from-env")
        manager = self._manager(temp_dir, local={"web": {"port": 9000}})
        manager.load_config()

        assert manager.get('web.port') == 8080
        assert manager.get('app.debug') is True
        assert manager.get('auth.jwt_secret') == "from-env"

    @pytest.mark.parametrize("raw,expected", [
        ('["https://a.example", "https://b.example"]', ["https://a.example", "https://b.example"]),
        ("https://a.example, https://b.example", ["https://a.example", "https://b.example"]),
    ])
    def test_cors_origins_from_environment(self, temp_dir, monkeypatch, raw, expected):
        monkeypatch.setenv("BEACON_CORS_ORIGINS", raw)
        manager = self._manager(temp_dir)
        manager.load_config()

        assert manager.get('web.cors_origins') == expected

    @pytest.mark.parametrize("override", [
        {"web": {"port": 70000}},
        {"app": {"log_level": "CHATTY"}},
        {"dispatch": {"radius_meters": 0}},
        {"dispatch": {"freshness_minutes": -5}},
        {"lookup": {"timeout_seconds": "soon"}},
    ])
    def test_invalid_values_are_rejected(self, temp_dir, override):
        manager = self._manager(temp_dir, local=override)

        with pytest.raises(ConfigurationError):
            manager.load_config()

    def test_get_set_and_sections(self, temp_dir):
        manager = self._manager(temp_dir)
        manager.load_config()

        manager.set('dispatch.radius_meters', 2500)

        assert manager.get_section('dispatch')['radius_meters'] == 2500
        assert manager.get('missing.key', 'fallback') == 'fallback'
        assert manager.get_section('nothing') == {}
