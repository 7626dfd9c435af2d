"""
Global pytest configuration and fixtures for Beacon testing.
"""
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict

import pytest
from jose import jwt

from beacon.core.database import DatabaseManager
from beacon.main import build_services


TEST_SECRET = "test-secret"


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def test_config() -> Dict[str, Any]:
    """Provide test configuration."""
    return {
        "app": {"name": "Beacon", "debug": False, "log_level": "DEBUG"},
        "dispatch": {
            "radius_meters": 5000,
            "freshness_minutes": 30,
            "sos_requires_availability": False,
            "notification_list_limit": 50
        },
        "lookup": {"mapbox_access_token": "", "timeout_seconds": 0.5},
        "auth": {"jwt_secret": TEST_SECRET, "algorithm": "HS256"},
        "web": {"host": "127.0.0.1", "port": 3000, "cors_origins": ["*"]},
    }


@pytest.fixture
def db(temp_dir):
    """Fresh database for one test."""
    manager = DatabaseManager(str(temp_dir / "beacon-test.db"))
    yield manager
    manager.close()


@pytest.fixture
def services(test_config, db):
    """Fully wired services with no external lookups."""
    return build_services(test_config, db)


@pytest.fixture
def make_token():
    """Factory for signed bearer tokens."""
    def _make_token(user_id: str, secret: str = TEST_SECRET, expires_in: int = 3600) -> str:
        payload = {
            "id": user_id,
            "exp": datetime.now(timezone.utc) + timedelta(seconds=expires_in),
        }
        return jwt.encode(payload, secret, algorithm="HS256")
    return _make_token
