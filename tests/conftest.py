import asyncio
import sys
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional

import pytest

ROOT = Path(__file__).resolve().parents[1]
root_str = str(ROOT)
if root_str not in sys.path:
    sys.path.insert(0, root_str)

from fastapi.testclient import TestClient  # noqa: E402

from src.vision.api.main import create_app  # noqa: E402
from src.vision.config import Settings  # noqa: E402
from src.vision.domain.models import UserRecord  # noqa: E402
from src.vision.infrastructure.storage import InMemoryStorage  # noqa: E402
from src.vision.security.auth import create_access_token, new_user  # noqa: E402
from tests.fakes import FakeGateway  # noqa: E402


@pytest.fixture
def settings() -> Settings:
    return Settings(
        jwt_secret="test-secret",
        bcrypt_rounds=4,
        default_tokens=1000,
        file_poll_interval=0.01,
        file_poll_timeout=0.05,
        cors_origins=("http://testserver",),
    )


@pytest.fixture
def storage() -> InMemoryStorage:
    return InMemoryStorage()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def app(settings, storage, gateway):
    return create_app(settings=settings, storage=storage, gateway=gateway)


@pytest.fixture
def client(app) -> TestClient:
    return TestClient(app)


@pytest.fixture
def make_user(storage, settings):
    """Create an account directly in storage; approved standard by default."""

    def _make(
        username: str = "alice",
        *,
        role: str = "standard",
        approved: bool = True,
        expires_at: Optional[datetime] = None,
        password: str = "secret123",
    ) -> UserRecord:
        record = asyncio.run(
            new_user(username, password, settings, role=role, is_approved=approved, expires_at=expires_at)
        )
        return asyncio.run(storage.create_user(record))

    return _make


@pytest.fixture
def headers_for(settings):
    def _headers(user: UserRecord) -> Dict[str, str]:
        return {"Authorization": f"Bearer {create_access_token(user, settings)}"}

    return _headers


@pytest.fixture
def user(make_user) -> UserRecord:
    return make_user()


@pytest.fixture
def auth_headers(user, headers_for) -> Dict[str, str]:
    return headers_for(user)
