"""Pytest configuration and fixtures."""

import os
import pytest
from unittest.mock import MagicMock, patch

# Set test environment before importing app modules
os.environ["DATABASE_URL"] = "sqlite:///./test_llm_tracker.db"
os.environ["JWT_SECRET_KEY"] = "test-secret-key-for-testing-only"
os.environ["OPENAI_API_KEY"] = "sk-test"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_123"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test"
os.environ["STRIPE_PRICE_BASIC"] = "price_basic"
os.environ["STRIPE_PRICE_GOLD"] = "price_gold"
os.environ["AI_ANALYSIS_RATE_LIMIT"] = "3"
os.environ["LOG_LEVEL"] = "DEBUG"

from fastapi.testclient import TestClient

from llm_tracker.db.engine import Base, engine, SessionLocal
from llm_tracker.main import app, ai_rate_limiter
from llm_tracker.models.user_models import Profile
from llm_tracker.services.plans import apply_plan


@pytest.fixture(autouse=True)
def database():
    """Fresh tables for every test."""
    Base.metadata.create_all(bind=engine)
    ai_rate_limiter.reset()
    yield engine
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db_session(database):
    session = SessionLocal()
    yield session
    session.close()


@pytest.fixture
def client(database):
    return TestClient(app)


@pytest.fixture
def signup(client):
    """Create an account and return its bearer auth headers."""

    def _signup(email="owner@example.com", password="secret123", full_name="Owner"):
        resp = client.post(
            "/auth/signup",
            json={"email": email, "password": password, "full_name": full_name},
        )
        assert resp.status_code == 200, resp.text
        return {"Authorization": f"Bearer {resp.json()['access_token']}"}

    return _signup


@pytest.fixture
def auth_headers(signup):
    return signup()


@pytest.fixture
def set_plan(db_session):
    def _set_plan(email, plan):
        profile = db_session.query(Profile).filter(Profile.email == email).one()
        apply_plan(profile, plan)
        db_session.commit()
        return profile

    return _set_plan


@pytest.fixture
def make_completion():
    """Build an object shaped like an OpenAI chat completion."""

    def _make(content):
        completion = MagicMock()
        completion.choices = [MagicMock(message=MagicMock(content=content))]
        return completion

    return _make


@pytest.fixture
def mock_openai():
    """Patch the OpenAI client used for per-keyword brand analysis."""
    with patch("llm_tracker.services.brand_analysis.OpenAI") as mock_cls:
        yield mock_cls.return_value


SAMPLE_ANSWER = """Here is the analysis you asked for.
{
  "targetBrand": {"name": "Acme", "mentioned": true, "position": 2, "context": "Acme is a popular CRM"},
  "competitors": [
    {"name": "Globex", "mentioned": true, "position": 1, "context": "Globex leads the list"},
    {"name": "Initech", "mentioned": false, "position": null}
  ],
  "confidence": 80,
  "summary": "Acme ranks second behind Globex."
}"""


@pytest.fixture
def sample_answer():
    return SAMPLE_ANSWER
