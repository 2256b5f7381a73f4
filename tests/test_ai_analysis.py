"""Tests for the /ai-analysis endpoint."""

import pytest
from unittest.mock import patch


@pytest.fixture
def mock_ai_openai():
    with patch("llm_tracker.services.ai_analysis.OpenAI") as mock_cls:
        yield mock_cls.return_value


def _post(client, headers, **body):
    body.setdefault("prompt", "How is Acme doing against Globex?")
    return client.post("/ai-analysis", json=body, headers=headers)


def test_returns_analysis(client, auth_headers, mock_ai_openai, make_completion):
    mock_ai_openai.chat.completions.create.return_value = make_completion("## Summary\nAcme is second.")

    resp = _post(client, auth_headers, type="suggestions", max_tokens=300)

    assert resp.status_code == 200
    assert resp.json() == {"analysis": "## Summary\nAcme is second."}

    kwargs = mock_ai_openai.chat.completions.create.call_args.kwargs
    assert kwargs["max_tokens"] == 300
    assert "consultant" in kwargs["messages"][0]["content"]


def test_unknown_type(client, auth_headers, mock_ai_openai):
    assert _post(client, auth_headers, type="poetry").status_code == 400


def test_empty_completion(client, auth_headers, mock_ai_openai, make_completion):
    mock_ai_openai.chat.completions.create.return_value = make_completion("   ")
    assert _post(client, auth_headers).status_code == 502


def test_upstream_error(client, auth_headers, mock_ai_openai):
    mock_ai_openai.chat.completions.create.side_effect = Exception("rate limited upstream")
    assert _post(client, auth_headers).status_code == 502


def test_missing_api_key(client, auth_headers):
    with patch("llm_tracker.services.brand_analysis.OPENAI_API_KEY", None):
        assert _post(client, auth_headers).status_code == 500


def test_rate_limited_per_user(client, signup, mock_ai_openai, make_completion):
    mock_ai_openai.chat.completions.create.return_value = make_completion("ok")
    first = signup("first@example.com")
    second = signup("second@example.com")

    statuses = [_post(client, first).status_code for _ in range(4)]
    assert statuses == [200, 200, 200, 429]

    assert _post(client, second).status_code == 200


def test_requires_auth(client):
    assert client.post("/ai-analysis", json={"prompt": "hi"}).status_code == 401
