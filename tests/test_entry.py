"""
tests/test_entry.py -- Rate limiter (api/limiter.py) and AuthEntryHandler (api/entry.py).

HTTP tests run against create_app() with an in-memory limiter
(RATE_LIMIT_STORAGE_URL=memory://) and end-to-end test mode on. Each test
sends its own X-Forwarded-For address so limiter counters never leak between
tests in the module.
"""

from __future__ import annotations

from collections.abc import Generator
from unittest.mock import patch

import pytest
from conftest import make_settings, running_app
from fastapi.testclient import TestClient
from starlette.requests import Request

from api.entry import MOCKED_USER
from api.limiter import build_email_signin_limiter, client_ip, is_rate_limited
from auth.store import AuthAdapter


def _request(headers: dict[str, str], client: tuple[str, int] | None = ("9.9.9.9", 5000)) -> Request:
    scope = {
        "type": "http",
        "method": "POST",
        "path": "/api/auth/signin/email",
        "headers": [(k.lower().encode(), v.encode()) for k, v in headers.items()],
        "client": client,
    }
    return Request(scope)


@pytest.fixture(scope="module")
def entry_client() -> Generator[tuple[TestClient, AuthAdapter], None, None]:
    settings = make_settings(
        rate_limit_storage_url="memory://",
        email_signin_rate_limit="1/minute",
        e2e_test_mode=True,
        smtp_from="noreply@example.com",
        smtp_host="localhost",
    )
    with running_app(settings) as (client, store):
        yield client, store


class TestClientIp:
    def test_first_forwarded_hop_wins(self) -> None:
        assert client_ip(_request({"X-Forwarded-For": "1.2.3.4, 10.0.0.1", "X-Real-IP": "5.5.5.5"})) == "1.2.3.4"

    def test_real_ip_when_no_forwarded_header(self) -> None:
        assert client_ip(_request({"X-Real-IP": "5.5.5.5"})) == "5.5.5.5"

    def test_socket_peer_as_last_resort(self) -> None:
        assert client_ip(_request({})) == "9.9.9.9"


class TestLimiter:
    def test_disabled_without_storage_url(self) -> None:
        assert build_email_signin_limiter(make_settings()) is None

    def test_second_hit_within_window_is_limited(self) -> None:
        limiter = build_email_signin_limiter(make_settings(rate_limit_storage_url="memory://"))
        assert is_rate_limited(limiter, "1.1.1.1", "1/minute") is False
        assert is_rate_limited(limiter, "1.1.1.1", "1/minute") is True

    def test_counters_are_per_ip(self) -> None:
        limiter = build_email_signin_limiter(make_settings(rate_limit_storage_url="memory://"))
        assert is_rate_limited(limiter, "2.2.2.2", "1/minute") is False
        assert is_rate_limited(limiter, "3.3.3.3", "1/minute") is False

    def test_limiters_do_not_share_memory_storage(self) -> None:
        first = build_email_signin_limiter(make_settings(rate_limit_storage_url="memory://"))
        second = build_email_signin_limiter(make_settings(rate_limit_storage_url="memory://"))
        assert is_rate_limited(first, "4.4.4.4", "1/minute") is False
        assert is_rate_limited(second, "4.4.4.4", "1/minute") is False


class TestEntryHandler:
    def test_head_answers_200_without_routing(self, entry_client: tuple[TestClient, AuthAdapter]) -> None:
        client, _store = entry_client
        resp = client.head("/api/auth/callback/email?email=a@example.com&token=123456")
        assert resp.status_code == 200
        assert resp.content == b""

    def test_head_on_unknown_auth_path(self, entry_client: tuple[TestClient, AuthAdapter]) -> None:
        client, _store = entry_client
        assert client.head("/api/auth/anything").status_code == 200

    def test_mocked_session_in_test_mode(self, entry_client: tuple[TestClient, AuthAdapter]) -> None:
        client, _store = entry_client
        resp = client.get("/api/auth/session")
        assert resp.status_code == 200
        assert resp.json() == {"user": MOCKED_USER}

    def test_other_paths_pass_through(self, entry_client: tuple[TestClient, AuthAdapter]) -> None:
        client, _store = entry_client
        assert client.get("/api/health").status_code == 200

    def test_email_sign_in_rate_limited_per_ip(self, entry_client: tuple[TestClient, AuthAdapter]) -> None:
        client, _store = entry_client
        headers = {"X-Forwarded-For": "203.0.113.7"}
        with patch("auth.flows.send_verification_request", return_value=True) as mock_send:
            first = client.post("/api/auth/signin/email", json={"email": "limit@example.com"}, headers=headers)
            second = client.post("/api/auth/signin/email", json={"email": "limit@example.com"}, headers=headers)

        assert first.status_code == 302
        assert first.headers["location"] == "/signin/verify-request"
        assert second.status_code == 302
        assert second.headers["location"] == "/signin?error=rate-limited"
        assert mock_send.call_count == 1

    def test_other_ip_not_affected(self, entry_client: tuple[TestClient, AuthAdapter]) -> None:
        client, _store = entry_client
        with patch("auth.flows.send_verification_request", return_value=True):
            client.post(
                "/api/auth/signin/email",
                json={"email": "a@example.com"},
                headers={"X-Forwarded-For": "198.51.100.1"},
            )
            resp = client.post(
                "/api/auth/signin/email",
                json={"email": "a@example.com"},
                headers={"X-Forwarded-For": "198.51.100.2"},
            )
        assert resp.headers["location"] == "/signin/verify-request"

    def test_no_limiter_means_no_tagging(self) -> None:
        settings = make_settings(smtp_from="noreply@example.com", smtp_host="localhost")
        with running_app(settings) as (client, _store):
            with patch("auth.flows.send_verification_request", return_value=True):
                for _ in range(3):
                    resp = client.post("/api/auth/signin/email", json={"email": "many@example.com"})
                    assert resp.headers["location"] == "/signin/verify-request"

    def test_session_not_mocked_outside_test_mode(self) -> None:
        with running_app(make_settings()) as (client, _store):
            assert client.get("/api/auth/session").json() == {}
