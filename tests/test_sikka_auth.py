"""Tests for the Sikka Request-Key lifecycle."""

from __future__ import annotations

import threading
import time
from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock, patch

import httpx
import pytest

from parlae_pms.models import ConnectionStatus, CredentialState, SikkaCredentials, utcnow
from parlae_pms.services.errors import SikkaAuthError, SikkaConfigError
from parlae_pms.services.sikka_auth import (
    DEFAULT_TOKEN_LIFETIME_SECONDS,
    SikkaRequestKeyAuth,
    TokenManager,
    parse_expires_in,
)

# ── Helpers ──────────────────────────────────────────────────────────


def _mock_response(data: dict | list, status_code: int = 200) -> MagicMock:
    mock = MagicMock()
    mock.status_code = status_code
    mock.json.return_value = data
    mock.text = str(data)
    return mock


def _token_response(request_key: str = "RK-new", refresh_key: str = "RF-new") -> MagicMock:
    return _mock_response(
        {
            "request_key": request_key,
            "refresh_key": refresh_key,
            "expires_in": "85603 second(s)",
        }
    )


def _expiring_credentials(**overrides) -> SikkaCredentials:
    values = {
        "app_id": "app-1",
        "app_key": "key-1",
        "office_id": "OFFICE1",
        "secret_key": "SECRET1",
        "request_key": "RK-old",
        "refresh_key": "RF-old",
        "token_expiry": utcnow() + timedelta(minutes=30),
    }
    values.update(overrides)
    return SikkaCredentials(**values)


# ── Tests: parse_expires_in ──────────────────────────────────────────


class TestParseExpiresIn:
    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            ("85603 second(s)", 85603),
            ("86400", 86400),
            (3600, 3600),
            (None, DEFAULT_TOKEN_LIFETIME_SECONDS),
            ("soon", DEFAULT_TOKEN_LIFETIME_SECONDS),
            ("0 second(s)", DEFAULT_TOKEN_LIFETIME_SECONDS),
        ],
    )
    def test_parses_sikka_formats(self, value, expected):
        assert parse_expires_in(value) == expected


# ── Tests: construction ──────────────────────────────────────────────


class TestConstruction:
    def test_missing_app_credentials_raise(self):
        with pytest.raises(SikkaConfigError):
            TokenManager(SikkaCredentials(app_id="", app_key="key"))

    def test_practice_aliases_are_accepted(self):
        creds = SikkaCredentials.model_validate(
            {
                "app_id": "a",
                "app_key": "k",
                "practice_key": "OFFICE9",
                "spu_installation_key": "SECRET9",
            }
        )
        assert creds.office_id == "OFFICE9"
        assert creds.secret_key == "SECRET9"

    def test_initial_state_is_persisted(self, credential_store):
        TokenManager(_expiring_credentials(), integration_id="int-1", store=credential_store)
        state = credential_store.load("int-1")
        assert state is not None
        assert state.request_key == "RK-old"

    def test_persisted_state_wins_over_configured_values(self, credential_store):
        credential_store.save(
            CredentialState(
                integration_id="int-1",
                office_id="OFFICE1",
                secret_key="SECRET1",
                request_key="RK-stored",
                refresh_key="RF-stored",
                token_expiry=utcnow() + timedelta(hours=20),
                status=ConnectionStatus.ACTIVE,
            )
        )
        manager = TokenManager(
            SikkaCredentials(app_id="app-1", app_key="key-1"),
            integration_id="int-1",
            store=credential_store,
        )
        assert manager.request_key == "RK-stored"
        assert manager.is_token_valid()


# ── Tests: validity ──────────────────────────────────────────────────


class TestTokenValidity:
    def test_valid_token_makes_no_network_call(self, valid_credentials):
        manager = TokenManager(valid_credentials)
        with patch.object(manager._client, "request") as mock_req:
            manager.ensure_valid_token()
            mock_req.assert_not_called()
        assert manager.request_key == "RK-valid"

    def test_token_inside_one_hour_buffer_is_invalid(self):
        manager = TokenManager(_expiring_credentials(token_expiry=utcnow() + timedelta(minutes=59)))
        assert not manager.is_token_valid()

    def test_missing_request_key_is_invalid(self, valid_credentials):
        manager = TokenManager(valid_credentials.model_copy(update={"request_key": None}))
        assert not manager.is_token_valid()

    def test_naive_expiry_is_read_as_utc(self):
        manager = TokenManager(
            SikkaCredentials(
                app_id="app-1", app_key="key-1", request_key="RK", token_expiry="2099-01-01T00:00:00",
            ),
        )
        assert manager.state.token_expiry == datetime(2099, 1, 1, tzinfo=UTC)
        with patch.object(manager._client, "request") as mock_req:
            assert manager.is_token_valid()
            manager.ensure_valid_token()
            mock_req.assert_not_called()

    def test_naive_stored_expiry_is_read_as_utc(self):
        state = CredentialState(integration_id="int-1", token_expiry=datetime(2099, 1, 1))
        assert state.token_expiry.tzinfo is UTC


# ── Tests: refresh / acquire ─────────────────────────────────────────


class TestRefresh:
    def test_expiring_token_is_refreshed(self, credential_store):
        manager = TokenManager(_expiring_credentials(), integration_id="int-1", store=credential_store)

        with patch.object(manager._client, "request", return_value=_token_response()) as mock_req:
            manager.ensure_valid_token()

        assert mock_req.call_count == 1
        args, kwargs = mock_req.call_args
        assert args == ("POST", "/request_key")
        assert kwargs["json"]["grant_type"] == "refresh_key"
        assert kwargs["json"]["refresh_key"] == "RF-old"

        assert manager.request_key == "RK-new"
        assert manager.is_token_valid()
        stored = credential_store.load("int-1")
        assert stored.refresh_key == "RF-new"
        assert stored.status == ConnectionStatus.ACTIVE

    def test_expiry_is_computed_from_expires_in(self):
        manager = TokenManager(_expiring_credentials())
        before = utcnow()
        with patch.object(manager._client, "request", return_value=_token_response()):
            manager.refresh_token()
        expiry = manager.state.token_expiry
        assert before + timedelta(seconds=85600) <= expiry <= utcnow() + timedelta(seconds=85603)

    def test_refresh_401_triggers_exactly_one_acquisition(self):
        manager = TokenManager(_expiring_credentials())
        rejected = _mock_response({"error": "invalid refresh_key"}, 401)

        with patch.object(manager._client, "request", side_effect=[rejected, _token_response()]) as mock_req:
            manager.ensure_valid_token()

        assert mock_req.call_count == 2
        grants = [c.kwargs["json"]["grant_type"] for c in mock_req.call_args_list]
        assert grants == ["refresh_key", "request_key"]
        acquire_payload = mock_req.call_args_list[1].kwargs["json"]
        assert acquire_payload["office_id"] == "OFFICE1"
        assert acquire_payload["secret_key"] == "SECRET1"
        assert manager.request_key == "RK-new"
        assert manager.state.status == ConnectionStatus.ACTIVE

    def test_refresh_server_error_is_raised_without_fallback(self):
        manager = TokenManager(_expiring_credentials())
        with patch.object(
            manager._client, "request", return_value=_mock_response({}, 500),
        ) as mock_req:
            with pytest.raises(SikkaAuthError) as exc_info:
                manager.ensure_valid_token()
        assert exc_info.value.status_code == 500
        assert mock_req.call_count == 1
        assert manager.state.status == ConnectionStatus.ERROR

    def test_acquires_with_known_practice_when_no_refresh_key(self):
        manager = TokenManager(_expiring_credentials(request_key=None, refresh_key=None, token_expiry=None))
        with patch.object(manager._client, "request", return_value=_token_response()) as mock_req:
            manager.ensure_valid_token()
        assert mock_req.call_args.kwargs["json"]["grant_type"] == "request_key"

    def test_discovers_practice_when_nothing_is_known(self):
        manager = TokenManager(SikkaCredentials(app_id="app-1", app_key="key-1"))
        practices = _mock_response(
            {"items": [{"office_id": 12345, "secret_key": "S-DISCOVERED"}]},
        )

        with patch.object(manager._client, "request", side_effect=[practices, _token_response()]) as mock_req:
            manager.ensure_valid_token()

        first = mock_req.call_args_list[0]
        assert first.args == ("GET", "/authorized_practices")
        assert first.kwargs["headers"] == {"App-Id": "app-1", "App-Key": "key-1"}
        assert manager.state.office_id == "12345"
        assert manager.state.secret_key == "S-DISCOVERED"
        assert manager.request_key == "RK-new"

    def test_no_authorized_practices_raises(self):
        manager = TokenManager(SikkaCredentials(app_id="app-1", app_key="key-1"))
        with patch.object(manager._client, "request", return_value=_mock_response({"items": []})):
            with pytest.raises(SikkaAuthError, match="No authorized practices found"):
                manager.ensure_valid_token()
        assert manager.state.status == ConnectionStatus.ERROR
        assert manager.state.last_error == "No authorized practices found"

    def test_incomplete_token_response_raises(self):
        manager = TokenManager(_expiring_credentials())
        with patch.object(
            manager._client, "request", return_value=_mock_response({"request_key": "RK"}),
        ):
            with pytest.raises(SikkaAuthError, match="Invalid token response"):
                manager.refresh_token()

    def test_network_failure_is_wrapped(self):
        manager = TokenManager(_expiring_credentials())
        with patch.object(manager._client, "request", side_effect=httpx.ConnectError("refused")):
            with pytest.raises(SikkaAuthError) as exc_info:
                manager.ensure_valid_token()
        assert isinstance(exc_info.value.__cause__, httpx.ConnectError)


# ── Tests: single-flight refresh ─────────────────────────────────────


class TestConcurrentRefresh:
    def test_concurrent_callers_share_one_refresh(self):
        manager = TokenManager(_expiring_credentials())

        def _slow_token(*args, **kwargs):
            time.sleep(0.05)
            return _token_response()

        with patch.object(manager._client, "request", side_effect=_slow_token) as mock_req:
            threads = [threading.Thread(target=manager.ensure_valid_token) for _ in range(8)]
            for t in threads:
                t.start()
            for t in threads:
                t.join()

        assert mock_req.call_count == 1
        assert manager.request_key == "RK-new"


# ── Tests: httpx auth flow ───────────────────────────────────────────


class TestRequestKeyAuth:
    def test_sets_request_key_header(self, valid_credentials):
        manager = TokenManager(valid_credentials)
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request.headers.get("Request-Key"))
            return httpx.Response(200, json={"items": []})

        client = httpx.Client(
            base_url="https://sikka.test",
            transport=httpx.MockTransport(handler),
            auth=SikkaRequestKeyAuth(manager),
        )
        assert client.get("/providers").status_code == 200
        assert seen == ["RK-valid"]

    def test_replays_once_with_new_key_after_401(self, valid_credentials):
        manager = TokenManager(valid_credentials)
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request.headers.get("Request-Key"))
            if len(seen) == 1:
                return httpx.Response(401, json={"error": "revoked"})
            return httpx.Response(200, json={"items": []})

        client = httpx.Client(
            base_url="https://sikka.test",
            transport=httpx.MockTransport(handler),
            auth=SikkaRequestKeyAuth(manager),
        )
        with patch.object(manager._client, "request", return_value=_token_response()):
            response = client.get("/providers")

        assert response.status_code == 200
        assert seen == ["RK-valid", "RK-new"]


# ── Tests: managers sharing one store ────────────────────────────────


class TestSharedStore:
    """The scheduled refresh job and the live service each hold a manager."""

    def _other(self, credential_store) -> TokenManager:
        return TokenManager(
            SikkaCredentials(app_id="app-1", app_key="key-1"),
            integration_id="int-1",
            store=credential_store,
        )

    def test_reuses_key_rotated_by_another_manager(self, credential_store):
        live = TokenManager(_expiring_credentials(), integration_id="int-1", store=credential_store)
        other = self._other(credential_store)
        with patch.object(other._client, "request", return_value=_token_response()):
            other.refresh_token()

        with patch.object(live._client, "request") as mock_req:
            live.ensure_valid_token()
            mock_req.assert_not_called()
        assert live.request_key == "RK-new"

    def test_refreshes_with_rotated_refresh_key(self, credential_store):
        live = TokenManager(_expiring_credentials(), integration_id="int-1", store=credential_store)
        other = self._other(credential_store)
        short_lived = _mock_response(
            {"request_key": "RK-new", "refresh_key": "RF-new", "expires_in": "1800 second(s)"},
        )
        with patch.object(other._client, "request", return_value=short_lived):
            other.refresh_token()

        with patch.object(
            live._client, "request", return_value=_token_response("RK-3", "RF-3"),
        ) as mock_req:
            live.ensure_valid_token()

        sent = [call.kwargs["json"].get("refresh_key") for call in mock_req.call_args_list]
        assert sent == ["RF-new"]
        assert live.request_key == "RK-3"
        assert credential_store.load("int-1").refresh_key == "RF-3"

    def test_stale_rejection_keeps_newer_key(self, credential_store, valid_credentials):
        live = TokenManager(valid_credentials, integration_id="int-1", store=credential_store)
        other = self._other(credential_store)
        with patch.object(other._client, "request", return_value=_token_response()):
            other.refresh_token()

        live.invalidate("RK-valid")

        assert live.request_key == "RK-new"
        assert credential_store.load("int-1").request_key == "RK-new"

    def test_rejection_of_current_key_clears_it(self, credential_store, valid_credentials):
        live = TokenManager(valid_credentials, integration_id="int-1", store=credential_store)
        live.invalidate("RK-valid")
        assert live.request_key is None
        assert credential_store.load("int-1").request_key is None


# ── Tests: response bodies ───────────────────────────────────────────


class TestResponseBodies:
    def test_practice_list_may_be_a_bare_array(self):
        manager = TokenManager(SikkaCredentials(app_id="app-1", app_key="key-1"))
        practices = _mock_response([{"office_id": 42, "secret_key": "S42"}])
        with patch.object(manager._client, "request", side_effect=[practices, _token_response()]):
            manager.ensure_valid_token()

        assert manager.state.office_id == "42"
        assert manager.request_key == "RK-new"

    def test_non_object_token_body_is_rejected(self):
        manager = TokenManager(_expiring_credentials(refresh_key=None))
        with patch.object(manager._client, "request", return_value=_mock_response(["nope"])):
            with pytest.raises(SikkaAuthError, match="Invalid token response"):
                manager.ensure_valid_token()
