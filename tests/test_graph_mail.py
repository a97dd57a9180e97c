"""Tests for Microsoft Graph mail sender."""

from __future__ import annotations

import os
from unittest.mock import MagicMock, patch

import pytest
import requests

from roomcal.graph.mail import GraphMailError, get_app_token, send_mail

GRAPH_ENV = {
    "GRAPH_TENANT_ID": "tenant-1",
    "GRAPH_CLIENT_ID": "client-1",
    "GRAPH_CLIENT_SECRET": "secret-1",
    "EMAIL_FROM_ADDRESS": "rooms@example.org",
}


def _response(status_code: int = 200, payload: dict | None = None) -> MagicMock:
    resp = MagicMock()
    resp.status_code = status_code
    resp.json.return_value = payload or {}
    resp.raise_for_status.return_value = None
    return resp


def _token_response() -> MagicMock:
    return _response(200, {"access_token": "app-token", "expires_in": 3600})


class TestSendMail:
    def test_sends_message(self):
        with patch.dict(os.environ, GRAPH_ENV, clear=True), \
             patch("roomcal.graph.mail.requests.post") as mock_post:
            mock_post.side_effect = [_token_response(), _response(202)]

            send_mail(
                to=["rita@example.org"],
                subject="Reservation Approved",
                html="<p>ok</p>",
                cc=["audit@example.org"],
                correlation_id="corr-1",
            )

        send_call = mock_post.call_args_list[1]
        assert send_call[0][0] == (
            "https://graph.microsoft.com/v1.0/users/rooms@example.org/sendMail"
        )
        body = send_call[1]["json"]
        assert body["message"]["subject"] == "Reservation Approved"
        assert body["message"]["toRecipients"] == [
            {"emailAddress": {"address": "rita@example.org"}}
        ]
        assert body["message"]["ccRecipients"] == [
            {"emailAddress": {"address": "audit@example.org"}}
        ]
        headers = send_call[1]["headers"]
        assert headers["Authorization"] == "Bearer app-token"
        assert headers["client-request-id"] == "corr-1"

    def test_non_2xx_raises(self):
        with patch.dict(os.environ, GRAPH_ENV, clear=True), \
             patch("roomcal.graph.mail.requests.post") as mock_post:
            mock_post.side_effect = [_token_response(), _response(403)]

            with pytest.raises(GraphMailError, match="403"):
                send_mail(to=["rita@example.org"], subject="s", html="h")

    def test_network_error_raises(self):
        with patch.dict(os.environ, GRAPH_ENV, clear=True), \
             patch("roomcal.graph.mail.requests.post") as mock_post:
            mock_post.side_effect = [_token_response(), requests.ConnectionError("boom")]

            with pytest.raises(GraphMailError):
                send_mail(to=["rita@example.org"], subject="s", html="h")

    def test_missing_config(self):
        with patch.dict(os.environ, {}, clear=True):
            with pytest.raises(GraphMailError, match="GRAPH_TENANT_ID"):
                send_mail(to=["rita@example.org"], subject="s", html="h")

    def test_missing_config_names_env_vars(self):
        env = {k: v for k, v in GRAPH_ENV.items() if k != "EMAIL_FROM_ADDRESS"}
        with patch.dict(os.environ, env, clear=True):
            with pytest.raises(GraphMailError) as exc_info:
                send_mail(to=["rita@example.org"], subject="s", html="h")
        assert str(exc_info.value) == "Missing Graph mail config: EMAIL_FROM_ADDRESS"

    def test_no_recipients(self):
        with pytest.raises(GraphMailError):
            send_mail(to=[], subject="s", html="h")


class TestAppToken:
    CONFIG = {"tenant_id": "t", "client_id": "c", "client_secret": "s"}

    def test_token_is_cached(self):
        with patch("roomcal.graph.mail.requests.post", return_value=_token_response()) as mock_post:
            assert get_app_token(self.CONFIG) == "app-token"
            assert get_app_token(self.CONFIG) == "app-token"
        assert mock_post.call_count == 1

    def test_cache_is_per_tenant_and_client(self):
        other = {**self.CONFIG, "client_id": "c2"}
        with patch("roomcal.graph.mail.requests.post", return_value=_token_response()) as mock_post:
            get_app_token(self.CONFIG)
            get_app_token(other)
        assert mock_post.call_count == 2
        assert mock_post.call_args_list[1][1]["data"]["client_id"] == "c2"

    def test_force_refresh(self):
        with patch("roomcal.graph.mail.requests.post", return_value=_token_response()) as mock_post:
            get_app_token(self.CONFIG)
            get_app_token(self.CONFIG, force_refresh=True)
        assert mock_post.call_count == 2

    def test_missing_access_token(self):
        with patch("roomcal.graph.mail.requests.post", return_value=_response(200, {})):
            with pytest.raises(GraphMailError, match="access_token"):
                get_app_token(self.CONFIG)

    def test_token_endpoint_failure(self):
        resp = _response(401)
        resp.raise_for_status.side_effect = requests.HTTPError("401")
        with patch("roomcal.graph.mail.requests.post", return_value=resp):
            with pytest.raises(GraphMailError):
                get_app_token(self.CONFIG)
