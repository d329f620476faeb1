"""Tests for the HTTP transport."""

import http.client
import io
import json
import urllib.error
from unittest.mock import MagicMock, patch

import pytest

from smolcode.errors import AgentError, DecodeError, TransportError
from smolcode.transport import post_json


def _response(body: bytes):
    resp = MagicMock()
    resp.read.return_value = body
    resp.__enter__.return_value = resp
    resp.__exit__.return_value = False
    return resp


class TestPostJson:
    def test_success(self):
        with patch("urllib.request.urlopen", return_value=_response(b'{"ok": true}')) as m:
            result = post_json(
                "https://example.invalid/v1", {"X-Test": "1"}, {"a": 1}, timeout=7
            )
        assert result == {"ok": True}
        req = m.call_args[0][0]
        assert req.get_method() == "POST"
        assert req.full_url == "https://example.invalid/v1"
        assert json.loads(req.data) == {"a": 1}
        assert req.get_header("X-test") == "1"
        assert m.call_args[1]["timeout"] == 7

    def test_http_error_carries_status_and_body(self):
        err = urllib.error.HTTPError(
            "https://example.invalid", 500, "Internal Server Error", {}, io.BytesIO(b"boom")
        )
        with patch("urllib.request.urlopen", side_effect=err):
            with pytest.raises(TransportError) as exc_info:
                post_json("https://example.invalid", {}, {})
        assert exc_info.value.status == 500
        assert exc_info.value.body == "boom"
        assert str(exc_info.value) == "API error: 500 - boom"
        assert isinstance(exc_info.value, AgentError)

    def test_network_error(self):
        with patch(
            "urllib.request.urlopen", side_effect=urllib.error.URLError("connection refused")
        ):
            with pytest.raises(TransportError) as exc_info:
                post_json("https://example.invalid", {}, {})
        assert exc_info.value.status is None
        assert "connection refused" in str(exc_info.value)

    def test_timeout(self):
        with patch("urllib.request.urlopen", side_effect=TimeoutError("timed out")):
            with pytest.raises(TransportError, match="timed out"):
                post_json("https://example.invalid", {}, {})

    def test_invalid_json_body(self):
        with patch("urllib.request.urlopen", return_value=_response(b"<html>")):
            with pytest.raises(DecodeError):
                post_json("https://example.invalid", {}, {})

    def test_single_attempt(self):
        err = urllib.error.HTTPError("u", 503, "busy", {}, io.BytesIO(b""))
        with patch("urllib.request.urlopen", side_effect=err) as m:
            with pytest.raises(TransportError):
                post_json("https://example.invalid", {}, {})
        assert m.call_count == 1

    def test_incomplete_read(self):
        resp = _response(b"")
        resp.read.side_effect = http.client.IncompleteRead(b'{"par')
        with patch("urllib.request.urlopen", return_value=resp):
            with pytest.raises(TransportError) as exc_info:
                post_json("https://example.invalid", {}, {})
        assert exc_info.value.status is None
        assert "IncompleteRead" in str(exc_info.value)
