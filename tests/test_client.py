"""Tests for the Prometheus HTTP client."""

from __future__ import annotations

import io
import json
import threading
import time
import urllib.error
import urllib.parse
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock, patch

import pytest

from capacity_collector.config import ConfigError, PrometheusSettings, SigV4Settings
from capacity_collector.models import Sample
from capacity_collector.prometheus.client import (
    BasicAuth,
    BearerTokenAuth,
    PrometheusClient,
    PrometheusConnectionError,
    PrometheusQueryError,
    QueryCancelledError,
    UnexpectedValueError,
    auth_from_settings,
    decode_exemplars,
    decode_matrix,
    run_with_ceiling,
)

URLOPEN = "capacity_collector.prometheus.client.urllib.request.urlopen"
START = datetime(2024, 1, 1, tzinfo=UTC)


def _respond(mock_urlopen: MagicMock, payload: dict[str, Any]) -> None:
    resp = mock_urlopen.return_value.__enter__.return_value
    resp.read.return_value = json.dumps(payload).encode("utf-8")


def _success(data: Any) -> dict[str, Any]:
    return {"status": "success", "data": data}


def _form(req) -> dict[str, str]:
    return dict(urllib.parse.parse_qsl(req.data.decode("utf-8")))


# --- requests ---


class TestRequests:
    @patch(URLOPEN)
    def test_instant_query(self, mock_urlopen: MagicMock):
        _respond(mock_urlopen, _success({"resultType": "vector", "result": []}))
        client = PrometheusClient(PrometheusSettings(url="http://prom:9090/"))

        data = client.query("up", START)

        assert data == {"resultType": "vector", "result": []}
        req = mock_urlopen.call_args[0][0]
        assert req.full_url == "http://prom:9090/api/v1/query"
        assert req.method == "POST"
        assert req.get_header("Content-type") == "application/x-www-form-urlencoded"
        assert _form(req) == {"query": "up", "time": f"{START.timestamp():.3f}"}

    @patch(URLOPEN)
    def test_range_query(self, mock_urlopen: MagicMock):
        _respond(mock_urlopen, _success({"resultType": "matrix", "result": []}))
        client = PrometheusClient(PrometheusSettings())

        client.query_range("rate(x[5m])", START, START + timedelta(hours=1), timedelta(minutes=5))

        req = mock_urlopen.call_args[0][0]
        assert req.full_url.endswith("/api/v1/query_range")
        form = _form(req)
        assert form["step"] == "300"
        assert float(form["end"]) - float(form["start"]) == 3600

    @patch(URLOPEN)
    def test_build_info_is_get(self, mock_urlopen: MagicMock):
        _respond(mock_urlopen, _success({"version": "2.53.0"}))
        client = PrometheusClient(PrometheusSettings())

        assert client.build_info()["version"] == "2.53.0"
        req = mock_urlopen.call_args[0][0]
        assert req.method == "GET"
        assert req.data is None
        assert req.full_url.endswith("/api/v1/status/buildinfo")

    @patch(URLOPEN)
    def test_timeout_passed_to_urlopen(self, mock_urlopen: MagicMock):
        _respond(mock_urlopen, _success({"resultType": "vector", "result": []}))
        client = PrometheusClient(PrometheusSettings(data_timeout=7))
        client.query("up")
        assert mock_urlopen.call_args[1]["timeout"] == 7

    @patch(URLOPEN)
    def test_api_error_status(self, mock_urlopen: MagicMock):
        _respond(mock_urlopen, {"status": "error", "errorType": "bad_data", "error": "parse error"})
        client = PrometheusClient(PrometheusSettings())
        with pytest.raises(PrometheusQueryError, match="parse error") as exc:
            client.query("up{")
        assert exc.value.error_type == "bad_data"

    @patch(URLOPEN)
    def test_http_error_with_api_body(self, mock_urlopen: MagicMock):
        body = json.dumps({"status": "error", "errorType": "bad_data", "error": "bad query"})
        mock_urlopen.side_effect = urllib.error.HTTPError(
            "http://prom/api/v1/query", 400, "Bad Request", {}, io.BytesIO(body.encode()),
        )
        client = PrometheusClient(PrometheusSettings())
        with pytest.raises(PrometheusQueryError, match="HTTP 400: bad query") as exc:
            client.query("up{")
        assert exc.value.status == 400
        assert exc.value.error_type == "bad_data"

    @patch(URLOPEN)
    def test_http_error_without_body(self, mock_urlopen: MagicMock):
        mock_urlopen.side_effect = urllib.error.HTTPError(
            "http://prom/api/v1/status/buildinfo", 404, "Not Found", {}, io.BytesIO(b""),
        )
        client = PrometheusClient(PrometheusSettings())
        with pytest.raises(PrometheusQueryError, match="HTTP 404") as exc:
            client.build_info()
        assert exc.value.status == 404

    @patch(URLOPEN)
    def test_unreachable(self, mock_urlopen: MagicMock):
        mock_urlopen.side_effect = urllib.error.URLError("Name or service not known")
        client = PrometheusClient(PrometheusSettings(url="http://nowhere:9090"))
        with pytest.raises(PrometheusConnectionError, match="nowhere"):
            client.query("up")

    @patch(URLOPEN)
    def test_socket_timeout_is_connectivity(self, mock_urlopen: MagicMock):
        mock_urlopen.side_effect = TimeoutError("timed out")
        client = PrometheusClient(PrometheusSettings())
        with pytest.raises(PrometheusConnectionError):
            client.query("up")


# --- authentication ---


class TestAuth:
    def test_basic_auth(self):
        headers: dict[str, str] = {}
        BasicAuth("user", "pass").apply("POST", "http://x", b"", headers)
        assert headers["Authorization"] == "Basic dXNlcjpwYXNz"

    def test_bearer_token_file_reread(self, tmp_path: Path):
        token_file = tmp_path / "token"
        token_file.write_text("first\n", encoding="utf-8")
        auth = BearerTokenAuth(token_file=str(token_file))

        headers: dict[str, str] = {}
        auth.apply("GET", "http://x", None, headers)
        assert headers["Authorization"] == "Bearer first"

        token_file.write_text("second", encoding="utf-8")
        auth.apply("GET", "http://x", None, headers)
        assert headers["Authorization"] == "Bearer second"

    def test_bearer_needs_a_token(self):
        with pytest.raises(ValueError):
            BearerTokenAuth()

    def test_username_without_password(self):
        with pytest.raises(ConfigError, match="both username and password"):
            auth_from_settings(PrometheusSettings(username="u"))

    def test_password_without_username(self):
        with pytest.raises(ConfigError):
            auth_from_settings(PrometheusSettings(password="p"))

    def test_auth_chain(self):
        auths = auth_from_settings(PrometheusSettings(username="u", password="p", bearer_token="t"))
        assert [type(a) for a in auths] == [BasicAuth, BearerTokenAuth]

    @patch(URLOPEN)
    def test_client_applies_auth(self, mock_urlopen: MagicMock):
        _respond(mock_urlopen, _success({"resultType": "vector", "result": []}))
        client = PrometheusClient(PrometheusSettings(bearer_token="secret"))
        client.query("up")
        req = mock_urlopen.call_args[0][0]
        assert req.get_header("Authorization") == "Bearer secret"

    def test_sigv4_signs_request(self):
        pytest.importorskip("boto3")
        from botocore.credentials import Credentials

        from capacity_collector.prometheus.client import SigV4Auth

        auth = SigV4Auth(SigV4Settings(region="us-east-1"))
        auth._credentials = Credentials("AKIDEXAMPLE", "secret")
        headers = {"Content-Type": "application/x-www-form-urlencoded"}
        auth.apply(
            "POST",
            "https://aps-workspaces.us-east-1.amazonaws.com/workspaces/ws-1/api/v1/query",
            b"query=up",
            headers,
        )
        assert headers["Authorization"].startswith("AWS4-HMAC-SHA256 Credential=AKIDEXAMPLE/")
        assert "/us-east-1/aps/aws4_request" in headers["Authorization"]
        assert "X-Amz-Date" in headers


# --- hard ceiling ---


class TestCeiling:
    def test_returns_result(self):
        assert run_with_ceiling(lambda: 42, 1.0) == 42

    def test_propagates_errors(self):
        def boom():
            raise PrometheusQueryError("nope")

        with pytest.raises(PrometheusQueryError):
            run_with_ceiling(boom, 1.0)

    def test_cancels_after_ceiling(self):
        release = threading.Event()
        started = time.monotonic()
        try:
            with pytest.raises(QueryCancelledError, match="cancelled"):
                run_with_ceiling(release.wait, 0.1)
            assert time.monotonic() - started < 2.0
        finally:
            release.set()


# --- decoding ---


class TestDecode:
    def test_matrix(self):
        streams = decode_matrix({
            "resultType": "matrix",
            "result": [{"metric": {"pod": "a"}, "values": [[1, "1.5"], [2, "NaN"]]}],
        })
        assert streams[0].labels == {"pod": "a"}
        assert streams[0].samples[0] == Sample(1.0, 1.5)
        assert not streams[0].samples[1].is_finite

    def test_vector_becomes_single_sample_streams(self):
        streams = decode_matrix({
            "resultType": "vector",
            "result": [{"metric": {"job": "x"}, "value": [10, "60"]}],
        })
        assert len(streams) == 1
        assert streams[0].samples == [Sample(10.0, 60.0)]
        assert streams[0].last_value() == 60.0

    @pytest.mark.parametrize("result_type", ["scalar", "string"])
    def test_other_types_rejected(self, result_type: str):
        with pytest.raises(UnexpectedValueError, match=result_type):
            decode_matrix({"resultType": result_type, "result": [1, "1"]})

    def test_exemplars(self):
        streams = decode_exemplars([
            {
                "seriesLabels": {"job": "api"},
                "exemplars": [{"labels": {"trace_id": "t"}, "value": "3", "timestamp": 5}],
            },
        ])
        assert streams[0].labels == {"job": "api"}
        assert streams[0].samples == [Sample(5.0, 3.0)]
