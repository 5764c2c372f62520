"""Minimal client for the Prometheus HTTP API.

Uses stdlib ``urllib.request``, no extra dependencies required. AWS SigV4
request signing needs the optional ``boto3`` package.

Every call runs under a hard ceiling: the request executes in a worker
thread and the caller stops waiting once the ceiling is reached, whatever
the backend or the socket is doing.
"""

from __future__ import annotations

import base64
import json
import logging
import ssl
import urllib.error
import urllib.parse
import urllib.request
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Protocol, TypeVar, runtime_checkable

from capacity_collector.config import ConfigError, PrometheusSettings, SigV4Settings
from capacity_collector.models import Sample, SampleStream

logger = logging.getLogger(__name__)

API_PREFIX = "/api/v1"
USER_AGENT = "capacity-collector"

T = TypeVar("T")


# --- Errors ---


class PrometheusError(Exception):
    """Base class for Prometheus API failures."""


class PrometheusConnectionError(PrometheusError):
    """The endpoint could not be reached (DNS, TCP, TLS, socket timeout)."""


class PrometheusQueryError(PrometheusError):
    """The API answered with an error."""

    def __init__(self, message: str, status: int | None = None, error_type: str = "") -> None:
        super().__init__(message)
        self.status = status
        self.error_type = error_type


class QueryCancelledError(PrometheusError):
    """The call did not complete before its hard ceiling."""


class UnexpectedValueError(PrometheusError):
    """The API returned a value type other than a matrix or vector."""


def _check_boto3_available() -> None:
    """Raise ImportError with helpful message if boto3 is not installed."""
    try:
        import boto3  # noqa: F401
    except ImportError:
        raise ImportError(
            "The 'boto3' package is required for SigV4 request signing. "
            "Install it with: pip install capacity-collector[aws]"
        ) from None


# --- Authentication ---


@runtime_checkable
class RequestAuth(Protocol):
    """Adds credentials to an outgoing request by updating its headers."""

    def apply(self, method: str, url: str, body: bytes | None, headers: dict[str, str]) -> None:
        ...


def _read_secret(path: str) -> str:
    return Path(path).read_text(encoding="utf-8").strip()


class BasicAuth:
    """HTTP Basic auth. A password file is re-read on every request."""

    def __init__(self, username: str, password: str | None = None, password_file: str | None = None) -> None:
        self._username = username
        self._password = password
        self._password_file = password_file

    def apply(self, method: str, url: str, body: bytes | None, headers: dict[str, str]) -> None:
        password = _read_secret(self._password_file) if self._password_file else (self._password or "")
        token = base64.b64encode(f"{self._username}:{password}".encode()).decode("ascii")
        headers["Authorization"] = f"Basic {token}"


class BearerTokenAuth:
    """Bearer token, inline or file-backed (re-read per request so rotation works)."""

    def __init__(self, token: str | None = None, token_file: str | None = None) -> None:
        if not token and not token_file:
            raise ValueError("BearerTokenAuth needs a token or a token file")
        self._token = token
        self._token_file = token_file

    def apply(self, method: str, url: str, body: bytes | None, headers: dict[str, str]) -> None:
        token = _read_secret(self._token_file) if self._token_file else self._token
        headers["Authorization"] = f"Bearer {token}"


class SigV4Auth:
    """AWS Signature Version 4 signing for Amazon Managed Service for Prometheus.

    Credentials come from the named profile, an assumed role, or boto3's
    default credential chain.
    """

    def __init__(self, settings: SigV4Settings) -> None:
        _check_boto3_available()
        self._settings = settings
        self._credentials: Any = None

    def _get_credentials(self) -> Any:
        if self._credentials is not None:
            return self._credentials
        import boto3

        kwargs: dict[str, Any] = {"region_name": self._settings.region}
        if self._settings.profile:
            kwargs["profile_name"] = self._settings.profile
        session = boto3.Session(**kwargs)

        if self._settings.role_arn:
            from botocore.credentials import Credentials

            resp = session.client("sts").assume_role(
                RoleArn=self._settings.role_arn,
                RoleSessionName=USER_AGENT,
            )
            creds = resp["Credentials"]
            self._credentials = Credentials(
                creds["AccessKeyId"], creds["SecretAccessKey"], creds["SessionToken"],
            )
        else:
            self._credentials = session.get_credentials()
            if self._credentials is None:
                raise PrometheusError("no AWS credentials found for SigV4 signing")
        return self._credentials

    def apply(self, method: str, url: str, body: bytes | None, headers: dict[str, str]) -> None:
        from botocore.auth import SigV4Auth as BotoSigV4Auth
        from botocore.awsrequest import AWSRequest

        request = AWSRequest(method=method, url=url, data=body, headers=dict(headers))
        BotoSigV4Auth(self._get_credentials(), self._settings.service, self._settings.region).add_auth(request)
        headers.update(dict(request.headers.items()))


def auth_from_settings(settings: PrometheusSettings) -> list[RequestAuth]:
    """Build the authenticators for *settings*, in the order they apply.

    SigV4 comes last since it signs the headers set before it.
    """
    auths: list[RequestAuth] = []
    if settings.username and not settings.has_password:
        raise ConfigError("basic auth requires both username and password")
    if settings.has_password and not settings.username:
        raise ConfigError("basic auth requires both username and password")
    if settings.username:
        auths.append(BasicAuth(settings.username, settings.password, settings.password_file))
    if settings.bearer_token or settings.bearer_token_file:
        auths.append(BearerTokenAuth(settings.bearer_token, settings.bearer_token_file))
    if settings.sigv4 is not None:
        auths.append(SigV4Auth(settings.sigv4))
    return auths


def _ssl_context(settings: PrometheusSettings) -> ssl.SSLContext | None:
    if not settings.ca_cert and not settings.insecure_skip_verify:
        return None
    ctx = ssl.create_default_context(cafile=settings.ca_cert)
    if settings.insecure_skip_verify:
        ctx.check_hostname = False
        ctx.verify_mode = ssl.CERT_NONE
    return ctx


# --- Hard ceiling ---


def run_with_ceiling(fn: Callable[[], T], ceiling: float) -> T:
    """Run *fn* and give up waiting after *ceiling* seconds.

    Raises:
        QueryCancelledError: If the ceiling is reached. The worker thread is
            abandoned; its eventual result is discarded.
    """
    pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="prometheus-call")
    future = pool.submit(fn)
    try:
        return future.result(timeout=ceiling)
    except FuturesTimeoutError:
        future.cancel()
        raise QueryCancelledError(f"call cancelled after {ceiling:g}s") from None
    finally:
        pool.shutdown(wait=False)


# --- Response decoding ---


def _timestamp(t: datetime) -> str:
    return f"{t.timestamp():.3f}"


def _sample(pair: list[Any]) -> Sample:
    return Sample(timestamp=float(pair[0]), value=float(pair[1]))


def decode_matrix(data: dict[str, Any]) -> list[SampleStream]:
    """Decode a query result into sample streams.

    Matrices map one-to-one; each vector element becomes a single-sample
    stream. Scalars and strings are rejected.
    """
    result_type = data.get("resultType")
    result = data.get("result") or []
    match result_type:
        case "matrix":
            return [
                SampleStream(labels=dict(r.get("metric", {})), samples=[_sample(v) for v in r.get("values", [])])
                for r in result
            ]
        case "vector":
            return [
                SampleStream(labels=dict(r.get("metric", {})), samples=[_sample(r["value"])])
                for r in result
            ]
        case _:
            raise UnexpectedValueError(f"unexpected value type {result_type}, expected matrix")


def decode_exemplars(data: list[dict[str, Any]]) -> list[SampleStream]:
    """Decode an exemplar query result; one stream per series."""
    streams = []
    for series in data or []:
        samples = [
            Sample(timestamp=float(e["timestamp"]), value=float(e["value"]))
            for e in series.get("exemplars", [])
        ]
        streams.append(SampleStream(labels=dict(series.get("seriesLabels", {})), samples=samples))
    return streams


# --- Client ---


class PrometheusClient:
    """Instant, range, exemplar and build-info calls against one endpoint."""

    def __init__(
        self,
        settings: PrometheusSettings,
        auth: list[RequestAuth] | None = None,
    ) -> None:
        self._base_url = settings.url.rstrip("/")
        self._auth = auth_from_settings(settings) if auth is None else auth
        self._ssl = _ssl_context(settings)
        self._data_timeout = settings.data_timeout
        self._metadata_timeout = settings.metadata_timeout

    @property
    def base_url(self) -> str:
        return self._base_url

    def query(self, query: str, at: datetime | None = None) -> dict[str, Any]:
        params = {"query": query}
        if at is not None:
            params["time"] = _timestamp(at)
        return self._call("POST", "/query", params, self._data_timeout)

    def query_range(self, query: str, start: datetime, end: datetime, step: timedelta) -> dict[str, Any]:
        params = {
            "query": query,
            "start": _timestamp(start),
            "end": _timestamp(end),
            "step": f"{step.total_seconds():g}",
        }
        return self._call("POST", "/query_range", params, self._data_timeout)

    def query_exemplars(self, query: str, start: datetime, end: datetime) -> list[dict[str, Any]]:
        params = {"query": query, "start": _timestamp(start), "end": _timestamp(end)}
        return self._call("POST", "/query_exemplars", params, self._data_timeout)

    def build_info(self) -> dict[str, Any]:
        return self._call("GET", "/status/buildinfo", {}, self._metadata_timeout)

    def _call(self, method: str, path: str, params: dict[str, str], ceiling: float) -> Any:
        return run_with_ceiling(lambda: self._request(method, path, params, ceiling), ceiling)

    def _request(self, method: str, path: str, params: dict[str, str], timeout: float) -> Any:
        url = self._base_url + API_PREFIX + path
        encoded = urllib.parse.urlencode(params)
        body: bytes | None = None
        headers = {"Accept": "application/json", "User-Agent": USER_AGENT}
        if method == "GET":
            if encoded:
                url = f"{url}?{encoded}"
        else:
            body = encoded.encode("utf-8")
            headers["Content-Type"] = "application/x-www-form-urlencoded"
        for auth in self._auth:
            auth.apply(method, url, body, headers)

        logger.debug("%s %s", method, url)
        req = urllib.request.Request(url, data=body, headers=headers, method=method)
        try:
            with urllib.request.urlopen(req, timeout=timeout, context=self._ssl) as resp:  # noqa: S310
                payload = json.loads(resp.read().decode("utf-8"))
        except urllib.error.HTTPError as e:
            raise _api_error(e) from e
        except (urllib.error.URLError, OSError) as e:
            reason = getattr(e, "reason", e)
            raise PrometheusConnectionError(f"cannot reach {self._base_url}: {reason}") from e
        except ValueError as e:
            raise PrometheusQueryError(f"invalid JSON response from {url}: {e}") from e

        if payload.get("status") != "success":
            raise PrometheusQueryError(
                payload.get("error", "unknown error"), error_type=payload.get("errorType", ""),
            )
        return payload.get("data")


def _api_error(e: urllib.error.HTTPError) -> PrometheusQueryError:
    """Turn an HTTP error into a query error, using the API's error body if any."""
    message, error_type = f"HTTP {e.code}: {e.reason}", ""
    try:
        payload = json.loads(e.read().decode("utf-8"))
    except (ValueError, OSError):
        payload = None
    if isinstance(payload, dict) and payload.get("error"):
        message = f"HTTP {e.code}: {payload['error']}"
        error_type = payload.get("errorType", "")
    return PrometheusQueryError(message, status=e.code, error_type=error_type)
