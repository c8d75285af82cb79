#!/usr/bin/python3
"""
Client helpers for the Appflow REST API.

Every API response body is an envelope: ``{"meta": {...}, "data": ...}`` on success or
``{"meta": {...}, "error": {...}}`` on failure. This module builds requests (proxy and
mutual-TLS aware), validates envelopes, renders diagnostics, paginates list endpoints and
streams binary downloads.
"""
import importlib
import json
import logging
import math
import os
import re
import ssl
import tempfile
import threading
import time
import urllib.parse
from dataclasses import dataclass, field
from pathlib import Path

import jwt
import requests
import urllib3
from dotenv import load_dotenv
from requests.adapters import HTTPAdapter

_VERSION = 1.0

CONTENT_TYPE_JSON = "application/json"
FORMAT_ERROR_BODY_MAX_LENGTH = 1000
DEFAULT_PAGE_SIZE = 100
DEFAULT_API_URL = "https://api.ionicjs.com"
DEFAULT_HTTP_TIMEOUT = (10.0, 60.0)

ERROR_UNKNOWN_CONTENT_TYPE = "UNKNOWN_CONTENT_TYPE"
ERROR_UNKNOWN_RESPONSE_FORMAT = "UNKNOWN_RESPONSE_FORMAT"

PROXY_ENV_VARS = ("APPFLOW_HTTP_PROXY", "HTTPS_PROXY", "https_proxy", "HTTP_PROXY", "http_proxy")

_REDACTIONS = (
    (re.compile(r"(?i)(bearer\s+)[A-Za-z0-9\-._~+/]+=*"), r"\1[REDACTED]"),
    (
        re.compile(r"(?i)(\"?(?:access_token|refresh_token|id_token|token)\"?\s*[:=]\s*\"?)[^\"\s&,]+"),
        r"\1[REDACTED]",
    ),
    (re.compile(r"(?i)((?:client_secret|password)\s*[:=]\s*)[^\s&,]+"), r"\1[REDACTED]"),
    (
        re.compile(r"(?i)([?&](?:sig|signature|x-amz-signature|x-amz-credential|token)=)[^&\s\"']+"),
        r"\1[REDACTED]",
    ),
)


class AppflowError(Exception):
    pass


class FatalError(AppflowError):
    """Raised for conditions that must never be retried (contract violations)."""


class UnknownContentType(FatalError):
    code = ERROR_UNKNOWN_CONTENT_TYPE


class UnknownResponseFormat(FatalError):
    code = ERROR_UNKNOWN_RESPONSE_FORMAT


class ApiRequestError(AppflowError):
    """The API answered with an HTTP error status."""

    def __init__(self, request, response):
        self.request = request
        self.response = response
        self.status_code = int(getattr(response, "status_code", 0) or 0)
        super().__init__(f"HTTP {self.status_code}: {request.method} {request.url}")

    @property
    def error_payload(self) -> dict:
        try:
            body = self.response.json()
        except ValueError:
            return {}
        if isinstance(body, dict) and isinstance(body.get("error"), dict):
            return body["error"]
        return {}


class ServiceError(AppflowError):
    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ValidationError(AppflowError):
    pass


class AuthenticationError(AppflowError):
    pass


class ArtifactNotFoundError(AppflowError):
    def __init__(self, artifact_type: str):
        super().__init__(f"Artifact type '{artifact_type}' not found")
        self.artifact_type = artifact_type


class DownloadError(AppflowError):
    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class DownloadTimeoutError(DownloadError):
    pass


def configure_logging(level: str | int, force: bool = False) -> None:
    if isinstance(level, str):
        level = logging.getLevelName(level.strip().upper())
        if not isinstance(level, int):
            raise ValueError("invalid log level")
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(message)s",
        force=force,
    )


def redact_sensitive_text(text) -> str:
    cooked = str(text or "")
    for pattern, repl in _REDACTIONS:
        cooked = pattern.sub(repl, cooked)
    return cooked


def parse_http_timeout(value: str) -> tuple[float, float]:
    """
    Parse a timeout as either:
      - "read" (seconds) -> (10, read)
      - "connect,read" (seconds) -> (connect, read)
    """
    raw = (value or "").strip()
    if not raw:
        raise ValueError("empty timeout")

    if "," in raw:
        parts = [p.strip() for p in raw.split(",", 1)]
        if len(parts) != 2 or not parts[0] or not parts[1]:
            raise ValueError(f"invalid timeout format: {value!r}")
        connect_s = float(parts[0])
        read_s = float(parts[1])
    else:
        connect_s = 10.0
        read_s = float(raw)

    if not math.isfinite(connect_s) or not math.isfinite(read_s):
        raise ValueError("timeouts must be finite")
    if connect_s <= 0 or read_s <= 0:
        raise ValueError("timeouts must be > 0")
    return (connect_s, read_s)


def _split_paths(value: str | None) -> list[str]:
    return [p.strip() for p in (value or "").split(os.pathsep) if p.strip()]


class Config:
    def __init__(
        self,
        api_url: str = DEFAULT_API_URL,
        *,
        ssl_config: dict | None = None,
        timeout: tuple[float, float] = DEFAULT_HTTP_TIMEOUT,
    ):
        self._api_url = (api_url or DEFAULT_API_URL).rstrip("/")
        self._ssl = dict(ssl_config) if ssl_config else None
        self._timeout = timeout

    @classmethod
    def from_env(cls, *, dotenv: bool = True) -> "Config":
        if dotenv:
            load_dotenv()

        ssl_config = {
            "cafile": _split_paths(os.getenv("APPFLOW_SSL_CAFILE")),
            "certfile": _split_paths(os.getenv("APPFLOW_SSL_CERTFILE")),
            "keyfile": _split_paths(os.getenv("APPFLOW_SSL_KEYFILE")),
        }
        if not any(ssl_config.values()):
            ssl_config = None

        raw_timeout = os.getenv("APPFLOW_HTTP_TIMEOUT", "")
        timeout = parse_http_timeout(raw_timeout) if raw_timeout.strip() else DEFAULT_HTTP_TIMEOUT
        return cls(
            os.getenv("APPFLOW_API_URL", DEFAULT_API_URL),
            ssl_config=ssl_config,
            timeout=timeout,
        )

    def load(self) -> dict:
        c = {"timeout": self._timeout}
        if self._ssl:
            c["ssl"] = dict(self._ssl)
        return c

    def get_api_url(self) -> str:
        return self._api_url

    def get_http_config(self) -> dict:
        return self.load()


class Session:
    """Supplies the bearer token attached to API requests."""

    def __init__(self, token: str | None = None):
        self._token = token

    def get_user_token(self) -> str:
        token = (self._token if self._token is not None else os.getenv("APPFLOW_TOKEN", "")).strip()
        if not token:
            raise AuthenticationError("Oops, sorry! You'll need to log in (set APPFLOW_TOKEN).")
        if self.token_expired(token):
            raise AuthenticationError("Your session has expired. Try logging out and back in again.")
        return token

    @staticmethod
    def token_expired(token: str, *, leeway_s: int = 0) -> bool:
        # Opaque (non-JWT) tokens are passed through; the API decides.
        try:
            claims = jwt.decode(token, options={"verify_signature": False})
        except jwt.exceptions.DecodeError:
            return False
        exp = claims.get("exp")
        if not isinstance(exp, (int, float)):
            return False
        return exp <= time.time() + leeway_s


def get_global_proxy() -> tuple[str, str]:
    for var in PROXY_ENV_VARS:
        value = (os.getenv(var) or "").strip()
        if value:
            return value, var
    return "", ""


def _conform(p) -> list[str]:
    if not p:
        return []
    if isinstance(p, str):
        return [p]
    return list(p)


def _read_text(path: str) -> str:
    with open(path, "r", encoding="utf-8") as fh:
        return fh.read()


class TLSMaterial:
    """
    Certificate material read from the configured ssl paths.

    Populated at most once for the lifetime of the instance; a changed certificate file is
    only picked up by a new instance (in practice a new process).
    """

    def __init__(self, read_file=None):
        self._read_file = read_file or _read_text
        self._lock = threading.Lock()
        self.cas: list[str] | None = None
        self.certs: list[str] | None = None
        self.keys: list[str] | None = None
        self._ssl_context: ssl.SSLContext | None = None

    def load(self, ssl_config: dict) -> "TLSMaterial":
        with self._lock:
            if self.cas is None:
                self.cas = [self._read_file(p) for p in _conform(ssl_config.get("cafile"))]
            if self.certs is None:
                self.certs = [self._read_file(p) for p in _conform(ssl_config.get("certfile"))]
            if self.keys is None:
                self.keys = [self._read_file(p) for p in _conform(ssl_config.get("keyfile"))]
        return self

    def ssl_context(self) -> ssl.SSLContext:
        with self._lock:
            if self._ssl_context is None:
                self._ssl_context = self._build_ssl_context()
            return self._ssl_context

    def _build_ssl_context(self) -> ssl.SSLContext:
        cas = self.cas or []
        ctx = ssl.create_default_context(cadata="\n".join(cas) if cas else None)
        certs = self.certs or []
        keys = self.keys or []
        if len(certs) > 1:
            # An SSLContext holds a single client chain; later load_cert_chain calls replace it.
            logging.warning("only the first of %d client certificates is used", len(certs))
        if certs:
            cert = certs[0]
            key = keys[0] if keys else ""
            # load_cert_chain only accepts paths; the PEM file lives only for this call.
            tmp_fh = tempfile.NamedTemporaryFile(mode="w", encoding="utf-8", suffix=".pem", delete=False)
            tmp_path = Path(tmp_fh.name)
            try:
                with tmp_fh:
                    tmp_fh.write(cert.rstrip("\n") + "\n")
                    if key:
                        tmp_fh.write(key.rstrip("\n") + "\n")
                ctx.load_cert_chain(str(tmp_path))
            finally:
                tmp_path.unlink(missing_ok=True)
        return ctx


class _SSLContextAdapter(HTTPAdapter):
    def __init__(self, ssl_context: ssl.SSLContext, *, replace_ca: bool = False, **kwargs):
        self.ssl_context = ssl_context
        self.replace_ca = replace_ca
        super().__init__(**kwargs)

    def init_poolmanager(self, *args, **kwargs):
        kwargs["ssl_context"] = self.ssl_context
        return super().init_poolmanager(*args, **kwargs)

    def proxy_manager_for(self, proxy, **proxy_kwargs):
        proxy_kwargs["ssl_context"] = self.ssl_context
        return super().proxy_manager_for(proxy, **proxy_kwargs)

    def cert_verify(self, conn, url, verify, cert):
        super().cert_verify(conn, url, verify, cert)
        if self.replace_ca and verify is True:
            # The context already trusts exactly the configured CAs; without this urllib3
            # would load the default certifi bundle into it as well.
            conn.ca_certs = None
            conn.ca_cert_dir = None


class Request:
    def __init__(self, method: str, url: str, *, timeout=None):
        self.method = method.upper()
        self.url = url
        self.timeout = timeout
        self.headers: dict[str, str] = {}
        self.params: dict = {}
        self.body = None
        self.proxies: dict[str, str] = {}
        self.ca: list[str] = []
        self.cert: list[str] = []
        self.key: list[str] = []
        self.tls: TLSMaterial | None = None

    def __repr__(self) -> str:
        return f"<Request {self.method} {self.url}>"

    def set(self, name: str, value: str) -> "Request":
        self.headers[name] = value
        return self

    def query(self, params: dict) -> "Request":
        self.params.update(params)
        return self

    def send(self, body=None) -> "Request":
        self.body = body
        return self

    def to_kwargs(self, *, stream: bool = False) -> dict:
        kwargs = {
            "method": self.method,
            "url": self.url,
            "headers": dict(self.headers),
            "params": dict(self.params) or None,
            "timeout": self.timeout,
            "stream": stream,
            "allow_redirects": True,
        }
        if self.body is not None:
            kwargs["data"] = json.dumps(self.body)
        if self.proxies:
            kwargs["proxies"] = dict(self.proxies)
        return kwargs


def _load_socks_support():
    return importlib.import_module("socks")


def create_raw_request(method: str, url: str, *, timeout=None) -> Request:
    proxy, proxy_var = get_global_proxy()
    req = Request(method, url, timeout=timeout)

    if proxy and proxy_var:
        scheme = urllib.parse.urlparse(proxy).scheme.lower()
        if scheme.startswith("socks"):
            try:
                _load_socks_support()
            except ModuleNotFoundError:
                logging.warning(
                    "ignoring %s=%s: SOCKS proxy support requires PySocks (pip install requests[socks])",
                    proxy_var,
                    redact_sensitive_text(proxy),
                )
                return req
        req.proxies = {"http": proxy, "https": proxy}
        logging.debug("using proxy from %s for %s", proxy_var, url)

    return req


def create_request(config: Config, method: str, url: str, *, tls: TLSMaterial) -> Request:
    c = config.load()
    req = create_raw_request(method, url, timeout=c.get("timeout"))

    if c.get("ssl"):
        tls.load(c["ssl"])

        if tls.cas:
            req.ca = list(tls.cas)
        if tls.certs:
            req.cert = list(tls.certs)
        if tls.keys:
            req.key = list(tls.keys)
        if req.ca or req.cert:
            req.tls = tls

    return req


def send_request(session, req: Request, *, stream: bool = False):
    if req.tls is not None and hasattr(session, "mount"):
        ctx = req.tls.ssl_context()
        adapter = session.get_adapter("https://")
        if getattr(adapter, "ssl_context", None) is not ctx:
            session.mount("https://", _SSLContextAdapter(ctx, replace_ca=bool(req.ca)))
    return session.request(**req.to_kwargs(stream=stream))


@dataclass
class Meta:
    status: int
    version: str = ""
    request_id: str = ""


@dataclass
class ApiResponseSuccess:
    meta: Meta
    data: object = field(default_factory=dict)


@dataclass
class ApiResponseError:
    meta: Meta
    error: dict = field(default_factory=dict)


def is_api_response_success(r) -> bool:
    return isinstance(r, ApiResponseSuccess)


def is_api_response_error(r) -> bool:
    return isinstance(r, ApiResponseError)


def _media_type(resp) -> str:
    raw = str((getattr(resp, "headers", None) or {}).get("Content-Type", "") or "")
    return raw.split(";", 1)[0].strip().lower()


def _parse_meta(raw: dict) -> Meta:
    try:
        status = int(raw.get("status", 0) or 0)
    except (TypeError, ValueError):
        status = 0
    return Meta(
        status=status,
        version=str(raw.get("version", "") or ""),
        request_id=str(raw.get("request_id", "") or ""),
    )


def transform_api_response(resp) -> ApiResponseSuccess | ApiResponseError:
    if resp.status_code == 204:
        return ApiResponseSuccess(meta=Meta(status=204), data={})

    if _media_type(resp) != CONTENT_TYPE_JSON:
        raise UnknownContentType(ERROR_UNKNOWN_CONTENT_TYPE)

    try:
        body = resp.json()
    except ValueError as e:
        raise UnknownResponseFormat(ERROR_UNKNOWN_RESPONSE_FORMAT) from e

    if not isinstance(body, dict) or not isinstance(body.get("meta"), dict):
        raise UnknownResponseFormat(ERROR_UNKNOWN_RESPONSE_FORMAT)

    meta = _parse_meta(body["meta"])
    if "error" in body:
        error = body["error"]
        return ApiResponseError(meta=meta, error=error if isinstance(error, dict) else {"message": error})
    return ApiResponseSuccess(meta=meta, data=body.get("data"))


def _inspect(payload) -> str:
    return json.dumps(payload, indent=2, sort_keys=True, default=str)


def format_api_success(req: Request, r: ApiResponseSuccess) -> str:
    return f"Request: {req.method} {req.url}\nResponse: {r.meta.status}\nBody: \n{_inspect(r.data)}"


def format_api_error(req: Request, r: ApiResponseError) -> str:
    return f"Request: {req.method} {req.url}\nResponse: {r.meta.status}\nBody: \n{_inspect(r.error)}"


def format_api_response(req: Request, r) -> str:
    if is_api_response_success(r):
        return format_api_success(req, r)
    return format_api_error(req, r)


def format_request_error(e: ApiRequestError) -> str:
    res = e.response
    req = e.request

    try:
        return format_api_response(req, transform_api_response(res))
    except Exception:
        # Anything the server sent that is not an envelope gets the raw rendering.
        pass

    try:
        text = str(getattr(res, "text", "") or "")
    except Exception:
        text = ""

    f = f"HTTP Error {e.status_code}: {req.method.upper()} {req.url}\n"
    f += "\n" + (text[:FORMAT_ERROR_BODY_MAX_LENGTH] if text else "<no buffered body>")
    if len(text) > FORMAT_ERROR_BODY_MAX_LENGTH:
        f += f" ...\n\n[ truncated {len(text) - FORMAT_ERROR_BODY_MAX_LENGTH} characters ]"
    return f


def create_fatal_api_format(req: Request, res) -> FatalError:
    return FatalError(
        "API request was successful, but the response format was unrecognized.\n"
        + format_api_response(req, res)
    )


class Client:
    def __init__(self, config: Config, *, session=None, tls: TLSMaterial | None = None):
        self.config = config
        self.session = session if session is not None else requests.Session()
        self.tls = tls if tls is not None else TLSMaterial()

    def make(self, method: str, path: str) -> Request:
        if path.startswith(("http://", "https://")):
            url = path
        else:
            url = f"{self.config.get_api_url()}{path}"
        req = create_request(self.config, method, url, tls=self.tls)
        req.set("Content-Type", CONTENT_TYPE_JSON).set("Accept", CONTENT_TYPE_JSON)
        return req

    def do(self, req: Request) -> ApiResponseSuccess:
        logging.debug("%s %s params=%s", req.method, req.url, req.params)
        resp = send_request(self.session, req)
        try:
            if resp.status_code >= 400:
                raise ApiRequestError(req, resp)
            r = transform_api_response(resp)
        finally:
            close = getattr(resp, "close", None)
            if callable(close):
                close()

        if is_api_response_error(r):
            raise FatalError(
                "API request was successful, but the response output format was that of an error.\n"
                + format_api_error(req, r)
            )
        return r

    def paginate(self, reqgen, guard, *, page_size: int = DEFAULT_PAGE_SIZE) -> "Paginator":
        return Paginator(self, reqgen, guard, page_size=page_size)


def is_list_response(r) -> bool:
    return is_api_response_success(r) and isinstance(r.data, list)


class PendingPage:
    """A page fetch that runs on the first call to ``result()``; later calls replay it."""

    def __init__(self, fetch, page: int):
        self.page = page
        self._fetch = fetch
        self._lock = threading.Lock()
        self._resolved = False
        self._value = None
        self._error: BaseException | None = None

    def result(self):
        with self._lock:
            if not self._resolved:
                try:
                    self._value = self._fetch()
                except Exception as e:
                    self._error = e
                self._resolved = True
        if self._error is not None:
            raise self._error
        return self._value

    def done(self) -> bool:
        return self._resolved


class Paginator:
    def __init__(self, client: Client, reqgen, guard, *, page_size: int = DEFAULT_PAGE_SIZE):
        if page_size <= 0:
            raise ValueError("page_size must be > 0")
        self.client = client
        self.reqgen = reqgen
        self.guard = guard
        self.page_size = page_size
        self.state: dict | None = None
        self.done = False

    def __iter__(self):
        return self

    def __next__(self) -> PendingPage:
        if self.done:
            raise StopIteration

        if self.state is None:
            self.state = {"page": 1, "page_size": self.page_size}

        page = self.state["page"]
        page_size = self.state["page_size"]
        self.state["page"] += 1

        def fetch():
            req = self.reqgen()
            req.query({"page": page, "page_size": page_size})
            res = self.client.do(req)
            if not self.guard(res):
                raise create_fatal_api_format(req, res)
            if len(res.data) == 0 or len(res.data) < page_size:
                self.done = True
            return res

        return PendingPage(fetch, page)

    def items(self):
        for pending in self:
            yield from pending.result().data


def _parse_content_length(headers) -> int:
    try:
        total = int(str((headers or {}).get("Content-Length", "")).strip())
    except (TypeError, ValueError):
        return 0
    return total if total >= 0 else 0


def _is_timeout(exc: Exception) -> bool:
    if isinstance(exc, requests.exceptions.Timeout):
        return True
    cause = exc.args[0] if exc.args else None
    return isinstance(cause, urllib3.exceptions.ReadTimeoutError)


def _timeout_label(timeout) -> str:
    if isinstance(timeout, (tuple, list)) and timeout:
        timeout = timeout[-1]
    return f"{timeout}s" if timeout is not None else "the configured timeout"


def download(
    req: Request,
    sink,
    *,
    progress=None,
    on_response=None,
    session=None,
    chunk_size: int = 65536,
) -> None:
    """
    Stream a GET response body into ``sink``.

    A non-200 status still drains the body into the sink; the ``DownloadError`` is raised
    once the stream has ended. ``sink`` is closed on every path.
    """
    own_session = session is None
    if own_session:
        session = requests.Session()
    resp = None
    error = None
    try:
        try:
            resp = send_request(session, req, stream=True)
            status = int(getattr(resp, "status_code", 0) or 0)
            if status != 200:
                error = DownloadError(
                    f"Encountered bad status code ({status}) for {req.url}\n"
                    "This could mean the server is experiencing difficulties right now--please try again later.",
                    status_code=status,
                )
            if on_response is not None:
                on_response(resp)

            total = _parse_content_length(getattr(resp, "headers", None))
            loaded = 0
            for chunk in resp.iter_content(chunk_size=chunk_size):
                if not chunk:
                    continue
                sink.write(chunk)
                loaded += len(chunk)
                if progress is not None:
                    progress(loaded, total)
            sink.flush()
        except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
            if _is_timeout(e):
                raise DownloadTimeoutError(f"Timeout of {_timeout_label(req.timeout)} reached for {req.url}") from e
            raise
    finally:
        try:
            if resp is not None:
                resp.close()
        finally:
            try:
                sink.close()
            finally:
                if own_session:
                    session.close()

    if error is not None:
        raise error
