"""
api_transport.py
----------------
MediFlow Clinical API Client - HTTP Transport
----------------------------------------------
Async transport for the MediFlow REST API.  Performs exactly one HTTP
request per call: no retries, no caching.  Those concerns live in
``request_interceptor.py`` and ``response_cache.py``; this module only
turns ``(method, path, params, json)`` into either a parsed response
envelope or a structured ``ApiError``.

Authentication:
  1. The bearer token is read from the ``CredentialStore`` when the
     transport is constructed (file-backed when ``MEDIFLOW_AUTH_TOKEN_FILE``
     is set, otherwise in-memory).
  2. ``login()`` stores the token returned by ``POST /auth/login``;
     ``set_token()`` replaces or clears it explicitly.
  3. Every request carries ``Authorization: Bearer <token>`` when a token
     is present.  A 401 response is surfaced as ``ApiError(401)``; evicting
     the credential is the session handler's job, not the transport's.

Error mapping:
  - ``httpx.TimeoutException``    -> ``ApiError(code="TIMEOUT")``, no status
  - other ``httpx.HTTPError``     -> ``ApiError(code="NETWORK_ERROR")``, no status
  - non-2xx response              -> ``ApiError(status_code=<status>)``
  - 2xx with ``success: false``   -> ``ApiError(status_code=<status>)``

Usage (async context manager, preferred)::

    async with ApiTransport("http://localhost:3001/api") as transport:
        envelope = await transport.request("/patients", params={"page": "1"})
        patients = envelope.items

Project: MediFlow Clinical API Client
"""

from __future__ import annotations

import logging
import os
from typing import Any, Optional

import httpx

from api_config import ClientSettings
from api_models import ApiEnvelope

logger = logging.getLogger(__name__)

NETWORK_ERROR = "NETWORK_ERROR"
TIMEOUT = "TIMEOUT"


class ApiError(Exception):
    """
    Raised when a request fails at the network level or the server rejects it.

    ``status_code`` is ``None`` for failures that never produced an HTTP
    response; ``code`` then tells them apart (``NETWORK_ERROR`` /
    ``TIMEOUT``).
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        url: str = "unknown",
        method: str = "unknown",
        code: Optional[str] = None,
        body: str = "",
        response: Any = None,
    ) -> None:
        self.status_code = status_code
        self.url = url
        self.method = method
        self.code = code
        self.body = body
        self.response = response
        super().__init__(message)

    @property
    def status(self) -> Optional[int]:
        return self.status_code


class CredentialStore:
    """
    Holds the bearer token, optionally persisted to a file.

    Args:
        path: File the token is written to.  ``None`` keeps the token in
              memory for the lifetime of the store.
    """

    def __init__(self, path: Optional[str] = None, token: Optional[str] = None) -> None:
        self.path = path
        self._token: Optional[str] = token

    def load(self) -> Optional[str]:
        if self.path is None:
            return self._token
        try:
            with open(self.path, encoding="utf-8") as fh:
                token = fh.read().strip()
        except FileNotFoundError:
            return None
        return token or None

    def save(self, token: str) -> None:
        self._token = token
        if self.path is not None:
            directory = os.path.dirname(self.path)
            if directory:
                os.makedirs(directory, exist_ok=True)
            with open(self.path, "w", encoding="utf-8") as fh:
                fh.write(token)
            logger.debug("CredentialStore: token persisted to %s.", self.path)

    def clear(self) -> None:
        self._token = None
        if self.path is not None:
            try:
                os.remove(self.path)
                logger.debug("CredentialStore: token file %s removed.", self.path)
            except FileNotFoundError:
                pass


class ApiTransport:
    """
    Async HTTP transport over ``httpx.AsyncClient``.

    Args:
        base_url:       API base URL; defaults to ``settings.api_url``.
        settings:       Resolved client settings (``ClientSettings.from_env()``
                        when omitted).
        credentials:    Token store; built from ``settings.auth_token_file``
                        when omitted.
        http_transport: Optional ``httpx`` transport (``MockTransport``,
                        ``ASGITransport``) used instead of the network.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        *,
        settings: Optional[ClientSettings] = None,
        credentials: Optional[CredentialStore] = None,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings or ClientSettings.from_env()
        self.base_url = (base_url or self.settings.api_url).rstrip("/")
        self.timeout = self.settings.timeout
        self.credentials = credentials or CredentialStore(self.settings.auth_token_file)
        self._token: Optional[str] = self.credentials.load()
        self._http_transport = http_transport
        self._http: Optional[httpx.AsyncClient] = None

    # ── Lifecycle ────────────────────────────────────────────────────────────

    async def connect(self) -> None:
        """Open the underlying HTTP connection pool."""
        if self._http is None:
            self._http = httpx.AsyncClient(
                timeout=self.timeout,
                transport=self._http_transport,
            )
            logger.debug("ApiTransport: HTTP client initialised (base_url=%s).", self.base_url)

    async def close(self) -> None:
        """Close the underlying HTTP connection pool."""
        if self._http is not None:
            await self._http.aclose()
            self._http = None
            logger.debug("ApiTransport: HTTP client closed.")

    async def __aenter__(self) -> "ApiTransport":
        await self.connect()
        return self

    async def __aexit__(self, *_: Any) -> None:
        await self.close()

    @property
    def is_connected(self) -> bool:
        return self._http is not None

    # ── Credentials ──────────────────────────────────────────────────────────

    @property
    def token(self) -> Optional[str]:
        return self._token

    def set_token(self, token: Optional[str]) -> None:
        """Replace the bearer token; ``None`` clears it from the store as well."""
        self._token = token
        if token:
            self.credentials.save(token)
        else:
            self.credentials.clear()

    def _headers(self, extra: Optional[dict[str, str]] = None) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        if extra:
            headers.update(extra)
        return headers

    # ── Internal request helper ──────────────────────────────────────────────

    async def _send(
        self,
        method: str,
        url: str,
        *,
        params: Optional[dict[str, str]] = None,
        json: Any = None,
        headers: Optional[dict[str, str]] = None,
    ) -> tuple[httpx.Response, Any]:
        """
        Perform one HTTP exchange and return ``(response, parsed_body)``.

        Raises:
            RuntimeError: if ``connect()`` / ``__aenter__`` was not called.
            ApiError:     on network failure, timeout or a non-2xx status.
        """
        if self._http is None:
            raise RuntimeError(
                "ApiTransport is not connected. "
                "Use 'async with ApiTransport() as transport:' or call connect() first."
            )

        try:
            resp = await self._http.request(
                method,
                url,
                params=params,
                json=json,
                headers=self._headers(headers),
            )
        except httpx.TimeoutException as exc:
            raise ApiError(
                f"Request timed out: {exc}",
                url=url, method=method, code=TIMEOUT,
            ) from exc
        except httpx.HTTPError as exc:
            raise ApiError(
                f"Network error: {exc}",
                url=url, method=method, code=NETWORK_ERROR,
            ) from exc

        body = _parse_json(resp)

        if resp.status_code not in range(200, 300):
            message = f"HTTP error {resp.status_code}"
            code = None
            if isinstance(body, dict) and isinstance(body.get("error"), dict):
                message = body["error"].get("message") or message
                code = body["error"].get("code")
            raise ApiError(
                message,
                status_code=resp.status_code,
                url=url,
                method=method,
                code=code,
                body=resp.text,
                response=body,
            )

        return resp, body

    # ── Public API ───────────────────────────────────────────────────────────

    async def request(
        self,
        path: str,
        *,
        method: str = "GET",
        params: Optional[dict[str, str]] = None,
        json: Any = None,
        headers: Optional[dict[str, str]] = None,
    ) -> ApiEnvelope:
        """
        Execute one API request and return the parsed response envelope.

        Args:
            path:    Path relative to the API base URL, e.g. ``"/patients/p1"``.
            method:  HTTP method.
            params:  Query string parameters.
            json:    Request body, serialised as JSON.
            headers: Extra headers merged over the defaults.

        Raises:
            ApiError: on any transport or server failure.
        """
        url = f"{self.base_url}{path}"
        logger.debug("ApiTransport: %s %s params=%s", method, path, params or "<none>")
        resp, body = await self._send(method, url, params=params, json=json, headers=headers)

        if isinstance(body, dict) and "success" in body:
            envelope = ApiEnvelope.model_validate(body)
        else:
            envelope = ApiEnvelope(success=True, data=body)

        if not envelope.success:
            error = envelope.error or {}
            raise ApiError(
                error.get("message") or envelope.message or "Request failed",
                status_code=resp.status_code,
                url=url,
                method=method,
                code=error.get("code"),
                body=resp.text,
                response=body,
            )
        return envelope

    async def fetch_json(self, url: str) -> Any:
        """GET an absolute URL (e.g. the health endpoint) and return its JSON body."""
        _, body = await self._send("GET", url)
        return body

    async def login(self, email: str, password: str) -> dict[str, Any]:
        """
        Authenticate and store the returned bearer token.

        Returns:
            The login payload, ``{"user": {...}, "token": "..."}``.
        """
        envelope = await self.request(
            "/auth/login",
            method="POST",
            json={"email": email, "password": password},
        )
        data = envelope.data or {}
        token = data.get("token") if isinstance(data, dict) else None
        if token:
            self.set_token(token)
            logger.info("ApiTransport: login succeeded for %s.", email)
        else:
            logger.warning("ApiTransport: login response for %s carried no token.", email)
        return data

    async def logout(self) -> None:
        """Notify the server, then drop the local credential whatever happens."""
        try:
            await self.request("/auth/logout", method="POST")
        finally:
            self.set_token(None)
            logger.info("ApiTransport: credential cleared on logout.")

    async def get_current_user(self) -> dict[str, Any]:
        envelope = await self.request("/auth/me")
        return envelope.data or {}


def _parse_json(resp: httpx.Response) -> Any:
    if not resp.content:
        return None
    try:
        return resp.json()
    except ValueError:
        return None
