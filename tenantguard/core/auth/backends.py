from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol

import requests

from tenantguard.core.errors import AuthBackendError, AuthenticationError
from tenantguard.core.identity.models import Actor, AuthResult, AuthToken


class AuthBackend(Protocol):
    def login(self, credentials: Dict[str, Any]) -> AuthResult: ...

    def logout(self) -> None: ...

    def refresh_token(self) -> AuthToken: ...

    def get_current_actor(self) -> Optional[Actor]: ...


class PermissionPredicate(Protocol):
    """Synchronous, side-effect free; may raise (the engine treats that as deny)."""

    def has_permission(self, permission_key: str) -> bool: ...


@dataclass
class HttpAuthBackend:
    """
    AuthBackend over a JSON HTTP API.

    POST {base}/auth/login    {credentials} -> {actor, token}
    POST {base}/auth/logout
    POST {base}/auth/refresh  {refresh_token} -> {token}
    GET  {base}/auth/me       -> {actor} | 401
    """

    base_url: str
    timeout_seconds: float = 5.0
    session: Any = None
    name: str = "http"
    _token: Optional[AuthToken] = field(default=None, repr=False)

    def __post_init__(self) -> None:
        if self.session is None:
            self.session = requests.Session()

    def _url(self, path: str) -> str:
        return f"{self.base_url.rstrip('/')}{path}"

    def _headers(self) -> Dict[str, str]:
        if self._token is None:
            return {}
        return {"Authorization": f"Bearer {self._token.value}"}

    def _request(self, method: str, path: str, *, json_body: Optional[Dict[str, Any]] = None) -> requests.Response:
        try:
            return self.session.request(method, self._url(path), json=json_body, headers=self._headers(), timeout=self.timeout_seconds)
        except requests.RequestException as e:
            raise AuthBackendError(path=path, error=str(e)) from e

    def login(self, credentials: Dict[str, Any]) -> AuthResult:
        r = self._request("POST", "/auth/login", json_body=dict(credentials or {}))
        if r.status_code in (400, 401, 403):
            raise AuthenticationError("Invalid credentials.", status=r.status_code)
        if r.status_code != 200:
            raise AuthBackendError(path="/auth/login", status=r.status_code)
        data = _json(r, "/auth/login")
        try:
            result = AuthResult(actor=Actor.model_validate(data.get("actor") or {}), token=_token_from(data.get("token")))
        except ValueError as e:
            raise AuthBackendError("The authentication service returned an invalid response.", path="/auth/login") from e
        self._token = result.token
        return result

    def logout(self) -> None:
        try:
            r = self._request("POST", "/auth/logout")
            if r.status_code not in (200, 204, 401):
                raise AuthBackendError(path="/auth/logout", status=r.status_code)
        finally:
            self._token = None

    def refresh_token(self) -> AuthToken:
        refresh = self._token.refresh_token if self._token is not None else None
        r = self._request("POST", "/auth/refresh", json_body={"refresh_token": refresh} if refresh else None)
        if r.status_code != 200:
            raise AuthBackendError("Session refresh was rejected.", path="/auth/refresh", status=r.status_code)
        data = _json(r, "/auth/refresh")
        try:
            tok = _token_from(data.get("token", data))
        except ValueError as e:
            raise AuthBackendError("The authentication service returned an invalid token.", path="/auth/refresh") from e
        self._token = tok
        return tok

    def get_current_actor(self) -> Optional[Actor]:
        r = self._request("GET", "/auth/me")
        if r.status_code == 401:
            return None
        if r.status_code != 200:
            raise AuthBackendError(path="/auth/me", status=r.status_code)
        data = _json(r, "/auth/me")
        raw = data.get("actor")
        if not raw:
            return None
        return Actor.model_validate(raw)


def _json(r: requests.Response, path: str) -> Dict[str, Any]:
    try:
        data = r.json()
    except ValueError as e:
        raise AuthBackendError("The authentication service returned malformed JSON.", path=path) from e
    if not isinstance(data, dict):
        raise AuthBackendError("The authentication service returned an unexpected payload.", path=path)
    return data


def _token_from(raw: Any) -> AuthToken:
    if isinstance(raw, str):
        return AuthToken(value=raw, issued_at=time.time())
    if isinstance(raw, dict):
        return AuthToken(
            value=str(raw.get("value") or raw.get("access_token") or ""),
            issued_at=float(raw.get("issued_at") or time.time()),
            expires_at=float(raw["expires_at"]) if raw.get("expires_at") is not None else None,
            refresh_token=raw.get("refresh_token"),
        )
    raise ValueError("token missing")
