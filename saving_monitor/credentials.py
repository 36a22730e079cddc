"""
JWT lifecycle for the Kraken GraphQL API.

The long-lived API key is exchanged for a short-lived token which is kept in
the shared AppState (so it survives restarts) and refreshed a few minutes
before it expires, or immediately after the API rejects it.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

import orjson

from .constants import GRAPHQL_URL, JWT_REFRESH_BUFFER
from .errors import AuthError
from .metrics import emit
from .models import Credential
from .pretty import debug_log
from .state import AppState

TOKEN_MUTATION = """mutation obtainKrakenToken($input: ObtainJSONWebTokenInput!) {
    obtainKrakenToken(input: $input) {
        token
        refreshToken
        refreshExpiresIn
    }
}"""

# (url, json body) -> (status, text); must not go through the authenticated path.
# Connection errors and timeouts are retried by the caller and raise TransportError.
PostJSON = Callable[[str, Dict[str, Any]], Awaitable[Tuple[int, str]]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CredentialManager:
    def __init__(
        self,
        state: AppState,
        api_key: str,
        post_json: PostJSON,
        *,
        clock: Callable[[], datetime] = _utcnow,
        buffer: timedelta = JWT_REFRESH_BUFFER,
        token_url: str = GRAPHQL_URL,
        on_change: Optional[Callable[[], None]] = None,
    ):
        self.state = state
        self.api_key = api_key
        self._post_json = post_json
        self._clock = clock
        self.buffer = buffer
        self.token_url = token_url
        self._on_change = on_change
        self._refresh_lock = asyncio.Lock()
        self.refresh_count = 0

    async def ensure_valid(self) -> str:
        """Return a token that is good for at least `buffer`, exchanging the key if needed."""
        async with self.state.lock:
            cred = self.state.credential
            if cred.is_fresh(self._clock(), self.buffer):
                return cred.token

        async with self._refresh_lock:
            # another caller may have refreshed while we waited
            async with self.state.lock:
                cred = self.state.credential
                if cred.is_fresh(self._clock(), self.buffer):
                    return cred.token

            token, expires_in = await self._exchange()
            now = self._clock()
            async with self.state.lock:
                self.state.credential = Credential(token=token, expiry=now + timedelta(seconds=expires_in))
                expiry = self.state.credential.expiry
                if self._on_change:
                    self._on_change()
            self.refresh_count += 1
            emit("token_refresh", {"expires_in": expires_in})
            debug_log(f"JWT token obtained, expires {expiry.isoformat()}")
            return token

    async def _exchange(self) -> Tuple[str, int]:
        body = {"query": TOKEN_MUTATION, "variables": {"input": {"APIKey": self.api_key}}}
        # transport failures surface as TransportError after the client retries them
        status, text = await self._post_json(self.token_url, body)

        if status != 200:
            debug_log(f"token request failed body: {text[:500]}")
            raise AuthError(f"token request failed with status {status}")
        try:
            payload = orjson.loads(text)
        except orjson.JSONDecodeError as e:
            raise AuthError(f"failed to decode token response: {e}") from e

        errors = payload.get("errors") or []
        if errors:
            first = errors[0] if isinstance(errors[0], dict) else {}
            code = str((first.get("extensions") or {}).get("errorCode") or "")
            raise AuthError(str(first.get("message") or "token exchange rejected"), code=code)

        result = ((payload.get("data") or {}).get("obtainKrakenToken")) or {}
        token = result.get("token") or ""
        if not token:
            raise AuthError("empty token received")
        try:
            expires_in = int(result.get("refreshExpiresIn") or 0)
        except (TypeError, ValueError):
            expires_in = 0
        return token, expires_in

    async def invalidate(self) -> None:
        async with self.state.lock:
            self.state.credential = Credential()
            if self._on_change:
                self._on_change()
        emit("token_invalidated", {})
        debug_log("JWT token invalidated")

    def status(self) -> Dict[str, Any]:
        """Snapshot for dashboards. Caller holds state.lock."""
        cred = self.state.credential
        remaining = None
        if cred.expiry is not None:
            remaining = int((cred.expiry - self._clock()).total_seconds())
        return {
            "has_token": bool(cred.token),
            "expires_at": cred.expiry.isoformat() if cred.expiry else None,
            "seconds_remaining": remaining,
        }
