from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4

import httpx
import msgpack

from state.models import AppVersionInfo, ClientSession

from .crypt import SekaiCipher, deobfuscate
from .rate_limiter import TokenBucketRateLimiter


logger = logging.getLogger(__name__)

VERSION_INDEX_URL = "https://version.pjsekai.moe/jp.json"
SIGNATURE_URL = "https://issue.sekai.colorfulpalette.org/api/signature"
API_BASE = "https://production-game-api.sekai.colorfulpalette.org"
GAME_VERSION_BASE = "https://game-version.sekai.colorfulpalette.org"
ASSETBUNDLE_INFO_HOST = "{profile}-{host_hash}-assetbundle-info.sekai.colorfulpalette.org"
ASSETBUNDLE_HOST = "{profile}-{host_hash}-assetbundle.sekai.colorfulpalette.org"

PLATFORM = "iOS"
DEVICE_MODEL = "iPad12,1"
OPERATING_SYSTEM = "iPadOS 17.0"
USER_AGENT = "ProductName/211 CFNetwork/1568.100.1.2.1 Darwin/24.0.0"
UNITY_VERSION = "2022.3.21f1"

BLOCKED_MARKER = b"Request blocked."
# Tokens drained from the shared limiter after the server throttles us
BACKOFF_TOKENS = 5


class SekaiError(RuntimeError):
    """Base error for the game API client."""


class SekaiTransportError(SekaiError):
    """The request never produced an HTTP response."""


class SekaiHTTPError(SekaiError):
    """Server answered with a non-200 status."""

    def __init__(self, status_code: int, message: Optional[str] = None) -> None:
        self.status_code = status_code
        super().__init__(message or f"HTTP error {status_code}")


class SekaiRateLimitError(SekaiHTTPError):
    """429, or 403 with the "Request blocked." marker."""


class SekaiMaintenanceError(SekaiHTTPError):
    """503: the game server is under maintenance."""


class SekaiVersionObsoleteError(SekaiHTTPError):
    """426: the advertised app version is no longer accepted."""


class SekaiAuthError(SekaiError):
    """Registration or authentication returned an unusable body."""


@dataclass
class VersionRouting:
    domain: str
    profile: str
    assetbundle_host_hash: str


def _is_json(resp: httpx.Response) -> bool:
    return resp.headers.get("content-type", "").startswith("application/json")


class SekaiClient:
    """
    Client for the game's encrypted msgpack API.

    Notes
    - Request bodies are msgpack-encoded then AES-CBC encrypted; responses are
      decrypted and decoded the same way, except JSON responses from the
      unauthenticated endpoints which are returned as-is.
    - Every request takes one token from a shared 64/s token bucket.
    - There is no retry. Classified errors raise immediately. 429/blocked also
      drains the limiter and 426 refreshes the app version, both on a
      background thread. The follow-up call may run before that work lands.
    - Session state (`session`) is only written here.
    """

    def __init__(
        self,
        cipher: SekaiCipher,
        *,
        session: Optional[ClientSession] = None,
        timeout: float = 60.0,
        client: Optional[httpx.Client] = None,
        limiter: Optional[TokenBucketRateLimiter] = None,
        max_workers: int = 2,
    ) -> None:
        self._cipher = cipher
        self.session = session or ClientSession()
        self._owns_client = client is None
        self._client = client or httpx.Client(
            timeout=timeout,
            limits=httpx.Limits(
                max_connections=64,
                max_keepalive_connections=64,
                keepalive_expiry=60.0,
            ),
        )
        self._limiter = limiter or TokenBucketRateLimiter(capacity=64, refill=64, per_seconds=1.0)
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="sekai-bg")
        self._pending: List[Future] = []
        self._pending_lock = threading.Lock()
        self._refresh_future: Optional[Future] = None

    @property
    def versions(self) -> AppVersionInfo:
        return self.session.versions

    def close(self) -> None:
        self._executor.shutdown(wait=True)
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "SekaiClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # --------------- Public API ---------------
    def request(self, method: str, url: str, body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Send an encrypted API request and return the decoded body.

        - `body=None` sends no content for GET and an encrypted empty payload
          otherwise.
        - Returns `{}` when the decrypted response is empty.
        - Raises a `SekaiError` subclass on transport failure or non-200.
        """
        method = method.upper()
        if body is not None:
            content: Optional[bytes] = self._cipher.encrypt(msgpack.packb(body, use_bin_type=True))
        elif method != "GET":
            content = self._cipher.encrypt(b"")
        else:
            content = None

        resp = self._send(method, url, content=content, headers=self._headers())

        token = resp.headers.get("x-session-token")
        if token:
            self.session.session_token = token
        cookie = resp.headers.get("set-cookie")
        if cookie:
            self.session.cookie = cookie

        if _is_json(resp):
            return resp.json()

        data = self._cipher.decrypt(resp.content)
        if not data:
            return {}
        payload = msgpack.unpackb(data, raw=False, strict_map_key=False)

        updated = payload.get("updatedResources") if isinstance(payload, dict) else None
        if isinstance(updated, dict):
            self.session.resources.update(updated)
        return payload

    def request_raw(self, method: str, url: str) -> bytes:
        """Download an obfuscated asset and return its deobfuscated bytes."""
        headers = {}
        if self.session.cookie:
            headers["cookie"] = self.session.cookie
        resp = self._send(method.upper(), url, content=b"", headers=headers)
        return deobfuscate(resp.content)

    def refresh_app_version(self) -> AppVersionInfo:
        """
        Pick the app version the server currently accepts.

        Merges the public version index first, then the entry of
        `/api/system` that matches the current app version and is available,
        falling back to the first available entry.
        """
        logger.info("Updating app version")
        try:
            resp = self._client.get(VERSION_INDEX_URL)
        except httpx.TransportError as exc:
            raise SekaiTransportError(f"GET {VERSION_INDEX_URL} failed: {exc}") from exc
        if resp.status_code != 200:
            raise SekaiHTTPError(resp.status_code)
        self.versions.merge(resp.json())

        system = self.request("GET", f"{API_BASE}/api/system")
        app_versions = [av for av in system.get("appVersions") or [] if isinstance(av, dict)]
        available = [av for av in app_versions if av.get("appVersionStatus") == "available"]
        chosen = next(
            (av for av in available if av.get("appVersion") == self.versions.app_version),
            available[0] if available else None,
        )
        if chosen is not None:
            self.versions.merge(chosen)
            logger.info(
                "App version %s (asset %s, data %s)",
                self.versions.app_version,
                self.versions.asset_version,
                self.versions.data_version,
            )
        else:
            logger.warning("No available app version listed by %s/api/system", API_BASE)
        return self.versions

    def refresh_signature(self) -> None:
        self.request("POST", SIGNATURE_URL)

    def register_user(
        self,
        *,
        platform: str = PLATFORM,
        device_model: str = "iPad7,5",
        operating_system: str = OPERATING_SYSTEM,
    ) -> ClientSession:
        """Create a fresh game account and store its user id and credential."""
        body = self.request(
            "POST",
            f"{API_BASE}/api/user",
            {
                "platform": platform,
                "deviceModel": device_model,
                "operatingSystem": operating_system,
            },
        )
        registration = body.get("userRegistration")
        user_id = registration.get("userId") if isinstance(registration, dict) else None
        credential = body.get("credential")
        if user_id is None or not isinstance(credential, str):
            raise SekaiAuthError("registration response lacks userId/credential")
        self.session.user_id = user_id
        self.session.credential = credential
        logger.info("Registered user %s", user_id)
        return self.session

    def agree_rules(self) -> Dict[str, Any]:
        self._require_registered()
        return self.request(
            "POST",
            f"{API_BASE}/api/user/{self.session.user_id}/rule-agreement",
            {"userId": 0, "credential": self.session.credential},
        )

    def resolve_version_routing(self) -> VersionRouting:
        url = f"{GAME_VERSION_BASE}/{self.versions.app_version}/{self.versions.app_hash}"
        body = self.request("GET", url)
        return VersionRouting(
            domain=str(body.get("domain", "")),
            profile=str(body.get("profile", "")),
            assetbundle_host_hash=str(body.get("assetbundleHostHash", "")),
        )

    def authenticate(self, domain: str) -> Dict[str, Any]:
        """Exchange the stored credential for a new session token."""
        self._require_registered()
        body = self.request(
            "PUT",
            f"https://{domain}/api/user/{self.session.user_id}/auth?refreshUpdatedResources=False",
            {"credential": self.session.credential},
        )
        self.versions.merge(body)
        token = body.get("sessionToken")
        if not isinstance(token, str) or not token:
            raise SekaiAuthError("auth response lacks sessionToken")
        self.session.session_token = token
        return body

    def assetbundle_info_url(self, routing: VersionRouting) -> str:
        host = ASSETBUNDLE_INFO_HOST.format(profile=routing.profile, host_hash=routing.assetbundle_host_hash)
        return f"https://{host}/api/version/{self.versions.asset_version}/os/{PLATFORM.lower()}"

    def assetbundle_url(self, routing: VersionRouting, bundle_name: str) -> str:
        host = ASSETBUNDLE_HOST.format(profile=routing.profile, host_hash=routing.assetbundle_host_hash)
        return (
            f"https://{host}/{self.versions.asset_version}/{self.versions.asset_hash}"
            f"/{PLATFORM.lower()}/{bundle_name}"
        )

    def wait_pending(self, timeout: Optional[float] = None) -> None:
        """Block until scheduled background work (backoff, refresh) has finished.

        Work scheduled by a background task while waiting (e.g. a backoff
        after the refresh's own 429) is waited for too. `timeout` bounds the
        whole call.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            with self._pending_lock:
                pending = [f for f in self._pending if not f.done()]
                self._pending = pending
            if not pending:
                return
            remaining = None if deadline is None else deadline - time.monotonic()
            if remaining is not None and remaining <= 0:
                return
            wait(pending, timeout=remaining)

    # --------------- Internal ---------------
    def _require_registered(self) -> None:
        if not self.session.is_registered():
            raise SekaiAuthError("client has no registered user")

    def _headers(self) -> Dict[str, str]:
        v = self.versions
        headers = {
            "accept": "application/octet-stream",
            "content-type": "application/octet-stream",
            "x-ai": "",
            "x-ga": "",
            "x-ma": "",
            "x-kc": self.session.kc,
            "x-if": "",
            "x-devicemodel": DEVICE_MODEL,
            "x-operatingsystem": OPERATING_SYSTEM,
            "x-platform": PLATFORM,
            "user-agent": USER_AGENT,
            "x-unity-version": UNITY_VERSION,
            "x-app-hash": v.app_hash,
            "x-app-version": v.app_version,
            "x-asset-version": v.asset_version,
            "x-data-version": v.data_version,
            "x-install-id": self.session.install_id,
            "x-request-id": str(uuid4()),
        }
        if self.session.session_token:
            headers["x-session-token"] = self.session.session_token
        if self.session.cookie:
            headers["cookie"] = self.session.cookie
        return headers

    def _send(
        self,
        method: str,
        url: str,
        *,
        content: Optional[bytes],
        headers: Dict[str, str],
    ) -> httpx.Response:
        self._limiter.acquire(blocking=True)
        try:
            resp = self._client.request(method, url, content=content, headers=headers)
        except httpx.TransportError as exc:
            raise SekaiTransportError(f"{method} {url} failed: {exc}") from exc
        self._raise_for_status(resp)
        return resp

    def _raise_for_status(self, resp: httpx.Response) -> None:
        status = resp.status_code
        if status == 200:
            return
        logger.warning("HTTP %s from %s %s", status, resp.request.method, resp.request.url)
        if status == 403:
            if BLOCKED_MARKER in resp.content:
                self._schedule(self._backoff)
                raise SekaiRateLimitError(status, "too many requests: request blocked")
            raise SekaiHTTPError(status)
        if status == 426:
            self._schedule_refresh()
            raise SekaiVersionObsoleteError(status, "app version obsolete")
        if status == 503:
            raise SekaiMaintenanceError(status, "maintenance")
        if status == 429:
            self._schedule(self._backoff)
            raise SekaiRateLimitError(status, "too many requests")
        raise SekaiHTTPError(status)

    def _backoff(self) -> None:
        self._limiter.acquire(BACKOFF_TOKENS, blocking=True)

    def _schedule_refresh(self) -> None:
        # Check, submit and record under one lock: at most one refresh in flight
        with self._pending_lock:
            if self._refresh_future is not None and not self._refresh_future.done():
                return
            self._refresh_future = self._submit_locked(self.refresh_app_version)

    def _schedule(self, fn: Callable[[], Any]) -> Future:
        with self._pending_lock:
            return self._submit_locked(fn)

    def _submit_locked(self, fn: Callable[[], Any]) -> Future:
        """Submit `fn` to the task pool; caller holds `_pending_lock`."""
        future = self._executor.submit(fn)
        future.add_done_callback(self._on_background_done)
        self._pending = [f for f in self._pending if not f.done()]
        self._pending.append(future)
        return future

    @staticmethod
    def _on_background_done(future: Future) -> None:
        exc = future.exception()
        if exc is not None:
            logger.warning("Background task failed: %s", exc)


__all__ = [
    "SekaiAuthError",
    "SekaiClient",
    "SekaiError",
    "SekaiHTTPError",
    "SekaiMaintenanceError",
    "SekaiRateLimitError",
    "SekaiTransportError",
    "SekaiVersionObsoleteError",
    "VersionRouting",
]
