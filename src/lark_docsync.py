"""Lark document synchronization engine.

Converts between Markdown and the Lark (Feishu) docx block model and applies
mutations to remote documents:

- markdown_to_blocks / blocks_to_markdown: the two conversion directions
- MutationPlanner: batched inserts, range deletes/updates, moves, tables
- LarkClient: authenticated calls with rate limiting, retry and token refresh

Credentials are obtained elsewhere (OAuth exchange) and handed to a
CredentialStore, which refreshes them in place and reports new tokens through
an on_refresh hook so the host process can persist them.
"""

import asyncio
import functools
import json
import logging
import os
import random
import re
import time
from collections import OrderedDict
from dataclasses import dataclass, field, replace
from enum import Enum, IntEnum
from typing import Any, Awaitable, Callable, Iterable, Optional, TypeVar, Union
from urllib.parse import quote, unquote

import httpx
import parsy as P

logger = logging.getLogger("lark-docsync")

T = TypeVar("T")


# =============================================================================
# Configuration
# =============================================================================

BASE_URL = "https://open.larksuite.com/open-apis"
REQUEST_TIMEOUT = 30.0  # seconds

# Maximum number of blocks per create-children call
BATCH_SIZE = 10

# Lark allows 3 requests/second per app and 3 edits/second per document.
# Slightly above 1/3 s to stay clear of the limit.
RATE_LIMIT_INTERVAL = 0.35  # seconds
RATE_LIMITER_MAX_KEYS = 100
GLOBAL_KEY = "global"

# Retry configuration
RETRY_MAX_ATTEMPTS = 3
RETRY_BASE_DELAY = 1.0  # seconds
RETRY_MAX_DELAY = 10.0  # seconds
RETRY_JITTER_RATIO = 0.25
RATE_LIMIT_MIN_DELAY = 2.0  # seconds

# Refresh the access token this long before it actually expires
TOKEN_REFRESH_MARGIN = 300.0  # seconds

# Wait after deleting blocks before inserting tables into the same document
TABLE_SETTLE_DELAY = 0.1  # seconds

# document_revision_id sentinel meaning "latest revision"
LATEST_REVISION = -1


@dataclass
class EngineConfig:
    """Tunables for the sync engine, usually read from the environment."""
    app_id: str = ""
    app_secret: str = ""
    base_url: str = BASE_URL
    batch_size: int = BATCH_SIZE
    rate_limit_interval: float = RATE_LIMIT_INTERVAL
    table_settle_delay: float = TABLE_SETTLE_DELAY
    timeout: float = REQUEST_TIMEOUT

    @classmethod
    def from_env(cls, environ: Optional[dict[str, str]] = None) -> "EngineConfig":
        """Build a config from LARK_* environment variables.

        Recognized variables: LARK_APP_ID, LARK_APP_SECRET, LARK_BASE_URL,
        LARK_BATCH_SIZE, LARK_RATE_LIMIT_INTERVAL, LARK_TABLE_SETTLE_DELAY.
        Missing variables fall back to the module defaults.
        """
        env = os.environ if environ is None else environ
        return cls(
            app_id=env.get("LARK_APP_ID", ""),
            app_secret=env.get("LARK_APP_SECRET", ""),
            base_url=env.get("LARK_BASE_URL", BASE_URL),
            batch_size=int(env.get("LARK_BATCH_SIZE", BATCH_SIZE)),
            rate_limit_interval=float(env.get("LARK_RATE_LIMIT_INTERVAL", RATE_LIMIT_INTERVAL)),
            table_settle_delay=float(env.get("LARK_TABLE_SETTLE_DELAY", TABLE_SETTLE_DELAY)),
        )


# =============================================================================
# Errors
# =============================================================================


class ErrorKind(Enum):
    """How the engine reacts to a failed remote call."""
    RATE_LIMITED = "rate_limited"
    CREDENTIAL = "credential"
    CONFLICT = "conflict"
    PERMISSION_DENIED = "permission_denied"
    NOT_FOUND = "not_found"
    MALFORMED = "malformed"
    TRANSPORT = "transport"
    UNKNOWN = "unknown"


RETRYABLE_KINDS = frozenset({
    ErrorKind.RATE_LIMITED,
    ErrorKind.CONFLICT,
    ErrorKind.TRANSPORT,
})


class LarkErrorCode(IntEnum):
    """Lark API error codes the engine knows how to handle."""
    SUCCESS = 0
    RATE_LIMIT = 99991400
    PERMISSION_DENIED = 99991401
    TENANT_TOKEN_INVALID = 99991663
    USER_TOKEN_INVALID = 99991664
    TOKEN_EXPIRED = 99991665
    RESOURCE_ACCESS_DENIED = 99991668
    FIELD_VALIDATION_FAILED = 99992402
    DOC_NOT_FOUND = 1770001
    BLOCK_NOT_FOUND = 1770002
    DOC_NO_EDIT_PERMISSION = 1770003
    BLOCK_TYPE_NOT_SUPPORTED = 1770004
    CONCURRENT_EDIT_CONFLICT = 1770010
    TASK_NOT_FOUND = 11000
    TASK_NO_PERMISSION = 11001


ERROR_CODE_KINDS: dict[int, ErrorKind] = {
    LarkErrorCode.RATE_LIMIT: ErrorKind.RATE_LIMITED,
    LarkErrorCode.TENANT_TOKEN_INVALID: ErrorKind.CREDENTIAL,
    LarkErrorCode.USER_TOKEN_INVALID: ErrorKind.CREDENTIAL,
    LarkErrorCode.TOKEN_EXPIRED: ErrorKind.CREDENTIAL,
    LarkErrorCode.CONCURRENT_EDIT_CONFLICT: ErrorKind.CONFLICT,
    LarkErrorCode.PERMISSION_DENIED: ErrorKind.PERMISSION_DENIED,
    LarkErrorCode.RESOURCE_ACCESS_DENIED: ErrorKind.PERMISSION_DENIED,
    LarkErrorCode.DOC_NO_EDIT_PERMISSION: ErrorKind.PERMISSION_DENIED,
    LarkErrorCode.TASK_NO_PERMISSION: ErrorKind.PERMISSION_DENIED,
    LarkErrorCode.DOC_NOT_FOUND: ErrorKind.NOT_FOUND,
    LarkErrorCode.BLOCK_NOT_FOUND: ErrorKind.NOT_FOUND,
    LarkErrorCode.TASK_NOT_FOUND: ErrorKind.NOT_FOUND,
    LarkErrorCode.BLOCK_TYPE_NOT_SUPPORTED: ErrorKind.MALFORMED,
    LarkErrorCode.FIELD_VALIDATION_FAILED: ErrorKind.MALFORMED,
}

# code -> (description, suggestion)
ERROR_INFO: dict[int, tuple[str, str]] = {
    LarkErrorCode.RATE_LIMIT: (
        "API rate limit exceeded",
        "Wait a moment and try again. The request is retried automatically.",
    ),
    LarkErrorCode.PERMISSION_DENIED: (
        "Permission denied",
        "Check that the required scope is enabled in the Lark app settings.",
    ),
    LarkErrorCode.TENANT_TOKEN_INVALID: (
        "Tenant token invalid",
        "The token is refreshed automatically. If the issue persists, re-authorize.",
    ),
    LarkErrorCode.USER_TOKEN_INVALID: (
        "User token invalid",
        "Re-authorize to obtain a new user access token.",
    ),
    LarkErrorCode.TOKEN_EXPIRED: (
        "Token expired",
        "The token is refreshed automatically. If the issue persists, re-authorize.",
    ),
    LarkErrorCode.RESOURCE_ACCESS_DENIED: (
        "Resource access denied",
        "Make sure you can access this resource. Check its sharing settings.",
    ),
    LarkErrorCode.FIELD_VALIDATION_FAILED: (
        "Request validation failed",
        "The request body was rejected. Check block content and indices.",
    ),
    LarkErrorCode.DOC_NOT_FOUND: (
        "Document not found",
        "Verify the document ID. The document may have been deleted.",
    ),
    LarkErrorCode.BLOCK_NOT_FOUND: (
        "Block not found",
        "Verify the block ID. The block may have been deleted.",
    ),
    LarkErrorCode.DOC_NO_EDIT_PERMISSION: (
        "No edit permission for document",
        "Request edit access from the document owner.",
    ),
    LarkErrorCode.BLOCK_TYPE_NOT_SUPPORTED: (
        "Block type not supported",
        "This operation is not supported for this block type.",
    ),
    LarkErrorCode.CONCURRENT_EDIT_CONFLICT: (
        "Concurrent edit conflict",
        "Another writer is editing this document. The request is retried automatically.",
    ),
    LarkErrorCode.TASK_NOT_FOUND: (
        "Task not found",
        "Verify the task ID. The task may have been deleted.",
    ),
    LarkErrorCode.TASK_NO_PERMISSION: (
        "No permission to access task",
        "Request access from the task owner.",
    ),
}

UNKNOWN_ERROR_INFO = (
    "Unknown error",
    "Check the Lark API documentation for this error code.",
)


class LarkDocError(Exception):
    """Base class for all errors raised by the sync engine."""


class LarkError(LarkDocError):
    """Error envelope returned by the Lark API (non-zero ``code``)."""

    def __init__(self, code: int, msg: str, endpoint: Optional[str] = None):
        super().__init__(msg)
        self.code = int(code)
        self.msg = msg
        self.endpoint = endpoint
        self.kind = ERROR_CODE_KINDS.get(self.code, ErrorKind.UNKNOWN)

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS

    @property
    def description(self) -> str:
        return ERROR_INFO.get(self.code, UNKNOWN_ERROR_INFO)[0]

    @property
    def suggestion(self) -> str:
        return ERROR_INFO.get(self.code, UNKNOWN_ERROR_INFO)[1]

    def __str__(self) -> str:
        where = f" ({self.endpoint})" if self.endpoint else ""
        return f"[{self.code}] {self.msg}{where}"

    def format(self) -> str:
        """Render the error as a human-readable block with a remediation hint."""
        lines = [
            f"Error Code: {self.code}",
            f"Description: {self.description}",
            f"Message: {self.msg}",
        ]
        if self.endpoint:
            lines.append(f"Endpoint: {self.endpoint}")
        lines.append(f"Suggestion: {self.suggestion}")
        if self.retryable:
            lines.append("Note: This error is retryable and was retried automatically.")
        return "\n".join(lines)


class TransportKind(Enum):
    """Network-level failure classes, derived from httpx exception types."""
    TIMEOUT = "timeout"
    CONNECTION_REFUSED = "connection_refused"
    CONNECTION_RESET = "connection_reset"
    NETWORK = "network"


class TransportError(LarkDocError):
    """The request never produced an HTTP response."""

    def __init__(self, kind: TransportKind, message: str, endpoint: Optional[str] = None):
        super().__init__(message)
        self.kind = kind
        self.endpoint = endpoint

    def __str__(self) -> str:
        where = f" ({self.endpoint})" if self.endpoint else ""
        return f"{self.kind.value}: {self.args[0]}{where}"


class ResponseFormatError(LarkDocError):
    """The API answered with a body that is not a JSON envelope."""


class RequestFailedError(LarkDocError):
    """httpx rejected the exchange outside the network layer (bad encoding, redirect loop)."""

    def __init__(self, message: str, endpoint: Optional[str] = None):
        super().__init__(message)
        self.endpoint = endpoint

    def __str__(self) -> str:
        where = f" ({self.endpoint})" if self.endpoint else ""
        return f"{self.args[0]}{where}"


class AuthorizationRequired(LarkDocError):
    """No usable credential; the user has to authorize again."""


class InvalidRangeError(LarkDocError, ValueError):
    """Block index range rejected before any remote call."""


class UnsupportedBlockError(LarkDocError):
    """A block cannot be re-created through the create-children endpoint."""


def transport_kind(exc: httpx.TransportError) -> TransportKind:
    """Map an httpx transport exception to a TransportKind."""
    if isinstance(exc, httpx.TimeoutException):
        return TransportKind.TIMEOUT
    if isinstance(exc, httpx.ConnectError):
        return TransportKind.CONNECTION_REFUSED
    if isinstance(exc, (httpx.ReadError, httpx.WriteError, httpx.RemoteProtocolError)):
        return TransportKind.CONNECTION_RESET
    return TransportKind.NETWORK


def classify_error(exc: BaseException) -> ErrorKind:
    """Classify any exception raised by a remote call.

    Anything that is neither a Lark envelope error nor a transport failure
    is UNKNOWN, which is never retried.
    """
    if isinstance(exc, LarkError):
        return exc.kind
    if isinstance(exc, TransportError):
        return ErrorKind.TRANSPORT
    return ErrorKind.UNKNOWN


# =============================================================================
# Rate Limiting
# =============================================================================


class RateLimiter:
    """Minimum interval between request starts, tracked per key.

    Callers on the same key queue on an asyncio.Lock (FIFO), so concurrent
    callers are spaced out rather than all waking after the same delay.
    Different keys never wait on each other.

    Use GLOBAL_KEY for endpoint-agnostic throttling and the document ID for
    edits, which Lark limits per document.
    """

    def __init__(
        self,
        min_interval: float = RATE_LIMIT_INTERVAL,
        max_keys: int = RATE_LIMITER_MAX_KEYS,
    ):
        self.min_interval = min_interval
        self.max_keys = max_keys
        self._last_request: OrderedDict[str, float] = OrderedDict()
        self._locks: dict[str, asyncio.Lock] = {}

    def __len__(self) -> int:
        return len(self._last_request)

    def __contains__(self, key: str) -> bool:
        return key in self._last_request

    async def throttle(self, key: str, fn: Callable[[], Awaitable[T]]) -> T:
        """Wait until ``key`` may start another request, then await ``fn()``."""
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()

        async with lock:
            last = self._last_request.get(key)
            if last is not None:
                wait = self.min_interval - (time.monotonic() - last)
                if wait > 0:
                    await asyncio.sleep(wait)
            self._last_request[key] = time.monotonic()
            self._last_request.move_to_end(key)

        self._evict()
        return await fn()

    def _evict(self) -> None:
        """Drop the least recently used half of the keys once over the cap.

        Keys still inside their interval, or with queued callers, are kept.
        """
        if len(self._last_request) <= self.max_keys:
            return
        now = time.monotonic()
        candidates = list(self._last_request.items())[: len(self._last_request) // 2]
        evicted = 0
        for key, last in candidates:
            lock = self._locks.get(key)
            if (lock is not None and lock.locked()) or now - last < self.min_interval:
                continue
            del self._last_request[key]
            self._locks.pop(key, None)
            evicted += 1
        logger.debug(f"Rate limiter evicted {evicted} idle keys")


# =============================================================================
# Retry
# =============================================================================


@dataclass
class RetryOptions:
    """Backoff settings for RetryCoordinator.execute."""
    max_attempts: int = RETRY_MAX_ATTEMPTS
    base_delay: float = RETRY_BASE_DELAY
    max_delay: float = RETRY_MAX_DELAY
    # Called as on_retry(attempt, error, delay) before each backoff sleep
    on_retry: Optional[Callable[[int, BaseException, float], None]] = None


@dataclass
class RetryAttempt:
    """Per-call retry state."""
    number: int = 0
    token_refreshed: bool = False


def compute_retry_delay(
    attempt: int,
    base_delay: float = RETRY_BASE_DELAY,
    max_delay: float = RETRY_MAX_DELAY,
    rate_limited: bool = False,
) -> float:
    """Compute exponential backoff delay with jitter.

    Args:
        attempt: Retry attempt number (0-indexed).
        base_delay: Delay for the first retry, in seconds.
        max_delay: Upper bound for the backoff delay.
        rate_limited: Whether the failure was a rate-limit signal.

    Returns:
        ``base_delay * 2**attempt`` plus up to 25% jitter, capped at
        ``max_delay``; never below 2s for rate-limit failures.
    """
    exponential = base_delay * (2 ** attempt)
    jitter = exponential * random.uniform(0, RETRY_JITTER_RATIO)
    delay = min(exponential + jitter, max_delay)
    if rate_limited:
        delay = max(delay, RATE_LIMIT_MIN_DELAY)
    return delay


class RetryCoordinator:
    """Retries transient failures and refreshes the credential once per call."""

    def __init__(
        self,
        options: Optional[RetryOptions] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.options = options or RetryOptions()
        self._sleep = sleep

    async def execute(
        self,
        fn: Callable[[], Awaitable[T]],
        refresh_credential: Optional[Callable[[], Awaitable[Any]]] = None,
        options: Optional[RetryOptions] = None,
    ) -> T:
        """Await ``fn()`` until it succeeds or fails for good.

        A credential error triggers one ``refresh_credential()`` and an
        immediate retry that does not count as an attempt. Retryable errors
        back off exponentially up to ``max_attempts`` retries. Everything
        else is raised to the caller as-is.

        Raises:
            The last error from ``fn``. When the credential refresh itself
            fails, the original error is raised with the refresh failure as
            its cause.
        """
        opts = options or self.options
        state = RetryAttempt()

        while True:
            try:
                return await fn()
            except Exception as exc:
                kind = classify_error(exc)

                if (kind is ErrorKind.CREDENTIAL
                        and refresh_credential is not None
                        and not state.token_refreshed):
                    state.token_refreshed = True
                    try:
                        await refresh_credential()
                    except Exception as refresh_exc:
                        logger.warning(f"Token refresh failed: {refresh_exc}")
                        raise exc from refresh_exc
                    continue

                if kind not in RETRYABLE_KINDS or state.number >= opts.max_attempts:
                    raise

                delay = compute_retry_delay(
                    state.number,
                    opts.base_delay,
                    opts.max_delay,
                    rate_limited=kind is ErrorKind.RATE_LIMITED,
                )
                if opts.on_retry is not None:
                    try:
                        opts.on_retry(state.number + 1, exc, delay)
                    except Exception:
                        logger.exception("on_retry hook failed")
                await self._sleep(delay)
                state.number += 1


# =============================================================================
# Credential Management
# =============================================================================


@dataclass
class Credential:
    """User access token pair. ``expires_at`` is a Unix timestamp."""
    access_token: str
    refresh_token: str = ""
    expires_at: float = 0.0

    @classmethod
    def from_token_response(cls, data: dict, now: Optional[float] = None) -> "Credential":
        """Build a credential from an OIDC token response's ``data`` object."""
        issued_at = time.time() if now is None else now
        return cls(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token", ""),
            expires_at=issued_at + float(data.get("expires_in", 0)),
        )

    def expires_within(self, margin: float, now: Optional[float] = None) -> bool:
        current = time.time() if now is None else now
        return current >= self.expires_at - margin


TokenRefresher = Callable[[Credential], Awaitable[Credential]]


class CredentialStore:
    """Process-wide owner of the current credential.

    Concurrent callers that need a refresh share one in-flight refresh task,
    so a burst of token-invalid failures produces a single refresh.
    """

    def __init__(
        self,
        credential: Optional[Credential] = None,
        refresher: Optional[TokenRefresher] = None,
        *,
        margin: float = TOKEN_REFRESH_MARGIN,
        on_refresh: Optional[Callable[[Credential], None]] = None,
    ):
        self._credential = credential
        self._refresher = refresher
        self.margin = margin
        self._on_refresh = on_refresh
        self._refreshing: Optional[asyncio.Future] = None

    @property
    def credential(self) -> Optional[Credential]:
        return self._credential

    def set(self, credential: Credential) -> None:
        """Install a credential from a fresh authorization."""
        self._credential = credential

    def invalidate(self) -> None:
        """Mark the current access token as expired."""
        if self._credential is not None:
            self._credential = replace(self._credential, expires_at=0.0)

    async def get(self) -> str:
        """Return a usable access token, refreshing it if it is about to expire.

        Raises:
            AuthorizationRequired: No credential, or it expired and cannot
                be refreshed.
        """
        current = self._credential
        if current is not None and not current.expires_within(self.margin):
            return current.access_token

        if current is not None and current.refresh_token and self._refresher is not None:
            try:
                fresh = await self.refresh()
            except AuthorizationRequired:
                raise
            except Exception as exc:
                logger.warning(f"Token refresh failed: {exc}")
                raise AuthorizationRequired(
                    "Authorization required: the access token expired and could not be refreshed"
                ) from exc
            return fresh.access_token

        raise AuthorizationRequired(
            "Authorization required: no valid Lark access token. "
            "Complete the OAuth authorization flow and provide a new credential."
        )

    async def refresh(self) -> Credential:
        """Refresh the credential, joining a refresh already in progress."""
        if self._refreshing is None:
            self._refreshing = asyncio.ensure_future(self._refresh_once())
        return await asyncio.shield(self._refreshing)

    async def _refresh_once(self) -> Credential:
        try:
            current = self._credential
            if current is None or not current.refresh_token:
                raise AuthorizationRequired("Authorization required: no refresh token available")
            if self._refresher is None:
                raise AuthorizationRequired("Authorization required: no token refresher configured")

            fresh = await self._refresher(current)
            self._credential = fresh
            logger.info("Access token refreshed")
            if self._on_refresh is not None:
                self._on_refresh(fresh)
            return fresh
        finally:
            self._refreshing = None


class LarkTokenRefresher:
    """Exchanges a refresh token for a new user access token."""

    def __init__(
        self,
        app_id: str,
        app_secret: str,
        *,
        base_url: str = BASE_URL,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = REQUEST_TIMEOUT,
    ):
        self.app_id = app_id
        self.app_secret = app_secret
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._http_client = http_client

    async def __call__(self, credential: Credential) -> Credential:
        if not self.app_id or not self.app_secret:
            raise AuthorizationRequired(
                "Environment variables not set: LARK_APP_ID and LARK_APP_SECRET required"
            )
        if self._http_client is not None:
            return await self._exchange(self._http_client, credential)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await self._exchange(client, credential)

    async def _exchange(self, client: httpx.AsyncClient, credential: Credential) -> Credential:
        app_endpoint = "/auth/v3/app_access_token/internal"
        app_response = await client.post(
            f"{self.base_url}{app_endpoint}",
            json={"app_id": self.app_id, "app_secret": self.app_secret},
        )
        app_data = app_response.json()
        app_token = app_data.get("app_access_token")
        if app_data.get("code") != 0 or not app_token:
            raise LarkError(
                app_data.get("code") or -1,
                f"App access token failed: {app_data.get('msg', '')}",
                app_endpoint,
            )

        refresh_endpoint = "/authen/v1/oidc/refresh_access_token"
        response = await client.post(
            f"{self.base_url}{refresh_endpoint}",
            headers={"Authorization": f"Bearer {app_token}"},
            json={"grant_type": "refresh_token", "refresh_token": credential.refresh_token},
        )
        data = response.json()
        if data.get("code") != 0 or not data.get("data"):
            raise LarkError(
                data.get("code") or -1,
                f"Token refresh failed: {data.get('msg', '')}",
                refresh_endpoint,
            )
        return Credential.from_token_response(data["data"])


# =============================================================================
# Lark API Client
# =============================================================================


class LarkClient:
    """Authenticated Lark Open API client.

    Every call goes through the global rate limiter and the retry
    coordinator unless the caller opts out (batch operations that throttle
    on their own per-document key pass ``skip_rate_limit=True``).
    """

    def __init__(
        self,
        credentials: CredentialStore,
        *,
        base_url: str = BASE_URL,
        rate_limiter: Optional[RateLimiter] = None,
        retry: Optional[RetryCoordinator] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = REQUEST_TIMEOUT,
    ):
        self.credentials = credentials
        self.base_url = base_url.rstrip("/")
        self.rate_limiter = rate_limiter or RateLimiter()
        self.retry = retry or RetryCoordinator()
        self.timeout = timeout
        self._http_client = http_client
        # Injected clients stay open; only clients created here are closed
        self._owns_http_client = False

    async def __aenter__(self) -> "LarkClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if (self._owns_http_client
                and self._http_client is not None
                and not self._http_client.is_closed):
            await self._http_client.aclose()

    async def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create the async HTTP client."""
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(timeout=self.timeout)
            self._owns_http_client = True
        return self._http_client

    async def _execute(
        self,
        endpoint: str,
        method: str,
        body: Optional[Any],
        params: Optional[dict[str, Any]],
    ) -> Any:
        """Send one request and unwrap the ``{code, msg, data}`` envelope."""
        token = await self.credentials.get()
        client = await self._get_http_client()
        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json; charset=utf-8",
        }

        try:
            response = await client.request(
                method,
                f"{self.base_url}{endpoint}",
                headers=headers,
                params=params,
                json=body,
            )
        except httpx.TransportError as e:
            raise TransportError(transport_kind(e), str(e) or type(e).__name__, endpoint) from e
        except httpx.RequestError as e:
            raise RequestFailedError(f"{type(e).__name__}: {e}", endpoint) from e

        text = response.text
        # Some mutating endpoints answer with an empty body
        if not text.strip():
            return {}

        try:
            payload = response.json()
        except ValueError as e:
            if response.status_code == 429:
                raise LarkError(LarkErrorCode.RATE_LIMIT, "HTTP 429 Too Many Requests", endpoint) from e
            raise ResponseFormatError(
                f"JSON parse failed (HTTP {response.status_code}) for {endpoint}: {text[:200]}"
            ) from e

        if not isinstance(payload, dict):
            raise ResponseFormatError(f"Unexpected response shape for {endpoint}: {text[:200]}")

        code = payload.get("code", 0)
        if code != 0:
            raise LarkError(code, payload.get("msg", ""), endpoint)
        return payload.get("data") or {}

    def _retry_options(self, endpoint: str) -> RetryOptions:
        if self.retry.options.on_retry is not None:
            return self.retry.options

        def log_retry(attempt: int, error: BaseException, delay: float) -> None:
            logger.warning(f"Retry {attempt} for {endpoint} after {delay:.2f}s: {error}")

        return replace(self.retry.options, on_retry=log_retry)

    async def call(
        self,
        endpoint: str,
        method: str = "GET",
        body: Optional[Any] = None,
        params: Optional[dict[str, Any]] = None,
        *,
        skip_rate_limit: bool = False,
        skip_retry: bool = False,
    ) -> Any:
        """Call a Lark endpoint and return the envelope's ``data``.

        Args:
            endpoint: Path below the API base, e.g. ``/docx/v1/documents``.
            method: HTTP method.
            body: JSON body, if any.
            params: Query parameters, if any.
            skip_rate_limit: Bypass the global limiter (caller throttles).
            skip_retry: Make a single attempt, no backoff or token refresh.

        Returns:
            The ``data`` member of the response, or ``{}`` for empty bodies.

        Raises:
            LarkError: The API returned a non-zero code.
            TransportError: The request failed at the network level.
            AuthorizationRequired: No usable credential.
        """
        execute = functools.partial(self._execute, endpoint, method, body, params)

        if skip_rate_limit:
            request = execute
        else:
            request = functools.partial(self.rate_limiter.throttle, GLOBAL_KEY, execute)

        if skip_retry:
            return await request()

        return await self.retry.execute(
            request,
            self.credentials.refresh,
            self._retry_options(endpoint),
        )

    async def get_document_blocks(self, document_id: str, page_size: int = 500) -> list[dict]:
        """Fetch every block of a document (flat, document order), following pagination."""
        blocks: list[dict] = []
        page_token: Optional[str] = None

        while True:
            params: dict[str, Any] = {"page_size": page_size}
            if page_token:
                params["page_token"] = page_token

            data = await self.call(f"/docx/v1/documents/{document_id}/blocks", params=params)
            blocks.extend(data.get("items") or [])

            page_token = data.get("page_token") if data.get("has_more") else None
            if not page_token:
                break

        return blocks

    async def get_document_root_block_id(self, document_id: str) -> str:
        data = await self.call(
            f"/docx/v1/documents/{document_id}/blocks",
            params={"page_size": 1},
        )
        items = data.get("items") or []
        block_id = items[0].get("block_id") if items else None
        if not block_id:
            raise LarkDocError(f"Cannot get root block ID of document {document_id}")
        return block_id

    async def create_document(self, folder_token: str, title: str) -> dict:
        """Create an empty document.

        Returns:
            ``{"document_id": ..., "revision_id": ...}``
        """
        data = await self.call(
            "/docx/v1/documents",
            method="POST",
            body={"folder_token": folder_token, "title": title},
        )
        document = data.get("document") or {}
        return {
            "document_id": document.get("document_id", ""),
            "revision_id": document.get("revision_id"),
        }


# =============================================================================
# Block Model
# =============================================================================


class BlockType(IntEnum):
    """Lark docx block_type values."""
    PAGE = 1
    TEXT = 2
    HEADING1 = 3
    HEADING2 = 4
    HEADING3 = 5
    HEADING4 = 6
    HEADING5 = 7
    HEADING6 = 8
    HEADING7 = 9
    HEADING8 = 10
    HEADING9 = 11
    BULLET = 12
    ORDERED = 13
    CODE = 14
    QUOTE = 15
    EQUATION = 16
    TODO = 17
    BITABLE = 18
    CALLOUT = 19
    CHAT_CARD = 20
    DIAGRAM = 21
    DIVIDER = 22
    FILE = 23
    GRID = 24
    GRID_COLUMN = 25
    IFRAME = 26
    IMAGE = 27
    ISV = 28
    MINDNOTE = 29
    SHEET = 30
    TABLE = 31
    TABLE_CELL = 32
    VIEW = 33
    QUOTE_CONTAINER = 34
    TASK = 35
    OKR = 36


# heading level -> block type
HEADING_TYPES: dict[int, BlockType] = {level: BlockType(2 + level) for level in range(1, 10)}
HEADING_LEVELS: dict[int, int] = {int(bt): level for level, bt in HEADING_TYPES.items()}

# block type -> key of its content object in the wire format
BLOCK_CONTENT_KEYS: dict[int, str] = {
    BlockType.PAGE: "page",
    BlockType.TEXT: "text",
    **{bt: f"heading{level}" for level, bt in HEADING_TYPES.items()},
    BlockType.BULLET: "bullet",
    BlockType.ORDERED: "ordered",
    BlockType.CODE: "code",
    BlockType.QUOTE: "quote",
    BlockType.EQUATION: "equation",
    BlockType.TODO: "todo",
    BlockType.BITABLE: "bitable",
    BlockType.CALLOUT: "callout",
    BlockType.CHAT_CARD: "chat_card",
    BlockType.DIAGRAM: "diagram",
    BlockType.DIVIDER: "divider",
    BlockType.FILE: "file",
    BlockType.GRID: "grid",
    BlockType.GRID_COLUMN: "grid_column",
    BlockType.IFRAME: "iframe",
    BlockType.IMAGE: "image",
    BlockType.ISV: "isv",
    BlockType.MINDNOTE: "mindnote",
    BlockType.SHEET: "sheet",
    BlockType.TABLE: "table",
    BlockType.TABLE_CELL: "table_cell",
    BlockType.VIEW: "view",
    BlockType.QUOTE_CONTAINER: "quote_container",
    BlockType.TASK: "task",
    BlockType.OKR: "okr",
}

# Rejected by the create-children endpoint; written as text approximations
NON_CREATABLE_TYPES = frozenset({BlockType.DIVIDER, BlockType.CODE, BlockType.CALLOUT})

# Block types whose content is a plain elements list that can be re-created
TEXT_BLOCK_TYPES = frozenset({
    BlockType.TEXT,
    *HEADING_TYPES.values(),
    BlockType.BULLET,
    BlockType.ORDERED,
    BlockType.CODE,
    BlockType.QUOTE,
    BlockType.EQUATION,
    BlockType.TODO,
    BlockType.CALLOUT,
})

# Code block languages. Several aliases share one code; CODE_LANGUAGE_NAMES
# holds the canonical name used when rendering.
PLAINTEXT_LANGUAGE = 1

CODE_LANGUAGES: dict[str, int] = {
    "plaintext": 1,
    "bash": 3,
    "shell": 3,
    "sh": 3,
    "c": 4,
    "cpp": 5,
    "c++": 5,
    "csharp": 6,
    "c#": 6,
    "css": 7,
    "go": 9,
    "html": 12,
    "java": 13,
    "javascript": 14,
    "js": 14,
    "json": 16,
    "kotlin": 18,
    "markdown": 20,
    "md": 20,
    "php": 22,
    "python": 24,
    "py": 24,
    "ruby": 26,
    "rust": 27,
    "sql": 29,
    "swift": 31,
    "typescript": 33,
    "ts": 33,
    "xml": 36,
    "yaml": 37,
    "yml": 37,
}

CODE_LANGUAGE_NAMES: dict[int, str] = {
    1: "plaintext",
    3: "bash",
    4: "c",
    5: "cpp",
    6: "csharp",
    7: "css",
    9: "go",
    12: "html",
    13: "java",
    14: "javascript",
    16: "json",
    18: "kotlin",
    20: "markdown",
    22: "php",
    24: "python",
    26: "ruby",
    27: "rust",
    29: "sql",
    31: "swift",
    33: "typescript",
    36: "xml",
    37: "yaml",
}


def language_code(name: str) -> int:
    """Lark language code for a fence info string; plaintext when unknown."""
    return CODE_LANGUAGES.get(name.strip().lower(), PLAINTEXT_LANGUAGE)


def language_name(code: Optional[int]) -> str:
    return CODE_LANGUAGE_NAMES.get(code or 0, "")


@dataclass
class StyledRun:
    """A span of text sharing one style combination."""
    text: str
    bold: bool = False
    italic: bool = False
    strikethrough: bool = False
    inline_code: bool = False
    link_url: Optional[str] = None

    @property
    def is_plain(self) -> bool:
        return not (self.bold or self.italic or self.strikethrough
                    or self.inline_code or self.link_url)

    def to_element(self) -> dict:
        """Convert to a Lark ``text_run`` element."""
        style: dict[str, Any] = {}
        for name in ("bold", "italic", "strikethrough", "inline_code"):
            if getattr(self, name):
                style[name] = True
        if self.link_url:
            # Lark expects link URLs percent-encoded
            style["link"] = {"url": quote(self.link_url, safe="")}

        text_run: dict[str, Any] = {"content": self.text}
        if style:
            text_run["text_element_style"] = style
        return {"text_run": text_run}

    @classmethod
    def from_element(cls, element: dict) -> Optional["StyledRun"]:
        """Build a run from a Lark element; None for non-text elements."""
        if "text_run" in element:
            text_run = element["text_run"] or {}
            style = text_run.get("text_element_style") or {}
            url = (style.get("link") or {}).get("url")
            return cls(
                text=text_run.get("content", ""),
                bold=bool(style.get("bold")),
                italic=bool(style.get("italic")),
                strikethrough=bool(style.get("strikethrough")),
                inline_code=bool(style.get("inline_code")),
                link_url=unquote(url) if url else None,
            )
        if "equation" in element:
            return cls(text=f"${(element['equation'] or {}).get('content', '')}$")
        return None


def text_payload(runs: list[StyledRun]) -> dict:
    """Lark text content object (``{"elements": [...]}``) for a list of runs."""
    elements = [run.to_element() for run in runs]
    if not elements:
        elements = [StyledRun("").to_element()]
    return {"elements": elements}


def runs_from_content(content: dict) -> list[StyledRun]:
    runs = []
    for element in content.get("elements") or []:
        run = StyledRun.from_element(element)
        if run is not None:
            runs.append(run)
    return runs


def _style_value(content: dict, name: str) -> Any:
    """Read a style attribute, accepting both ``style.<name>`` and a top-level key."""
    style = content.get("style") or {}
    if name in style:
        return style[name]
    return content.get(name)


@dataclass
class Block:
    """A node of a remote document, as returned by the blocks endpoint."""
    block_id: str
    block_type: int
    parent_id: Optional[str] = None
    children: list[str] = field(default_factory=list)
    content: dict = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict) -> "Block":
        block_type = int(data.get("block_type") or 0)
        key = BLOCK_CONTENT_KEYS.get(block_type)
        content = data.get(key) if key else None
        if content is None and key is None:
            # Unknown type: keep the first payload that carries text elements
            content = next(
                (v for v in data.values() if isinstance(v, dict) and "elements" in v),
                None,
            )
        return cls(
            block_id=data.get("block_id", ""),
            block_type=block_type,
            parent_id=data.get("parent_id") or None,
            children=list(data.get("children") or []),
            content=content if isinstance(content, dict) else {},
        )

    @property
    def runs(self) -> list[StyledRun]:
        return runs_from_content(self.content)


@dataclass
class TableBlock:
    """Shape of a table block. ``cell_ids`` is row-major."""
    row_count: int
    column_count: int
    cell_ids: list[str] = field(default_factory=list)

    @classmethod
    def from_block(cls, block: Block) -> Optional["TableBlock"]:
        prop = block.content.get("property") or {}
        rows = prop.get("row_size")
        cols = prop.get("column_size")
        if not rows or not cols:
            return None
        return cls(int(rows), int(cols), list(block.content.get("cells") or []))

    def cell_id(self, row: int, column: int) -> Optional[str]:
        index = row * self.column_count + column
        if index < len(self.cell_ids):
            return self.cell_ids[index] or None
        return None


@dataclass
class BlockDescriptor:
    """A block waiting to be created (it has no ID yet)."""
    block_type: int
    runs: list[StyledRun] = field(default_factory=list)
    done: Optional[bool] = None  # todo
    language: Optional[int] = None  # code

    @property
    def text(self) -> str:
        return "".join(run.text for run in self.runs)

    def to_payload(self) -> dict:
        """Create-children wire format for this block."""
        block_type = int(self.block_type)
        key = BLOCK_CONTENT_KEYS[block_type]
        if block_type == BlockType.DIVIDER:
            return {"block_type": block_type, key: {}}

        body = text_payload(self.runs)
        if block_type == BlockType.TODO:
            body["style"] = {"done": bool(self.done)}
        elif block_type == BlockType.CODE:
            body["style"] = {"language": self.language or PLAINTEXT_LANGUAGE}
        return {"block_type": block_type, key: body}


@dataclass
class PendingTableInsertion:
    """A table waiting to be created.

    Lark cannot create a table and its content in one call: the table shape
    is created first, then each cell (row-major ``cell_contents``) is filled
    using the cell IDs returned by that call.
    """
    row_count: int
    column_count: int
    cell_contents: list[list[StyledRun]] = field(default_factory=list)

    @property
    def block_type(self) -> int:
        return int(BlockType.TABLE)

    def to_payload(self) -> dict:
        """Table shape only; cell contents are never sent with the table."""
        return {
            "block_type": int(BlockType.TABLE),
            "table": {
                "property": {
                    "row_size": self.row_count,
                    "column_size": self.column_count,
                },
            },
        }


BlockSpec = Union[BlockDescriptor, PendingTableInsertion]


# =============================================================================
# Markdown -> Blocks
# =============================================================================


def _make_inline_parser():
    """Build the inline style tokenizer.

    One ordered alternation, first match wins at each position. Styles do
    not nest: ``**a *b* c**`` is a single bold run with literal asterisks.
    """
    link = P.seq(
        P.string("[") >> P.regex(r"[^\]]+"),
        P.string("](") >> P.regex(r"[^)\s]+") << P.string(")"),
    ).combine(lambda text, url: StyledRun(text, link_url=url))

    bold = (
        P.string("**") >> P.regex(r"(?:[^*]|\*(?!\*))+") << P.string("**")
    ).map(lambda t: StyledRun(t, bold=True))

    italic = (
        P.string("*") >> P.regex(r"[^*]+") << P.string("*")
    ).map(lambda t: StyledRun(t, italic=True))

    strikethrough = (
        P.string("~~") >> P.regex(r"(?:[^~]|~(?!~))+") << P.string("~~")
    ).map(lambda t: StyledRun(t, strikethrough=True))

    code = (
        P.string("`") >> P.regex(r"[^`]+") << P.string("`")
    ).map(lambda t: StyledRun(t, inline_code=True))

    literal_run = P.regex(r"[^*~`\[]+").map(StyledRun)

    # A marker character that did not open a complete span
    stray_marker = P.any_char.map(StyledRun)

    token = link | bold | strikethrough | italic | code | literal_run | stray_marker
    return token.many()


_inline_parser = _make_inline_parser()


def _merge_plain_runs(runs: list[StyledRun]) -> list[StyledRun]:
    merged: list[StyledRun] = []
    for run in runs:
        if merged and run.is_plain and merged[-1].is_plain:
            merged[-1] = StyledRun(merged[-1].text + run.text)
        else:
            merged.append(run)
    return merged


def parse_inline_styles(text: str) -> list[StyledRun]:
    """Split a line into styled runs (**bold**, *italic*, ~~strike~~, `code`, [link](url))."""
    if not text:
        return []
    try:
        return _merge_plain_runs(_inline_parser.parse(text))
    except P.ParseError as e:
        logger.warning(f"Inline style parse error: {e}")
        return [StyledRun(text)]


def _text_rule(block_type: int) -> Callable[[re.Match], BlockDescriptor]:
    def build(match: re.Match) -> BlockDescriptor:
        return BlockDescriptor(block_type, parse_inline_styles(match.group(1)))
    return build


def _todo_rule(done: bool) -> Callable[[re.Match], BlockDescriptor]:
    def build(match: re.Match) -> BlockDescriptor:
        return BlockDescriptor(BlockType.TODO, parse_inline_styles(match.group(1)), done=done)
    return build


# Line rules in precedence order (first match wins). Headings go from the
# longest prefix down so "## x" is never taken by a shorter heading rule.
MARKDOWN_RULES: list[tuple[re.Pattern, Callable[[re.Match], BlockDescriptor]]] = [
    *[
        (re.compile(rf"^{'#' * level} (.+)$"), _text_rule(HEADING_TYPES[level]))
        for level in range(9, 0, -1)
    ],
    (re.compile(r"^[-*] \[[xX]\] (.+)$"), _todo_rule(True)),
    (re.compile(r"^[-*] \[ \] (.+)$"), _todo_rule(False)),
    (re.compile(r"^[-*] (.+)$"), _text_rule(BlockType.BULLET)),
    (re.compile(r"^\d+\.\s(.+)$"), _text_rule(BlockType.ORDERED)),
    (re.compile(r"^>\s?(.*)$"), _text_rule(BlockType.QUOTE)),
    (re.compile(r"^(?:-{3,}|_{3,}|\*{3,})$"), lambda m: BlockDescriptor(BlockType.DIVIDER)),
]

CODE_FENCE = "```"
TABLE_ROW_PATTERN = re.compile(r"^\s*\|.*\|\s*$")
TABLE_SEPARATOR_PATTERN = re.compile(r"^\s*\|?\s*:?-{3,}:?\s*(?:\|\s*:?-{3,}:?\s*)*\|?\s*$")


def line_to_block(line: str) -> BlockDescriptor:
    """Convert one non-blank line using MARKDOWN_RULES; plain text otherwise."""
    for pattern, build in MARKDOWN_RULES:
        match = pattern.match(line)
        if match:
            return build(match)
    return BlockDescriptor(BlockType.TEXT, parse_inline_styles(line))


def _split_table_row(line: str) -> list[str]:
    inner = line.strip()
    if inner.startswith("|"):
        inner = inner[1:]
    if inner.endswith("|"):
        inner = inner[:-1]
    return [cell.strip() for cell in inner.split("|")]


def _table_from_lines(lines: list[str]) -> list[BlockSpec]:
    """Turn a run of pipe lines into a table, or into text lines without a separator row."""
    if len(lines) < 2 or not TABLE_SEPARATOR_PATTERN.match(lines[1]):
        return [line_to_block(line) for line in lines]

    header = _split_table_row(lines[0])
    columns = len(header)
    rows = [header] + [_split_table_row(line) for line in lines[2:]]

    cell_contents = []
    for row in rows:
        cells = (row + [""] * columns)[:columns]
        cell_contents.extend(parse_inline_styles(cell) for cell in cells)
    return [PendingTableInsertion(len(rows), columns, cell_contents)]


def _code_block(lines: list[str], language: str) -> BlockDescriptor:
    return BlockDescriptor(
        BlockType.CODE,
        [StyledRun("\n".join(lines))],
        language=language_code(language),
    )


def markdown_to_blocks(markdown: str) -> list[BlockSpec]:
    """Convert Markdown to block descriptors, in document order.

    Lines are scanned top to bottom. Inside a fenced code region lines are
    kept verbatim; elsewhere blank lines are skipped and each line is matched
    against MARKDOWN_RULES. Consecutive pipe-table lines with a separator row
    become a PendingTableInsertion.

    Args:
        markdown: Markdown source.

    Returns:
        BlockDescriptor and PendingTableInsertion items.
    """
    blocks: list[BlockSpec] = []
    in_code = False
    code_lines: list[str] = []
    code_language = ""
    table_lines: list[str] = []

    def flush_table() -> None:
        if table_lines:
            blocks.extend(_table_from_lines(table_lines))
            table_lines.clear()

    for raw_line in markdown.split("\n"):
        line = raw_line.rstrip("\r")

        if line.startswith(CODE_FENCE):
            if in_code:
                blocks.append(_code_block(code_lines, code_language))
                in_code = False
            else:
                flush_table()
                in_code = True
                code_language = line[len(CODE_FENCE):].strip()
                code_lines = []
            continue

        if in_code:
            code_lines.append(line)
            continue

        if TABLE_ROW_PATTERN.match(line):
            table_lines.append(line)
            continue
        flush_table()

        if not line.strip():
            continue
        blocks.append(line_to_block(line))

    flush_table()
    if in_code:
        # Unterminated fence: keep what was collected
        blocks.append(_code_block(code_lines, code_language))

    return blocks


# =============================================================================
# Blocks -> Markdown
# =============================================================================

SHEET_PLACEHOLDER = "📊 [sheet](lark://sheet/{token})"
EMPTY_SHEET = "[Empty table]"


def render_run(run: StyledRun) -> str:
    """Wrap a run's text in its style markers; links go outermost."""
    text = run.text
    if run.bold:
        text = f"**{text}**"
    if run.italic:
        text = f"*{text}*"
    if run.strikethrough:
        text = f"~~{text}~~"
    if run.inline_code:
        text = f"`{text}`"
    if run.link_url:
        text = f"[{text}]({run.link_url})"
    return text


def content_to_markdown(content: Optional[dict]) -> str:
    if not content:
        return ""
    return "".join(render_run(run) for run in runs_from_content(content))


def _sanitize_cell(text: str) -> str:
    """Keep a table cell on one row: no newlines, no pipes."""
    return re.sub(r"[\n\r|]", " ", text).strip()


def _cell_text(cell_id: Optional[str], blocks_by_id: dict[str, Block]) -> str:
    cell = blocks_by_id.get(cell_id) if cell_id else None
    if cell is None:
        return ""
    if cell.children:
        parts = []
        for child_id in cell.children:
            child = blocks_by_id.get(child_id)
            if child is not None:
                text = content_to_markdown(child.content)
                if text:
                    parts.append(text)
        return " ".join(parts)
    return content_to_markdown(cell.content)


def render_table(block: Block, blocks_by_id: dict[str, Block]) -> Optional[str]:
    """Render a table block as a pipe table (separator after the first row)."""
    table = TableBlock.from_block(block)
    if table is None:
        return None

    lines = []
    for row in range(table.row_count):
        cells = []
        for column in range(table.column_count):
            text = _sanitize_cell(_cell_text(table.cell_id(row, column), blocks_by_id))
            cells.append(text or " ")
        lines.append(f"| {' | '.join(cells)} |")
        if row == 0:
            lines.append(f"| {' | '.join('---' for _ in cells)} |")
    return "\n".join(lines)


def _table_owned_ids(blocks_by_id: dict[str, Block]) -> set[str]:
    """IDs of table cells and everything below them (rendered by their table)."""
    owned: set[str] = set()
    for block in blocks_by_id.values():
        if block.block_type != BlockType.TABLE:
            continue
        pending = list(block.content.get("cells") or []) + list(block.children)
        while pending:
            block_id = pending.pop()
            if block_id in owned:
                continue
            owned.add(block_id)
            child = blocks_by_id.get(block_id)
            if child is not None:
                pending.extend(child.children)
    return owned


def parse_sheet_token(token: str) -> Optional[tuple[str, str]]:
    """Split an embedded table token ``{app_token}_{table_id}``."""
    app_token, sep, table_id = token.rpartition("_")
    if not sep or not app_token or not table_id:
        return None
    return app_token, table_id


def format_bitable_value(value: Any) -> str:
    """Flatten a bitable field value to single-line cell text."""
    if value is None:
        return ""

    def one(item: Any) -> str:
        if isinstance(item, dict):
            if "name" in item:
                return str(item["name"])
            if "text" in item:
                return str(item["text"])
            return json.dumps(item, ensure_ascii=False)
        return str(item)

    if isinstance(value, list):
        text = ", ".join(one(item) for item in value)
    else:
        text = one(value)
    return _sanitize_cell(text)


class BitableSource:
    """Reads embedded bitable tables (field definitions and records)."""

    def __init__(self, client: LarkClient, page_size: int = 100):
        self.client = client
        self.page_size = page_size

    async def fetch_fields(self, app_token: str, table_id: str) -> list[dict]:
        data = await self.client.call(
            f"/bitable/v1/apps/{app_token}/tables/{table_id}/fields",
            params={"page_size": self.page_size},
        )
        return [
            {
                "field_id": item.get("field_id", ""),
                "field_name": item.get("field_name", ""),
                "type": item.get("type", 0),
            }
            for item in data.get("items") or []
        ]

    async def fetch_records(self, app_token: str, table_id: str) -> list[dict]:
        data = await self.client.call(
            f"/bitable/v1/apps/{app_token}/tables/{table_id}/records",
            params={"page_size": self.page_size},
        )
        return [
            {"record_id": item.get("record_id", ""), "fields": item.get("fields") or {}}
            for item in data.get("items") or []
        ]


async def render_sheet(token: str, source: Optional[BitableSource]) -> Optional[str]:
    """Render an embedded table through ``source``.

    Falls back to a link placeholder when there is no source or the fetch
    fails, so one unreadable table never fails the whole document.
    """
    parsed = parse_sheet_token(token)
    if parsed is None:
        return None
    placeholder = SHEET_PLACEHOLDER.format(token=token)
    if source is None:
        return placeholder

    app_token, table_id = parsed
    fields, records = await asyncio.gather(
        source.fetch_fields(app_token, table_id),
        source.fetch_records(app_token, table_id),
        return_exceptions=True,
    )
    for result in (fields, records):
        if isinstance(result, LarkDocError):
            logger.warning(f"Could not read embedded table {token}: {result}")
            return placeholder
        if isinstance(result, BaseException):
            raise result

    if not fields:
        return EMPTY_SHEET

    headers = [f.get("field_name", "") for f in fields]
    lines = [
        f"| {' | '.join(headers)} |",
        f"| {' | '.join('---' for _ in headers)} |",
    ]
    for record in records:
        values = record.get("fields") or {}
        cells = [format_bitable_value(values.get(name)) for name in headers]
        lines.append(f"| {' | '.join(cells)} |")
    return "\n".join(lines)


async def render_block(
    block: Block,
    blocks_by_id: dict[str, Block],
    tabular_source: Optional[BitableSource] = None,
) -> Optional[str]:
    """Render one block; None when it produces no output."""
    block_type = block.block_type
    content = block.content

    if block_type in (BlockType.PAGE, BlockType.TABLE_CELL):
        return None
    elif block_type == BlockType.TEXT:
        return content_to_markdown(content)
    elif block_type in HEADING_LEVELS:
        return f"{'#' * HEADING_LEVELS[block_type]} {content_to_markdown(content)}"
    elif block_type == BlockType.BULLET:
        return f"- {content_to_markdown(content)}"
    elif block_type == BlockType.ORDERED:
        return f"1. {content_to_markdown(content)}"
    elif block_type == BlockType.CODE:
        language = language_name(_style_value(content, "language"))
        return f"{CODE_FENCE}{language}\n{content_to_markdown(content)}\n{CODE_FENCE}"
    elif block_type == BlockType.QUOTE:
        return f"> {content_to_markdown(content)}"
    elif block_type == BlockType.EQUATION:
        return f"$${content_to_markdown(content)}$$"
    elif block_type == BlockType.TODO:
        checked = "x" if _style_value(content, "done") else " "
        return f"- [{checked}] {content_to_markdown(content)}"
    elif block_type == BlockType.CALLOUT:
        return f"> 💡 {content_to_markdown(content)}"
    elif block_type == BlockType.DIVIDER:
        return "---"
    elif block_type == BlockType.FILE:
        token = content.get("token")
        return f"📎 [file](lark://file/{token})" if token else None
    elif block_type == BlockType.IMAGE:
        token = content.get("token")
        return f"![image](lark://image/{token})" if token else None
    elif block_type in (BlockType.SHEET, BlockType.BITABLE):
        token = content.get("token")
        return await render_sheet(token, tabular_source) if token else None
    elif block_type == BlockType.TABLE:
        return render_table(block, blocks_by_id)
    elif content.get("elements"):
        # Unknown type with a text payload
        return content_to_markdown(content)
    return None


async def blocks_to_markdown(
    blocks: Iterable[Union[Block, dict]],
    tabular_source: Optional[BitableSource] = None,
) -> str:
    """Render a document's blocks to Markdown.

    Args:
        blocks: Blocks in the flat document order returned by the blocks
            endpoint (Block objects or raw dicts).
        tabular_source: Used to fetch embedded tables; without it they
            render as link placeholders.

    Returns:
        Markdown text, one line (or multi-line construct) per block.
    """
    parsed = [b if isinstance(b, Block) else Block.from_dict(b) for b in blocks]
    blocks_by_id = {b.block_id: b for b in parsed if b.block_id}
    owned = _table_owned_ids(blocks_by_id)

    lines = []
    for block in parsed:
        if block.block_id in owned:
            continue
        rendered = await render_block(block, blocks_by_id, tabular_source)
        if rendered is not None:
            lines.append(rendered)
    return "\n".join(lines)


# =============================================================================
# Mutation Planning
# =============================================================================

DIVIDER_SUBSTITUTE = "—" * 20


def to_creatable(block: BlockDescriptor) -> BlockDescriptor:
    """Replace block types the create endpoint rejects with text approximations.

    divider -> a line of em dashes
    code    -> "[language] " followed by the code as an inline-code run
    callout -> text prefixed with 💡
    """
    if block.block_type == BlockType.DIVIDER:
        return BlockDescriptor(BlockType.TEXT, [StyledRun(DIVIDER_SUBSTITUTE)])
    if block.block_type == BlockType.CODE:
        name = language_name(block.language) or "plaintext"
        runs = [StyledRun(f"[{name}] ")]
        if block.text:
            runs.append(StyledRun(block.text, inline_code=True))
        return BlockDescriptor(BlockType.TEXT, runs)
    if block.block_type == BlockType.CALLOUT:
        return BlockDescriptor(BlockType.TEXT, [StyledRun("💡 "), *block.runs])
    return block


def block_to_spec(block: Block, blocks_by_id: dict[str, Block]) -> Optional[BlockSpec]:
    """Rebuild a creatable descriptor from an existing block, or None if impossible."""
    block_type = block.block_type

    if block_type == BlockType.DIVIDER:
        return BlockDescriptor(BlockType.DIVIDER)

    if block_type in TEXT_BLOCK_TYPES:
        done = _style_value(block.content, "done") if block_type == BlockType.TODO else None
        language = _style_value(block.content, "language") if block_type == BlockType.CODE else None
        return BlockDescriptor(block_type, block.runs, done=done, language=language)

    if block_type == BlockType.TABLE:
        table = TableBlock.from_block(block)
        if table is None:
            return None
        contents = []
        for row in range(table.row_count):
            for column in range(table.column_count):
                cell = blocks_by_id.get(table.cell_id(row, column) or "")
                runs: list[StyledRun] = []
                for child_id in (cell.children if cell else []):
                    child = blocks_by_id.get(child_id)
                    if child is None:
                        continue
                    if runs:
                        runs.append(StyledRun(" "))
                    runs.extend(child.runs)
                contents.append(runs)
        return PendingTableInsertion(table.row_count, table.column_count, contents)

    return None


def _validate_range(start_index: int, end_index: int) -> None:
    if start_index < 0 or end_index <= start_index:
        raise InvalidRangeError(
            f"Invalid range [{start_index}, {end_index}): "
            "end_index must be greater than start_index and start_index >= 0"
        )


def _has_table(blocks: Iterable[BlockSpec]) -> bool:
    return any(isinstance(b, PendingTableInsertion) for b in blocks)


class MutationPlanner:
    """Applies block insertions and deletions to Lark documents.

    All edits to one document are throttled on that document's key, since
    Lark rejects overlapping edits to the same document.
    """

    def __init__(
        self,
        client: LarkClient,
        *,
        batch_size: int = BATCH_SIZE,
        table_settle_delay: float = TABLE_SETTLE_DELAY,
        rate_limiter: Optional[RateLimiter] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        if batch_size < 1:
            raise ValueError(f"batch_size must be positive, got {batch_size}")
        self.client = client
        self.batch_size = batch_size
        self.table_settle_delay = table_settle_delay
        self.rate_limiter = rate_limiter or RateLimiter()
        self._sleep = sleep

    async def _document_call(self, document_id: str, endpoint: str, method: str, body: dict) -> Any:
        call = functools.partial(self.client.call, endpoint, method, body, skip_rate_limit=True)
        return await self.rate_limiter.throttle(document_id, call)

    async def _create_children(
        self,
        document_id: str,
        parent_block_id: str,
        children: list[dict],
        index: int,
    ) -> dict:
        return await self._document_call(
            document_id,
            f"/docx/v1/documents/{document_id}/blocks/{parent_block_id}/children",
            "POST",
            {
                "children": children,
                "index": index,
                "document_revision_id": LATEST_REVISION,
            },
        )

    async def _delete_children(
        self,
        document_id: str,
        parent_block_id: str,
        start_index: int,
        end_index: int,
    ) -> None:
        await self._document_call(
            document_id,
            f"/docx/v1/documents/{document_id}/blocks/{parent_block_id}/children/batch_delete",
            "DELETE",
            {
                "start_index": start_index,
                "end_index": end_index,
                "document_revision_id": LATEST_REVISION,
            },
        )

    async def _resolve_parent(self, document_id: str, parent_block_id: Optional[str]) -> str:
        if parent_block_id:
            return parent_block_id
        return await self.client.get_document_root_block_id(document_id)

    async def _settle(self) -> None:
        if self.table_settle_delay > 0:
            await self._sleep(self.table_settle_delay)

    async def _insert_table(
        self,
        document_id: str,
        parent_block_id: str,
        table: PendingTableInsertion,
        index: int,
    ) -> list[str]:
        """Create a table, then fill its cells.

        Returns the cell IDs Lark generated. Filling stops quietly when there
        are more contents than cells (or no cells at all).
        """
        response = await self._create_children(
            document_id, parent_block_id, [table.to_payload()], index
        )
        created = (response.get("children") or [{}])[0]
        cell_ids = list((created.get("table") or {}).get("cells") or [])

        if not cell_ids:
            logger.warning(f"Table in {document_id} was created without cell IDs; content not filled")
            return cell_ids
        if len(table.cell_contents) > len(cell_ids):
            logger.info(
                f"Table in {document_id}: {len(table.cell_contents)} cell contents "
                f"for {len(cell_ids)} cells, extra content dropped"
            )

        for cell_id, runs in zip(cell_ids, table.cell_contents):
            if not runs:
                continue
            cell_block = BlockDescriptor(BlockType.TEXT, runs).to_payload()
            await self._create_children(document_id, cell_id, [cell_block], 0)
        return cell_ids

    async def insert(
        self,
        document_id: str,
        parent_block_id: str,
        blocks: Iterable[BlockSpec],
        index: int = 0,
    ) -> int:
        """Insert blocks under ``parent_block_id`` starting at ``index``.

        Plain blocks are sent in chunks of at most ``batch_size``. Each table
        flushes the pending chunk first and then goes through its own
        create-and-fill sequence, occupying one index.

        Returns:
            The index just after the last inserted block.
        """
        if index < 0:
            raise InvalidRangeError(f"Insert index must be >= 0, got {index}")

        current = index
        batch: list[dict] = []

        async def flush() -> None:
            nonlocal current
            for start in range(0, len(batch), self.batch_size):
                chunk = batch[start:start + self.batch_size]
                await self._create_children(document_id, parent_block_id, chunk, current)
                current += len(chunk)
            batch.clear()

        for block in blocks:
            if isinstance(block, PendingTableInsertion):
                await flush()
                await self._insert_table(document_id, parent_block_id, block, current)
                current += 1
            else:
                batch.append(to_creatable(block).to_payload())

        await flush()
        logger.info(f"Inserted {current - index} blocks into {document_id} at index {index}")
        return current

    async def delete_range(
        self,
        document_id: str,
        start_index: int,
        end_index: int,
        parent_block_id: Optional[str] = None,
    ) -> None:
        """Delete the children in ``[start_index, end_index)`` of the parent (root by default)."""
        _validate_range(start_index, end_index)
        parent = await self._resolve_parent(document_id, parent_block_id)
        await self._delete_children(document_id, parent, start_index, end_index)

    async def range_update(
        self,
        document_id: str,
        blocks: Iterable[BlockSpec],
        start_index: int,
        end_index: int,
        parent_block_id: Optional[str] = None,
    ) -> int:
        """Replace the children in ``[start_index, end_index)`` with ``blocks``."""
        _validate_range(start_index, end_index)
        blocks = list(blocks)
        parent = await self._resolve_parent(document_id, parent_block_id)

        await self._delete_children(document_id, parent, start_index, end_index)
        if _has_table(blocks):
            await self._settle()
        return await self.insert(document_id, parent, blocks, start_index)

    async def replace_all(self, document_id: str, blocks: Iterable[BlockSpec]) -> int:
        """Replace the whole body of a document with ``blocks``."""
        blocks = list(blocks)
        existing = [Block.from_dict(b) for b in await self.client.get_document_blocks(document_id)]
        if not existing:
            raise LarkDocError(f"Cannot get root block ID of document {document_id}")

        root_id = existing[0].block_id
        child_count = sum(
            1 for b in existing if b.parent_id == root_id and b.block_id != root_id
        )
        if child_count > 0:
            await self._delete_children(document_id, root_id, 0, child_count)
            if _has_table(blocks):
                await self._settle()
        return await self.insert(document_id, root_id, blocks, 0)

    async def move(
        self,
        document_id: str,
        start_index: int,
        end_index: int,
        target_index: int,
        parent_block_id: Optional[str] = None,
    ) -> int:
        """Move children ``[start_index, end_index)`` so they start at ``target_index``.

        ``target_index`` is expressed in the positions before the move. The
        blocks are deleted and re-created from their content; nested
        children of moved blocks are not carried over.

        Returns:
            The index the moved blocks were inserted at.
        """
        _validate_range(start_index, end_index)
        if target_index < 0:
            raise InvalidRangeError(f"Target index must be >= 0, got {target_index}")
        if start_index <= target_index < end_index:
            raise InvalidRangeError(
                f"Cannot move blocks [{start_index}, {end_index}) into their own range "
                f"(target {target_index})"
            )

        existing = [Block.from_dict(b) for b in await self.client.get_document_blocks(document_id)]
        blocks_by_id = {b.block_id: b for b in existing}
        parent_id = parent_block_id or (existing[0].block_id if existing else None)
        parent = blocks_by_id.get(parent_id) if parent_id else None
        if parent is None:
            raise LarkDocError(f"Parent block {parent_id} not found in document {document_id}")

        if end_index > len(parent.children) or target_index > len(parent.children):
            raise InvalidRangeError(
                f"Range [{start_index}, {end_index}) -> {target_index} exceeds "
                f"{len(parent.children)} children"
            )

        moved: list[BlockSpec] = []
        for child_id in parent.children[start_index:end_index]:
            child = blocks_by_id.get(child_id)
            spec = block_to_spec(child, blocks_by_id) if child is not None else None
            if spec is None:
                block_type = child.block_type if child is not None else "unknown"
                raise UnsupportedBlockError(
                    f"Block {child_id} (type {block_type}) cannot be re-created by a move"
                )
            moved.append(spec)

        count = end_index - start_index
        destination = target_index - count if target_index >= end_index else target_index

        await self._delete_children(document_id, parent.block_id, start_index, end_index)
        if _has_table(moved):
            await self._settle()
        await self.insert(document_id, parent.block_id, moved, destination)
        return destination


# =============================================================================
# Document Sync
# =============================================================================


class DocumentSync:
    """Markdown-level operations on one Lark document at a time."""

    def __init__(
        self,
        client: LarkClient,
        planner: Optional[MutationPlanner] = None,
        tabular_source: Optional[BitableSource] = None,
    ):
        self.client = client
        self.planner = planner or MutationPlanner(client)
        self.tabular_source = tabular_source if tabular_source is not None else BitableSource(client)

    async def read_markdown(self, document_id: str) -> str:
        blocks = await self.client.get_document_blocks(document_id)
        return await blocks_to_markdown(blocks, self.tabular_source)

    async def create_document(
        self,
        folder_token: str,
        title: str,
        markdown: Optional[str] = None,
    ) -> str:
        """Create a document, optionally with initial content. Returns its ID."""
        created = await self.client.create_document(folder_token, title)
        document_id = created["document_id"]
        if markdown:
            await self.insert_markdown(document_id, markdown, 0)
        return document_id

    async def insert_markdown(self, document_id: str, markdown: str, index: int = 0) -> int:
        """Insert Markdown content at ``index``. Returns the number of blocks."""
        blocks = markdown_to_blocks(markdown)
        root_id = await self.client.get_document_root_block_id(document_id)
        await self.planner.insert(document_id, root_id, blocks, index)
        return len(blocks)

    async def update_markdown(
        self,
        document_id: str,
        markdown: str,
        start_index: Optional[int] = None,
        end_index: Optional[int] = None,
    ) -> int:
        """Replace a range (both bounds given) or the whole document with Markdown.

        Returns the number of blocks inserted.
        """
        if (start_index is None) != (end_index is None):
            raise InvalidRangeError("start_index and end_index must be given together")

        blocks = markdown_to_blocks(markdown)
        if start_index is not None:
            await self.planner.range_update(document_id, blocks, start_index, end_index)
        else:
            await self.planner.replace_all(document_id, blocks)
        return len(blocks)

    async def delete_blocks(self, document_id: str, start_index: int, end_index: int) -> int:
        """Delete top-level blocks ``[start_index, end_index)``. Returns how many."""
        await self.planner.delete_range(document_id, start_index, end_index)
        return end_index - start_index

    async def move_blocks(
        self,
        document_id: str,
        start_index: int,
        end_index: int,
        target_index: int,
    ) -> int:
        return await self.planner.move(document_id, start_index, end_index, target_index)


def build_document_sync(
    credential: Optional[Credential],
    config: Optional[EngineConfig] = None,
    on_refresh: Optional[Callable[[Credential], None]] = None,
) -> DocumentSync:
    """Wire a DocumentSync with a refreshing credential store.

    Args:
        credential: Credential from the OAuth exchange (may be None until
            the user authorizes; calls then raise AuthorizationRequired).
        config: Engine settings; read from the environment when omitted.
        on_refresh: Called with each refreshed credential, for persistence.
    """
    config = config or EngineConfig.from_env()
    refresher = LarkTokenRefresher(
        config.app_id,
        config.app_secret,
        base_url=config.base_url,
        timeout=config.timeout,
    )
    store = CredentialStore(credential, refresher, on_refresh=on_refresh)
    client = LarkClient(
        store,
        base_url=config.base_url,
        rate_limiter=RateLimiter(config.rate_limit_interval),
        timeout=config.timeout,
    )
    planner = MutationPlanner(
        client,
        batch_size=config.batch_size,
        table_settle_delay=config.table_settle_delay,
        rate_limiter=RateLimiter(config.rate_limit_interval),
    )
    return DocumentSync(client, planner)
