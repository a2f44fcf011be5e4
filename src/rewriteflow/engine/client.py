"""
Rewrite Engine RPC Client.

Async client for the remote rewrite engine. Every action is a POST of
``{"action": <name>, ...fields}`` to a single RPC endpoint with a bearer
token.

Features:
- Hard per-call timeout enforced on top of the HTTP timeout
- HTTP status code to domain error mapping (auth, credits, rate limit)
- Automatic retry with exponential backoff for idempotent reads only
- Typed wrappers returning pydantic models
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

import httpx
from pydantic import SecretStr, ValidationError
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from rewriteflow.config.environment import get_access_token
from rewriteflow.config.models import EngineConfig
from rewriteflow.models import (
    AssembleResult,
    ClaimResult,
    EnqueueResult,
    ErrorCategory,
    PreviewResult,
    ProbeResult,
    Provenance,
    ScopePlan,
    StatusSnapshot,
    Verification,
)

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://localhost:54321/functions/v1"
DEFAULT_RPC_PATH = "rewrite-engine"

CREDITS_EXHAUSTED_MESSAGE = "AI credits exhausted."
RATE_LIMITED_MESSAGE = "Rate limit reached. Try again in a moment."

# Actions safe to repeat: they never change engine state
IDEMPOTENT_ACTIONS = frozenset(
    {"probe", "scope_plan", "status", "verify", "active_run_lookup", "preview"}
)


class EngineError(Exception):
    """Base exception for rewrite engine errors.

    Attributes:
        category: How the error may affect the pipeline
        status_code: HTTP status code, when one was received
        action: Engine action that failed
    """

    category: ErrorCategory = ErrorCategory.TRANSIENT

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        action: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.action = action


class AuthenticationError(EngineError):
    """Raised when there is no session or the engine rejects it."""

    category = ErrorCategory.PRECONDITION


class CreditsExhaustedError(EngineError):
    """Raised on HTTP 402."""

    category = ErrorCategory.RESOURCE_EXHAUSTED


class RateLimitError(EngineError):
    """Raised on HTTP 429."""

    category = ErrorCategory.RESOURCE_EXHAUSTED


class EngineTimeoutError(EngineError):
    """Raised when a call exceeds the client timeout."""

    pass


class EngineConnectionError(EngineError):
    """Raised when the engine cannot be reached."""

    pass


class InvalidResponseError(EngineError):
    """Raised for empty, non-JSON or malformed response bodies."""

    pass


class EngineServerError(EngineError):
    """Raised for 5xx responses."""

    pass


class EngineRequestError(EngineError):
    """Raised for 4xx responses without a more specific mapping."""

    pass


RETRYABLE_ERRORS = (
    EngineTimeoutError,
    EngineConnectionError,
    InvalidResponseError,
    EngineServerError,
)


class EngineClient:
    """Async client for the rewrite engine RPC endpoint.

    Example:
        async with EngineClient(access_token="...") as engine:
            probe = await engine.probe("src-1", "ver-1")
            print(probe.unit_count)
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        rpc_path: str = DEFAULT_RPC_PATH,
        access_token: str | SecretStr | None = None,
        timeout: float = 120.0,
        max_retries: int = 3,
        retry_backoff: float = 0.5,
    ) -> None:
        """Initialize the engine client.

        Args:
            base_url: Base URL of the engine service
            rpc_path: Path of the RPC endpoint, relative to base_url
            access_token: Bearer token of the authenticated session
            timeout: Hard timeout per call in seconds
            max_retries: Attempts for idempotent read actions
            retry_backoff: Base of the exponential retry wait in seconds
        """
        if isinstance(access_token, SecretStr):
            access_token = access_token.get_secret_value()
        self._base_url = base_url.rstrip("/")
        self._rpc_path = rpc_path.lstrip("/")
        self._access_token = access_token or None
        self._timeout = timeout
        self._max_retries = max_retries
        self._retry_backoff = retry_backoff
        self._client: httpx.AsyncClient | None = None

    @classmethod
    def from_config(cls, config: EngineConfig) -> EngineClient:
        """Build a client from configuration, falling back to the environment token."""
        token = config.access_token or get_access_token()
        return cls(
            base_url=config.base_url,
            rpc_path=config.rpc_path,
            access_token=token,
            timeout=config.timeout_seconds,
            max_retries=config.max_retries,
        )

    @property
    def endpoint(self) -> str:
        """Absolute URL of the RPC endpoint."""
        return f"{self._base_url}/{self._rpc_path}"

    @property
    def timeout(self) -> float:
        return self._timeout

    async def __aenter__(self) -> EngineClient:
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    async def _ensure_client(self) -> httpx.AsyncClient:
        """Ensure HTTP client is initialized."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                headers={
                    "Authorization": f"Bearer {self._access_token}",
                    "Content-Type": "application/json",
                },
                timeout=self._timeout,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def call(self, action: str, **fields: Any) -> dict[str, Any]:
        """Invoke an engine action and return the decoded response body.

        Fields whose value is None are omitted from the request.

        Args:
            action: Engine action name
            **fields: Request fields (wire names)

        Returns:
            Decoded JSON object

        Raises:
            AuthenticationError: If there is no session or it is rejected
            CreditsExhaustedError: On HTTP 402
            RateLimitError: On HTTP 429
            EngineError: For timeouts, invalid bodies and other HTTP errors
        """
        if not self._access_token:
            raise AuthenticationError("Not authenticated", action=action)

        body = {"action": action, **{k: v for k, v in fields.items() if v is not None}}
        attempts = self._max_retries if action in IDEMPOTENT_ACTIONS else 1

        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(attempts),
            wait=wait_exponential(multiplier=self._retry_backoff, max=8),
            retry=retry_if_exception_type(RETRYABLE_ERRORS),
            reraise=True,
        ):
            with attempt:
                attempt_num = attempt.retry_state.attempt_number
                if attempt_num > 1:
                    logger.info(f"Retrying engine action {action} (attempt {attempt_num}/{attempts})")
                return await self._call_once(action, body)

        # Unreachable: AsyncRetrying either returns or reraises
        raise EngineError(f"Unexpected error calling {action}", action=action)

    async def _call_once(self, action: str, body: dict[str, Any]) -> dict[str, Any]:
        try:
            data = await asyncio.wait_for(self._post(body), timeout=self._timeout)
        except asyncio.TimeoutError as e:
            raise EngineTimeoutError(
                f"Engine action {action} timed out after {self._timeout:g}s",
                action=action,
            ) from e
        except EngineError as e:
            e.action = e.action or action
            raise
        logger.debug(f"Engine action {action} completed")
        return data

    async def _post(self, body: dict[str, Any]) -> dict[str, Any]:
        """Send one request over HTTP. Subclasses may replace the transport."""
        client = await self._ensure_client()
        try:
            response = await client.post(self.endpoint, json=body)
        except httpx.TimeoutException as e:
            raise EngineTimeoutError(f"Engine request timed out: {e}") from e
        except httpx.TransportError as e:
            raise EngineConnectionError(f"Engine unreachable: {e}") from e
        return self._handle_response(response)

    def _handle_response(self, response: httpx.Response) -> dict[str, Any]:
        """Map an HTTP response to a decoded body or a domain error."""
        status = response.status_code

        if status in (401, 403):
            raise AuthenticationError("Not authenticated", status_code=status)
        if status == 402:
            raise CreditsExhaustedError(CREDITS_EXHAUSTED_MESSAGE, status_code=status)
        if status == 429:
            retry_after = response.headers.get("Retry-After", "unknown")
            logger.warning(f"Rate limited by engine. Retry-After: {retry_after}s")
            raise RateLimitError(RATE_LIMITED_MESSAGE, status_code=status)

        text = response.text
        data: Any = None
        if text and text.strip():
            try:
                data = json.loads(text)
            except json.JSONDecodeError:
                data = None

        if status >= 400:
            message = "Engine error"
            if isinstance(data, dict) and data.get("error"):
                message = str(data["error"])
            if status >= 500:
                raise EngineServerError(message, status_code=status)
            raise EngineRequestError(message, status_code=status)

        if not text or not text.strip():
            raise InvalidResponseError("Empty response from engine", status_code=status)
        if not isinstance(data, dict):
            raise InvalidResponseError("Invalid response from engine", status_code=status)
        return data

    def _parse(self, model: type, data: Any, action: str) -> Any:
        try:
            return model.model_validate(data)
        except ValidationError as e:
            raise InvalidResponseError(
                f"Malformed {action} response: {e.error_count()} errors",
                action=action,
            ) from e

    # Typed actions

    async def probe(self, source_id: str, source_version_id: str) -> ProbeResult:
        """Discover the unit structure of a source version."""
        data = await self.call("probe", sourceId=source_id, sourceVersionId=source_version_id)
        return self._parse(ProbeResult, data, "probe")

    async def scope_plan(
        self,
        source_id: str,
        source_version_id: str,
        notes: list[Any],
    ) -> ScopePlan:
        """Ask the engine which units the notes require rewriting."""
        data = await self.call(
            "scope_plan",
            sourceId=source_id,
            sourceVersionId=source_version_id,
            notes=notes,
        )
        return self._parse(ScopePlan, data.get("scope_plan", data), "scope_plan")

    async def enqueue(
        self,
        source_id: str,
        source_version_id: str,
        edits: list[Any],
        protected_items: list[Any],
        target_unit_numbers: list[int] | None = None,
        run_id: str | None = None,
    ) -> EnqueueResult:
        """Create the job set for a run, or find the existing one.

        Args:
            source_id: Source identifier
            source_version_id: Source version identifier
            edits: Notes driving the rewrite
            protected_items: Items that must survive the rewrite unchanged
            target_unit_numbers: Units to enqueue; None means every unit
            run_id: Existing run to extend with new jobs

        Returns:
            EnqueueResult; ``already_exists`` is True when nothing was created
        """
        data = await self.call(
            "enqueue",
            sourceId=source_id,
            sourceVersionId=source_version_id,
            edits=edits,
            protectedItems=protected_items,
            targetUnitNumbers=target_unit_numbers,
            runId=run_id,
        )
        return self._parse(EnqueueResult, data, "enqueue")

    async def claim_next(self, run_id: str, source_version_id: str) -> ClaimResult:
        """Atomically claim and process the next queued job."""
        data = await self.call("claim_next", runId=run_id, sourceVersionId=source_version_id)
        return self._parse(ClaimResult, data, "claim_next")

    async def status(self, run_id: str | None, source_version_id: str) -> StatusSnapshot:
        """Fetch the authoritative status of a run."""
        data = await self.call("status", runId=run_id, sourceVersionId=source_version_id)
        return self._parse(StatusSnapshot, data, "status")

    async def retry_failed(self, source_version_id: str, run_id: str | None = None) -> int:
        """Move failed jobs back to queued. Returns how many were reset."""
        data = await self.call("retry_failed", sourceVersionId=source_version_id, runId=run_id)
        return int(data.get("reset", 0) or 0)

    async def requeue_stuck(
        self,
        source_version_id: str,
        stuck_minutes: int,
        run_id: str | None = None,
    ) -> int:
        """Requeue jobs running longer than stuck_minutes. Returns the count."""
        data = await self.call(
            "requeue_stuck",
            sourceVersionId=source_version_id,
            stuckMinutes=stuck_minutes,
            runId=run_id,
        )
        return int(data.get("requeued", 0) or 0)

    async def verify(self, source_version_id: str, scope_plan: ScopePlan | None) -> Verification:
        """Check cross-unit continuity of the rewritten units."""
        data = await self.call(
            "verify",
            sourceVersionId=source_version_id,
            scopePlan=scope_plan.model_dump(mode="json") if scope_plan else None,
        )
        return self._parse(Verification, data, "verify")

    async def assemble(
        self,
        run_id: str,
        source_id: str,
        source_version_id: str,
        provenance: Provenance,
    ) -> AssembleResult:
        """Build the final artifact from completed units."""
        data = await self.call(
            "assemble",
            runId=run_id,
            sourceId=source_id,
            sourceVersionId=source_version_id,
            provenance=provenance.model_dump(mode="json"),
        )
        return self._parse(AssembleResult, data, "assemble")

    async def active_run_lookup(self, source_id: str, source_version_id: str) -> str | None:
        """Find the active run for a source version, if any."""
        data = await self.call(
            "active_run_lookup",
            sourceId=source_id,
            sourceVersionId=source_version_id,
        )
        run_id = data.get("runId") or data.get("run_id")
        return str(run_id) if run_id else None

    async def preview(
        self,
        run_id: str | None,
        source_version_id: str,
        max_chars: int = 8000,
    ) -> PreviewResult:
        """Fetch the concatenated text of the units rewritten so far."""
        data = await self.call(
            "preview",
            runId=run_id,
            sourceVersionId=source_version_id,
            maxChars=max_chars,
        )
        return self._parse(PreviewResult, data, "preview")
