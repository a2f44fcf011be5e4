"""
rewriteflow engine client.

Async RPC wrapper around the remote rewrite engine and its error
hierarchy. Every error class carries an ErrorCategory that tells the
orchestrator whether to abort, count a failed iteration, or stop and
notify the user.
"""

from rewriteflow.engine.client import (
    CREDITS_EXHAUSTED_MESSAGE,
    IDEMPOTENT_ACTIONS,
    RATE_LIMITED_MESSAGE,
    AuthenticationError,
    CreditsExhaustedError,
    EngineClient,
    EngineConnectionError,
    EngineError,
    EngineRequestError,
    EngineServerError,
    EngineTimeoutError,
    InvalidResponseError,
    RateLimitError,
)

__all__ = [
    # Client
    "EngineClient",
    "IDEMPOTENT_ACTIONS",
    # Errors
    "EngineError",
    "AuthenticationError",
    "CreditsExhaustedError",
    "RateLimitError",
    "EngineTimeoutError",
    "EngineConnectionError",
    "InvalidResponseError",
    "EngineServerError",
    "EngineRequestError",
    # Messages
    "CREDITS_EXHAUSTED_MESSAGE",
    "RATE_LIMITED_MESSAGE",
]
