"""
Error taxonomy for the Luna assistant engine.

Defines hierarchical exceptions with standardized attributes for consistent
error handling, logging, and recovery into assistant messages.

Each error class implements:
- code: String identifier for the error type
- message: Human-readable description
- context: Dict containing additional contextual information
- retry_hint: Boolean indicating if retry might succeed
"""
from __future__ import annotations
from typing import Any


class LunaError(Exception):
    """Base exception for all Luna errors."""

    def __init__(
        self,
        message: str,
        *,
        code: str = "UNKNOWN_ERROR",
        context: dict[str, Any] | None = None,
        retry_hint: bool = False,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.context = dict(context) if context else {}
        self.retry_hint = retry_hint

    def to_dict(self) -> dict[str, Any]:
        """Serialize to structured dict."""
        return {
            "code": self.code,
            "message": self.message,
            "context": dict(self.context),
            "retry_hint": self.retry_hint,
        }


class ResolverError(LunaError):
    """Intent resolver unreachable or failed to produce an outcome."""

    def __init__(
        self,
        message: str,
        *,
        resolver: str = "unknown",
        code: str = "RESOLVER_ERROR",
        context: dict[str, Any] | None = None,
        retry_hint: bool = True,
    ) -> None:
        ctx = dict(context) if context else {}
        ctx["resolver"] = resolver
        super().__init__(message, code=code, context=ctx, retry_hint=retry_hint)


class ExecutionError(LunaError):
    """Domain API rejected or failed a confirmed action."""

    def __init__(
        self,
        message: str,
        *,
        action_type: str = "unknown",
        code: str = "EXECUTION_ERROR",
        context: dict[str, Any] | None = None,
        retry_hint: bool = True,
    ) -> None:
        ctx = dict(context) if context else {}
        ctx["action_type"] = action_type
        super().__init__(message, code=code, context=ctx, retry_hint=retry_hint)


class InvalidTransitionError(LunaError):
    """Illegal action status transition."""

    def __init__(
        self,
        message: str,
        *,
        code: str = "INVALID_TRANSITION",
        context: dict[str, Any] | None = None,
        retry_hint: bool = False,
    ) -> None:
        super().__init__(message, code=code, context=context, retry_hint=retry_hint)


class SessionNotFoundError(LunaError):
    """Session id unknown to the store or never issued by the host."""

    def __init__(
        self,
        message: str,
        *,
        session_id: str | None = None,
        code: str = "SESSION_NOT_FOUND",
        context: dict[str, Any] | None = None,
        retry_hint: bool = False,
    ) -> None:
        ctx = dict(context) if context else {}
        ctx["session_id"] = session_id
        super().__init__(message, code=code, context=ctx, retry_hint=retry_hint)
