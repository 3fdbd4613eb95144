"""
Volume engine error taxonomy.

Every error carries a stable ``reason`` code (surfaced in workload status and
over HTTP) and a ``retryable`` flag that the reconciliation loop uses to pick
between waiting with backoff and failing the bind outright.
"""

from typing import Any, Dict, Optional


class VolumeEngineError(Exception):
    """Base class for all engine errors."""

    reason = "VolumeEngineError"
    retryable = False

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reason": self.reason,
            "message": self.message,
            "retryable": self.retryable,
            "details": {k: str(v) for k, v in self.details.items()},
        }


class InvalidVolumeSpecError(VolumeEngineError, ValueError):
    reason = "InvalidVolumeSpec"


class TypeMismatchError(VolumeEngineError):
    """Existing path has a different kind than declared. Never auto-resolved."""

    reason = "TypeMismatch"

    def __init__(self, path: str, required_kind: Any, actual_kind: Any):
        required = getattr(required_kind, "value", required_kind)
        actual = getattr(actual_kind, "value", actual_kind)
        super().__init__(
            f"path {path} is a {actual}, expected {required}",
            path=path,
            required_kind=required,
            actual_kind=actual,
        )
        self.path = path
        self.required_kind = required_kind
        self.actual_kind = actual_kind


class MissingAndNotCreatableError(VolumeEngineError):
    """Path is absent and its declared type does not allow creation.

    Resolvable once the path appears, so the loop keeps waiting on it.
    """

    reason = "MissingAndNotCreatable"
    retryable = True


class PathPermissionDeniedError(VolumeEngineError):
    reason = "PermissionDenied"
    retryable = True


class ConflictingBindingError(VolumeEngineError):
    reason = "ConflictingBinding"


class PropagationNotPermittedError(VolumeEngineError):
    reason = "PropagationNotPermitted"


class ReconcileError(VolumeEngineError):
    reason = "ReconcileError"
    retryable = True


class BlockingCallTimeoutError(ReconcileError):
    reason = "BlockingCallTimeout"


class BackendUnavailableError(VolumeEngineError):
    reason = "BackendUnavailable"
    retryable = True


class HandshakeError(VolumeEngineError):
    """Backend-scoped; never fails binds that do not depend on the backend."""

    reason = "HandshakeFailed"


class HandshakeTimeoutError(HandshakeError):
    reason = "HandshakeTimeout"


class HeartbeatMissedError(VolumeEngineError):
    reason = "HeartbeatMissed"


class InvalidTransitionError(VolumeEngineError):
    reason = "InvalidTransition"

    def __init__(self, subject: str, current: Any, target: Any):
        current_value = getattr(current, "value", current)
        target_value = getattr(target, "value", target)
        super().__init__(
            f"{subject}: illegal transition {current_value} -> {target_value}",
            current=current_value,
            target=target_value,
        )


def error_reason(exc: Optional[BaseException]) -> Optional[str]:
    if exc is None:
        return None
    return getattr(exc, "reason", type(exc).__name__)


def http_status_for(exc: VolumeEngineError) -> int:
    """HTTP status used by the API routers for an engine error."""
    if isinstance(exc, InvalidVolumeSpecError):
        return 422
    if isinstance(exc, (ConflictingBindingError, TypeMismatchError, PropagationNotPermittedError)):
        return 409
    if exc.retryable:
        return 503
    return 500
