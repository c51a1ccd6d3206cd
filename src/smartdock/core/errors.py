"""Error taxonomy shared by the SmartDock core.

Every error raised by a core operation derives from ``SmartDockError`` so the
operator surface can map the whole hierarchy to responses in one place.
"""

from typing import Any, Optional


class SmartDockError(Exception):
    """Base class for all SmartDock errors."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(SmartDockError):
    """Input rejected synchronously; nothing was mutated."""

    status_code = 422


class InvalidScheduleError(ValidationError):
    """Cron expression could not be parsed."""

    def __init__(self, expression: str, reason: str = ""):
        message = f"Invalid cron expression: {expression!r}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)
        self.expression = expression


class DuplicateRuleError(ValidationError):
    """A different rule already serves the same subdomain and domain."""

    status_code = 409

    def __init__(self, host: str, existing_id: str):
        super().__init__(f"A proxy rule for {host} already exists ({existing_id})")
        self.host = host
        self.existing_id = existing_id


class NotFoundError(SmartDockError):
    """Referenced entity does not exist."""

    status_code = 404


class TargetNotFoundError(NotFoundError):
    """No workload matches a wake-up identifier."""

    def __init__(self, identifier: str):
        super().__init__(f"No container found for {identifier!r}")
        self.identifier = identifier


class ProtectedRuleError(SmartDockError):
    """Auto-generated rules are owned by their workload."""

    status_code = 403


class AdapterError(SmartDockError):
    """The container runtime rejected or failed a call."""

    status_code = 502


class CompilationError(SmartDockError):
    """A single proxy rule could not be rendered."""

    status_code = 422

    def __init__(self, rule_id: str, reason: str):
        super().__init__(f"Rule {rule_id}: {reason}")
        self.rule_id = rule_id
        self.reason = reason


class WakeError(SmartDockError):
    """A wake-up session ended in the failed state."""

    status_code = 502

    def __init__(self, message: str, outcome: Optional[Any] = None):
        super().__init__(message)
        self.outcome = outcome


class WakeTimeoutError(WakeError, TimeoutError):
    """Workload did not become ready within the session timeout."""

    status_code = 504


class HealthCheckError(WakeError):
    """Too many consecutive readiness checks failed."""


class WakeCancelledError(WakeError):
    """The caller abandoned the session."""

    status_code = 499
