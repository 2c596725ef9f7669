"""
Subscription automation exceptions.

Raised inside the services and converted to ``AdminActionResult`` at the
manual-action boundary. Sweeps never let them escape.
"""

from typing import Any


class SubscriptionAutomationError(Exception):
    """
    Base automation error with context.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code
        status_code: HTTP-style status code for callers that expose one
        context: Additional context data about the error
        recovery_hint: Suggested action to resolve the error
    """

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        status_code: int = 400,
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        self.message = message
        self.error_code = error_code or "SUBSCRIPTION_AUTOMATION_ERROR"
        self.status_code = status_code
        self.context = context or {}
        self.recovery_hint = recovery_hint
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "status_code": self.status_code,
            "context": self.context,
            "recovery_hint": self.recovery_hint,
        }


class ResourceNotFoundError(SubscriptionAutomationError):
    """A referenced row does not exist."""


class SubscriptionNotFoundError(ResourceNotFoundError):
    """Subscription not found error."""

    def __init__(self, subscription_id: Any) -> None:
        super().__init__(
            f"Subscription {subscription_id} not found",
            "SUBSCRIPTION_NOT_FOUND",
            status_code=404,
            context={"subscription_id": str(subscription_id)},
            recovery_hint="Verify the subscription ID and ensure it exists",
        )


class GracePeriodNotFoundError(ResourceNotFoundError):
    """Grace period not found error."""

    def __init__(self, grace_period_id: Any) -> None:
        super().__init__(
            f"Grace period {grace_period_id} not found",
            "GRACE_PERIOD_NOT_FOUND",
            status_code=404,
            context={"grace_period_id": str(grace_period_id)},
        )


class PlanNotFoundError(ResourceNotFoundError):
    """Subscription plan not found error."""

    def __init__(self, plan_id: Any) -> None:
        super().__init__(
            f"Plan {plan_id} not found",
            "PLAN_NOT_FOUND",
            status_code=404,
            context={"plan_id": str(plan_id)},
            recovery_hint="Verify the plan ID against the plan catalogue",
        )


class InvalidStateError(SubscriptionAutomationError):
    """Operation not allowed in the current state."""

    def __init__(
        self,
        message: str,
        error_code: str = "INVALID_STATE",
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        super().__init__(
            message,
            error_code,
            status_code=409,
            context=context,
            recovery_hint=recovery_hint,
        )


class InvalidSubscriptionStateError(InvalidStateError):
    """Subscription is not in a state that allows the operation."""

    def __init__(self, message: str, current_state: str, required: str | None = None) -> None:
        context = {"current_state": current_state}
        if required:
            context["required_state"] = required
        super().__init__(
            message,
            "INVALID_SUBSCRIPTION_STATE",
            context=context,
            recovery_hint="Check the subscription status first",
        )


class InvalidGracePeriodStateError(InvalidStateError):
    """Grace period is not in a state that allows the operation."""

    def __init__(self, message: str, current_state: str) -> None:
        super().__init__(
            message,
            "INVALID_GRACE_PERIOD_STATE",
            context={"current_state": current_state},
        )


class InvalidActionArgumentError(InvalidStateError):
    """Arguments rejected before touching the store (e.g. non-positive day counts)."""

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message, "INVALID_ARGUMENT", context=context)


__all__ = [
    "SubscriptionAutomationError",
    "ResourceNotFoundError",
    "SubscriptionNotFoundError",
    "GracePeriodNotFoundError",
    "PlanNotFoundError",
    "InvalidStateError",
    "InvalidSubscriptionStateError",
    "InvalidGracePeriodStateError",
    "InvalidActionArgumentError",
]
