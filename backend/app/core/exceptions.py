# backend/app/core/exceptions.py
"""
Domain-specific exceptions for the Smiling Steps platform.

These exceptions provide clear, business-focused error messages
that can be caught and handled appropriately at the API layer.

Validation errors (InvalidStateValue, InvalidTransition, PreconditionNotMet)
are always caller-correctable and never retried. Transient infrastructure
errors (StorageUnavailableError, NotificationTemporaryError) are retried
with backoff and then queued.
"""

from typing import Any, Dict, Iterable, Mapping, Optional

from fastapi import HTTPException, status

HTTP_422_UNPROCESSABLE: int = getattr(status, "HTTP_422_UNPROCESSABLE_CONTENT", 422)


class DomainException(Exception):
    """Base exception for all domain-specific errors."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)

    def to_http_exception(self) -> HTTPException:
        """Convert to an HTTPException using the class status code."""
        return HTTPException(
            status_code=self.status_code,
            detail={
                "message": self.message,
                "code": self.code,
                "details": self.details,
            },
        )


class ValidationException(DomainException):
    """Raised when business validation fails."""

    status_code = status.HTTP_400_BAD_REQUEST


class NotFoundException(DomainException):
    """Raised when a requested resource is not found."""

    status_code = status.HTTP_404_NOT_FOUND


class ConflictException(DomainException):
    """Raised when there's a conflict with existing data."""

    status_code = status.HTTP_409_CONFLICT


class BusinessRuleException(DomainException):
    """Raised when a business rule is violated."""

    status_code = HTTP_422_UNPROCESSABLE


class ForbiddenException(DomainException):
    """Raised when the caller lacks permission for an action."""

    status_code = status.HTTP_403_FORBIDDEN


class ServiceException(DomainException):
    """Raised when a service operation fails."""


# Transition validation


class InvalidStateValue(ValidationException):
    """A state is not a member of the entity's state table."""

    def __init__(self, entity_type: str, which: str, value: Any) -> None:
        super().__init__(
            message=f"Invalid {which} {entity_type} state: {value}",
            code="INVALID_STATE_VALUE",
            details={"entity_type": entity_type, "which": which, "value": value},
        )
        self.entity_type = entity_type
        self.which = which
        self.value = value


class InvalidTransition(ConflictException):
    """The state table does not allow moving from current to new state."""

    def __init__(
        self,
        entity_type: str,
        current_state: str,
        new_state: str,
        allowed: Iterable[str] = (),
        context: Optional[Mapping[str, Any]] = None,
        reason: Optional[str] = None,
    ) -> None:
        allowed_list = sorted(allowed)
        message = (
            f"Forbidden {entity_type} transition: {current_state} -> {new_state}. "
            f"Allowed transitions: [{', '.join(allowed_list)}]"
        )
        if reason:
            message = f"{message}. Reason: {reason}"
        super().__init__(
            message=message,
            code="INVALID_TRANSITION",
            details={
                "entity_type": entity_type,
                "current_state": current_state,
                "new_state": new_state,
                "allowed": allowed_list,
                "context": dict(context) if context else None,
                "reason": reason,
            },
        )
        self.entity_type = entity_type
        self.current_state = current_state
        self.new_state = new_state
        self.allowed = allowed_list
        self.context = dict(context) if context else None


class PreconditionNotMet(BusinessRuleException):
    """A cross-entity precondition for an otherwise legal transition failed."""

    def __init__(
        self,
        entity_type: str,
        current_state: str,
        new_state: str,
        failed: Iterable[str],
        context: Optional[Mapping[str, Any]] = None,
    ) -> None:
        failed_list = list(failed)
        super().__init__(
            message=(
                f"Precondition not met for {entity_type} transition "
                f"{current_state} -> {new_state}: {', '.join(failed_list)}"
            ),
            code="PRECONDITION_NOT_MET",
            details={
                "entity_type": entity_type,
                "current_state": current_state,
                "new_state": new_state,
                "failed_preconditions": failed_list,
                "context": dict(context) if context else None,
            },
        )
        self.entity_type = entity_type
        self.current_state = current_state
        self.new_state = new_state
        self.failed = failed_list


class StateSyncViolation(ConflictException):
    """Payment, session and video states that must not coexist."""

    def __init__(self, left: str, right: str, allowed: Iterable[str], pair: str) -> None:
        allowed_list = sorted(allowed)
        super().__init__(
            message=(
                f"{pair} sync violation: {left} with {right}. "
                f"Allowed: [{', '.join(allowed_list)}]"
            ),
            code="STATE_SYNC_VIOLATION",
            details={"pair": pair, "left": left, "right": right, "allowed": allowed_list},
        )


class IntegrityConfigLockedError(ForbiddenException):
    """Raised when an unauthorized context tries to change the enforcement level."""

    def __init__(self, changed_by: str, auth_context: Mapping[str, Any]) -> None:
        super().__init__(
            message=(
                "Integrity config locked: only admin, emergency, or startup contexts can "
                f"change the enforcement level (attempted by {changed_by})"
            ),
            code="INTEGRITY_CONFIG_LOCKED",
            details={"changed_by": changed_by, "auth_context": dict(auth_context)},
        )


# Infrastructure


class RepositoryException(Exception):
    """
    Exception raised for repository layer errors.

    This exception is used when data access operations fail,
    such as query failures or constraint violations.
    """


class StorageUnavailableError(RepositoryException):
    """
    The entity store could not be reached.

    Distinct from other repository errors so recovery can decide to
    queue the operation rather than fail fast.
    """


class NotificationTemporaryError(RuntimeError):
    """Transient notification channel failure; safe to retry."""


class NotificationPermanentError(RuntimeError):
    """Permanent rejection (e.g. invalid address); never retried."""


def is_transient_failure(exc: BaseException) -> bool:
    """Return True when an error should be retried and, if still failing, queued."""
    return isinstance(
        exc,
        (StorageUnavailableError, NotificationTemporaryError, ConnectionError, TimeoutError),
    )
