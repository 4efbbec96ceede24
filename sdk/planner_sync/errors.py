"""
Error types for the Event Planner sync SDK.

This module defines all exception types raised by the SDK:
- PlannerSyncError: Base exception
- NotAuthenticatedError: No signed-in user
- ValidationError: Input rejected before any network call
- RemoteWriteError: Backend rejected or failed a write
- RemoteReadError: A one-shot get or query failed
- PartialBatchError: Multi-collection operation stopped part way
- SubscriptionError: A live listener failed

Invariants:
    - All errors inherit from PlannerSyncError
    - Errors include context for debugging
    - Store operations log and swallow remote failures; only
      ValidationError reaches the caller of a mutation
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class PlannerSyncError(Exception):
    """Base exception for all SDK errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "PLANNER_SYNC_ERROR"
        self.details = details or {}


class NotAuthenticatedError(PlannerSyncError):
    """An operation needed a signed-in user and there was none."""

    def __init__(self, message: str = "No authenticated user") -> None:
        super().__init__(message, code="NOT_AUTHENTICATED")


class ValidationError(PlannerSyncError):
    """Input validation failed.

    Raised when:
    - An amount is not a number, is NaN or infinite, or is negative
    - A required text field is empty
    - A headcount is not positive
    """

    def __init__(
        self,
        message: str,
        field_name: Optional[str] = None,
        errors: Optional[List[str]] = None,
    ) -> None:
        super().__init__(
            message,
            code="VALIDATION_ERROR",
            details={"field": field_name, "errors": errors or []},
        )
        self.field_name = field_name
        self.errors = errors or []


class RemoteWriteError(PlannerSyncError):
    """The remote collection client rejected a write.

    Raised when:
    - Permission is denied
    - The client is disconnected
    - A document cannot be encoded
    - A batch spans more than one collection
    """

    def __init__(
        self,
        message: str,
        collection: Optional[str] = None,
        doc_id: Optional[str] = None,
    ) -> None:
        super().__init__(
            message,
            code="REMOTE_WRITE_ERROR",
            details={"collection": collection, "doc_id": doc_id},
        )
        self.collection = collection
        self.doc_id = doc_id


class RemoteReadError(PlannerSyncError):
    """A one-shot get or query against the remote collections failed."""

    def __init__(self, message: str, collection: Optional[str] = None) -> None:
        super().__init__(
            message,
            code="REMOTE_READ_ERROR",
            details={"collection": collection},
        )
        self.collection = collection


class PartialBatchError(PlannerSyncError):
    """A multi-collection operation failed after some steps committed.

    Attributes:
        operation: Name of the multi-step operation
        failed_step: Step that failed
        completed_steps: Steps that had committed before the failure
        compensation_failures: Steps whose compensating action also failed
    """

    def __init__(
        self,
        operation: str,
        failed_step: str,
        completed_steps: Optional[List[str]] = None,
        compensation_failures: Optional[List[str]] = None,
    ) -> None:
        completed_steps = completed_steps or []
        compensation_failures = compensation_failures or []
        super().__init__(
            f"{operation} failed at step '{failed_step}'",
            code="PARTIAL_BATCH",
            details={
                "operation": operation,
                "failed_step": failed_step,
                "completed_steps": completed_steps,
                "compensation_failures": compensation_failures,
            },
        )
        self.operation = operation
        self.failed_step = failed_step
        self.completed_steps = completed_steps
        self.compensation_failures = compensation_failures


class SubscriptionError(PlannerSyncError):
    """A live subscription failed."""

    def __init__(self, message: str, collection: Optional[str] = None) -> None:
        super().__init__(
            message,
            code="SUBSCRIPTION_ERROR",
            details={"collection": collection},
        )
        self.collection = collection
