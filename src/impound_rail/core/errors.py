"""
Error Taxonomy

Every failure the fee/payment core can report. Callers distinguish hard
rejections (ValidationError, NotFoundError) from success-equivalent outcomes
(DuplicateReference) and non-fatal downstream failures (DownstreamNotifyError).
"""

from typing import Any, Optional


class ImpoundRailError(Exception):
    """Base class for all domain errors."""
    pass


class ValidationError(ImpoundRailError):
    """Malformed amount, category, method, status or timestamp."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class InvalidTransition(ValidationError):
    """A vehicle status change absent from the transition table."""

    def __init__(self, current: Any, target: Any):
        super().__init__(
            f"Transition {getattr(current, 'value', current)} -> "
            f"{getattr(target, 'value', target)} is not allowed",
            field="status",
        )
        self.current = current
        self.target = target


class NotFoundError(ImpoundRailError):
    """Unknown vehicle, payment or receipt reference."""

    def __init__(self, kind: str, reference: Any):
        super().__init__(f"{kind} not found: {reference}")
        self.kind = kind
        self.reference = reference


class DuplicateReference(ImpoundRailError):
    """
    Replayed external callback.

    Carries the PaymentRecord created by the first delivery so callers can
    answer with it instead of failing.
    """

    def __init__(self, external_reference: str, existing: Any = None):
        super().__init__(f"External reference already recorded: {external_reference}")
        self.external_reference = external_reference
        self.existing = existing


class RenderError(ImpoundRailError):
    """Receipt artifact could not be produced."""
    pass


class DownstreamNotifyError(ImpoundRailError):
    """Notifier collaborator failed. Never propagates past reconciliation."""
    pass
