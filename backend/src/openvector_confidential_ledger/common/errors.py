"""Error taxonomy of the confidential ledger engine.

Every error is raised to the caller. The engine never converts an authorization
failure into a default value or a masked plaintext.
"""

from __future__ import annotations


class LedgerError(Exception):
    """Base class for all errors raised by the confidential ledger engine."""

    def __init__(self, message: str) -> None:
        """The constructor for the LedgerError class.

        Args:
            message: The message to display when the exception is raised.
        """
        super().__init__(message)


class TypeMismatch(LedgerError):
    """Raised when operand types or integer widths do not match."""

    pass


class UnknownField(LedgerError):
    """Raised when a field is not declared in the record's schema."""

    pass


class MissingField(LedgerError):
    """Raised when a required input field is absent from a new record."""

    pass


class NotFound(LedgerError):
    """Raised when a record, field, or disclosure request does not exist."""

    pass


class Unauthorized(LedgerError):
    """Raised when a principal is not allowed to perform an action."""

    pass


class PermissionDenied(LedgerError):
    """Raised when a disclosure is attempted without a sufficient grant."""

    pass


class InvalidTransition(LedgerError):
    """Raised when a lifecycle or threshold state transition is not allowed."""

    pass


class AlreadyAssigned(InvalidTransition):
    """Raised when assigning a record that already has an assignee."""

    pass


class AssignmentRejected(InvalidTransition):
    """Raised when the disclosed acceptance decision for a candidate is false."""

    pass


class DuplicateVote(LedgerError):
    """Raised when a principal votes twice on the same disclosure request."""

    pass


class BackendFailure(LedgerError):
    """Raised when the cryptographic backend fails.

    Fatal for the enclosing operation. Never retried by the engine.
    """

    pass


class FailedTransfer(LedgerError):
    """Raised when the payment collaborator fails to execute a transfer."""

    pass


class TransferPending(FailedTransfer):
    """Raised when a transfer was submitted but its outcome is not known yet.

    Resending it could pay twice, the payment gateway confirms it by
    reference instead.
    """

    reference: str

    def __init__(self, message: str, reference: str) -> None:
        super().__init__(message)
        self.reference = reference
