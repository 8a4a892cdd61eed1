class DomainError(Exception):
    """Base exception for business rule violations."""


class ValidationError(DomainError):
    """Raised when input data is invalid or violates domain rules."""


class AuthenticationError(DomainError):
    """Raised when the request carries no usable session."""


class AuthorizationError(DomainError):
    """Raised when a user lacks permission for an action."""


class NotFoundError(DomainError):
    """Raised when a record does not exist for the caller's company."""


class ConcurrentUpdateError(DomainError):
    """Raised when a versioned row changed between read and write."""


class BillingError(DomainError):
    """Base for errors raised by the billing computations."""


class InvalidRangeError(BillingError):
    """Out-of-domain numeric input (negative amount, days outside 0..30)."""


class UnsupportedCycleError(BillingError):
    """Unknown billing cycle value."""


class InconsistentBillingStateError(BillingError):
    """Overlapping or contradictory line-item history for a service."""


class TransitionError(BillingError):
    """Illegal invoice state-machine move."""


class CannotCancelPaidInvoiceError(TransitionError):
    """Cancel requested on an invoice that is paid or has payments recorded."""


class InsufficientLineItemsError(TransitionError):
    """Send requested on an invoice without line items."""
