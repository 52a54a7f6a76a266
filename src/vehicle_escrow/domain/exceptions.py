"""Domain exceptions for the vehicle resale escrow service.

Every failure a core operation can report is one of these. Each carries a
stable ``code`` that the API layer's middleware turns into a JSON error body;
collaborator-specific exceptions never leave the service layer.
"""


class MarketplaceError(Exception):
    """Base exception for all domain errors."""

    def __init__(self, message: str, code: str = "MARKETPLACE_ERROR") -> None:
        self.message = message
        self.code = code
        super().__init__(self.message)


# --- Lookup ---


class PurchaseRequestNotFoundError(MarketplaceError):
    """Raised when a purchase request ID does not exist."""

    def __init__(self, purchase_request_id: str) -> None:
        super().__init__(
            message=f"Purchase request not found: {purchase_request_id}",
            code="PURCHASE_REQUEST_NOT_FOUND",
        )
        self.purchase_request_id = purchase_request_id


# --- State machine ---


class InvalidTransitionError(MarketplaceError):
    """Raised when an action is not legal from the current status.

    Example: pending_seller --fund_escrow--> (must be accepted first)
    """

    def __init__(self, current_status: str, attempted_event: str) -> None:
        super().__init__(
            message=f"Invalid transition: '{attempted_event}' is not allowed from {current_status}",
            code="INVALID_TRANSITION",
        )
        self.current_status = current_status
        self.attempted_event = attempted_event


class ForbiddenError(MarketplaceError):
    """Raised when the actor is not the party authorized for an action."""

    def __init__(self, actor_id: str, action: str, required_role: str) -> None:
        super().__init__(
            message=f"Only the {required_role} can {action}",
            code="FORBIDDEN",
        )
        self.actor_id = actor_id
        self.action = action
        self.required_role = required_role


class InvalidPriceError(MarketplaceError):
    """Raised when an offered or counter price is missing or not positive."""

    def __init__(self, field_name: str, value: object) -> None:
        super().__init__(
            message=f"{field_name} must be a positive amount, got {value!r}",
            code="INVALID_PRICE",
        )


class SelfPurchaseError(MarketplaceError):
    """Raised when a buyer tries to purchase their own listing."""

    def __init__(self, user_id: str) -> None:
        super().__init__(
            message=f"User {user_id} cannot purchase their own vehicle",
            code="SELF_PURCHASE",
        )


class DuplicateActiveRequestError(MarketplaceError):
    """Raised when a buyer already has an open request for the same vehicle."""

    def __init__(self, vehicle_id: str, buyer_id: str) -> None:
        super().__init__(
            message=f"Buyer {buyer_id} already has an active purchase request for vehicle {vehicle_id}",
            code="DUPLICATE_ACTIVE_REQUEST",
        )


# --- Escrow ---


class AmountMismatchError(MarketplaceError):
    """Raised when a funding amount differs from the agreed price."""

    def __init__(self, expected: str, received: str) -> None:
        super().__init__(
            message=f"Funding amount {received} does not match agreed price {expected}",
            code="AMOUNT_MISMATCH",
        )
        self.expected = expected
        self.received = received


class AlreadyFundedError(MarketplaceError):
    """Raised when a different funding reference targets an existing escrow."""

    def __init__(self, purchase_request_id: str) -> None:
        super().__init__(
            message=f"Escrow already funded for purchase request {purchase_request_id}",
            code="ALREADY_FUNDED",
        )


class FundingReferenceConflictError(MarketplaceError):
    """Raised when a funding reference is already attached to another request's escrow."""

    def __init__(self, funding_reference: str) -> None:
        super().__init__(
            message=f"Funding reference {funding_reference} is already in use",
            code="FUNDING_REFERENCE_CONFLICT",
        )


class InvalidEscrowStateError(MarketplaceError):
    """Raised when an escrow operation finds the escrow in the wrong state.

    This indicates an internal invariant violation rather than a user error.
    """

    def __init__(self, purchase_request_id: str, current: str | None, operation: str) -> None:
        super().__init__(
            message=(
                f"Cannot {operation} escrow for purchase request {purchase_request_id}: "
                f"escrow is {current or 'missing'}"
            ),
            code="INVALID_ESCROW_STATE",
        )
        self.current = current


# --- Collaborator failures ---


class VerificationUnavailableError(MarketplaceError):
    """Raised when the attestation snapshot could not be read (error or timeout)."""

    def __init__(self, vehicle_id: str, reason: str) -> None:
        super().__init__(
            message=f"Verification unavailable for vehicle {vehicle_id}: {reason}",
            code="VERIFICATION_UNAVAILABLE",
        )


class VerificationAttemptsExhaustedError(MarketplaceError):
    """Raised when the verification retry budget has been used up."""

    def __init__(self, purchase_request_id: str, attempts: int) -> None:
        super().__init__(
            message=(
                f"Verification attempts exhausted for purchase request "
                f"{purchase_request_id} ({attempts} runs); cancel the request to refund"
            ),
            code="VERIFICATION_ATTEMPTS_EXHAUSTED",
        )
        self.attempts = attempts


class TransferFailedError(MarketplaceError):
    """Raised when any ownership transfer step fails. The request stays transfer_pending."""

    def __init__(self, purchase_request_id: str, step: str, reason: str) -> None:
        super().__init__(
            message=f"Ownership transfer failed at step '{step}' for {purchase_request_id}: {reason}",
            code="TRANSFER_FAILED",
        )
        self.step = step
