"""Domain layer — pure business logic with zero framework dependencies."""

from vehicle_escrow.domain.collaborators import (
    AnchorReceipt,
    AnchorService,
    AttestationSource,
    StatusNotifier,
    VehicleAttestationSnapshot,
)
from vehicle_escrow.domain.enums import (
    EscrowStatus,
    EventType,
    ParticipantRole,
    PurchaseStatus,
    RespondAction,
)
from vehicle_escrow.domain.exceptions import (
    InvalidTransitionError,
    MarketplaceError,
    PurchaseRequestNotFoundError,
)
from vehicle_escrow.domain.state_machine import (
    PurchaseStateMachine,
    validate_transition,
)
from vehicle_escrow.domain.verification import (
    VerificationPolicy,
    VerificationResult,
    evaluate_vehicle,
)

__all__ = [
    "AnchorReceipt",
    "AnchorService",
    "AttestationSource",
    "StatusNotifier",
    "VehicleAttestationSnapshot",
    "EscrowStatus",
    "EventType",
    "ParticipantRole",
    "PurchaseStatus",
    "RespondAction",
    "InvalidTransitionError",
    "MarketplaceError",
    "PurchaseRequestNotFoundError",
    "PurchaseStateMachine",
    "validate_transition",
    "VerificationPolicy",
    "VerificationResult",
    "evaluate_vehicle",
]
