"""Dual-party signing workflow: tokens, ledger, reconciliation, deal stages."""

from countersign.domain.signing.ledger import (
    DealSigningState,
    SignatureLedger,
    SignerIdentity,
    SigningProof,
)
from countersign.domain.signing.reconciler import (
    ConsensusReconciler,
    ReconciliationOutcome,
    ReconciliationResult,
)
from countersign.domain.signing.stage_machine import ALLOWED_TRANSITIONS, DealStageMachine
from countersign.domain.signing.tokens import IssuedToken, TokenContext, TokenLifecycleManager
from countersign.domain.signing.workflow import (
    RedemptionResult,
    SignatureStatus,
    SigningLinkPreview,
    SigningWorkflowService,
)

__all__ = [
    "ALLOWED_TRANSITIONS",
    "ConsensusReconciler",
    "DealSigningState",
    "DealStageMachine",
    "IssuedToken",
    "ReconciliationOutcome",
    "ReconciliationResult",
    "RedemptionResult",
    "SignatureLedger",
    "SignatureStatus",
    "SignerIdentity",
    "SigningLinkPreview",
    "SigningProof",
    "SigningWorkflowService",
    "TokenContext",
    "TokenLifecycleManager",
]
