"""NFC-e Kernkomponenten: Nummernkreis, Session-Cache, SOAP-Dialekte und Auswertung."""

from .classifier import classify
from .dialects import DEFAULT_REGISTRY, DialectConfig, DialectRegistry
from .dispatcher import AuthorityDispatcher, unwrap_response
from .dto import (
    Allocation,
    Credential,
    Environment,
    NumberingKey,
    NumberingStats,
    Operation,
    OutcomeRecord,
    OutcomeStatus,
)
from .errors import (
    AllocationExhausted,
    AuthorityRejection,
    LedgerConflictError,
    NfceError,
    ParserError,
    SessionConstructionError,
    SoapFaultError,
    TransportError,
    UnsupportedJurisdictionError,
    ValidationError,
)
from .ledger import LedgerStore
from .numbering import SequenceAllocator, generate_confirmation_code
from .recovery import FailureKind, RecoveryCoordinator, classify_failure
from .service import ReceiptService
from .session_cache import SessionCache
from .sessions import AuthoritySession, Signer, SignerFactory
from .stammdaten import SellerDirectory, SellerProfile

__all__ = [
    "classify",
    "DEFAULT_REGISTRY",
    "DialectConfig",
    "DialectRegistry",
    "AuthorityDispatcher",
    "unwrap_response",
    "Allocation",
    "Credential",
    "Environment",
    "NumberingKey",
    "NumberingStats",
    "Operation",
    "OutcomeRecord",
    "OutcomeStatus",
    "AllocationExhausted",
    "AuthorityRejection",
    "NfceError",
    "LedgerConflictError",
    "ParserError",
    "SessionConstructionError",
    "SoapFaultError",
    "TransportError",
    "UnsupportedJurisdictionError",
    "ValidationError",
    "LedgerStore",
    "SequenceAllocator",
    "generate_confirmation_code",
    "FailureKind",
    "RecoveryCoordinator",
    "classify_failure",
    "ReceiptService",
    "SessionCache",
    "AuthoritySession",
    "Signer",
    "SignerFactory",
    "SellerDirectory",
    "SellerProfile",
]
