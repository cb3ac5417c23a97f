import logging

from .clock import DailyClock
from .engine import KeyPoolEngine
from .error_tracker import ErrorTracker
from .errors import (
    CredentialNotFoundError,
    DuplicateCredentialError,
    InvalidQuotaError,
    KeyPoolError,
    ModelNotFoundError,
)
from .gateway import resolve_base_url
from .key_pool import KeyPool
from .model_config import ModelRegistry
from .persistence import JsonFilePersistence, NullPersistence, PersistenceBackend
from .quota_tracker import QuotaTracker
from .rotation import RotationCursor
from .types import (
    CategoryQuotas,
    Credential,
    ErrorState,
    LimitResult,
    ModelCategory,
    ModelConfig,
    Mutation,
    MutationKind,
    Outcome,
    OutcomeKind,
    QuotaDecision,
    Reservation,
)

lib_logger = logging.getLogger("keypool_library")
if not lib_logger.handlers:
    lib_logger.addHandler(logging.NullHandler())

__all__ = [
    "KeyPoolEngine",
    "KeyPool",
    "QuotaTracker",
    "ErrorTracker",
    "ModelRegistry",
    "RotationCursor",
    "DailyClock",
    "resolve_base_url",
    "PersistenceBackend",
    "NullPersistence",
    "JsonFilePersistence",
    "Credential",
    "ErrorState",
    "ModelCategory",
    "ModelConfig",
    "CategoryQuotas",
    "LimitResult",
    "QuotaDecision",
    "Reservation",
    "Outcome",
    "OutcomeKind",
    "Mutation",
    "MutationKind",
    "KeyPoolError",
    "DuplicateCredentialError",
    "CredentialNotFoundError",
    "ModelNotFoundError",
    "InvalidQuotaError",
]
