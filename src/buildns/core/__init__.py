"""Core."""

from .backoff import backoff_delay
from .config import (
    BackendConfig,
    BuildnsConfig,
    CertificateConfig,
    PropagationConfig,
    RegistryConfig,
    StorageConfig,
    clear_config,
    get_config,
)
from .exceptions import (
    AlreadyEnabled,
    BuildnsError,
    CertificateIssuanceFailed,
    ConflictingRecord,
    InvalidName,
    InvalidRecord,
    InvalidStatusCode,
    InvalidTarget,
    InvalidTransition,
    NameTaken,
    NotFound,
    NotOwner,
    UpgradeConflict,
    format_error_for_user,
)
from .locks import KeyedLock

__all__ = [
    "BuildnsConfig",
    "RegistryConfig",
    "CertificateConfig",
    "PropagationConfig",
    "StorageConfig",
    "BackendConfig",
    "get_config",
    "clear_config",
    "BuildnsError",
    "NameTaken",
    "InvalidName",
    "NotOwner",
    "NotFound",
    "ConflictingRecord",
    "InvalidRecord",
    "InvalidTarget",
    "InvalidStatusCode",
    "AlreadyEnabled",
    "CertificateIssuanceFailed",
    "UpgradeConflict",
    "InvalidTransition",
    "format_error_for_user",
    "KeyedLock",
    "backoff_delay",
]
