from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict

from custodian.core.redaction import redact


class Severity(str, Enum):
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


@dataclass
class CustodianError(Exception):
    code: str
    user_message: str
    severity: Severity = Severity.ERROR
    recoverable: bool = True
    context: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        super().__init__(self.code)

    def __str__(self) -> str:
        return f"{self.code}: {self.user_message}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "user_message": self.user_message,
            "severity": self.severity.value,
            "recoverable": bool(self.recoverable),
            "context": redact(self.context or {}),
        }


# ---- Configuration / input ----
class ConfigError(CustodianError):
    def __init__(self, user_message: str = "Configuration error.", **ctx: Any):
        super().__init__("config_error", user_message, severity=Severity.CRITICAL, recoverable=False, context=ctx)


class ValidationError(CustodianError):
    def __init__(self, user_message: str = "Invalid request.", **ctx: Any):
        super().__init__("validation_error", user_message, severity=Severity.WARN, recoverable=False, context=ctx)


# ---- Policy ----
class PolicyNotFoundError(CustodianError):
    def __init__(self, user_message: str = "Retention policy not found.", **ctx: Any):
        super().__init__("policy_not_found", user_message, severity=Severity.WARN, recoverable=True, context=ctx)


# ---- Storage ----
class RecordStoreError(CustodianError):
    def __init__(self, user_message: str = "Record store unavailable.", **ctx: Any):
        super().__init__("record_store_error", user_message, severity=Severity.CRITICAL, recoverable=False, context=ctx)


class BlobStoreError(CustodianError):
    def __init__(self, user_message: str = "Blob store operation failed.", **ctx: Any):
        super().__init__("blob_store_error", user_message, severity=Severity.ERROR, recoverable=True, context=ctx)


class StateTransitionError(CustodianError):
    def __init__(self, user_message: str = "Illegal disposal status transition.", **ctx: Any):
        super().__init__("state_transition_error", user_message, severity=Severity.ERROR, recoverable=False, context=ctx)


# ---- Disposal ----
class LegalHoldActiveError(CustodianError):
    def __init__(self, user_message: str = "Record is under legal hold.", **ctx: Any):
        super().__init__("legal_hold_active", user_message, severity=Severity.WARN, recoverable=True, context=ctx)


class DisposalFailedError(CustodianError):
    def __init__(self, user_message: str = "Disposal failed.", **ctx: Any):
        super().__init__("disposal_failed", user_message, severity=Severity.ERROR, recoverable=True, context=ctx)


# ---- Audit chain ----
class ChainIntegrityViolation(CustodianError):
    def __init__(self, user_message: str = "Audit chain integrity violated.", **ctx: Any):
        super().__init__("chain_integrity_violation", user_message, severity=Severity.CRITICAL, recoverable=False, context=ctx)


class ChainConflictError(CustodianError):
    def __init__(self, user_message: str = "Audit chain tail moved during append.", **ctx: Any):
        super().__init__("chain_conflict", user_message, severity=Severity.ERROR, recoverable=True, context=ctx)
