from __future__ import annotations

import re
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from custodian.core.policy.models import FALLBACK_POLICY_NAME, RetentionPolicy, default_policies


class AppFileConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    config_version: int = Field(default=1, ge=1)
    created_at: str = "1970-01-01T00:00:00Z"
    log_dir: str = "logs"
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    run_log_path: str = "logs/runs.jsonl"
    backups: Dict[str, Any] = Field(default_factory=lambda: {"max_backups_per_file": 10})


class RetentionConfigFile(BaseModel):
    model_config = ConfigDict(extra="forbid")
    batch_size: int = Field(default=100, ge=1, le=10_000)
    max_workers: int = Field(default=4, ge=1, le=64)
    fallback_policy: str = FALLBACK_POLICY_NAME
    tenant_id_pattern: str = r"^[a-zA-Z0-9_-]{8,64}$"
    policies: List[RetentionPolicy] = Field(default_factory=default_policies)
    issue_certificates: bool = True
    certificate_salt: str = "custodian-default-salt"

    @field_validator("tenant_id_pattern")
    @classmethod
    def _pattern_compiles(cls, v: str) -> str:
        try:
            re.compile(v)
        except re.error as e:
            raise ValueError(f"tenant_id_pattern does not compile: {e}") from e
        return v

    @model_validator(mode="after")
    def _fallback_is_known(self) -> "RetentionConfigFile":
        names = [p.name for p in self.policies]
        if len(set(names)) != len(names):
            raise ValueError("duplicate policy names")
        if self.fallback_policy.upper() not in names:
            raise ValueError(f"fallback_policy {self.fallback_policy!r} is not defined in policies")
        return self


class LedgerConfigFile(BaseModel):
    model_config = ConfigDict(extra="forbid")
    backend: Literal["sqlite", "jsonl"] = "sqlite"
    sqlite_path: str = "runtime/ledger.sqlite"
    jsonl_root: str = "runtime/ledger"
    verify_on_startup: bool = False


class StorageConfigFile(BaseModel):
    model_config = ConfigDict(extra="forbid")
    records_db_path: str = "runtime/records.sqlite"
    blob_root: str = "runtime/blobs"
    archive_key_path: Optional[str] = None


class CustodianConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    app: AppFileConfig
    retention: RetentionConfigFile
    ledger: LedgerConfigFile
    storage: StorageConfigFile
