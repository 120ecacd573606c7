from __future__ import annotations

from enum import Enum
from typing import List

from pydantic import BaseModel, ConfigDict, Field, field_validator


class DisposalMethod(str, Enum):
    SECURE_DELETION = "SECURE_DELETION"
    ARCHIVE_THEN_DELETE = "ARCHIVE_THEN_DELETE"
    REDACT_THEN_DELETE = "REDACT_THEN_DELETE"
    PERMANENT_ARCHIVE = "PERMANENT_ARCHIVE"


# Methods that leave the bytes in an archive tier rather than destroying them.
ARCHIVING_METHODS = frozenset({DisposalMethod.ARCHIVE_THEN_DELETE, DisposalMethod.PERMANENT_ARCHIVE})


class RetentionPolicy(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str = Field(min_length=1, max_length=64)
    retention_years: int = Field(ge=0, le=200)
    legal_reference: str = ""
    disposal_method: DisposalMethod
    description: str = ""

    @field_validator("name")
    @classmethod
    def _name_upper(cls, v: str) -> str:
        v = str(v).strip()
        if not v:
            raise ValueError("policy name must not be empty")
        return v.upper()


FALLBACK_POLICY_NAME = "COMPANIES_ACT_7YR"


def default_policies() -> List[RetentionPolicy]:
    return [
        RetentionPolicy(
            name="COMPANIES_ACT_7YR",
            retention_years=7,
            legal_reference="Companies Act 71 of 2008, Section 24",
            disposal_method=DisposalMethod.SECURE_DELETION,
            description="Company records, financial statements, contracts",
        ),
        RetentionPolicy(
            name="LPC_6YR",
            retention_years=6,
            legal_reference="Legal Practice Council Rule 7.3",
            disposal_method=DisposalMethod.ARCHIVE_THEN_DELETE,
            description="Client files, correspondence, legal opinions",
        ),
        RetentionPolicy(
            name="PAIA_5YR",
            retention_years=5,
            legal_reference="PAIA Section 14(2)",
            disposal_method=DisposalMethod.REDACT_THEN_DELETE,
            description="Access-to-information requests and responses",
        ),
        RetentionPolicy(
            name="PERMANENT",
            retention_years=100,
            legal_reference="National Archives Act",
            disposal_method=DisposalMethod.PERMANENT_ARCHIVE,
            description="Records of permanent historical value",
        ),
    ]
