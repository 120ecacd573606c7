from __future__ import annotations

import hashlib
import hmac
import uuid
from typing import Dict, List

from pydantic import BaseModel, ConfigDict, Field


class DisposalCertificate(BaseModel):
    """
    Proof of a disposal run, anchored to the ledger head at issue time.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    certificate_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    tenant_id: str
    run_id: str
    issued_at: str
    record_ids: List[str]
    methods: Dict[str, str] = Field(default_factory=dict)
    legal_references: Dict[str, str] = Field(default_factory=dict)
    head_entry_hash: str
    certificate_hash: str


def compute_certificate_hash(*, tenant_id: str, run_id: str, issued_at: str, record_ids: List[str], head_entry_hash: str, salt: str) -> str:
    material = "|".join([tenant_id, run_id, issued_at, ",".join(sorted(record_ids)), head_entry_hash, salt])
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


def issue_certificate(
    *,
    tenant_id: str,
    run_id: str,
    issued_at: str,
    record_ids: List[str],
    methods: Dict[str, str],
    legal_references: Dict[str, str],
    head_entry_hash: str,
    salt: str,
) -> DisposalCertificate:
    ids = sorted(record_ids)
    return DisposalCertificate(
        tenant_id=tenant_id,
        run_id=run_id,
        issued_at=issued_at,
        record_ids=ids,
        methods=dict(methods),
        legal_references=dict(legal_references),
        head_entry_hash=head_entry_hash,
        certificate_hash=compute_certificate_hash(
            tenant_id=tenant_id,
            run_id=run_id,
            issued_at=issued_at,
            record_ids=ids,
            head_entry_hash=head_entry_hash,
            salt=salt,
        ),
    )


def verify_certificate(cert: DisposalCertificate, *, salt: str) -> bool:
    expected = compute_certificate_hash(
        tenant_id=cert.tenant_id,
        run_id=cert.run_id,
        issued_at=cert.issued_at,
        record_ids=list(cert.record_ids),
        head_entry_hash=cert.head_entry_hash,
        salt=salt,
    )
    return hmac.compare_digest(expected, cert.certificate_hash)
