from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional

from custodian.core.audit.models import AuditAction
from custodian.core.disposal.masking import mask_fields, redact_filename
from custodian.core.errors import DisposalFailedError, StateTransitionError
from custodian.core.policy.models import DisposalMethod
from custodian.core.records.models import DisposalStatus, Record


Journal = Callable[[AuditAction, Dict[str, Any]], Any]


@dataclass(frozen=True)
class DisposalContext:
    blob_store: Any
    record_store: Any
    journal: Journal


@dataclass(frozen=True)
class DisposalOutcome:
    status: DisposalStatus
    method: DisposalMethod
    archive_ref: Optional[str] = None
    storage_freed_bytes: int = 0
    already_processed: bool = False


def _call(stage: str, record: Record, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    try:
        return fn(*args, **kwargs)
    except Exception as e:  # noqa: BLE001
        raise DisposalFailedError(
            f"Disposal failed during {stage}.",
            record_id=record.id,
            stage=stage,
            error=f"{type(e).__name__}: {e}",
        ) from e


class DisposalStrategy:
    method: DisposalMethod

    def dispose(self, record: Record, ctx: DisposalContext) -> DisposalOutcome:
        if record.disposal_status == DisposalStatus.PROCESSED:
            return DisposalOutcome(
                status=DisposalStatus.PROCESSED,
                method=record.disposal_method_used or self.method,
                archive_ref=record.archive_ref,
                storage_freed_bytes=0,
                already_processed=True,
            )
        if record.disposal_status != DisposalStatus.PENDING:
            raise StateTransitionError(record_id=record.id, from_status=record.disposal_status.value, to_status=DisposalStatus.PROCESSED.value)
        return self._dispose(record, ctx)

    def _dispose(self, record: Record, ctx: DisposalContext) -> DisposalOutcome:
        raise NotImplementedError


class SecureDeletion(DisposalStrategy):
    method = DisposalMethod.SECURE_DELETION

    def _dispose(self, record: Record, ctx: DisposalContext) -> DisposalOutcome:
        _call("blob_delete", record, ctx.blob_store.delete, record.id)
        return DisposalOutcome(status=DisposalStatus.PROCESSED, method=self.method, storage_freed_bytes=int(record.size_bytes))


class ArchiveThenDelete(DisposalStrategy):
    method = DisposalMethod.ARCHIVE_THEN_DELETE

    def _dispose(self, record: Record, ctx: DisposalContext) -> DisposalOutcome:
        # archive() relocates the bytes; the live copy is gone once it returns.
        ref = _call("blob_archive", record, ctx.blob_store.archive, record.id)
        return DisposalOutcome(status=DisposalStatus.PROCESSED, method=self.method, archive_ref=str(ref), storage_freed_bytes=int(record.size_bytes))


class RedactThenDelete(DisposalStrategy):
    method = DisposalMethod.REDACT_THEN_DELETE

    def _dispose(self, record: Record, ctx: DisposalContext) -> DisposalOutcome:
        if not record.redacted:
            masked, changed = mask_fields(record.personal_fields)
            new_name = redact_filename(record.filename) or None
            _call("redaction", record, ctx.record_store.apply_redaction, record.id, masked, filename=new_name)
            ctx.journal(AuditAction.REDACTED, {"fields_masked": changed, "filename_redacted": bool(new_name)})
        _call("blob_delete", record, ctx.blob_store.delete, record.id)
        return DisposalOutcome(status=DisposalStatus.PROCESSED, method=self.method, storage_freed_bytes=int(record.size_bytes))


class PermanentArchive(DisposalStrategy):
    method = DisposalMethod.PERMANENT_ARCHIVE

    def _dispose(self, record: Record, ctx: DisposalContext) -> DisposalOutcome:
        ref = _call("blob_archive", record, ctx.blob_store.archive, record.id, tier="cold")
        return DisposalOutcome(status=DisposalStatus.PROCESSED, method=self.method, archive_ref=str(ref), storage_freed_bytes=0)


STRATEGIES: Mapping[DisposalMethod, DisposalStrategy] = {
    DisposalMethod.SECURE_DELETION: SecureDeletion(),
    DisposalMethod.ARCHIVE_THEN_DELETE: ArchiveThenDelete(),
    DisposalMethod.REDACT_THEN_DELETE: RedactThenDelete(),
    DisposalMethod.PERMANENT_ARCHIVE: PermanentArchive(),
}


def strategy_for(method: DisposalMethod) -> DisposalStrategy:
    return STRATEGIES[DisposalMethod(method)]
