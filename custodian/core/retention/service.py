from __future__ import annotations

import os
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional

from custodian.core.audit.chain import AuditChain
from custodian.core.audit.store_jsonl import JsonlAuditChainStore
from custodian.core.audit.store_sqlite import SqliteAuditChainStore
from custodian.core.clock import Clock, SystemClock
from custodian.core.config.manager import ConfigManager, get_config
from custodian.core.crypto import ArchiveKeyMissingError, read_archive_key
from custodian.core.disposal.blobstore import FileBlobStore
from custodian.core.errors import ConfigError, CustodianError
from custodian.core.holds.guard import LegalHoldGuard
from custodian.core.policy.catalog import PolicyCatalog
from custodian.core.policy.resolver import PolicyResolver
from custodian.core.records.store import SqliteRecordStore
from custodian.core.retention.models import CleanupRun, ComplianceReport, RunOptions
from custodian.core.retention.orchestrator import RetentionCleanupOrchestrator
from custodian.core.retention.reporter import ComplianceReporter
from custodian.core.run_log import RunLogger


@dataclass
class RetentionService:
    config: ConfigManager
    catalog: PolicyCatalog
    resolver: PolicyResolver
    record_store: Any
    blob_store: Any
    chain: AuditChain
    guard: LegalHoldGuard
    orchestrator: RetentionCleanupOrchestrator
    reporter: ComplianceReporter
    clock: Clock
    logger: Any = None

    def run(self, tenant_id: str, options: Optional[RunOptions] = None) -> CleanupRun:
        return self.orchestrator.run(tenant_id, options)

    def run_many(self, tenant_ids: Iterable[str], *, options_factory=None, max_parallel: int = 4) -> Dict[str, Any]:
        """
        Runs several tenants in parallel. Each tenant gets its own RunOptions;
        a failure for one tenant is returned in its slot, not raised.
        """
        ids = list(dict.fromkeys(str(t) for t in tenant_ids))
        out: Dict[str, Any] = {}
        with ThreadPoolExecutor(max_workers=max(1, int(max_parallel)), thread_name_prefix="retention-tenants") as pool:
            futs = {t: pool.submit(self.run, t, options_factory() if options_factory else None) for t in ids}
            for t, fut in futs.items():
                try:
                    out[t] = fut.result()
                except CustodianError as e:
                    if self.logger:
                        self.logger.error(f"retention run failed tenant={t}: {e}")
                    out[t] = e
        return out

    def report(self, tenant_id: str) -> ComplianceReport:
        return self.reporter.report(tenant_id)


def build_chain_store(cm: ConfigManager):
    led = cm.get().ledger
    if led.backend == "jsonl":
        return JsonlAuditChainStore(root=cm.resolve_path(led.jsonl_root))
    return SqliteAuditChainStore(path=cm.resolve_path(led.sqlite_path))


def build_service(
    cm: ConfigManager,
    *,
    clock: Optional[Clock] = None,
    logger=None,
    blob_store: Any = None,
    record_store: Any = None,
) -> RetentionService:
    cfg = cm.get()
    clock = clock or SystemClock()

    catalog = PolicyCatalog.from_config(cfg.retention)
    resolver = PolicyResolver(catalog=catalog, clock=clock, logger=logger)
    records = record_store or SqliteRecordStore(db_path=cm.resolve_path(cfg.storage.records_db_path), logger=logger)

    if blob_store is None:
        key = None
        if cfg.storage.archive_key_path:
            try:
                key = read_archive_key(cm.resolve_path(cfg.storage.archive_key_path))
            except (ArchiveKeyMissingError, OSError, ValueError) as e:
                raise ConfigError("Archive key could not be loaded.", path=cfg.storage.archive_key_path, error=str(e)) from e
        blob_store = FileBlobStore(root=cm.resolve_path(cfg.storage.blob_root), archive_key=key, logger=logger)

    chain = AuditChain(store=build_chain_store(cm), clock=clock, logger=logger)
    guard = LegalHoldGuard(tenant_holds=records, clock=clock, logger=logger)
    run_logger = RunLogger(path=cm.resolve_path(cfg.app.run_log_path))

    orchestrator = RetentionCleanupOrchestrator(
        record_store=records,
        resolver=resolver,
        guard=guard,
        chain=chain,
        blob_store=blob_store,
        clock=clock,
        logger=logger,
        run_logger=run_logger,
        batch_size=cfg.retention.batch_size,
        max_workers=cfg.retention.max_workers,
        tenant_id_pattern=cfg.retention.tenant_id_pattern,
        issue_certificates=cfg.retention.issue_certificates,
        certificate_salt=os.environ.get("CUSTODIAN_CERTIFICATE_SALT") or cfg.retention.certificate_salt,
    )
    reporter = ComplianceReporter(record_store=records, chain=chain, resolver=resolver, guard=guard, clock=clock)

    if cfg.ledger.verify_on_startup:
        for tenant in chain.tenants():
            chain.assert_intact(tenant)

    return RetentionService(
        config=cm,
        catalog=catalog,
        resolver=resolver,
        record_store=records,
        blob_store=blob_store,
        chain=chain,
        guard=guard,
        orchestrator=orchestrator,
        reporter=reporter,
        clock=clock,
        logger=logger,
    )


def run_retention_cleanup(tenant_id: str, options: Optional[RunOptions] = None, *, service: Optional[RetentionService] = None) -> CleanupRun:
    """
    Entry point for one tenant batch. Without an explicit service the
    process-wide config under the current directory is used.
    """
    svc = service or build_service(get_config())
    return svc.run(tenant_id, options)
