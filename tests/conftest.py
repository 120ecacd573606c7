from __future__ import annotations

import os

import pytest

from custodian.core.audit.chain import AuditChain
from custodian.core.audit.store_sqlite import SqliteAuditChainStore
from custodian.core.config.manager import ConfigManager
from custodian.core.config.paths import ConfigFsPaths
from custodian.core.holds.guard import LegalHoldGuard
from custodian.core.policy.catalog import PolicyCatalog
from custodian.core.policy.resolver import PolicyResolver
from custodian.core.records.store import SqliteRecordStore
from custodian.core.retention.orchestrator import RetentionCleanupOrchestrator

from .helpers.fakes import FakeBlobStore, FakeClock


class _L:
    def __init__(self):
        self.warnings = []
        self.errors = []

    def info(self, *_a, **_k): ...

    def warning(self, msg, *_a, **_k):
        self.warnings.append(str(msg))

    def error(self, msg, *_a, **_k):
        self.errors.append(str(msg))


@pytest.fixture
def logger():
    return _L()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def tmp_config_root(tmp_path):
    """
    Provides an isolated repo root with config/ under tmp_path.
    """
    fs = ConfigFsPaths(root=str(tmp_path))
    os.makedirs(fs.config_dir, exist_ok=True)
    return fs


@pytest.fixture
def config_manager(tmp_config_root):
    cm = ConfigManager(fs=tmp_config_root, logger=None, read_only=False)
    cm.load_all()
    return cm


@pytest.fixture
def record_store(tmp_path):
    return SqliteRecordStore(db_path=str(tmp_path / "runtime" / "records.sqlite"))


@pytest.fixture
def chain(tmp_path, clock):
    return AuditChain(store=SqliteAuditChainStore(path=str(tmp_path / "runtime" / "ledger.sqlite")), clock=clock)


@pytest.fixture
def blobs():
    return FakeBlobStore()


@pytest.fixture
def resolver(clock, logger):
    return PolicyResolver(catalog=PolicyCatalog(), clock=clock, logger=logger)


@pytest.fixture
def orchestrator(record_store, resolver, chain, blobs, clock, logger):
    guard = LegalHoldGuard(tenant_holds=record_store, clock=clock, logger=logger)
    return RetentionCleanupOrchestrator(
        record_store=record_store,
        resolver=resolver,
        guard=guard,
        chain=chain,
        blob_store=blobs,
        clock=clock,
        logger=logger,
        batch_size=100,
        max_workers=4,
        certificate_salt="test-salt",
    )
