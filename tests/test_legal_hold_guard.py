from __future__ import annotations

from datetime import timedelta

from custodian.core.holds.guard import LegalHoldGuard
from custodian.core.records.models import LegalHold

from .helpers.builders import make_record
from .helpers.fakes import BrokenHoldRegistry

T = "tenant_alpha"


def _rec(clock, hold):
    return make_record(now=clock.now(), record_id="doc-1", hold=hold)


def test_no_hold_allows(clock):
    g = LegalHoldGuard(clock=clock)
    assert g.check(_rec(clock, LegalHold())).allowed is True


def test_active_hold_without_expiry_blocks(clock):
    g = LegalHoldGuard(clock=clock)
    d = g.check(_rec(clock, LegalHold(active=True)))
    assert d.allowed is False
    assert d.reason == "legal_hold_active"


def test_hold_with_future_expiry_blocks_until_it_lapses(clock):
    g = LegalHoldGuard(clock=clock)
    rec = _rec(clock, LegalHold(active=True, expires_at=clock.now() + timedelta(days=2)))

    assert g.check(rec).allowed is False
    clock.advance(days=2)
    # expiry is exclusive: at the instant of expiry the hold no longer applies
    assert g.check(rec).allowed is True


def test_inactive_hold_with_expiry_allows(clock):
    g = LegalHoldGuard(clock=clock)
    assert g.check(_rec(clock, LegalHold(active=False, expires_at=clock.now() + timedelta(days=9)))).allowed is True


def test_evaluation_error_fails_safe(clock, logger):
    class _Weird:
        id = "doc-x"

        @property
        def legal_hold(self):
            raise RuntimeError("corrupt hold column")

    g = LegalHoldGuard(clock=clock, logger=logger)
    d = g.check(_Weird())
    assert d.allowed is False
    assert d.reason == "hold_check_failed"
    assert logger.errors


def test_tenant_hold_lookup(record_store, clock):
    g = LegalHoldGuard(tenant_holds=record_store, clock=clock)
    assert g.check_tenant(T).allowed is True

    record_store.place_tenant_hold(T, reason="audit", now=clock.now())
    assert g.check_tenant(T).allowed is False
    assert g.check_tenant("tenant_bravo").allowed is True

    assert record_store.release_tenant_hold(T, now=clock.now()) is True
    assert g.check_tenant(T).allowed is True
    assert record_store.release_tenant_hold(T, now=clock.now()) is False


def test_tenant_hold_lookup_failure_fails_safe(clock):
    g = LegalHoldGuard(tenant_holds=BrokenHoldRegistry(), clock=clock)
    d = g.check_tenant(T)
    assert d.allowed is False
    assert d.reason == "hold_check_failed"
