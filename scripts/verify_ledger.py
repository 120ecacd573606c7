"""
Verify the audit ledger of one tenant (or all tenants).

Usage:
  python scripts/verify_ledger.py --tenant tenant_alpha
  python scripts/verify_ledger.py --all --export out/ledger.json

Exit codes: 0 intact, 2 broken chain, 3 error.
"""

from __future__ import annotations

import argparse
import json
import sys

from custodian.core.audit.chain import AuditChain
from custodian.core.config.manager import ConfigManager
from custodian.core.config.paths import ConfigFsPaths
from custodian.core.errors import CustodianError
from custodian.core.retention.service import build_chain_store


def main() -> int:
    ap = argparse.ArgumentParser(description="Custodian ledger verification")
    ap.add_argument("--root", default=".")
    g = ap.add_mutually_exclusive_group(required=True)
    g.add_argument("--tenant")
    g.add_argument("--all", action="store_true")
    ap.add_argument("--export", help="write the verified tenant's entries to this JSON file")
    args = ap.parse_args()

    try:
        cm = ConfigManager(fs=ConfigFsPaths(args.root), logger=None, read_only=True)
        cm.load_all()
        chain = AuditChain(store=build_chain_store(cm))
        tenants = chain.tenants() if args.all else [args.tenant]
        broken = 0
        for t in tenants:
            rep = chain.verify_report(t)
            print(json.dumps({"tenant_id": t, **rep.model_dump()}, sort_keys=True))
            if not rep.ok:
                broken += 1
        if args.export and args.tenant:
            chain.export_json(args.export, tenant_id=args.tenant)
        return 2 if broken else 0
    except CustodianError as e:
        print(json.dumps(e.to_dict()), file=sys.stderr)
        return 3


if __name__ == "__main__":
    sys.exit(main())
