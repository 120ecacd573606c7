"""
Run one retention batch for a tenant and print the run summary.

Usage:
  python scripts/run_retention.py --tenant tenant_alpha [--batch-size 50] [--policy LPC_6YR] [--dry-run]
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import timedelta

from custodian.core.clock import SystemClock
from custodian.core.config.manager import ConfigManager
from custodian.core.config.paths import ConfigFsPaths
from custodian.core.errors import CustodianError
from custodian.core.logger import setup_logging
from custodian.core.retention.models import RunOptions
from custodian.core.retention.service import build_service, run_retention_cleanup


def main() -> int:
    ap = argparse.ArgumentParser(description="Custodian retention cleanup")
    ap.add_argument("--root", default=".")
    ap.add_argument("--tenant", required=True)
    ap.add_argument("--batch-size", type=int, default=None)
    ap.add_argument("--workers", type=int, default=None)
    ap.add_argument("--policy", default=None)
    ap.add_argument("--max-seconds", type=float, default=None, help="stop submitting new records after this many seconds")
    ap.add_argument("--dry-run", action="store_true")
    ap.add_argument("--report", action="store_true", help="print a compliance report after the run")
    args = ap.parse_args()

    try:
        cm = ConfigManager(fs=ConfigFsPaths(args.root))
        cfg = cm.load_all()
        logger = setup_logging(cm.resolve_path(cfg.app.log_dir), level=getattr(logging, cfg.app.log_level))
        cm.logger = logger
        clock = SystemClock()
        svc = build_service(cm, clock=clock, logger=logger)
        deadline = clock.now() + timedelta(seconds=args.max_seconds) if args.max_seconds else None
        opts = RunOptions(batch_size=args.batch_size, max_workers=args.workers, policy_name=args.policy, deadline=deadline, dry_run=args.dry_run)
        run = run_retention_cleanup(args.tenant, opts, service=svc)
        print(json.dumps(run.model_dump(mode="json"), indent=2, sort_keys=True))
        if args.report:
            print(json.dumps(svc.report(args.tenant).model_dump(mode="json"), indent=2, sort_keys=True))
        return 0 if run.failed == 0 else 1
    except CustodianError as e:
        print(json.dumps(e.to_dict()), file=sys.stderr)
        return 3


if __name__ == "__main__":
    sys.exit(main())
