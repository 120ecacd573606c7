from __future__ import annotations

import argparse
import json

from custodian.core.config.manager import ConfigManager
from custodian.core.config.paths import ConfigFsPaths
from custodian.core.redaction import redact


def main() -> None:
    ap = argparse.ArgumentParser(description="Print the effective custodian configuration")
    ap.add_argument("--root", default=".")
    args = ap.parse_args()
    cm = ConfigManager(fs=ConfigFsPaths(args.root), logger=None, read_only=True)
    cfg = cm.load_all()
    print(json.dumps(redact(cfg.model_dump(mode="json")), indent=2, sort_keys=True))


if __name__ == "__main__":
    main()
