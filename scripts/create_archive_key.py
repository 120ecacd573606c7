from __future__ import annotations

import os

from custodian.core.config.manager import ConfigManager
from custodian.core.config.paths import ConfigFsPaths
from custodian.core.crypto import generate_archive_key_bytes, key_id_from_key_bytes, write_archive_key


def main() -> None:
    cm = ConfigManager(fs=ConfigFsPaths("."), logger=None)
    cfg = cm.load_all()
    rel = cfg.storage.archive_key_path or os.path.join("secure", "archive.key")
    path = cm.resolve_path(rel)

    if os.path.exists(path):
        print(f"Archive key already exists at: {path}")
        return

    key = generate_archive_key_bytes()
    write_archive_key(path, key)
    if not cfg.storage.archive_key_path:
        raw = cm.read_non_sensitive("storage.json")
        raw["archive_key_path"] = rel
        cm.save_non_sensitive("storage.json", raw)
    print(f"Created archive key at: {path}")
    print(f"Key fingerprint (key_id): {key_id_from_key_bytes(key)}")


if __name__ == "__main__":
    main()
