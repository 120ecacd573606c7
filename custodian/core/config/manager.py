from __future__ import annotations

import os
from typing import Any, Dict, Optional

from pydantic import ValidationError as PydanticValidationError

from custodian.core.config.io import (
    ReadResult,
    atomic_write_json,
    read_json_file,
    recover_from_corrupt,
    snapshot_last_known_good,
)
from custodian.core.config.models import (
    AppFileConfig,
    CustodianConfig,
    LedgerConfigFile,
    RetentionConfigFile,
    StorageConfigFile,
)
from custodian.core.config.paths import ConfigFsPaths
from custodian.core.errors import ConfigError
from custodian.core.redaction import redact


CONFIG_FILES = ("app.json", "retention.json", "ledger.json", "storage.json")


def _defaults() -> Dict[str, Dict[str, Any]]:
    return {
        "app.json": AppFileConfig().model_dump(mode="json"),
        "retention.json": RetentionConfigFile().model_dump(mode="json"),
        "ledger.json": LedgerConfigFile().model_dump(mode="json"),
        "storage.json": StorageConfigFile().model_dump(mode="json"),
    }


class ConfigManager:
    def __init__(self, *, fs: Optional[ConfigFsPaths] = None, logger=None, read_only: bool = False):
        self.fs = fs or ConfigFsPaths(".")
        self.logger = logger
        self.read_only = read_only
        self._cfg: Optional[CustodianConfig] = None

    # ---------- public API ----------
    def load_all(self) -> CustodianConfig:
        if not self.read_only:
            os.makedirs(self.fs.config_dir, exist_ok=True)
            os.makedirs(self.fs.backups_dir, exist_ok=True)
            os.makedirs(self.fs.last_known_good_dir, exist_ok=True)

        files = self._load_raw_files()
        max_backups = int(((files.get("app.json") or {}).get("backups") or {}).get("max_backups_per_file", 10))
        ensured = self._ensure_defaults(files, max_backups=max_backups)
        cfg = self._validate_all(ensured)
        self._cfg = cfg

        if not self.read_only:
            snapshot_last_known_good(self.fs.config_dir, self.fs.last_known_good_dir)
        return cfg

    def get(self) -> CustodianConfig:
        if self._cfg is None:
            raise ConfigError("Config not loaded.")
        return self._cfg

    def read_non_sensitive(self, filename: str) -> Dict[str, Any]:
        """
        Read a single config file (safe recovery applied).
        """
        path = os.path.join(self.fs.config_dir, filename)
        rr = read_json_file(path)
        if rr.ok:
            return rr.data
        if rr.error and rr.error.startswith("corrupt_json") and not self.read_only:
            data, _ = recover_from_corrupt(path, self.fs.backups_dir, self.fs.last_known_good_dir, max_backups=10)
            return data
        return {}

    def save_non_sensitive(self, filename: str, data: Dict[str, Any]) -> None:
        """
        Atomic write + backup, then revalidate the whole config set.
        On validation failure the previous file is restored and ConfigError is raised.
        """
        if self.read_only:
            raise ConfigError("Config manager is read-only.")
        if filename not in CONFIG_FILES:
            raise ConfigError(f"Unknown config file {filename!r}.")
        if not isinstance(data, dict):
            raise ConfigError("Config data must be an object.")
        max_backups = int((self.get().app.backups or {}).get("max_backups_per_file", 10))
        path = os.path.join(self.fs.config_dir, filename)
        previous = read_json_file(path)
        atomic_write_json(path, data, self.fs.backups_dir, max_backups=max_backups)
        try:
            self._cfg = self._validate_all(self._load_raw_files())
        except ConfigError:
            if previous.ok:
                atomic_write_json(path, previous.data, self.fs.backups_dir, max_backups=max_backups)
            raise
        if self.logger:
            self.logger.info(f"Config saved: {filename} {redact(data)}")
        snapshot_last_known_good(self.fs.config_dir, self.fs.last_known_good_dir)

    def resolve_path(self, path: str) -> str:
        return self.fs.resolve(path)

    # ---------- internals ----------
    def _load_raw_files(self) -> Dict[str, Dict[str, Any]]:
        out: Dict[str, Dict[str, Any]] = {}
        for name in CONFIG_FILES:
            path = os.path.join(self.fs.config_dir, name)
            rr: ReadResult = read_json_file(path)
            if rr.ok:
                out[name] = rr.data
                continue
            if rr.error and rr.error.startswith("corrupt_json") and not self.read_only:
                data, recovered = recover_from_corrupt(path, self.fs.backups_dir, self.fs.last_known_good_dir, max_backups=10)
                if self.logger:
                    self.logger.warning(f"Corrupt config {name} -> recovered={recovered}")
                out[name] = data
                continue
            # missing or other error: treat as missing -> defaults later
            out[name] = {}
        return out

    def _ensure_defaults(self, files: Dict[str, Dict[str, Any]], *, max_backups: int) -> Dict[str, Dict[str, Any]]:
        out = dict(files)
        for name, dflt in _defaults().items():
            if not out.get(name):
                out[name] = dflt
                if self.logger:
                    self.logger.warning(f"Missing config {name}; creating defaults.")
                if not self.read_only:
                    atomic_write_json(os.path.join(self.fs.config_dir, name), dflt, self.fs.backups_dir, max_backups=max_backups)
        return out

    def _validate_all(self, files: Dict[str, Dict[str, Any]]) -> CustodianConfig:
        try:
            return CustodianConfig(
                app=AppFileConfig.model_validate(files.get("app.json") or {}),
                retention=RetentionConfigFile.model_validate(files.get("retention.json") or {}),
                ledger=LedgerConfigFile.model_validate(files.get("ledger.json") or {}),
                storage=StorageConfigFile.model_validate(files.get("storage.json") or {}),
            )
        except PydanticValidationError as e:
            raise ConfigError(f"Invalid configuration: {e}") from e


_singleton: Optional[ConfigManager] = None


def get_config(*, root: str = ".", logger=None, read_only: bool = False) -> ConfigManager:
    global _singleton  # noqa: PLW0603
    if _singleton is None:
        _singleton = ConfigManager(fs=ConfigFsPaths(root), logger=logger, read_only=read_only)
        _singleton.load_all()
    return _singleton
