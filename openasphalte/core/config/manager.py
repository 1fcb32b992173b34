from __future__ import annotations

import logging
import os
from typing import Any, Dict, Optional

from pydantic import ValidationError

from openasphalte.core.config.io import (
    ReadResult,
    atomic_write_json,
    read_json_file,
    recover_from_corrupt,
    snapshot_dir_last_known_good,
)
from openasphalte.core.config.models import AppConfig, AppFileConfig, ModulesConfig, UpdatesConfig
from openasphalte.core.config.paths import ConfigFsPaths, default_root
from openasphalte.core.errors import ConfigError

CONFIG_FILES: Dict[str, type] = {
    "app.json": AppFileConfig,
    "updates.json": UpdatesConfig,
    "modules.json": ModulesConfig,
}


class ConfigManager:
    def __init__(self, *, fs: Optional[ConfigFsPaths] = None, logger: Optional[logging.Logger] = None, read_only: bool = False):
        self.fs = fs or ConfigFsPaths(default_root())
        self.logger = logger or logging.getLogger(__name__)
        self.read_only = read_only
        self._cfg: Optional[AppConfig] = None

    # ---------- public API ----------
    def load_all(self) -> AppConfig:
        os.makedirs(self.fs.config_dir, exist_ok=True)
        os.makedirs(self.fs.backups_dir, exist_ok=True)
        os.makedirs(self.fs.last_known_good_dir, exist_ok=True)

        files = self._load_raw_files()
        app_raw = files.get("app.json") or {}
        max_backups = int((app_raw.get("backups") or {}).get("max_backups_per_file", 10))
        ensured = self._ensure_defaults(files, max_backups=max_backups)
        cfg = self._validate_all(ensured)
        self._cfg = cfg

        if not self.read_only:
            snapshot_dir_last_known_good(self.fs.config_dir, self.fs.last_known_good_dir)
        return cfg

    def get(self) -> AppConfig:
        if self._cfg is None:
            raise ConfigError("Config not loaded.")
        return self._cfg

    def read_non_sensitive(self, filename: str) -> Dict[str, Any]:
        """
        Read a single config file from config/ (safe recovery applied).
        """
        path = os.path.join(self.fs.config_dir, filename)
        rr = read_json_file(path)
        if rr.ok:
            return rr.data
        if rr.error and rr.error.startswith("corrupt_json"):
            data, _ = recover_from_corrupt(path, self.fs.backups_dir, self.fs.last_known_good_dir, max_backups=10)
            return data
        return {}

    def save_non_sensitive(self, filename: str, data: Dict[str, Any]) -> None:
        """
        Validate, then atomic write + backups, then reload the whole set.
        """
        if self.read_only:
            raise ConfigError("Config manager is read-only.")
        if not isinstance(data, dict):
            raise ConfigError("Config data must be an object.")
        model = CONFIG_FILES.get(filename)
        if model is not None:
            try:
                model.model_validate(data)
            except ValidationError as e:
                raise ConfigError(f"{filename} invalid: {e}") from e
        max_backups = int((self.get().app.backups or {}).get("max_backups_per_file", 10))
        path = os.path.join(self.fs.config_dir, filename)
        atomic_write_json(path, data, self.fs.backups_dir, max_backups=max_backups)
        self.load_all()

    def resolve_path(self, path: str) -> str:
        """Relative paths in config are relative to the configuration root."""
        if os.path.isabs(path):
            return path
        return os.path.join(self.fs.root, path)

    @property
    def modules_dir(self) -> str:
        return self.resolve_path(self.get().modules.modules_dir)

    # ---------- internals ----------
    def _load_raw_files(self) -> Dict[str, Dict[str, Any]]:
        out: Dict[str, Dict[str, Any]] = {}
        for name in CONFIG_FILES:
            path = os.path.join(self.fs.config_dir, name)
            rr: ReadResult = read_json_file(path)
            if rr.ok:
                out[name] = rr.data
                continue
            if rr.error and rr.error.startswith("corrupt_json"):
                data, recovered = recover_from_corrupt(path, self.fs.backups_dir, self.fs.last_known_good_dir, max_backups=10)
                self.logger.warning("Corrupt config %s -> recovered=%s", name, recovered)
                out[name] = data
                continue
            # missing or other error: treat as missing -> defaults later
            out[name] = {}
        return out

    def _ensure_defaults(self, files: Dict[str, Dict[str, Any]], *, max_backups: int) -> Dict[str, Dict[str, Any]]:
        out = dict(files)
        for name, model in CONFIG_FILES.items():
            if out.get(name):
                continue
            dflt = model().model_dump()
            out[name] = dflt
            self.logger.info("Missing config %s; creating defaults.", name)
            if not self.read_only:
                atomic_write_json(os.path.join(self.fs.config_dir, name), dflt, self.fs.backups_dir, max_backups=max_backups)
        return out

    def _validate_all(self, files: Dict[str, Dict[str, Any]]) -> AppConfig:
        try:
            return AppConfig(
                app=AppFileConfig.model_validate(files.get("app.json") or {}),
                updates=UpdatesConfig.model_validate(files.get("updates.json") or {}),
                modules=ModulesConfig.model_validate(files.get("modules.json") or {}),
            )
        except ValidationError as e:
            raise ConfigError(str(e)) from e
