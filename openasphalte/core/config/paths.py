from __future__ import annotations

import os
import sys
from dataclasses import dataclass


def default_root() -> str:
    """
    Per-user configuration root.

    OPENASPHALTE_HOME wins; then %APPDATA%\\OpenAsphalte on Windows, then
    $XDG_CONFIG_HOME/openasphalte, then ~/.config/openasphalte.
    """
    override = os.environ.get("OPENASPHALTE_HOME")
    if override:
        return override
    if sys.platform.startswith("win"):
        appdata = os.environ.get("APPDATA")
        if appdata:
            return os.path.join(appdata, "OpenAsphalte")
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return os.path.join(xdg, "openasphalte")
    return os.path.join(os.path.expanduser("~"), ".config", "openasphalte")


@dataclass(frozen=True)
class ConfigFsPaths:
    root: str = "."

    @property
    def config_dir(self) -> str:
        return os.path.join(self.root, "config")

    @property
    def backups_dir(self) -> str:
        return os.path.join(self.config_dir, "backups")

    @property
    def last_known_good_dir(self) -> str:
        return os.path.join(self.backups_dir, "last_known_good")

    @property
    def logs_dir(self) -> str:
        return os.path.join(self.root, "logs")

    # Files
    @property
    def app(self) -> str:
        return os.path.join(self.config_dir, "app.json")

    @property
    def updates(self) -> str:
        return os.path.join(self.config_dir, "updates.json")

    @property
    def modules(self) -> str:
        return os.path.join(self.config_dir, "modules.json")

    @property
    def modules_registry(self) -> str:
        return os.path.join(self.config_dir, "modules_registry.json")
