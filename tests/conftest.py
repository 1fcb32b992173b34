from __future__ import annotations

import logging
import os

import pytest

from openasphalte.core.config.manager import ConfigManager
from openasphalte.core.config.paths import ConfigFsPaths
from openasphalte.core.modules.registry import ModuleRegistry


@pytest.fixture
def tmp_config_root(tmp_path):
    """
    Provides an isolated configuration root with config/ under tmp_path.
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
def registry(tmp_config_root):
    return ModuleRegistry(
        path=tmp_config_root.modules_registry,
        backups_dir=tmp_config_root.backups_dir,
        last_known_good_dir=tmp_config_root.last_known_good_dir,
    ).load()


@pytest.fixture
def modules_dir(tmp_path):
    path = os.path.join(str(tmp_path), "modules")
    os.makedirs(path, exist_ok=True)
    return path


@pytest.fixture(autouse=True)
def _reset_openasphalte_logger():
    # app.run() installs handlers and stops propagation; keep caplog working afterwards.
    yield
    lg = logging.getLogger("openasphalte")
    for h in list(lg.handlers):
        lg.removeHandler(h)
        h.close()
    lg.propagate = True
    lg.setLevel(logging.NOTSET)
