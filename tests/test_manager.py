from __future__ import annotations

import os

import pytest

from openasphalte.core.config.models import MARKETPLACE_URL, RELEASES_URL
from openasphalte.core.errors import DependentStillInstalledError
from openasphalte.core.modules import ModuleManager
from openasphalte.core.modules.models import UpdateStatus
from tests.helpers.builders import write_files, write_manifest
from tests.helpers.fakes import FakeResponse, FakeSession


@pytest.fixture
def custom_share(tmp_path):
    share = os.path.join(str(tmp_path), "share")
    write_files(os.path.join(share, "a"), {"a.dll": b"A"})
    write_manifest(os.path.join(share, "a"), {"id": "a", "version": "1.0.0"})
    write_files(os.path.join(share, "b"), {"b.dll": b"B"})
    write_manifest(os.path.join(share, "b"), {"id": "b", "version": "1.0.0", "dependencies": ["a>=1.0"]})
    return share


@pytest.fixture
def configured(config_manager, custom_share):
    raw = config_manager.read_non_sensitive("updates.json")
    raw["custom_module_sources"] = [custom_share]
    config_manager.save_non_sensitive("updates.json", raw)
    return config_manager


def test_install_uninstall_and_finalize_across_restart(configured):
    session = FakeSession()  # standard catalog answers 404
    mgr = ModuleManager(configured, session=session)
    assert not mgr.startup().changed

    report = mgr.install(["b"])

    assert report.succeeded == ["a", "b"]
    assert [r.identifier for r in mgr.list_installed()] == ["a", "b"]
    assert os.path.isfile(os.path.join(mgr.modules_dir, "b", "b.dll"))
    assert mgr.fetch_catalog().failures[0].location == MARKETPLACE_URL

    with pytest.raises(DependentStillInstalledError) as ei:
        mgr.uninstall(["a"])
    assert ei.value.blockers == ["b"]

    removed = mgr.uninstall(["a", "b"])
    assert removed.removed == ["b", "a"]
    assert mgr.list_installed() == []
    assert [p.identifier for p in mgr.list_pending()] == ["a", "b"]

    restarted = ModuleManager(configured, session=session)
    startup = restarted.startup()
    assert sorted(startup.removed) == ["a", "b"]
    assert restarted.startup() is startup
    assert restarted.list_installed() == [] and restarted.list_pending() == []
    assert not os.path.exists(os.path.join(restarted.modules_dir, "a"))


def test_restore_brings_module_back(configured):
    mgr = ModuleManager(configured, session=FakeSession())
    mgr.install(["a"])
    mgr.uninstall(["a"])

    rec = mgr.restore("a")

    assert rec.identifier == "a"
    assert [r.identifier for r in mgr.list_installed()] == ["a"]


def test_list_updates_reports_new_modules(configured):
    mgr = ModuleManager(configured, session=FakeSession())
    mgr.install(["a"])
    updates = mgr.list_updates()
    assert [(u.identifier, u.is_new_install) for u in updates] == [("b", True)]


def test_plan_without_install_skips_catalog_fetch(config_manager):
    session = FakeSession()
    mgr = ModuleManager(config_manager, session=session)
    assert mgr.plan().steps == []
    assert session.calls == []


def test_check_for_update_uses_release_feed(config_manager):
    session = FakeSession({RELEASES_URL: FakeResponse(json_data={"tag_name": "v0.0.3", "body": ""})})
    mgr = ModuleManager(config_manager, session=session, current_version="0.0.2")
    res = mgr.check_for_update()
    assert res.status == UpdateStatus.UPDATE_AVAILABLE
    assert res.latest_version == "0.0.3"


def test_check_for_update_falls_back_to_catalog_core(config_manager):
    doc = {"core": {"latest": "0.0.4", "downloadUrl": "https://github.com/oas/OpenAsphalte/releases/download/core.zip"}, "modules": []}
    session = FakeSession({MARKETPLACE_URL: FakeResponse(json_data=doc)})  # release feed answers 404
    mgr = ModuleManager(config_manager, session=session, current_version="0.0.2")
    mgr.fetch_catalog()

    res = mgr.check_for_update()

    assert res.status == UpdateStatus.UPDATE_AVAILABLE
    assert res.latest_version == "0.0.4"
    assert res.download_url == "https://github.com/oas/OpenAsphalte/releases/download/core.zip"


def test_startup_update_check_honors_config(config_manager):
    raw = config_manager.read_non_sensitive("updates.json")
    raw["check_on_startup"] = False
    config_manager.save_non_sensitive("updates.json", raw)
    mgr = ModuleManager(config_manager, session=FakeSession())
    assert mgr.start_update_check(lambda r: None) is None
