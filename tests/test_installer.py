from __future__ import annotations

import json
import os
import threading

import pytest

from openasphalte.core.modules.installer import ModuleInstaller
from openasphalte.core.modules.models import PlanAction
from openasphalte.core.modules.reconciler import StartupReconciler
from openasphalte.core.modules.resolver import DependencyResolver
from tests.helpers.builders import catalog, desc, install_on_disk, write_files, write_manifest, write_zip, zip_bytes
from tests.helpers.fakes import FailOnCall, FakeResponse, FakeSession, LockedFiles

DL = "https://dl.example.test"


def _read(path) -> bytes:
    with open(path, "rb") as f:
        return f.read()


def _apply(registry, modules_dir, cat, ids, *, session=None, upgrade=False, **kw):
    plan = DependencyResolver().resolve(ids, cat, registry, upgrade=upgrade)
    installer = ModuleInstaller(registry, modules_dir, session=session or FakeSession(), **kw)
    return installer.apply(plan)


def test_http_zip_install_places_files_and_records(registry, modules_dir):
    session = FakeSession({f"{DL}/a-1.0.0.zip": FakeResponse(content=zip_bytes({"a.dll": b"A1", "lang/fr.res": b"fr"}))})
    cat = catalog(desc("a", "1.0.0", download_uri=f"{DL}/a-1.0.0.zip", files=["a.dll", "lang/fr.res"], name="Alpha"))

    report = _apply(registry, modules_dir, cat, ["a"], session=session)

    assert report.ok
    assert report.succeeded == ["a"]
    assert report.summary() == "1 of 1 succeeded"
    assert _read(os.path.join(modules_dir, "a", "a.dll")) == b"A1"
    assert _read(os.path.join(modules_dir, "a", "lang", "fr.res")) == b"fr"
    with open(os.path.join(modules_dir, "a", "module.json"), "r", encoding="utf-8") as f:
        manifest = json.load(f)
    assert manifest["id"] == "a" and manifest["version"] == "1.0.0" and manifest["name"] == "Alpha"

    rec = registry.get("a")
    assert rec.version == "1.0.0"
    assert rec.files == ["a/a.dll", "a/lang/fr.res", "a/module.json"]
    assert rec.installed_at
    assert session.calls[0][1]["stream"] is True
    assert os.listdir(os.path.join(modules_dir, ".staging")) == []


def test_archive_with_single_top_folder_is_flattened(registry, modules_dir):
    session = FakeSession({f"{DL}/a.zip": FakeResponse(content=zip_bytes({"a-1.0.0/a.dll": b"A"}))})
    cat = catalog(desc("a", "1.0.0", download_uri=f"{DL}/a.zip", files=["a.dll"]))
    report = _apply(registry, modules_dir, cat, ["a"], session=session)
    assert report.ok
    assert os.path.isfile(os.path.join(modules_dir, "a", "a.dll"))


def test_dependency_failure_keeps_earlier_steps(registry, modules_dir):
    session = FakeSession({f"{DL}/a.zip": FakeResponse(content=zip_bytes({"a.dll": b"A"}))})  # b answers 404
    cat = catalog(
        desc("a", "1.0.0", download_uri=f"{DL}/a.zip", files=["a.dll"]),
        desc("b", "1.0.0", ["a"], download_uri=f"{DL}/b.zip", files=["b.dll"]),
        desc("c", "1.0.0", ["b"], download_uri=f"{DL}/c.zip", files=["c.dll"]),
    )

    report = _apply(registry, modules_dir, cat, ["c"], session=session)

    assert report.succeeded == ["a"]
    assert report.failed.identifier == "b"
    assert report.failed.code == "network_error"
    assert "404" in report.failed.message
    assert report.not_attempted == ["c"]
    assert report.summary() == "1 of 3 succeeded"
    assert registry.active_ids() == ["a"]
    assert not os.path.exists(os.path.join(modules_dir, "b"))
    assert f"{DL}/c.zip" not in session.urls()


def test_manifest_mismatch_places_nothing(registry, modules_dir):
    session = FakeSession({f"{DL}/a.zip": FakeResponse(content=zip_bytes({"a.dll": b"A"}))})
    cat = catalog(desc("a", "1.0.0", download_uri=f"{DL}/a.zip", files=["a.dll", "a.Resources.dll"]))

    report = _apply(registry, modules_dir, cat, ["a"], session=session)

    assert report.failed.code == "manifest_mismatch"
    assert "a.Resources.dll" in report.failed.message
    assert registry.get("a") is None
    assert not os.path.exists(os.path.join(modules_dir, "a"))


def test_checksum_mismatch_is_rejected(registry, modules_dir):
    session = FakeSession({f"{DL}/a.zip": FakeResponse(content=zip_bytes({"a.dll": b"A"}))})
    cat = catalog(desc("a", "1.0.0", download_uri=f"{DL}/a.zip", sha256="0" * 64))
    report = _apply(registry, modules_dir, cat, ["a"], session=session)
    assert report.failed.code == "validation_error"
    assert registry.get("a") is None


def test_archive_path_traversal_is_rejected(registry, modules_dir, tmp_path):
    session = FakeSession({f"{DL}/a.zip": FakeResponse(content=zip_bytes({"../../evil.dll": b"x"}))})
    cat = catalog(desc("a", "1.0.0", download_uri=f"{DL}/a.zip"))
    report = _apply(registry, modules_dir, cat, ["a"], session=session)
    assert report.failed.code == "validation_error"
    assert not os.path.exists(os.path.join(str(tmp_path), "evil.dll"))
    assert not os.path.exists(os.path.join(modules_dir, "evil.dll"))


def test_local_directory_artifact_is_copied(registry, modules_dir, tmp_path):
    bundle = os.path.join(str(tmp_path), "share", "survey")
    write_files(bundle, {"survey.dll": b"S", "templates/road.dwt": b"T"})
    write_manifest(bundle, {"id": "survey", "version": "2.0.0"})
    cat = catalog(desc("survey", "2.0.0", download_uri=bundle))

    report = _apply(registry, modules_dir, cat, ["survey"])

    assert report.ok
    assert registry.get("survey").files == ["survey/survey.dll", "survey/templates/road.dwt", "survey/module.json"]
    assert os.path.isfile(os.path.join(bundle, "survey.dll"))


def test_local_zip_and_plain_file_artifacts(registry, modules_dir, tmp_path):
    share = os.path.join(str(tmp_path), "share")
    zipped = write_zip(os.path.join(share, "a.zip"), {"a.dll": b"A"})
    write_files(share, {"tool.dll": b"T"})
    cat = catalog(
        desc("a", "1.0.0", download_uri="file://" + zipped),
        desc("tool", "1.0.0", download_uri=os.path.join(share, "tool.dll")),
    )

    report = _apply(registry, modules_dir, cat, ["a", "tool"])

    assert report.succeeded == ["a", "tool"]
    assert "a/a.dll" in registry.get("a").files
    assert registry.get("tool").files == ["tool/tool.dll", "tool/module.json"]


def test_missing_local_artifact_fails_step(registry, modules_dir, tmp_path):
    cat = catalog(desc("a", "1.0.0", download_uri=os.path.join(str(tmp_path), "nowhere.zip")))
    report = _apply(registry, modules_dir, cat, ["a"])
    assert report.failed.code == "network_error"


def test_upgrade_trashes_leftover_files(registry, modules_dir):
    session = FakeSession(
        {
            f"{DL}/a-1.zip": FakeResponse(content=zip_bytes({"a.dll": b"v1", "old.dll": b"old"})),
            f"{DL}/a-2.zip": FakeResponse(content=zip_bytes({"a.dll": b"v2"})),
        }
    )
    v1 = desc("a", "1.0.0", download_uri=f"{DL}/a-1.zip", files=["a.dll", "old.dll"])
    v2 = desc("a", "2.0.0", download_uri=f"{DL}/a-2.zip", files=["a.dll"])
    assert _apply(registry, modules_dir, catalog(v1), ["a"], session=session).ok

    report = _apply(registry, modules_dir, catalog(v1, v2), ["a"], session=session, upgrade=True)

    assert report.succeeded == ["a"]
    rec = registry.get("a")
    assert rec.version == "2.0.0"
    assert rec.files == ["a/a.dll", "a/module.json"]
    assert _read(os.path.join(modules_dir, "a", "a.dll")) == b"v2"
    assert not os.path.exists(os.path.join(modules_dir, "a", "old.dll"))
    pending = registry.get_pending("a")
    assert pending.trashed_files == ["a/a.dll.del", "a/module.json.del", "a/old.dll.del"]
    assert pending.remove_record is False
    assert registry.is_active("a")

    rep = StartupReconciler(registry, modules_dir).reconcile()
    assert rep.orphans_deleted == ["a/a.dll.del", "a/module.json.del", "a/old.dll.del"]
    assert registry.get_pending("a") is None
    assert registry.get("a").version == "2.0.0"


def test_locked_target_is_moved_aside(registry, modules_dir):
    install_on_disk(registry, modules_dir, "a", "1.0.0", files=["a.dll"])
    target = os.path.join(modules_dir, "a", "a.dll")
    locks = LockedFiles(target)
    session = FakeSession({f"{DL}/a-2.zip": FakeResponse(content=zip_bytes({"a.dll": b"v2"}))})
    cat = catalog(desc("a", "2.0.0", download_uri=f"{DL}/a-2.zip", files=["a.dll"]))

    report = _apply(registry, modules_dir, cat, ["a"], session=session, upgrade=True, replace_file=locks.replace)

    assert report.ok
    assert _read(target) == b"v2"
    assert os.path.exists(target + ".del")
    assert registry.get_pending("a").trashed_files == ["a/a.dll.del"]
    assert os.path.abspath(target + ".del") in locks.locked


def test_cancellation_stops_before_next_step(registry, modules_dir):
    routes = {f"{DL}/{x}.zip": FakeResponse(content=zip_bytes({f"{x}.dll": b"x"})) for x in "abc"}
    cat = catalog(*[desc(x, "1.0.0", download_uri=f"{DL}/{x}.zip") for x in "abc"])
    plan = DependencyResolver().resolve(["a", "b", "c"], cat, registry)
    cancel = threading.Event()
    seen = []

    def progress(ident, idx, total):
        seen.append((ident, idx, total))
        cancel.set()

    report = ModuleInstaller(registry, modules_dir, session=FakeSession(routes)).apply(plan, cancel_event=cancel, progress=progress)

    assert seen == [("a", 0, 3)]
    assert report.cancelled
    assert report.succeeded == ["a"]
    assert report.not_attempted == ["b", "c"]
    assert registry.active_ids() == ["a"]


def test_skip_steps_are_reported_not_applied(registry, modules_dir):
    install_on_disk(registry, modules_dir, "a", "1.0.0")
    session = FakeSession({f"{DL}/b.zip": FakeResponse(content=zip_bytes({"b.dll": b"B"}))})
    cat = catalog(desc("a", "1.0.0"), desc("b", "1.0.0", ["a"], download_uri=f"{DL}/b.zip"))

    report = _apply(registry, modules_dir, cat, ["b"], session=session)

    assert report.skipped == ["a"]
    assert report.succeeded == ["b"]
    assert session.urls() == [f"{DL}/b.zip"]


def test_apply_stages_removals(registry, modules_dir):
    install_on_disk(registry, modules_dir, "a")
    install_on_disk(registry, modules_dir, "b", deps=["a"])
    plan = DependencyResolver().resolve([], catalog(), registry, remove=["a", "b"])
    assert plan.identifiers(PlanAction.REMOVE) == ["b", "a"]

    report = ModuleInstaller(registry, modules_dir, session=FakeSession()).apply(plan)

    assert report.removed == ["b", "a"]
    assert registry.active_ids() == []
    assert os.path.exists(os.path.join(modules_dir, "a", "a.dll.del"))
    assert not os.path.exists(os.path.join(modules_dir, "b", "b.dll"))


def test_reinstall_after_staged_removal_keeps_record(registry, modules_dir):
    install_on_disk(registry, modules_dir, "a", "1.0.0")
    installer = ModuleInstaller(registry, modules_dir, session=FakeSession({f"{DL}/a.zip": FakeResponse(content=zip_bytes({"a.dll": b"new"}))}))
    installer.uninstaller.stage("a")

    plan = DependencyResolver().resolve(["a"], catalog(desc("a", "1.0.0", download_uri=f"{DL}/a.zip")), registry)
    assert plan.steps[0].action == PlanAction.INSTALL
    assert installer.apply(plan).ok

    pending = registry.get_pending("a")
    assert pending.remove_record is False
    StartupReconciler(registry, modules_dir).reconcile()
    assert registry.is_active("a")
    assert _read(os.path.join(modules_dir, "a", "a.dll")) == b"new"


def test_failed_placement_trashes_files_already_placed(registry, modules_dir):
    session = FakeSession({f"{DL}/a.zip": FakeResponse(content=zip_bytes({"a.dll": b"A"}))})
    cat = catalog(desc("a", "1.0.0", download_uri=f"{DL}/a.zip", files=["a.dll"]))
    replace = FailOnCall(2, OSError(28, "No space left on device"))

    report = _apply(registry, modules_dir, cat, ["a"], session=session, replace_file=replace)

    assert report.failed.code == "filesystem_error"
    assert report.summary() == "0 of 1 succeeded"
    assert registry.get("a") is None
    assert not os.path.exists(os.path.join(modules_dir, "a", "a.dll"))
    pending = registry.get_pending("a")
    assert pending.trashed_files == ["a/a.dll.del"]
    assert pending.remove_record is False

    rep = StartupReconciler(registry, modules_dir).reconcile()

    assert rep.registered == []
    assert registry.get("a") is None and registry.get_pending("a") is None
    assert not os.path.exists(os.path.join(modules_dir, "a"))
    plan = DependencyResolver().resolve(["a"], cat, registry)
    assert [(s.action, s.identifier) for s in plan.steps] == [(PlanAction.INSTALL, "a")]


@pytest.mark.parametrize(
    "fail_call, exc",
    [
        (2, OSError(5, "Input/output error")),
        (3, PermissionError(13, "Access is denied")),
        (4, OSError(28, "No space left on device")),
    ],
)
def test_failed_upgrade_puts_originals_back(registry, modules_dir, fail_call, exc):
    install_on_disk(registry, modules_dir, "a", "1.0.0", files=["a.dll", "module.json"])
    session = FakeSession({f"{DL}/a-2.zip": FakeResponse(content=zip_bytes({"a.dll": b"v2"}))})
    cat = catalog(desc("a", "2.0.0", download_uri=f"{DL}/a-2.zip", files=["a.dll"]))

    report = _apply(
        registry, modules_dir, cat, ["a"], session=session, upgrade=True, replace_file=FailOnCall(fail_call, exc)
    )

    assert report.failed.identifier == "a"
    rec = registry.get("a")
    assert rec.version == "1.0.0"
    for rel in rec.files:
        assert _read(os.path.join(modules_dir, rel)) == b"a 1.0.0"
        assert not os.path.exists(os.path.join(modules_dir, rel + ".del"))
    assert registry.get_pending("a") is None


def test_corrupt_archive_fails_the_step_with_a_report(registry, modules_dir):
    corrupt = zip_bytes({"a.dll": b"AAAAAAAA"}).replace(b"AAAAAAAA", b"AAAABAAA", 1)
    session = FakeSession(
        {
            f"{DL}/a.zip": FakeResponse(content=corrupt),
            f"{DL}/b.zip": FakeResponse(content=zip_bytes({"b.dll": b"B"})),
        }
    )
    cat = catalog(
        desc("a", "1.0.0", download_uri=f"{DL}/a.zip"),
        desc("b", "1.0.0", download_uri=f"{DL}/b.zip"),
    )

    report = _apply(registry, modules_dir, cat, ["a", "b"], session=session)

    assert report.failed.identifier == "a"
    assert report.failed.code == "parse_error"
    assert report.not_attempted == ["b"]
    assert registry.get("a") is None
    assert f"{DL}/b.zip" not in session.urls()
