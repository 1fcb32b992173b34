from __future__ import annotations

import threading

import pytest
import requests

from openasphalte.core.modules.models import CoreRelease, UpdateStatus
from openasphalte.core.modules.updates import UpdateChecker, extract_min_host_version, is_valid_update_url, list_module_updates
from tests.helpers.builders import catalog, desc, install_on_disk
from tests.helpers.fakes import FakeResponse, FakeSession

FEED = "https://api.example.test/repos/oas/releases/latest"


def _release(tag="v0.0.3", body="Bug fixes."):
    return {
        "tag_name": tag,
        "html_url": f"https://github.com/oas/OpenAsphalte/releases/tag/{tag}",
        "body": body,
        "assets": [
            {"browser_download_url": "https://github.com/oas/OpenAsphalte/releases/download/notes.txt"},
            {"browser_download_url": f"https://github.com/oas/OpenAsphalte/releases/download/OpenAsphalte-{tag}.zip"},
        ],
    }


def _checker(route, *, current="0.0.2", host=""):
    return UpdateChecker(current_version=current, host_version=host, releases_url=FEED, session=FakeSession({FEED: route}))


def test_newer_release_is_available():
    res = _checker(FakeResponse(json_data=_release())).check()
    assert res.status == UpdateStatus.UPDATE_AVAILABLE
    assert res.current_version == "0.0.2"
    assert res.latest_version == "0.0.3"
    assert res.download_url == "https://github.com/oas/OpenAsphalte/releases/download/OpenAsphalte-v0.0.3.zip"
    assert res.release_url.endswith("v0.0.3")


def test_same_or_older_release_is_up_to_date():
    assert _checker(FakeResponse(json_data=_release("v0.0.2"))).check().status == UpdateStatus.UP_TO_DATE
    assert _checker(FakeResponse(json_data=_release("0.0.1"))).check().status == UpdateStatus.UP_TO_DATE


def test_release_requiring_newer_host_is_incompatible():
    rel = _release(body="Requires AutoCAD 2026+ for the new ribbon.")
    res = _checker(FakeResponse(json_data=rel), host="2025").check()
    assert res.status == UpdateStatus.INCOMPATIBLE_HOST
    assert res.required_host_version == "2026.0.0"
    assert res.actual_host_version == "2025"


def test_host_requirement_met_reports_available():
    rel = _release(body="minAutoCADVersion: 2024")
    res = _checker(FakeResponse(json_data=rel), host="2025.1").check()
    assert res.status == UpdateStatus.UPDATE_AVAILABLE
    assert res.required_host_version == "2024.0.0"


def test_unknown_host_assumes_compatible():
    rel = _release(body="minHostVersion=2030")
    assert _checker(FakeResponse(json_data=rel)).check().status == UpdateStatus.UPDATE_AVAILABLE


@pytest.mark.parametrize(
    "route",
    [
        FakeResponse(status_code=404),
        FakeResponse(status_code=403),
        FakeResponse(status_code=500),
        FakeResponse(bad_json=True),
        FakeResponse(json_data=["not", "an", "object"]),
        FakeResponse(json_data={"tag_name": ""}),
        FakeResponse(json_data={"tag_name": "nightly"}),
        requests.ConnectionError("dns"),
        requests.Timeout("slow"),
    ],
)
def test_every_failure_becomes_check_failed(route):
    res = _checker(route).check()
    assert res.status == UpdateStatus.CHECK_FAILED
    assert res.reason


def test_rate_limit_reason_is_explained():
    res = _checker(FakeResponse(status_code=403)).check()
    assert "403" in res.reason


def test_invalid_current_version_fails_check():
    res = _checker(FakeResponse(json_data=_release()), current="dev").check()
    assert res.status == UpdateStatus.CHECK_FAILED


def test_catalog_core_entry_is_evaluated():
    checker = UpdateChecker(current_version="0.0.2", host_version="2024", session=FakeSession())
    res = checker.check_catalog(CoreRelease(latest="0.0.3", download_uri="https://example.test/core.zip", min_host_version="2025"))
    assert res.status == UpdateStatus.INCOMPATIBLE_HOST
    assert checker.check_catalog(None).status == UpdateStatus.CHECK_FAILED
    assert checker.check_catalog(CoreRelease(latest="0.0.3")).status == UpdateStatus.UPDATE_AVAILABLE


@pytest.mark.parametrize(
    "body,expected",
    [
        ("Requires AutoCAD 2025+", "2025.0.0"),
        ("requires autocad 2026", "2026.0.0"),
        ("minAutoCADVersion: 2024.1", "2024.1.0"),
        ("MinHostVersion = 2025", "2025.0.0"),
        ("Nothing about hosts here.", None),
    ],
)
def test_min_host_extraction(body, expected):
    assert extract_min_host_version({"body": body}) == expected


def test_explicit_min_host_field_wins():
    assert extract_min_host_version({"min_host_version": "2027", "body": "Requires AutoCAD 2025"}) == "2027.0.0"


def test_background_check_delivers_result():
    checker = _checker(FakeResponse(json_data=_release()))
    got = []
    done = threading.Event()

    def cb(result):
        got.append(result)
        done.set()

    handle = checker.start_background(cb)
    assert done.wait(5)
    assert handle.join(5)
    assert got[0].status == UpdateStatus.UPDATE_AVAILABLE
    assert handle.result is got[0]


def test_cancelled_background_check_skips_callback():
    gate = threading.Event()
    checker = UpdateChecker(
        current_version="0.0.2",
        releases_url=FEED,
        session=FakeSession({FEED: FakeResponse(json_data=_release())}, gate=gate),
    )
    got = []
    handle = checker.start_background(got.append)
    handle.cancel()
    gate.set()

    assert handle.join(5)
    assert handle.cancelled
    assert got == []
    assert handle.result.status == UpdateStatus.UPDATE_AVAILABLE


def test_background_callback_error_is_contained():
    checker = _checker(FakeResponse(status_code=404))

    def cb(result):
        raise RuntimeError("ui gone")

    handle = checker.start_background(cb)
    assert handle.join(5)
    assert handle.result.status == UpdateStatus.CHECK_FAILED


def test_module_updates_list_upgrades_then_new(registry, modules_dir):
    install_on_disk(registry, modules_dir, "a", "1.0.0")
    install_on_disk(registry, modules_dir, "b", "2.0.0")
    cat = catalog(
        desc("a", "1.0.0"),
        desc("a", "1.5.0"),
        desc("b", "2.0.0"),
        desc("c", "0.1.0"),
        desc("d", "1.0.0", min_host_version="2030"),
    )

    updates = list_module_updates(cat, registry, host_version="2025")

    assert [(u.identifier, u.current_version, u.new_version, u.is_new_install) for u in updates] == [
        ("a", "1.0.0", "1.5.0", False),
        ("c", None, "0.1.0", True),
    ]


@pytest.mark.parametrize(
    "url,ok",
    [
        ("https://github.com/oas/OpenAsphalte/releases/tag/v0.0.3", True),
        ("https://objects.github.com/x.zip", True),
        ("https://GitLab.com/oas/oas/-/releases", True),
        ("https://bitbucket.org/oas/oas/downloads/x.zip", True),
        ("http://github.com/oas/OpenAsphalte/releases", False),
        ("https://evilgithub.com/x.zip", False),
        ("https://github.com.evil.test/x.zip", False),
        ("ftp://github.com/x.zip", False),
        ("github.com/x.zip", False),
        ("", False),
        (None, False),
    ],
)
def test_update_url_allowlist(url, ok):
    assert is_valid_update_url(url) is ok


def test_untrusted_links_are_not_surfaced():
    release = _release()
    release["assets"] = [{"browser_download_url": "http://mirror.example.test/OpenAsphalte-v0.0.3.zip"}]
    res = _checker(FakeResponse(json_data=release)).check()
    assert res.status == UpdateStatus.UPDATE_AVAILABLE
    assert res.download_url == res.release_url == "https://github.com/oas/OpenAsphalte/releases/tag/v0.0.3"

    release["html_url"] = "https://example.test/releases/v0.0.3"
    res = _checker(FakeResponse(json_data=release)).check()
    assert res.status == UpdateStatus.UPDATE_AVAILABLE
    assert res.download_url == "" and res.release_url == ""


def test_catalog_core_link_outside_allowlist_is_dropped():
    checker = UpdateChecker(current_version="0.0.2", session=FakeSession(), allowed_hosts=["downloads.example.test"])
    kept = checker.check_catalog(CoreRelease(latest="0.0.3", download_uri="https://downloads.example.test/core.zip"))
    assert kept.download_url == "https://downloads.example.test/core.zip"
    dropped = checker.check_catalog(CoreRelease(latest="0.0.3", download_uri="https://github.com/oas/core.zip"))
    assert dropped.download_url == ""
