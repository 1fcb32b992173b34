from __future__ import annotations

import pytest

from openasphalte.core.modules.versions import SemVer, is_newer, normalize_version, parse_version, satisfies_minimum, try_parse_version


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("0.0.3", SemVer(0, 0, 3)),
        ("v0.0.3", SemVer(0, 0, 3)),
        ("V1.2.3", SemVer(1, 2, 3)),
        ("1.2", SemVer(1, 2, 0)),
        ("2025", SemVer(2025, 0, 0)),
        ("1.2.0-dev", SemVer(1, 2, 0)),
        ("1.2.0+build.7", SemVer(1, 2, 0)),
        ("1.2.3.4", SemVer(1, 2, 3)),
        ("1.2.0-dev.abc", SemVer(1, 2, 0)),
        ("1.0rc1", SemVer(1, 0, 0)),
        (" 0.0.2 ", SemVer(0, 0, 2)),
    ],
)
def test_parse_version_normalizes_common_forms(raw, expected):
    assert parse_version(raw) == expected


@pytest.mark.parametrize("raw", ["", "latest", "1..2", "a.b.c", None])
def test_parse_version_rejects_garbage(raw):
    with pytest.raises(ValueError):
        parse_version(raw)
    assert try_parse_version(raw) is None


def test_ordering_is_numeric_not_lexical():
    assert parse_version("0.0.10") > parse_version("0.0.9")
    assert parse_version("1.10.0") > parse_version("1.9.9")
    assert is_newer("0.0.3", "0.0.2")
    assert not is_newer("0.0.2", "v0.0.2")


def test_minimum_semantics():
    assert satisfies_minimum("1.0.0", None)
    assert satisfies_minimum("1.0.0", "1.0")
    assert satisfies_minimum("2.0.0", "1.5.0")
    assert not satisfies_minimum("1.4.9", "1.5.0")


def test_normalize_version_renders_triplet():
    assert normalize_version("v2") == "2.0.0"
    assert str(SemVer(1, 2, 3)) == "1.2.3"
