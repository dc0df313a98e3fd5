"""Tests for version parsing and ordering."""

import pytest

from releasewatch.versions.parser import (
    ParsedVersion,
    UpdateType,
    classify_update_type,
    compare,
    is_newer,
    is_prerelease,
    normalize_version,
    parse,
    should_ignore_version,
    sort_versions_descending,
)


def test_parse_prefixed_prerelease():
    parsed = parse("v1.2.3-beta")
    assert (parsed.major, parsed.minor, parsed.patch) == (1, 2, 3)
    assert parsed.prerelease == "beta"
    assert parsed.build is None


def test_parse_build_metadata_and_prerelease():
    parsed = parse("1.0.0-rc.1+build.42")
    assert parsed.prerelease == "rc.1"
    assert parsed.build == "build.42"


@pytest.mark.parametrize("raw", [None, "", "   ", "garbage", "v"])
def test_parse_never_raises(raw):
    parsed = parse(raw)
    assert isinstance(parsed, ParsedVersion)
    assert (parsed.major, parsed.minor, parsed.patch) == (0, 0, 0)


def test_parse_short_and_noisy_segments():
    assert parse("2").minor == 0
    assert parse("r32.1.4").major == 32
    assert parse("1.2b.7").minor == 2
    assert parse("10.x.3").minor == 0


def test_release_outranks_prerelease():
    assert compare("1.0.0", "1.0.0-beta") == 1
    assert compare("1.0.0-beta", "1.0.0") == -1


def test_prereleases_compare_as_strings():
    assert compare("1.0.0-beta", "1.0.0-alpha") == 1
    assert compare("1.0.0-rc", "1.0.0-rc") == 0


def test_build_metadata_is_ignored():
    assert compare("1.0.0+1", "1.0.0+2") == 0


def test_numeric_not_lexicographic():
    assert compare("1.10.0", "1.9.9") == 1
    assert compare("v2", "1.99.99") == 1


@pytest.mark.parametrize(
    "a,b",
    [
        ("1.0.0", "1.0.1"),
        ("2.0", "1.9.9"),
        ("1.0.0-beta", "1.0.0"),
        ("abc", "0.0.1"),
        ("v3.1", "3.1.0"),
    ],
)
def test_compare_is_antisymmetric(a, b):
    assert compare(a, b) == -compare(b, a)
    assert compare(a, a) == 0


def test_is_newer():
    assert is_newer("2.0.0", "1.9.0")
    assert not is_newer("1.9.0", "1.9.0")


def test_sort_versions_descending():
    assert sort_versions_descending(["1.2.0", "1.10.0", "1.3.0-beta", "1.3.0"]) == [
        "1.10.0",
        "1.3.0",
        "1.3.0-beta",
        "1.2.0",
    ]


def test_classify_update_type():
    assert classify_update_type("1.9.0", "2.0.0") == UpdateType.MAJOR
    assert classify_update_type("1.2.0", "1.3.0") == UpdateType.MINOR
    assert classify_update_type("1.2.0", "1.2.5") == UpdateType.PATCH
    # Not an ordering: a downgrade still reads as patch
    assert classify_update_type("2.0.0", "1.0.0") == UpdateType.PATCH


def test_normalize_version_strips_markers():
    assert normalize_version("Version 2.1") == "2.1"
    assert normalize_version("v2.1") == "2.1"
    assert normalize_version("release-3.0") == "3.0"
    assert normalize_version("  4.0.1 ") == "4.0.1"


def test_normalize_version_strips_product_prefix():
    assert normalize_version("cobra_v125", "Cobra") == "125"
    assert normalize_version("2.0", "Cobra") == "2.0"


def test_is_prerelease():
    assert is_prerelease("1.0.0-beta")
    assert is_prerelease("v2.0-rc1")
    assert not is_prerelease("1.0.0")
    assert not is_prerelease(None)


def test_should_ignore_version_by_channel():
    assert should_ignore_version("Cobra", "1.0.0-beta")
    assert not should_ignore_version("Cobra", "1.0.0")
    assert should_ignore_version("Cobra Beta", "1.0.0")
    assert not should_ignore_version("Cobra Beta", "1.0.0-beta")
