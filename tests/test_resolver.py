"""Tests for current-version resolution."""

import random
from datetime import datetime
from types import SimpleNamespace

from releasewatch.versions.resolver import order_history, previous_version, resolve_current_version


def record(version, verified=True, override=False, release_date=None, detected_at=None, id=None):
    return SimpleNamespace(
        id=id,
        version=version,
        verified=verified,
        is_current_override=override,
        release_date=release_date,
        detected_at=detected_at,
    )


def test_override_wins_over_higher_versions():
    records = [record("1.2.0", id=1), record("1.3.0", id=2), record("1.1.0", override=True, id=3)]
    assert resolve_current_version(records).version == "1.1.0"


def test_highest_version_without_override():
    records = [record("1.2.0"), record("1.10.0"), record("1.9.5")]
    assert resolve_current_version(records).version == "1.10.0"


def test_none_when_nothing_verified():
    records = [record("1.0.0", verified=False), record("2.0.0", verified=False)]
    assert resolve_current_version(records) is None
    assert resolve_current_version([]) is None


def test_unverified_records_are_ignored():
    records = [record("1.0.0"), record("9.0.0", verified=False)]
    assert resolve_current_version(records).version == "1.0.0"


def test_unverified_override_is_ignored():
    records = [record("2.0.0"), record("1.0.0", verified=False, override=True)]
    assert resolve_current_version(records).version == "2.0.0"


def test_tie_broken_by_release_date_then_detection():
    a = record("2.0", release_date=datetime(2024, 1, 1), id=1)
    b = record("2.0.0", release_date=datetime(2024, 2, 1), id=2)
    assert resolve_current_version([a, b]) is b

    c = record("3.0", release_date=None, detected_at=datetime(2024, 3, 1), id=3)
    d = record("3.0.0", release_date=None, detected_at=datetime(2024, 3, 5), id=4)
    assert resolve_current_version([d, c]) is d


def test_result_does_not_depend_on_input_order():
    records = [
        record("1.0.0", id=1),
        record("1.0", release_date=datetime(2024, 1, 1), id=2),
        record("0.9.0", id=3),
        record("1.0.0-rc", id=4),
    ]
    expected = resolve_current_version(records)
    rng = random.Random(7)
    for _ in range(10):
        shuffled = records[:]
        rng.shuffle(shuffled)
        assert resolve_current_version(shuffled) is expected


def test_order_history_newest_first():
    records = [record("1.0.0"), record("1.2.0"), record("1.1.0"), record("5.0.0", verified=False)]
    assert [r.version for r in order_history(records)] == ["1.2.0", "1.1.0", "1.0.0"]


def test_previous_version():
    records = [record("1.0.0"), record("1.9.0"), record("2.0.0"), record("1.9.5", verified=False)]
    assert previous_version(records, "2.0.0").version == "1.9.0"
    assert previous_version(records, records[2]).version == "1.9.0"
    assert previous_version(records, "1.0.0") is None
    assert previous_version(records, None) is None
