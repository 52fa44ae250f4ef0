from datetime import datetime, timedelta, timezone

import semver

from trunkdev.update_check import (
    Versions,
    announce_version,
    latest_versions,
    need_check,
    record_checked,
    state_file,
)

T0 = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def _versions():
    return Versions(
        release=semver.Version.parse("0.19.0"),
        prerelease=semver.Version.parse("0.20.0-alpha.1"),
    )


def test_state_file_name():
    assert state_file().name == "update.json"


def test_versions_json_round_trip():
    versions = _versions()
    assert Versions.from_json(versions.to_json()) == versions
    assert Versions.from_json(Versions().to_json()) == Versions()


def test_versions_json_omits_missing():
    data = Versions(release=semver.Version.parse("1.2.3")).to_json()
    assert set(data) == {"release"}


def test_latest_versions_picks_maximums():
    result = latest_versions(["0.18.0", "0.19.0", "0.20.0-alpha.1", "bad"])
    assert result.release == semver.Version.parse("0.19.0")
    assert result.prerelease == semver.Version.parse("0.20.0-alpha.1")


def test_latest_versions_empty():
    assert latest_versions([]) == Versions()


def test_need_check_missing_file(tmp_path):
    assert need_check(tmp_path / "update.json", now=T0) is None


def test_record_then_need_check_within_period(tmp_path):
    path = tmp_path / "state" / "update.json"
    record_checked(_versions(), path, now=T0)
    assert need_check(path, now=T0 + timedelta(hours=1)) == _versions()


def test_need_check_after_period(tmp_path):
    path = tmp_path / "update.json"
    record_checked(_versions(), path, now=T0)
    assert need_check(path, now=T0 + timedelta(days=2)) is None


def test_need_check_corrupt_file(tmp_path):
    path = tmp_path / "update.json"
    path.write_text("not json", encoding="utf-8")
    assert need_check(path, now=T0) is None


def test_need_check_unreadable_path(tmp_path):
    assert need_check(tmp_path, now=T0) == Versions()


def test_record_checked_ignores_errors(tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("", encoding="utf-8")
    target = blocker / "update.json"
    record_checked(_versions(), target, now=T0)
    assert not target.exists()


def test_announce_newer_release():
    versions = _versions()
    assert announce_version(versions, "0.18.0") == versions.release


def test_announce_prerelease_channel():
    versions = _versions()
    assert announce_version(versions, "0.19.0-alpha.1") == versions.prerelease


def test_announce_nothing_newer():
    assert announce_version(_versions(), "0.19.0") is None
    assert announce_version(Versions(), "0.1.0") is None
    assert announce_version(_versions(), "garbage") is None