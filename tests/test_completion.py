import os
from datetime import UTC, datetime, timedelta
from pathlib import Path

from pfm.completion import handoff_artifacts, is_complete, latest_handoff
from pfm.gates import GateStatus
from pfm.state import WorkItem


def _handoff(handoffs: Path, name: str, at: datetime) -> Path:
    handoffs.mkdir(parents=True, exist_ok=True)
    path = handoffs / name
    path.write_text("handoff\n", encoding="utf-8")
    os.utime(path, (at.timestamp(), at.timestamp()))
    return path


def _item(status: GateStatus) -> WorkItem:
    item = WorkItem.new("FEAT-001", "Test")
    item.gates["tests"] = status
    return item


def test_complete_requires_terminal_status_and_fresh_handoff(tmp_path: Path) -> None:
    start = datetime.now(UTC) - timedelta(minutes=5)
    handoffs = tmp_path / "handoffs"
    _handoff(handoffs, "20260101-120000-test.md", start + timedelta(minutes=1))

    assert is_complete(_item(GateStatus.PASS), "test", start, handoffs_dir=handoffs) is True
    assert is_complete(_item(GateStatus.FAIL), "test", start, handoffs_dir=handoffs) is True
    assert is_complete(_item(GateStatus.IN_PROGRESS), "test", start, handoffs_dir=handoffs) is False


def test_stale_handoff_does_not_complete(tmp_path: Path) -> None:
    start = datetime.now(UTC)
    handoffs = tmp_path / "handoffs"
    _handoff(handoffs, "test.md", start - timedelta(hours=1))

    assert is_complete(_item(GateStatus.PASS), "test", start, handoffs_dir=handoffs) is False


def test_handoff_mtime_equal_to_start_is_not_fresh(tmp_path: Path) -> None:
    start = datetime(2026, 1, 1, 12, 0, 0, tzinfo=UTC)
    handoffs = tmp_path / "handoffs"
    _handoff(handoffs, "test.md", start)

    assert is_complete(_item(GateStatus.PASS), "test", start, handoffs_dir=handoffs) is False


def test_missing_start_marker_fails_closed(tmp_path: Path) -> None:
    handoffs = tmp_path / "handoffs"
    _handoff(handoffs, "test.md", datetime.now(UTC))

    assert is_complete(_item(GateStatus.PASS), "test", None, handoffs_dir=handoffs) is False


def test_handoffs_of_other_roles_are_ignored(tmp_path: Path) -> None:
    start = datetime.now(UTC) - timedelta(minutes=5)
    handoffs = tmp_path / "handoffs"
    _handoff(handoffs, "20260101-qa.md", datetime.now(UTC))
    _handoff(handoffs, "latest-test.md.bak", datetime.now(UTC))

    assert handoff_artifacts(handoffs, "test") == []
    assert is_complete(_item(GateStatus.PASS), "test", start, handoffs_dir=handoffs) is False


def test_latest_handoff_picks_newest(tmp_path: Path) -> None:
    handoffs = tmp_path / "handoffs"
    now = datetime.now(UTC)
    _handoff(handoffs, "1-implementation.md", now - timedelta(minutes=2))
    newest = _handoff(handoffs, "2-implementation.md", now)

    assert latest_handoff(handoffs, "implementation") == newest
    assert latest_handoff(tmp_path / "missing", "implementation") is None
