from pathlib import Path

from callforge.attempts import (
    MAX_ATTEMPT_FAILURES_RECORDED,
    STAGE_EXECUTION,
    AttemptIsolation,
    AttemptRecord,
)


def test_working_copy_is_isolated_until_commit() -> None:
    committed = {"items": [1], "nested": {"a": 1}}
    isolation = AttemptIsolation(committed)

    dirty = isolation.begin()
    dirty["items"].append(2)
    dirty["nested"]["a"] = 99
    isolation.rollback()
    assert committed == {"items": [1], "nested": {"a": 1}}

    clean = isolation.begin()
    clean["items"].append(3)
    isolation.commit(clean)
    assert committed == {"items": [1, 3], "nested": {"a": 1}}


def test_rollback_restores_tracked_file(tmp_path: Path) -> None:
    tracked = tmp_path / "tools.json"
    tracked.write_bytes(b'{"tools": {}}\n')
    isolation = AttemptIsolation({}, tracked)

    tracked.write_bytes(b'{"tools": {"calc": {}}}\n')
    isolation.rollback()
    assert tracked.read_bytes() == b'{"tools": {}}\n'

    missing = tmp_path / "later.json"
    isolation = AttemptIsolation({}, missing)
    missing.write_bytes(b"{}")
    isolation.rollback()
    assert not missing.exists()


def test_failure_history_is_bounded_but_counted() -> None:
    record = AttemptRecord()
    for index in range(MAX_ATTEMPT_FAILURES_RECORDED + 3):
        record.record_failure(STAGE_EXECUTION, "execution", f"boom {index}" + "x" * 500)
        record.next_attempt()

    summary = record.to_record()
    assert summary["attempt_failure_count"] == MAX_ATTEMPT_FAILURES_RECORDED + 3
    assert len(summary["attempt_failures"]) == MAX_ATTEMPT_FAILURES_RECORDED
    assert summary["attempt_failures_truncated"] is True
    assert summary["attempt_failures"][0]["error_message"].startswith("boom 3")
    assert len(summary["attempt_failures"][0]["error_message"]) == 400
    assert summary["attempt_id"] == MAX_ATTEMPT_FAILURES_RECORDED + 4
    assert summary["attempt_stage"] == "rolled_back"
    assert record.latest_failure["attempt_id"] == MAX_ATTEMPT_FAILURES_RECORDED + 3
