from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Iterator, Mapping, Optional, Set, Tuple

from ..utils import now_ts_ns, read_jsonl, stable_hash, to_jsonable, write_jsonl_line


def _event_hash(entry: Mapping[str, Any]) -> str:
    return stable_hash({key: value for key, value in entry.items() if key != "hash"})


class Ledger:
    """Hash-chained JSONL of call records.

    Each line lifts `call_id`, `trace_id` and the outcome status out of the
    payload so a trace can be followed without reading every record, and
    carries a sequence number so dropped lines show up on verification.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._last_hash = ""
        self._next_seq = 0
        if self.path.exists():
            entries = read_jsonl(self.path)
            if entries:
                self._last_hash = entries[-1].get("hash", "")
                self._next_seq = len(entries)

    def append(self, event_type: str, payload: Mapping[str, Any]) -> str:
        record = to_jsonable(dict(payload))
        event = {
            "seq": self._next_seq,
            "ts": now_ts_ns(),
            "type": event_type,
            "call_id": record.get("call_id"),
            "trace_id": record.get("trace_id"),
            "status": record.get("outcome_status"),
            "payload": record,
            "prev_hash": self._last_hash,
        }
        event_hash = _event_hash(event)
        event["hash"] = event_hash
        write_jsonl_line(self.path, event)
        self._last_hash = event_hash
        self._next_seq += 1
        return event_hash

    def events(
        self, event_type: Optional[str] = None, trace_id: Optional[str] = None
    ) -> Iterator[Dict[str, Any]]:
        for entry in read_jsonl(self.path):
            if event_type is not None and entry.get("type") != event_type:
                continue
            if trace_id is not None and entry.get("trace_id") != trace_id:
                continue
            yield entry

    @staticmethod
    def verify_chain(path: Path) -> Tuple[bool, str]:
        entries = read_jsonl(path)
        prev_hash = ""
        seen: Set[str] = set()
        for idx, entry in enumerate(entries):
            if entry.get("prev_hash") != prev_hash:
                return False, f"prev_hash mismatch at {idx}"
            if entry.get("seq") != idx:
                return False, f"sequence gap at {idx}"
            if _event_hash(entry) != entry.get("hash", ""):
                return False, f"hash mismatch at {idx}"
            call_id = entry.get("call_id")
            if call_id is not None:
                if call_id in seen:
                    return False, f"duplicate call_id {call_id} at {idx}"
                seen.add(call_id)
            prev_hash = entry.get("hash", "")
        return True, f"ok ({len(entries)} events)"
