from __future__ import annotations

import logging
from collections import OrderedDict, deque
from pathlib import Path
from typing import Any, Deque, Dict, Optional

from .ledger import Ledger
from .utils import to_jsonable, utc_timestamp

logger = logging.getLogger(__name__)

CALL_EVENT = "CALL"
DEFAULT_MAX_RECORDS = 1000


class CallLog:
    """Emits one record per call id.

    Recent records are kept in memory for inspection, and the last
    `max_records` call ids are remembered to drop duplicates. The ledger
    file, when configured, holds the full history.
    """

    def __init__(self, path: Optional[Path], max_records: int = DEFAULT_MAX_RECORDS) -> None:
        self.ledger = Ledger(path) if path is not None else None
        self.max_records = max_records
        self.records: Deque[Dict[str, Any]] = deque(maxlen=max_records)
        self._emitted: "OrderedDict[str, None]" = OrderedDict()

    def emit(self, record: Dict[str, Any]) -> None:
        call_id = str(record.get("call_id"))
        if call_id in self._emitted:
            logger.warning("call record for %s already emitted; dropping duplicate", call_id)
            return
        self._emitted[call_id] = None
        while len(self._emitted) > self.max_records:
            self._emitted.popitem(last=False)
        entry = to_jsonable(dict(record, timestamp=record.get("timestamp") or utc_timestamp()))
        self.records.append(entry)
        logger.debug(
            "call %s.%s depth=%s status=%s",
            entry.get("role"),
            entry.get("method"),
            entry.get("depth"),
            entry.get("outcome_status"),
        )
        if self.ledger is None:
            return
        try:
            self.ledger.append(CALL_EVENT, entry)
        except OSError as exc:
            logger.warning("failed to append call record %s: %s", call_id, exc)
