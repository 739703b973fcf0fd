# session_journal.py
import json
import logging
import os
from collections import Counter
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional

logger = logging.getLogger("CrashMonitor.Journal")

SPOOL_DIR = "./spool"

# Record kinds written by the session controller
RECORD_KINDS = (
    "session_start",
    "sample",
    "speeding",
    "deceleration",
    "impact",
    "crash",
    "reset",
    "dispatch",
    "session_stop",
)


class LocalJournal:
    """
    Local-first NDJSON log of one monitor run: samples, detected events,
    crash decisions and dispatch results, one JSON object per line.
    Write failures are logged, never raised.
    """

    def __init__(self, spool_dir: str, session_id: str):
        self.session_id = session_id
        os.makedirs(spool_dir, exist_ok=True)
        self.path = os.path.join(spool_dir, f"{session_id}.ndjson")
        self._fh = open(self.path, "a", buffering=1, encoding="utf-8")
        self.written: Counter = Counter()

    @property
    def closed(self) -> bool:
        return self._fh is None

    def append(self, kind: str, record: Dict[str, Any]) -> None:
        if self._fh is None:
            return
        if kind not in RECORD_KINDS:
            logger.debug(f"Unlisted journal record kind: {kind}")
        entry = {"kind": kind, "logged_at": datetime.now(timezone.utc).isoformat(), **record}
        try:
            line = json.dumps(entry, ensure_ascii=False)
        except (TypeError, ValueError) as e:
            logger.error(f" Journal record '{kind}' is not serializable: {e}")
            return
        try:
            self._fh.write(line + "\n")
        except OSError as e:
            logger.error(f" Failed to append '{kind}' to journal: {e}")
            return
        self.written[kind] += 1

    def close(self) -> None:
        if self._fh is None:
            return
        fh, self._fh = self._fh, None
        try:
            fh.flush()
            fh.close()
        except OSError as e:
            logger.warning(f" Failed to close journal {self.path}: {e}")

    def iter_records(self, kind: Optional[str] = None) -> Iterator[Dict[str, Any]]:
        """Read back the journal, optionally only one kind. Corrupt lines are skipped."""
        if not os.path.exists(self.path):
            return
        with open(self.path, "r", encoding="utf-8") as fh:
            for raw in fh:
                raw = raw.strip()
                if not raw:
                    continue
                try:
                    record = json.loads(raw)
                except json.JSONDecodeError:
                    continue
                if kind is None or record.get("kind") == kind:
                    yield record

    def summary(self) -> str:
        if not self.written:
            return "empty"
        return ", ".join(f"{kind}={count}" for kind, count in sorted(self.written.items()))
