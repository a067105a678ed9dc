"""Append-only lifecycle journal for a namespace.

Every install writes INSTALL_STARTED, then TREE_SWAPPED once the new module
tree is in place, then LINKED once bin entries are rewritten, then
FINALIZED | FINALIZE_FAILED. A package whose last event is TREE_SWAPPED was
interrupted between the swap and the link rewrite; `pending_relinks` finds
those so the next operation can finish the job.

Each entry carries the hash of the previous one so truncation or edits in
the middle of the file are detectable with `verify_chain`.

Usage:
    journal = Journal(ns)
    journal.write("INSTALL_STARTED", "npm", "10.0.0", source="npm-10.0.0.tgz")
    for name in journal.pending_relinks():
        ...
"""

import hashlib
import json
import logging
import os
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from global_install.paths import GlobalNamespace


logger = logging.getLogger(__name__)

JOURNAL_NAME = "journal.jsonl"

INSTALL_STARTED = "INSTALL_STARTED"
TREE_SWAPPED = "TREE_SWAPPED"
LINKED = "LINKED"
FINALIZED = "FINALIZED"
FINALIZE_FAILED = "FINALIZE_FAILED"
INSTALL_FAILED = "INSTALL_FAILED"
UNINSTALLED = "UNINSTALLED"
REPAIRED = "REPAIRED"


def _hash_entry(entry_dict: Dict[str, Any]) -> str:
    content = {k: v for k, v in entry_dict.items() if k != "entry_hash"}
    return hashlib.sha256(json.dumps(content, sort_keys=True).encode("utf-8")).hexdigest()


@dataclass
class JournalEntry:
    """One lifecycle event."""

    event_type: str
    package: str
    version: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: f"JRN-{uuid.uuid4().hex[:8]}")
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    pid: int = field(default_factory=os.getpid)
    previous_hash: str = ""
    entry_hash: str = ""

    def to_json(self) -> str:
        return json.dumps(asdict(self), ensure_ascii=False)

    @classmethod
    def from_json(cls, line: str) -> "JournalEntry":
        return cls(**json.loads(line))


class Journal:
    """JSONL journal stored in the namespace's state directory.

    Writers must hold the namespace lock; readers need not.
    """

    def __init__(self, ns: GlobalNamespace):
        self.path = ns.state_dir / JOURNAL_NAME
        # Hash of the newest entry; valid while this instance's writer holds the lock
        self._tail_hash: Optional[str] = None

    def _last_line(self, block: int = 4096) -> bytes:
        """Final non-empty line of the file, read backwards from the end."""
        with open(self.path, "rb") as f:
            f.seek(0, os.SEEK_END)
            pos = f.tell()
            data = b""
            while pos > 0:
                step = min(block, pos)
                pos -= step
                f.seek(pos)
                data = f.read(step) + data
                lines = data.rstrip(b"\r\n").splitlines()
                if len(lines) > 1 or (pos == 0 and lines):
                    return lines[-1]
            return b""

    def _ends_torn(self) -> bool:
        """Whether the file ends mid-line (a writer died during append)."""
        if not self.path.exists() or self.path.stat().st_size == 0:
            return False
        with open(self.path, "rb") as f:
            f.seek(-1, os.SEEK_END)
            return f.read(1) != b"\n"

    def _last_hash(self) -> str:
        if self._tail_hash is not None:
            return self._tail_hash
        if not self.path.exists():
            return ""
        line = self._last_line()
        if not line.strip():
            return ""
        try:
            return JournalEntry.from_json(line.decode("utf-8")).entry_hash
        except (json.JSONDecodeError, TypeError, UnicodeDecodeError):
            # Torn last line: chain from the last entry that reads back
            entries = self.read()
            return entries[-1].entry_hash if entries else ""

    def write(self, event_type: str, package: str, version: Optional[str] = None, **metadata: Any) -> JournalEntry:
        """Append an event and fsync it before returning."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        torn = self._tail_hash is None and self._ends_torn()
        entry = JournalEntry(
            event_type=event_type,
            package=package,
            version=version,
            metadata={k: v for k, v in metadata.items() if v is not None},
            previous_hash=self._last_hash(),
        )
        entry.entry_hash = _hash_entry(asdict(entry))
        with open(self.path, "a", encoding="utf-8") as f:
            if torn:
                f.write("\n")
            f.write(entry.to_json() + "\n")
            f.flush()
            os.fsync(f.fileno())
        self._tail_hash = entry.entry_hash
        logger.debug("journal %s %s@%s", event_type, package, version)
        return entry

    def read(self) -> List[JournalEntry]:
        """All parseable entries, oldest first. A torn last line is skipped."""
        if not self.path.exists():
            return []
        entries = []
        with open(self.path, "r", encoding="utf-8") as f:
            for line in f:
                if not line.strip():
                    continue
                try:
                    entries.append(JournalEntry.from_json(line))
                except (json.JSONDecodeError, TypeError):
                    logger.warning("skipping unreadable journal line in %s", self.path)
        return entries

    def last_event(self, package: str) -> Optional[JournalEntry]:
        for entry in reversed(self.read()):
            if entry.package == package:
                return entry
        return None

    def pending_relinks(self) -> List[str]:
        """Packages whose tree was swapped but whose links were never rewritten."""
        last: Dict[str, str] = {}
        for entry in self.read():
            last[entry.package] = entry.event_type
        return sorted(name for name, event in last.items() if event == TREE_SWAPPED)

    def verify_chain(self) -> Tuple[bool, List[str]]:
        """Check entry hashes and previous-hash links."""
        issues = []
        previous = ""
        for i, entry in enumerate(self.read()):
            if entry.previous_hash != previous:
                issues.append(f"entry {i} ({entry.id}): previous_hash does not match")
            if _hash_entry(asdict(entry)) != entry.entry_hash:
                issues.append(f"entry {i} ({entry.id}): entry_hash does not match content")
            previous = entry.entry_hash
        return not issues, issues
