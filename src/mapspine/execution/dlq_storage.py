"""Storage backends for the dead-letter queue.

``MemoryStorage`` keeps nothing beyond the queue itself. ``FileStorage``
keeps one UTF-8 JSON document per entry, named ``<entry_id>.json``, in a
single directory:

- ``save`` writes to a temporary file and renames it over the target, so a
  reader never sees a half-written entry. With ``fsync=True`` the file is
  flushed to disk before the rename.
- ``load`` reads every ``*.json`` file and orders entries by the timestamp
  embedded in their id; directory listing order is never trusted.
- A crash between ``enqueue`` returning and ``save`` completing loses that
  entry. Enable ``fsync`` to narrow the window to the rename itself.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from mapspine.core.logging import get_logger

if TYPE_CHECKING:
    from mapspine.execution.dlq import DeadLetterEntry

logger = get_logger(__name__)


@runtime_checkable
class DLQStorage(Protocol):
    """Persistence hook used by ``DeadLetterQueue``."""

    def load(self) -> list[DeadLetterEntry]:
        """Entries to restore at startup, in insertion order."""
        ...

    def save(self, entry: DeadLetterEntry) -> None:
        ...

    def delete(self, entry_id: str) -> None:
        ...

    def describe(self) -> dict[str, Any]:
        ...


class MemoryStorage:
    """No-op persistence."""

    def load(self) -> list[DeadLetterEntry]:
        return []

    def save(self, entry: DeadLetterEntry) -> None:
        return None

    def delete(self, entry_id: str) -> None:
        return None

    def describe(self) -> dict[str, Any]:
        return {"storage_type": "memory"}


class FileStorage:
    """Directory of one JSON document per entry."""

    suffix = ".json"

    def __init__(self, path: str | Path, *, fsync: bool = False) -> None:
        self.path = Path(path)
        self.fsync = fsync
        self.path.mkdir(parents=True, exist_ok=True)

    def _file_for(self, entry_id: str) -> Path:
        return self.path / f"{entry_id}{self.suffix}"

    def load(self) -> list[DeadLetterEntry]:
        from mapspine.execution.dlq import DeadLetterEntry, id_sort_key

        entries: list[DeadLetterEntry] = []
        for file in self.path.glob(f"*{self.suffix}"):
            try:
                with file.open(encoding="utf-8") as fh:
                    entries.append(DeadLetterEntry.from_dict(json.load(fh)))
            except (OSError, ValueError, KeyError, TypeError) as e:
                logger.error("dlq_entry_load_failed", file=str(file), error=str(e))

        entries.sort(key=lambda entry: id_sort_key(entry.id))
        logger.info("dlq_storage_loaded", path=str(self.path), entries=len(entries))
        return entries

    def save(self, entry: DeadLetterEntry) -> None:
        target = self._file_for(entry.id)
        tmp = target.with_name(f".{target.name}.tmp")
        payload = json.dumps(entry.to_dict(), indent=2, default=str)
        with tmp.open("w", encoding="utf-8") as fh:
            fh.write(payload)
            if self.fsync:
                fh.flush()
                os.fsync(fh.fileno())
        os.replace(tmp, target)

    def delete(self, entry_id: str) -> None:
        target = self._file_for(entry_id)
        try:
            target.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.error("dlq_entry_delete_failed", file=str(target), error=str(e))

    def describe(self) -> dict[str, Any]:
        return {"storage_type": "file", "path": str(self.path), "fsync": self.fsync}
