"""
Swap record persistence.

One durable record per swap, keyed by swap_id, with a version number that
increases on every write. save() rejects a record whose version does not
match the stored one, so two writers can never interleave updates to the
same swap. Terminal records are archived and become immutable.

Watcher checkpoints live alongside the records.
"""

import asyncio
import json
import os
import tempfile
import threading
from pathlib import Path
from typing import Dict, List, Optional, Protocol

from .errors import ArchivedRecordError, StaleWriteError
from .models import SwapRecord, utcnow


class SwapStore(Protocol):
    async def save(self, record: SwapRecord) -> SwapRecord: ...

    async def load(self, swap_id: str) -> Optional[SwapRecord]: ...

    async def load_active(self) -> List[SwapRecord]: ...

    async def list_all(self) -> List[SwapRecord]: ...

    async def archive(self, swap_id: str) -> None: ...

    async def save_checkpoint(self, ledger_id: str, height: int) -> None: ...

    async def load_checkpoint(self, ledger_id: str) -> Optional[int]: ...


def _next_version(record: SwapRecord, stored: Optional[SwapRecord]) -> SwapRecord:
    current = stored.version if stored is not None else 0
    if record.version != current:
        raise StaleWriteError(
            f"swap {record.swap_id}: writing version {record.version} over stored version {current}"
        )
    return record.model_copy(update={"version": current + 1, "updated_at": utcnow()}, deep=True)


class InMemorySwapStore:
    def __init__(self):
        self._lock = threading.Lock()
        self._records: Dict[str, SwapRecord] = {}
        self._archived: set = set()
        self._checkpoints: Dict[str, int] = {}

    async def save(self, record: SwapRecord) -> SwapRecord:
        with self._lock:
            if record.swap_id in self._archived:
                raise ArchivedRecordError(f"swap {record.swap_id} is archived")
            stored = _next_version(record, self._records.get(record.swap_id))
            self._records[record.swap_id] = stored
        return stored.model_copy(deep=True)

    async def load(self, swap_id: str) -> Optional[SwapRecord]:
        with self._lock:
            record = self._records.get(swap_id)
        return record.model_copy(deep=True) if record is not None else None

    async def load_active(self) -> List[SwapRecord]:
        with self._lock:
            return [
                r.model_copy(deep=True)
                for r in self._records.values()
                if r.swap_id not in self._archived and not r.status.terminal
            ]

    async def list_all(self) -> List[SwapRecord]:
        with self._lock:
            return [r.model_copy(deep=True) for r in self._records.values()]

    async def archive(self, swap_id: str) -> None:
        with self._lock:
            if swap_id not in self._records:
                raise KeyError(swap_id)
            self._archived.add(swap_id)

    def is_archived(self, swap_id: str) -> bool:
        return swap_id in self._archived

    async def save_checkpoint(self, ledger_id: str, height: int) -> None:
        self._checkpoints[ledger_id] = height

    async def load_checkpoint(self, ledger_id: str) -> Optional[int]:
        return self._checkpoints.get(ledger_id)


class JsonSwapStore:
    """One JSON document per swap under `path`, replaced atomically on write.

    Layout:
        <path>/swaps/<swap_id>.json
        <path>/archive/<swap_id>.json
        <path>/checkpoints.json
    """

    def __init__(self, path: str):
        self.root = Path(path)
        self.swaps_dir = self.root / "swaps"
        self.archive_dir = self.root / "archive"
        self.swaps_dir.mkdir(parents=True, exist_ok=True)
        self.archive_dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def _path(self, swap_id: str, archived: bool = False) -> Path:
        return (self.archive_dir if archived else self.swaps_dir) / f"{swap_id}.json"

    @staticmethod
    def _atomic_write(path: Path, payload: str) -> None:
        fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    @staticmethod
    def _read(path: Path) -> Optional[SwapRecord]:
        if not path.exists():
            return None
        return SwapRecord.model_validate_json(path.read_text())

    def _save_sync(self, record: SwapRecord) -> SwapRecord:
        with self._lock:
            if self._path(record.swap_id, archived=True).exists():
                raise ArchivedRecordError(f"swap {record.swap_id} is archived")
            stored = _next_version(record, self._read(self._path(record.swap_id)))
            self._atomic_write(self._path(record.swap_id), stored.model_dump_json(indent=2))
            return stored

    async def save(self, record: SwapRecord) -> SwapRecord:
        return await asyncio.to_thread(self._save_sync, record)

    def _load_sync(self, swap_id: str) -> Optional[SwapRecord]:
        return self._read(self._path(swap_id)) or self._read(self._path(swap_id, archived=True))

    async def load(self, swap_id: str) -> Optional[SwapRecord]:
        return await asyncio.to_thread(self._load_sync, swap_id)

    def _scan(self, directory: Path) -> List[SwapRecord]:
        records = []
        for path in sorted(directory.glob("*.json")):
            record = self._read(path)
            if record is not None:
                records.append(record)
        return records

    async def load_active(self) -> List[SwapRecord]:
        records = await asyncio.to_thread(self._scan, self.swaps_dir)
        return [r for r in records if not r.status.terminal]

    async def list_all(self) -> List[SwapRecord]:
        active = await asyncio.to_thread(self._scan, self.swaps_dir)
        archived = await asyncio.to_thread(self._scan, self.archive_dir)
        return active + archived

    def _archive_sync(self, swap_id: str) -> None:
        with self._lock:
            os.replace(self._path(swap_id), self._path(swap_id, archived=True))

    async def archive(self, swap_id: str) -> None:
        await asyncio.to_thread(self._archive_sync, swap_id)

    def _checkpoints_sync(self) -> Dict[str, int]:
        path = self.root / "checkpoints.json"
        return json.loads(path.read_text()) if path.exists() else {}

    def _save_checkpoint_sync(self, ledger_id: str, height: int) -> None:
        with self._lock:
            checkpoints = self._checkpoints_sync()
            checkpoints[ledger_id] = height
            self._atomic_write(self.root / "checkpoints.json", json.dumps(checkpoints, indent=2))

    async def save_checkpoint(self, ledger_id: str, height: int) -> None:
        await asyncio.to_thread(self._save_checkpoint_sync, ledger_id, height)

    async def load_checkpoint(self, ledger_id: str) -> Optional[int]:
        checkpoints = await asyncio.to_thread(self._checkpoints_sync)
        return checkpoints.get(ledger_id)
