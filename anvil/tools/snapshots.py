"""File snapshot store backing the undo tool.

insert_snapshot(path) records the file's current bytes (or its absence)
before a mutation; undo_snapshot(path) restores the newest snapshot and
discards it.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import time
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

_ABSENT_SUFFIX = ".absent"
_DATA_SUFFIX = ".snap"


class SnapshotError(Exception):
    """No snapshot exists for the requested path."""


@dataclass
class Snapshot:
    path: Path
    snapshot_path: Path
    existed: bool
    timestamp_ns: int


class SnapshotStore:
    def __init__(self, root: str | Path) -> None:
        self._root = Path(root).expanduser()

    def _dir_for(self, path: Path) -> Path:
        digest = hashlib.sha256(str(path).encode()).hexdigest()[:32]
        return self._root / digest

    async def insert_snapshot(self, path: str | Path) -> Snapshot:
        return await asyncio.to_thread(self._insert, Path(path).resolve())

    async def undo_snapshot(self, path: str | Path) -> None:
        await asyncio.to_thread(self._undo, Path(path).resolve())

    def _insert(self, path: Path) -> Snapshot:
        directory = self._dir_for(path)
        directory.mkdir(parents=True, exist_ok=True)
        (directory / "path").write_text(str(path), encoding="utf-8")

        stamp = time.time_ns()
        # Two snapshots within one clock tick must still sort in insertion order
        latest = self._entries(path)
        if latest and int(latest[-1].stem) >= stamp:
            stamp = int(latest[-1].stem) + 1
        existed = path.is_file()
        if existed:
            target = directory / f"{stamp}{_DATA_SUFFIX}"
            target.write_bytes(path.read_bytes())
        else:
            target = directory / f"{stamp}{_ABSENT_SUFFIX}"
            target.touch()
        logger.debug("Snapshot of %s stored at %s", path, target)
        return Snapshot(path=path, snapshot_path=target, existed=existed, timestamp_ns=stamp)

    def _entries(self, path: Path) -> list[Path]:
        directory = self._dir_for(path)
        if not directory.is_dir():
            return []
        entries = [p for p in directory.iterdir() if p.suffix in (_DATA_SUFFIX, _ABSENT_SUFFIX)]
        return sorted(entries, key=lambda p: int(p.stem))

    def _undo(self, path: Path) -> None:
        entries = self._entries(path)
        if not entries:
            raise SnapshotError(f"No snapshots found for {path}")
        latest = entries[-1]
        if latest.suffix == _ABSENT_SUFFIX:
            # File did not exist before the mutation
            path.unlink(missing_ok=True)
        else:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(latest.read_bytes())
        latest.unlink()
        logger.info("Restored %s from snapshot %s", path, latest.name)

    async def count(self, path: str | Path) -> int:
        return len(await asyncio.to_thread(self._entries, Path(path).resolve()))
