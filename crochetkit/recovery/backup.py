"""
Safety backups: snapshots taken before risky operations.

A backup lives at ``backup_<assemblyId>_<timestamp>`` and holds
``{originalId, timestamp, data, version, reason}``, where ``data`` is a
canonical assembly document.  At most ``max_backups`` are kept per assembly;
older ones are pruned after every write.  Readers tolerate a backup vanishing
between listing and reading.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from crochetkit.config import CODEC_VERSION
from crochetkit.events import EventBus, EventType, wall_clock
from crochetkit.persistence.codec import dumps
from crochetkit.persistence.store import KeyValueStore

logger = logging.getLogger(__name__)

BACKUP_PREFIX = "backup_"


@dataclass(frozen=True)
class BackupRecord:
    key: str
    original_id: str
    timestamp: int
    reason: str
    data: Mapping[str, Any]


class BackupManager:
    def __init__(
        self,
        store: KeyValueStore,
        *,
        bus: EventBus | None = None,
        clock: Callable[[], int] = wall_clock,
        max_backups: int = 5,
    ) -> None:
        if max_backups < 1:
            raise ValueError(f"max_backups must be >= 1, got {max_backups}")
        self._store = store
        self._bus = bus if bus is not None else EventBus(clock)
        self._clock = clock
        self.max_backups = max_backups

    def create_backup(self, assembly_id: str, data: Mapping[str, Any], reason: str = "auto_backup") -> str:
        """Store a snapshot of *data* and prune old ones.  Returns the backup key."""
        timestamp = self._clock()
        key = f"{BACKUP_PREFIX}{assembly_id}_{timestamp}"
        while self._store.get(key) is not None:
            timestamp += 1
            key = f"{BACKUP_PREFIX}{assembly_id}_{timestamp}"
        record = {
            "originalId": assembly_id,
            "timestamp": timestamp,
            "data": data,
            "version": CODEC_VERSION,
            "reason": reason,
        }
        self._store.set(key, dumps(record))
        logger.info("backup created: %s (%s)", key, reason)
        self.prune(assembly_id)
        self._bus.emit(EventType.BACKUP_CREATED, assembly_id=assembly_id, key=key, reason=reason)
        return key

    def _read(self, key: str) -> BackupRecord | None:
        raw = self._store.get(key)
        if raw is None:
            return None
        try:
            record = json.loads(raw)
            return BackupRecord(
                key=key,
                original_id=str(record["originalId"]),
                timestamp=int(record["timestamp"]),
                reason=str(record.get("reason", "auto_backup")),
                data=record["data"],
            )
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("unreadable backup %s: %s", key, exc)
            return None

    def list_backups(self, assembly_id: str) -> list[BackupRecord]:
        """Readable backups of *assembly_id*, newest first."""
        records = []
        for key in self._store.keys(f"{BACKUP_PREFIX}{assembly_id}_"):
            record = self._read(key)
            if record is not None and record.original_id == assembly_id:
                records.append(record)
        records.sort(key=lambda r: r.timestamp, reverse=True)
        return records

    def _keys_for(self, assembly_id: str) -> list[str]:
        prefix = f"{BACKUP_PREFIX}{assembly_id}_"
        suffixes = (k[len(prefix) :] for k in self._store.keys(prefix))
        return [prefix + s for s in suffixes if s.isdigit()]

    def prune(self, assembly_id: str) -> list[str]:
        """Delete all but the newest ``max_backups`` backups; returns removed keys."""
        keys = sorted(self._keys_for(assembly_id), key=lambda k: int(k.rsplit("_", 1)[1]), reverse=True)
        removed = keys[self.max_backups :]
        for key in removed:
            self._store.delete(key)
            logger.debug("pruned backup %s", key)
        return removed

    def clear(self, assembly_id: str | None = None) -> int:
        """Delete every backup of *assembly_id*, or of all assemblies when None."""
        keys = self._keys_for(assembly_id) if assembly_id else self._store.keys(BACKUP_PREFIX)
        for key in keys:
            self._store.delete(key)
        return len(keys)
