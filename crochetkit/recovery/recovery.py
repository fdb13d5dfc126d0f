"""
Recovery fallback chain for a damaged or missing assembly record.

Strategies run in order; the first whose candidate passes structural
validation wins:

  original         the canonical record under ``assembly_<id>``
  auto_backup      the newest readable safety backup that validates
  history_rebuild  replay the command log onto an empty assembly, skipping
                   commands that reference pieces no earlier command created
  partial_restore  salvage decodable pieces from the raw record and keep only
                   the connections that still validate; marked partial
  clean_slate      an empty assembly with one ``recovery`` history entry,
                   only when explicitly allowed

A successful recovery stamps ``recoveryInfo`` on the returned document,
backs the result up and appends to a rolling recovery log.
"""

from __future__ import annotations

import json
import logging
from collections import Counter
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any

from crochetkit.assembly.graph import Assembly
from crochetkit.errors import CommandReplayError, ErrorKind, Result
from crochetkit.events import EventBus, EventType, wall_clock
from crochetkit.history.dispatch import bind, referenced_ids
from crochetkit.persistence.codec import DecodedAssembly, from_safe_data, storage_key, to_safe_data
from crochetkit.persistence.store import KeyValueStore
from crochetkit.recovery.backup import BackupManager
from crochetkit.registry import Tier
from crochetkit.schemas.command import Command, CommandType, command_from_dict
from crochetkit.schemas.convert import connection_from_dict, piece_from_dict
from crochetkit.schemas.usage import UsageLedger
from crochetkit.utilities.ids import make_id

logger = logging.getLogger(__name__)


class Strategy(str, Enum):
    ORIGINAL = "original"
    AUTO_BACKUP = "auto_backup"
    HISTORY_REBUILD = "history_rebuild"
    PARTIAL_RESTORE = "partial_restore"
    CLEAN_SLATE = "clean_slate"


@dataclass
class RecoveryOutcome:
    decoded: DecodedAssembly
    data: dict[str, Any]
    strategy: Strategy
    attempts: list[Strategy]
    backup_key: str

    @property
    def partial(self) -> bool:
        return self.strategy is Strategy.PARTIAL_RESTORE


def _flatten(entries: Iterable[Mapping[str, Any]]) -> list[Command]:
    commands: list[Command] = []
    for entry in entries:
        try:
            command = command_from_dict(entry)
        except (KeyError, TypeError, ValueError):
            continue
        if command.type is CommandType.BATCH:
            commands.extend(_flatten(command.data.get("commands", ())))
        else:
            commands.append(command)
    return commands


class RecoverySystem:
    """
    Parameters
    ----------
    store:
        Where canonical records live.
    backups:
        Backup manager sharing that store.
    bus:
        Receives ``recovery_performed``.
    clock:
        Time source.
    log_size:
        Recovery log entries kept.
    assembly_kwargs:
        Extra Assembly constructor arguments for recovered graphs
        (``snap_grid``, ``max_size_gap``, ``root_types``, ``rng``).
    """

    def __init__(
        self,
        store: KeyValueStore,
        backups: BackupManager,
        *,
        bus: EventBus | None = None,
        clock: Callable[[], int] = wall_clock,
        log_size: int = 100,
        assembly_kwargs: Mapping[str, Any] | None = None,
    ) -> None:
        self._store = store
        self.backups = backups
        self._bus = bus if bus is not None else EventBus(clock)
        self._clock = clock
        self.log_size = log_size
        self._assembly_kwargs = dict(assembly_kwargs or {})
        self._assembly_kwargs.setdefault("clock", clock)
        self.log: list[dict[str, Any]] = []

    # ── Chain ─────────────────────────────────────────────────────────────────

    def recover(
        self,
        assembly_id: str,
        *,
        skip_original: bool = False,
        allow_clean_slate: bool = False,
        history: Iterable[Mapping[str, Any]] | None = None,
    ) -> Result:
        """
        Run the fallback chain for *assembly_id*.

        Parameters
        ----------
        skip_original:
            Start at the backups, e.g. when the caller already knows the
            canonical record is bad.
        allow_clean_slate:
            Permit the last-resort empty assembly.
        history:
            Command log entries to rebuild from.  When None, the history
            stored in the raw record or the newest backup is used.

        Returns
        -------
        Result
            ``value`` is a :class:`RecoveryOutcome`; ``recovery_exhausted``
            when every permitted strategy failed.
        """
        raw = self._read_raw(assembly_id)
        chain: list[tuple[Strategy, Callable[[], DecodedAssembly | None]]] = []
        if not skip_original:
            chain.append((Strategy.ORIGINAL, lambda: self._try_original(raw)))
        chain.append((Strategy.AUTO_BACKUP, lambda: self._try_backups(assembly_id)))
        chain.append((Strategy.HISTORY_REBUILD, lambda: self._try_history(assembly_id, raw, history)))
        chain.append((Strategy.PARTIAL_RESTORE, lambda: self._try_partial(assembly_id, raw)))
        if allow_clean_slate:
            chain.append((Strategy.CLEAN_SLATE, lambda: self._clean_slate(assembly_id)))

        attempts: list[Strategy] = []
        for strategy, attempt in chain:
            attempts.append(strategy)
            decoded = attempt()
            if decoded is not None:
                logger.info("recovered %s via %s after %d attempt(s)", assembly_id, strategy.value, len(attempts))
                return Result.success(self._finalize(assembly_id, decoded, strategy, attempts))
            logger.debug("recovery strategy %s failed for %s", strategy.value, assembly_id)

        self._log(assembly_id, "FAILED", attempts)
        logger.warning("recovery exhausted for %s", assembly_id)
        return Result.failure(
            ErrorKind.RECOVERY_EXHAUSTED,
            f"all recovery strategies failed for {assembly_id!r}: {', '.join(s.value for s in attempts)}",
        )

    def _read_raw(self, assembly_id: str) -> Any:
        text = self._store.get(storage_key(assembly_id))
        if text is None:
            return None
        try:
            return json.loads(text)
        except ValueError:
            logger.warning("record %s is not valid JSON", storage_key(assembly_id))
            return None

    def _decode_valid(self, data: Any) -> DecodedAssembly | None:
        result = from_safe_data(data, **self._assembly_kwargs)
        if not result.ok:
            return None
        decoded: DecodedAssembly = result.value
        return decoded if decoded.assembly.validate().valid else None

    def _try_original(self, raw: Any) -> DecodedAssembly | None:
        return None if raw is None else self._decode_valid(raw)

    def _try_backups(self, assembly_id: str) -> DecodedAssembly | None:
        for record in self.backups.list_backups(assembly_id):
            decoded = self._decode_valid(record.data)
            if decoded is not None and decoded.assembly.id == assembly_id:
                return decoded
        return None

    def _history_source(self, assembly_id: str, raw: Any) -> list[Mapping[str, Any]]:
        if isinstance(raw, Mapping) and isinstance(raw.get("history"), list) and raw["history"]:
            return raw["history"]
        for record in self.backups.list_backups(assembly_id):
            entries = record.data.get("history")
            if isinstance(entries, list) and entries:
                return entries
        return []

    def _try_history(
        self, assembly_id: str, raw: Any, history: Iterable[Mapping[str, Any]] | None
    ) -> DecodedAssembly | None:
        entries = list(history) if history is not None else self._history_source(assembly_id, raw)
        commands = _flatten(entries)
        if not commands:
            return None
        name = raw.get("name") if isinstance(raw, Mapping) else None
        assembly = self._new_assembly(assembly_id, name or "Recovered Assembly", raw)
        live: set[str] = set()
        replayed: list[Command] = []
        for command in commands:
            needs, creates = referenced_ids(command)
            if not needs <= live:
                logger.debug("history rebuild skipped %s: unresolved %s", command.id, sorted(needs - live))
                continue
            try:
                bound = bind(command, assembly)
                assert bound.redo is not None
                bound.redo()
            except CommandReplayError as exc:
                logger.debug("history rebuild skipped %s: %s", command.id, exc.detail)
                continue
            live |= creates
            if command.type is CommandType.REMOVE_PIECE:
                live -= needs
            replayed.append(command)
        if not replayed or not assembly.validate().valid:
            return None
        return DecodedAssembly(
            assembly=assembly,
            usage=self._usage_from(raw),
            history=[c.to_dict() for c in replayed],
            history_index=len(replayed) - 1,
        )

    def _try_partial(self, assembly_id: str, raw: Any) -> DecodedAssembly | None:
        if not isinstance(raw, Mapping):
            return None
        assembly = self._new_assembly(assembly_id, raw.get("name") or "Partially Recovered", raw)
        raw_pieces = raw.get("pieces")
        if isinstance(raw_pieces, Mapping):
            raw_pieces = list(raw_pieces.values())
        for item in raw_pieces if isinstance(raw_pieces, list) else ():
            try:
                piece = piece_from_dict(item)
            except (KeyError, TypeError, ValueError):
                continue
            assembly.add_piece(piece)
        if not assembly.pieces:
            return None
        raw_connections = raw.get("connections")
        for item in raw_connections if isinstance(raw_connections, list) else ():
            try:
                conn = connection_from_dict(item)
            except (KeyError, TypeError, ValueError):
                continue
            assembly.connect(
                conn.a.piece_id,
                conn.a.point_id,
                conn.b.piece_id,
                conn.b.point_id,
                connection_id=conn.id,
                created_at=conn.created_at,
            )
        return DecodedAssembly(assembly=assembly, usage=self._usage_from(raw))

    def _clean_slate(self, assembly_id: str) -> DecodedAssembly:
        now = self._clock()
        assembly = self._new_assembly(assembly_id, "New Assembly (Recovered)", None)
        entry = Command(
            id=make_id("action", now, assembly.rng),
            type=CommandType.RECOVERY,
            data={"strategy": Strategy.CLEAN_SLATE.value},
            description="Recovered assembly",
            timestamp=now,
        )
        return DecodedAssembly(assembly=assembly, history=[entry.to_dict()], history_index=0)

    def _new_assembly(self, assembly_id: str, name: str, raw: Any) -> Assembly:
        tier = Tier.FREEMIUM
        if isinstance(raw, Mapping):
            try:
                tier = Tier(raw.get("tier", Tier.FREEMIUM.value))
            except ValueError:
                logger.debug("unknown tier %r in raw record, using freemium", raw.get("tier"))
        return Assembly(assembly_id, str(name), tier, **self._assembly_kwargs)

    @staticmethod
    def _usage_from(raw: Any) -> UsageLedger:
        if isinstance(raw, Mapping) and isinstance(raw.get("usage"), Mapping):
            try:
                return UsageLedger.from_dict(raw["usage"])
            except (KeyError, TypeError, ValueError) as exc:
                logger.debug("usage ledger not recoverable: %s", exc)
        return UsageLedger()

    # ── Bookkeeping ───────────────────────────────────────────────────────────

    def _finalize(
        self, assembly_id: str, decoded: DecodedAssembly, strategy: Strategy, attempts: list[Strategy]
    ) -> RecoveryOutcome:
        info: dict[str, Any] = {
            "recovered": True,
            "timestamp": self._clock(),
            "attempts": len(attempts),
            "finalStrategy": strategy.value,
        }
        if strategy is Strategy.PARTIAL_RESTORE:
            info["partial"] = True
        decoded.recovery_info = info
        data = to_safe_data(
            decoded.assembly,
            usage=decoded.usage,
            history=decoded.history,
            history_index=decoded.history_index,
            recovery_info=info,
        )
        key = self.backups.create_backup(assembly_id, data, reason="recovery")
        self._log(assembly_id, "SUCCESS", attempts)
        self._bus.emit(
            EventType.RECOVERY_PERFORMED,
            assembly_id=assembly_id,
            strategy=strategy.value,
            attempts=len(attempts),
        )
        return RecoveryOutcome(decoded=decoded, data=data, strategy=strategy, attempts=attempts, backup_key=key)

    def _log(self, assembly_id: str, status: str, attempts: list[Strategy]) -> None:
        self.log.append(
            {
                "assemblyId": assembly_id,
                "status": status,
                "attempts": len(attempts),
                "strategies": [s.value for s in attempts],
                "timestamp": self._clock(),
            }
        )
        del self.log[: -self.log_size]

    def get_recovery_stats(self) -> dict[str, Any]:
        successful = [entry for entry in self.log if entry["status"] == "SUCCESS"]
        total = len(self.log)
        return {
            "total_attempts": total,
            "successful": len(successful),
            "failed": total - len(successful),
            "success_rate": round(len(successful) / total * 100, 1) if total else 0.0,
            "by_strategy": dict(Counter(entry["strategies"][-1] for entry in successful)),
            "recent_logs": self.log[-10:],
        }

    def clear_recovery_data(self, assembly_id: str | None = None) -> None:
        self.backups.clear(assembly_id)
        if assembly_id is None:
            self.log.clear()
        else:
            self.log = [entry for entry in self.log if entry["assemblyId"] != assembly_id]
