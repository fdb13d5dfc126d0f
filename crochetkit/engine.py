"""
AssemblyEngine — wires the assembly graph, gates, history, billing, backups
and derivations behind one object.

Every mutation runs the same stages:

  1. TierGate.check()          → tier_violation event and a failure Result on refusal
  2. Assembly mutation         → validity checks, version bump, graph events
  3. PayPerUse                 → overage transaction when the gate allowed it past quota
  4. CommandLog.record()       → undo/redo entry, timeline entry

Expected failures come back as :class:`~crochetkit.errors.Result` values.
Derivations (charts, yarn, instructions, suggestions) are pure functions of
their inputs; anything unexpected they raise is logged and converted to an
``internal`` failure at this boundary.

The command log is bound to a :class:`_LivePort` rather than to an Assembly,
so loading or recovering a document (which swaps in a new Assembly) keeps the
history undoable.
"""

from __future__ import annotations

import logging
import random
from collections.abc import Callable, Iterable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from typing import Any

from crochetkit.assembly import (
    Assembly,
    AssemblyReport,
    SnapCandidate,
    create_custom_piece,
    create_piece_from_template,
    find_snap_candidate,
)
from crochetkit.charts import Chart, ChartKind, export_chart, visualize_pattern
from crochetkit.config import EngineConfig, default_config
from crochetkit.errors import ErrorKind, Result, UnsafeObjectError
from crochetkit.events import Event, EventBus, EventType, wall_clock
from crochetkit.history import CommandLog, Timeline
from crochetkit.instructions import (
    InstructionDocument,
    InstructionType,
    export_as_html,
    export_as_markdown,
    generate_instructions,
)
from crochetkit.persistence import (
    DecodedAssembly,
    KeyValueStore,
    MemoryStore,
    dumps,
    from_safe_data,
    loads,
    storage_key,
    to_safe_data,
)
from crochetkit.recovery import BackupManager, RecoverySystem
from crochetkit.registry import Tier, get_registry
from crochetkit.safety.guard import find_unsafe
from crochetkit.safety.types import to_safe_vector
from crochetkit.schemas.command import CommandType
from crochetkit.schemas.connection import Connection
from crochetkit.schemas.convert import connection_to_dict, piece_to_dict
from crochetkit.schemas.piece import Piece, Side
from crochetkit.suggestions import Suggestion, SuggestionEngine
from crochetkit.tiers import GateDecision, Operation, PayPerUse, TierGate, UsageCounts
from crochetkit.utilities.cancel import CancellationToken
from crochetkit.utilities.ids import make_id
from crochetkit.yarn import (
    ProjectCost,
    YarnRequirement,
    calculate_project_cost,
    calculate_yarn_requirement,
    compare_yarn_options,
    estimate_project_time,
    generate_shopping_list,
    substitute_yarn,
)

logger = logging.getLogger(__name__)


class _LivePort:
    """Mutation port that always targets the engine's current assembly."""

    def __init__(self, engine: AssemblyEngine) -> None:
        self._engine = engine

    def add_piece(self, piece: Piece | Mapping[str, Any]) -> Result:
        return self._engine.assembly.add_piece(piece)

    def remove_piece(self, piece_id: str, force: bool = False) -> Result:
        return self._engine.assembly.remove_piece(piece_id, force=force)

    def connect(
        self,
        piece1_id: str,
        point1_id: str,
        piece2_id: str,
        point2_id: str,
        *,
        connection_id: str | None = None,
        created_at: int | None = None,
    ) -> Result:
        return self._engine.assembly.connect(
            piece1_id, point1_id, piece2_id, point2_id, connection_id=connection_id, created_at=created_at
        )

    def disconnect(self, connection_id: str) -> Result:
        return self._engine.assembly.disconnect(connection_id)

    def update_piece_position(self, piece_id: str, position: Any) -> Result:
        return self._engine.assembly.update_piece_position(piece_id, position)

    def replace_piece(self, piece: Piece, fields: tuple[str, ...] = ()) -> Result:
        return self._engine.assembly.replace_piece(piece, fields)

    @contextmanager
    def coalesce(self) -> Iterator[None]:
        with self._engine.assembly.coalesce():
            yield

    def hold(self) -> None:
        self._engine.assembly.hold()

    def release(self) -> None:
        self._engine.assembly.release()


class AssemblyEngine:
    """
    Single-owner engine for one crochet assembly.

    Parameters
    ----------
    config:
        Every tunable value; ``default_config()`` when omitted.
    store:
        Key-value store for canonical records and backups; in-memory when
        omitted.
    clock:
        Epoch-millisecond time source.
    rng:
        Randomness for generated ids and the learned suggestion rule.  Seed
        it for reproducible ids.
    assembly_id, name, tier:
        Identity of the initial empty assembly.
    tz:
        Time zone for billing periods and the timeline; local time when None.
    """

    def __init__(
        self,
        config: EngineConfig | None = None,
        store: KeyValueStore | None = None,
        clock: Callable[[], int] | None = None,
        rng: random.Random | None = None,
        *,
        assembly_id: str | None = None,
        name: str = "Untitled Assembly",
        tier: Tier | str = Tier.FREEMIUM,
        tz: Any = None,
    ) -> None:
        self.config = config if config is not None else default_config()
        self.store: KeyValueStore = store if store is not None else MemoryStore()
        self.clock = clock if clock is not None else wall_clock
        self.rng = rng if rng is not None else random.Random()
        self.bus = EventBus(self.clock)
        cfg = self.config

        self.assembly = Assembly(
            assembly_id or make_id("assembly", self.clock(), self.rng),
            name,
            Tier(tier),
            **self._assembly_kwargs(),
        )
        self.recovery_info: dict[str, Any] | None = None

        self.history = CommandLog(
            _LivePort(self),
            bus=self.bus,
            clock=self.clock,
            rng=self.rng,
            max_history_size=cfg.max_history_size,
        )
        self.timeline = Timeline(
            bus=self.bus,
            clock=self.clock,
            session_idle_minutes=cfg.session_idle_minutes,
            group_window_ms=cfg.group_window_ms,
            milestones=cfg.milestones,
            tz=tz,
        )
        self.history.add_listener(self.timeline.add)

        self.gate = TierGate(cfg.tiers)
        self.billing = PayPerUse(
            bus=self.bus,
            clock=self.clock,
            rng=self.rng,
            tz=tz,
            payment_minimum=cfg.payment_minimum,
            warning_threshold=cfg.warning_threshold,
            auto_bill_threshold=cfg.auto_bill_threshold,
        )
        self.backups = BackupManager(self.store, bus=self.bus, clock=self.clock, max_backups=cfg.max_backups)
        self.recovery = RecoverySystem(
            self.store,
            self.backups,
            bus=self.bus,
            clock=self.clock,
            log_size=cfg.recovery_log_size,
            assembly_kwargs=self._assembly_kwargs(),
        )
        self.suggestions = SuggestionEngine(
            clock=self.clock,
            rng=self.rng,
            ttl_seconds=cfg.suggestion_cache_ttl,
            history_size=cfg.connection_history_size,
        )

    def _assembly_kwargs(self) -> dict[str, Any]:
        cfg = self.config
        return {
            "bus": self.bus,
            "clock": self.clock,
            "rng": self.rng,
            "snap_grid": cfg.snap_grid,
            "max_size_gap": cfg.max_size_gap,
            "root_types": cfg.root_piece_types,
        }

    # ── Read side ─────────────────────────────────────────────────────────────

    @property
    def version(self) -> int:
        return self.assembly.version

    @property
    def tier(self) -> Tier:
        return self.assembly.tier

    def subscribe(self, event_type: EventType | None, handler: Callable[[Event], None]) -> Callable[[], None]:
        """Observe engine events; *event_type* None receives every event."""
        return self.bus.subscribe(event_type, handler)

    def validate(self) -> AssemblyReport:
        return self.assembly.validate()

    def get_connections_for_piece(self, piece_id: str) -> list[Connection]:
        return self.assembly.connections_for_piece(piece_id)

    # ── Gates ─────────────────────────────────────────────────────────────────

    def _usage_counts(self) -> UsageCounts:
        return UsageCounts(
            pieces=len(self.assembly.pieces),
            saves=self.billing.ledger.saves_used,
            custom_pieces=self.assembly.custom_piece_count(),
        )

    def check_operation_limit(self, operation: Operation | str, *, involves_custom: bool = False) -> GateDecision:
        """Evaluate a gate without performing anything."""
        return self.gate.check(operation, self.tier, self._usage_counts(), involves_custom=involves_custom)

    def _refuse(self, operation: Operation, decision: GateDecision) -> Result:
        assert decision.kind is not None
        logger.info("%s refused on %s: %s", operation.value, self.tier.value, decision.detail)
        self.bus.emit(
            EventType.TIER_VIOLATION,
            assembly_id=self.assembly.id,
            operation=operation.value,
            tier=self.tier.value,
            kind=decision.kind.value,
            detail=decision.detail,
        )
        return Result.failure(decision.kind, decision.detail)

    # ── Assembly mutations ────────────────────────────────────────────────────

    def add_piece(self, piece: Piece | Mapping[str, Any]) -> Result:
        """
        Gate, insert and record a piece.

        Parameters
        ----------
        piece:
            A Piece or its canonical plain-data form.

        Returns
        -------
        Result
            ``value`` is the inserted Piece.  Past the tier quota the piece is
            refused on freemium (``tier_limit_exceeded``) and billed at the
            tier's overage rate on paid tiers.
        """
        if not isinstance(piece, (Piece, Mapping)):
            return Result.failure(
                ErrorKind.VALIDATION_FAILED, f"piece must be an object, got {type(piece).__name__}"
            )
        raw = piece_to_dict(piece) if isinstance(piece, Piece) else piece
        unsafe = find_unsafe(raw)
        if unsafe is not None:
            return Result.failure(ErrorKind.UNSAFE_OBJECT_REFUSED, f"unsafe value at {unsafe}")
        custom = piece.custom if isinstance(piece, Piece) else bool(piece.get("custom", False))

        # Quota first: a full freemium assembly reports the limit even for custom pieces.
        usage = self._usage_counts()
        decision = self.gate.check(Operation.ADD_PIECE, self.tier, usage)
        if not decision.allowed:
            return self._refuse(Operation.ADD_PIECE, decision)
        if custom:
            custom_decision = self.gate.check(Operation.ADD_CUSTOM, self.tier, usage)
            if not custom_decision.allowed:
                return self._refuse(Operation.ADD_CUSTOM, custom_decision)

        added = self.assembly.add_piece(piece)
        if not added.ok:
            return added
        new: Piece = added.value
        if decision.overage:
            self.billing.track_extra_piece(new.id, decision.cost, new.name)
        self.history.record(CommandType.ADD_PIECE, {"piece": piece_to_dict(new, include_lock=True)})
        self.suggestions.record_piece_usage(new.type)
        return added

    def add_piece_from_template(
        self,
        template_id: str,
        *,
        side: Side | str = Side.NONE,
        color: str | None = None,
        position: Any = None,
    ) -> Result:
        """Instantiate a registry template and add it like any other piece."""
        try:
            side = Side(side)
            origin = to_safe_vector(position) if position is not None else None
        except ValueError as exc:
            return Result.failure(ErrorKind.VALIDATION_FAILED, str(exc))
        created = create_piece_from_template(
            template_id,
            self.tier,
            piece_id=self.assembly.new_id("piece"),
            created_at=self.clock(),
            side=side,
            color=color,
            position=origin,
            registry=get_registry(),
        )
        if not created.ok:
            return created
        return self.add_piece(created.value)

    def add_custom_piece(self, name: str, **fields: Any) -> Result:
        """Build a universal-point custom piece (see ``create_custom_piece``) and add it."""
        try:
            piece = create_custom_piece(
                name, piece_id=self.assembly.new_id("custom"), created_at=self.clock(), **fields
            )
        except ValueError as exc:
            return Result.failure(ErrorKind.VALIDATION_FAILED, str(exc))
        return self.add_piece(piece)

    def remove_piece(self, piece_id: str) -> Result:
        removed = self.assembly.remove_piece(piece_id)
        if not removed.ok:
            return removed
        self.history.record(
            CommandType.REMOVE_PIECE,
            {
                "piece": piece_to_dict(removed.value["piece"], include_lock=True),
                "connections": [connection_to_dict(c) for c in removed.value["connections"]],
            },
        )
        return removed

    def connect(self, piece1_id: str, point1_id: str, piece2_id: str, point2_id: str) -> Result:
        """
        Join two connection points.

        Returns
        -------
        Result
            ``value`` is the new Connection; on refusal one of ``not_found``,
            ``self_connection``, ``occupied``, ``incompatible``,
            ``size_mismatch``, ``multi_edge``, ``would_cycle`` or
            ``tier_restricted_custom_piece``.
        """
        piece1 = self.assembly.get_piece(piece1_id)
        piece2 = self.assembly.get_piece(piece2_id)
        involves_custom = any(p is not None and p.custom for p in (piece1, piece2))
        decision = self.check_operation_limit(Operation.CONNECT, involves_custom=involves_custom)
        if not decision.allowed:
            return self._refuse(Operation.CONNECT, decision)

        joined = self.assembly.connect(piece1_id, point1_id, piece2_id, point2_id)
        if not joined.ok:
            return joined
        self.history.record(CommandType.CONNECT, {"connection": connection_to_dict(joined.value)})
        assert piece1 is not None and piece2 is not None
        self.suggestions.record_connection(piece1, point1_id, piece2, point2_id)
        return joined

    def disconnect(self, connection_id: str) -> Result:
        detached = self.assembly.disconnect(connection_id)
        if detached.ok:
            self.history.record(CommandType.DISCONNECT, {"connection": connection_to_dict(detached.value)})
        return detached

    def update_piece_position(self, piece_id: str, position: Any) -> Result:
        moved = self.assembly.update_piece_position(piece_id, position)
        if moved.ok:
            old, new = moved.value
            self.history.record(
                CommandType.MOVE_PIECE, {"pieceId": piece_id, "from": old.to_dict(), "to": new.to_dict()}
            )
        return moved

    def modify_piece(self, piece_id: str, changes: Mapping[str, Any]) -> Result:
        """Apply a partial canonical-shape update; the value is ``(old, new)``."""
        unsafe = find_unsafe(changes)
        if unsafe is not None:
            return Result.failure(ErrorKind.UNSAFE_OBJECT_REFUSED, f"unsafe value at {unsafe}")
        modified = self.assembly.modify_piece(piece_id, changes)
        if modified.ok:
            old, new = modified.value
            self.history.record(
                CommandType.MODIFY_PIECE,
                {
                    "before": piece_to_dict(old, include_lock=True),
                    "after": piece_to_dict(new, include_lock=True),
                    "fields": sorted(changes),
                },
            )
        return modified

    def lock_piece(self, piece_id: str) -> Result:
        return self.assembly.lock_piece(piece_id)

    def unlock_piece(self, piece_id: str) -> Result:
        return self.assembly.unlock_piece(piece_id)

    def find_snap(self, piece_id: str, position: Any = None) -> SnapCandidate | None:
        return find_snap_candidate(self.assembly, piece_id, position, self.config.snap_distance)

    def snap_piece(self, piece_id: str, position: Any = None) -> Result:
        """
        Move *piece_id* onto the nearest compatible free point and connect it.

        Both steps are recorded as one batch.  ``not_found`` when nothing is
        within the snap distance.
        """
        candidate = self.find_snap(piece_id, position)
        if candidate is None:
            return Result.failure(ErrorKind.NOT_FOUND, f"no snap target near piece {piece_id!r}")
        self.history.begin_batch("Snap piece")
        moved = self.update_piece_position(piece_id, candidate.snapped_position)
        joined = (
            self.connect(candidate.piece_id, candidate.point_id, candidate.target_piece_id, candidate.target_point_id)
            if moved.ok
            else moved
        )
        if not joined.ok:
            self.history.cancel_batch()
            return joined
        self.history.end_batch()
        return joined

    def set_tier(self, tier: Tier | str) -> Result:
        """Change the account tier after taking a safety backup."""
        backup = self.create_safety_backup(reason="tier_change")
        if not backup.ok:
            return backup
        return self.assembly.set_tier(tier)

    def bulk_import(
        self,
        pieces: Iterable[Piece | Mapping[str, Any]],
        token: CancellationToken | None = None,
        description: str = "Bulk import",
    ) -> Result:
        """
        Add many pieces as one batch.

        The token is polled between pieces.  On cancellation or on the first
        refused piece every piece added so far is rolled back, overage charges
        included.

        Returns
        -------
        Result
            ``value`` is the list of added pieces; ``cancelled`` when the token
            fired, otherwise the first refusal.
        """
        backup = self.create_safety_backup(reason="bulk_import")
        if not backup.ok:
            return backup
        usage_before = self.billing.export_usage()
        added: list[Piece] = []
        self.history.begin_batch(description)
        for piece in pieces:
            if token is not None and token.cancelled:
                break
            result = self.add_piece(piece)
            if not result.ok:
                self.history.cancel_batch()
                self.billing.import_usage(usage_before)
                return result
            added.append(result.value)

        if token is not None and token.cancelled:
            rollback = self.history.cancel_batch()
            self.billing.import_usage(usage_before)
            logger.info("bulk import cancelled after %d piece(s): %s", len(added), token.reason)
            if rollback.kind is ErrorKind.CANCELLED:
                return Result.failure(ErrorKind.CANCELLED, token.reason or rollback.detail)
            return rollback
        self.history.end_batch()
        return Result.success(added)

    # ── History ───────────────────────────────────────────────────────────────

    def record_action(
        self, command_type: CommandType | str, data: Mapping[str, Any], description: str | None = None
    ) -> Result:
        """Record an action performed outside the engine's own mutation methods."""
        try:
            return self.history.record(command_type, data, description)
        except ValueError as exc:
            return Result.failure(ErrorKind.VALIDATION_FAILED, str(exc))

    def undo(self) -> Result:
        return self.history.undo()

    def redo(self) -> Result:
        return self.history.redo()

    def begin_batch(self, description: str = "Batch operation") -> None:
        self.history.begin_batch(description)

    def end_batch(self) -> Result:
        return self.history.end_batch()

    def cancel_batch(self) -> Result:
        return self.history.cancel_batch()

    def jump_to(self, target_index: int) -> Result:
        return self.history.jump_to(target_index)

    def clear_history(self) -> None:
        self.history.clear()
        self.timeline.clear()

    def get_history(self, limit: int = 10) -> list[dict[str, Any]]:
        return self.history.get_history(limit)

    def get_stats(self) -> dict[str, Any]:
        return self.history.get_stats()

    # ── Usage and billing ─────────────────────────────────────────────────────

    def get_usage_stats(self) -> dict[str, Any]:
        """Quota use per limit plus the pay-per-use ledger summary."""
        limits = self.gate.limits(self.tier)
        usage = self._usage_counts()
        billing = self.billing.get_usage_stats()

        def quota(used: int, limit: int | None) -> dict[str, Any]:
            return {
                "used": used,
                "limit": "Unlimited" if limit is None else limit,
                "remaining": "Unlimited" if limit is None else max(0, limit - used),
            }

        return {
            "tier": self.tier.value,
            "pieces": quota(usage.pieces, limits.max_pieces),
            "saves": quota(usage.saves, limits.max_saves),
            "custom_pieces": quota(usage.custom_pieces, limits.custom_pieces),
            "billing": billing,
            "upgrade": self.gate.upgrade_prompt(self.tier, billing["period_cost"]),
        }

    def get_upgrade_prompt(self) -> dict[str, object] | None:
        return self.gate.upgrade_prompt(self.tier, self.billing.get_usage_stats()["period_cost"])

    def track_extra_piece(self, piece_id: str, piece_name: str = "") -> Result:
        """Charge one overage piece at the current tier's rate."""
        limits = self.gate.limits(self.tier)
        if not limits.allows_overage:
            return Result.failure(
                ErrorKind.TIER_LIMIT_EXCEEDED, f"the {limits.name} tier has no pay-per-use overage"
            )
        return Result.success(self.billing.track_extra_piece(piece_id, float(limits.overage_rate or 0.0), piece_name))

    def process_manual_payment(self, amount: float | None = None) -> Result:
        return self.billing.process_manual_payment(amount)

    def complete_payment(self, request_id: str, success: bool) -> Result:
        return self.billing.complete_payment(request_id, success)

    def set_payment_method(self, has_method: bool) -> None:
        self.billing.set_payment_method(has_method)

    def toggle_auto_pay(self) -> Result:
        return self.billing.toggle_auto_pay()

    def reset_period(self) -> bool:
        return self.billing.reset_period()

    def get_billing_history(self, limit: int = 6) -> list[dict[str, Any]]:
        return self.billing.get_billing_history(limit)

    # ── Derivations ───────────────────────────────────────────────────────────

    def _derive(self, stage: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Result:
        try:
            return Result.success(fn(*args, **kwargs))
        except ValueError as exc:
            return Result.failure(ErrorKind.VALIDATION_FAILED, str(exc))
        except Exception:
            logger.exception("%s failed", stage)
            return Result.failure(ErrorKind.INTERNAL, f"{stage} failed unexpectedly")

    def calculate_yarn_requirement(self, pattern: Sequence[str], **options: Any) -> Result:
        return self._derive("yarn", calculate_yarn_requirement, pattern, config=self.config, **options)

    def calculate_project_cost(
        self, requirement: YarnRequirement, yarn_id: str | None = None, **options: Any
    ) -> Result:
        return self._derive("yarn", calculate_project_cost, requirement, yarn_id, config=self.config, **options)

    def estimate_project_time(self, pattern: Sequence[str], **options: Any) -> Result:
        return self._derive("yarn", estimate_project_time, pattern, config=self.config, **options)

    def compare_yarn_options(self, meters: float, **options: Any) -> Result:
        return self._derive("yarn", compare_yarn_options, meters, config=self.config, **options)

    def substitute_yarn(self, original_weight: int, amount: float, new_weight: int) -> Result:
        return self._derive("yarn", substitute_yarn, original_weight, amount, new_weight, config=self.config)

    def generate_shopping_list(self, requirement: YarnRequirement, cost: ProjectCost | None = None) -> Result:
        return self._derive("yarn", generate_shopping_list, requirement, cost)

    def visualize_pattern(
        self, pattern: Sequence[str], kind: ChartKind | str = ChartKind.SYMBOL, **options: Any
    ) -> Result:
        return self._derive(
            "charts",
            visualize_pattern,
            pattern,
            kind,
            window=self.config.round_window,
            stitches=self.config.stitches,
            **options,
        )

    def export_chart(self, chart: Chart, fmt: str = "svg") -> Result:
        return self._derive("charts", export_chart, chart, fmt)

    def generate_instructions(
        self, kind: InstructionType | str = InstructionType.ASSEMBLY, *, language: str = "en"
    ) -> Result:
        return self._derive(
            "instructions",
            generate_instructions,
            self.assembly,
            kind,
            language=language,
            clock=self.clock,
            stitches=self.config.stitches,
            window=self.config.round_window,
        )

    def export_as_html(self, doc: InstructionDocument) -> Result:
        return self._derive("instructions", export_as_html, doc)

    def export_as_markdown(self, doc: InstructionDocument) -> Result:
        return self._derive("instructions", export_as_markdown, doc)

    # ── Suggestions ───────────────────────────────────────────────────────────

    def generate_suggestions(self, context: Mapping[str, Any] | None = None) -> Result:
        return self._derive("suggestions", self.suggestions.generate, self.assembly, context)

    def record_connection(self, from_piece_id: str, from_point: str, to_piece_id: str, to_point: str) -> Result:
        from_piece = self.assembly.get_piece(from_piece_id)
        to_piece = self.assembly.get_piece(to_piece_id)
        if from_piece is None or to_piece is None:
            missing = from_piece_id if from_piece is None else to_piece_id
            return Result.failure(ErrorKind.NOT_FOUND, f"piece {missing!r} not found")
        self.suggestions.record_connection(from_piece, from_point, to_piece, to_point)
        return Result.success(None)

    def record_piece_usage(self, piece_type: str) -> None:
        self.suggestions.record_piece_usage(piece_type)

    def export_suggestions(self, suggestions: Sequence[Suggestion]) -> dict[str, Any]:
        return self.suggestions.export_suggestions(suggestions)

    # ── Persistence ───────────────────────────────────────────────────────────

    def _snapshot(self) -> dict[str, Any]:
        """Raises UnsafeObjectError when carried-through data is not plain."""
        return to_safe_data(
            self.assembly,
            usage=self.billing.ledger,
            history=self.history.to_data(),
            history_index=self.history.current_index,
            recovery_info=self.recovery_info,
        )

    def to_safe_data(self) -> Result:
        try:
            return Result.success(self._snapshot())
        except UnsafeObjectError as exc:
            return Result.failure(ErrorKind.UNSAFE_OBJECT_REFUSED, f"unsafe value at {exc.path}")

    def _adopt(self, decoded: DecodedAssembly) -> None:
        self.assembly = decoded.assembly
        self.billing.ledger = decoded.usage
        if not self.billing.ledger.current_billing_period:
            self.billing.ledger.current_billing_period = self.billing.current_period()
        skipped = self.history.load(decoded.history, decoded.history_index)
        if skipped:
            logger.warning("%d history entr(ies) of %s could not be restored", skipped, self.assembly.id)
        self.timeline.sync(self.history.history)
        self.suggestions.clear_cache()
        self.recovery_info = decoded.recovery_info

    def _install(self, decoded: Result) -> Result:
        if not decoded.ok:
            return decoded
        report = decoded.value.assembly.validate()
        if not report.valid:
            detail = "; ".join(issue.message for issue in report.errors)
            return Result.failure(ErrorKind.VALIDATION_FAILED, f"document violates assembly invariants: {detail}")
        if self.assembly.pieces:
            backup = self.create_safety_backup(reason="before_import")
            if not backup.ok:
                return backup
        self._adopt(decoded.value)
        return Result.success(self.assembly)

    def from_safe_data(self, data: Any) -> Result:
        """Replace the current state with a decoded canonical document."""
        return self._install(from_safe_data(data, **self._assembly_kwargs()))

    def save(self) -> Result:
        """
        Persist the canonical record under ``assembly_<id>``.

        Counts against the tier's save quota.  A safety backup of the same
        document is written first, so recovery always has one good copy.
        The value is the storage key.
        """
        decision = self.check_operation_limit(Operation.SAVE)
        if not decision.allowed:
            return self._refuse(Operation.SAVE, decision)
        self.billing.ledger.saves_used += 1
        try:
            data = self._snapshot()
        except UnsafeObjectError as exc:
            self.billing.ledger.saves_used -= 1
            return Result.failure(ErrorKind.UNSAFE_OBJECT_REFUSED, f"unsafe value at {exc.path}")
        self.backups.create_backup(self.assembly.id, data, reason="auto_backup")
        key = storage_key(self.assembly.id)
        self.store.set(key, dumps(data))
        logger.info("saved %s (version %d)", key, self.assembly.version)
        return Result.success(key)

    def load(self, assembly_id: str) -> Result:
        """
        Load a saved record.

        A missing record is ``not_found``; a corrupt one fails with the codec's
        error and leaves the current state untouched (see
        :meth:`recover_assembly`).
        """
        raw = self.store.get(storage_key(assembly_id))
        if raw is None:
            return Result.failure(ErrorKind.NOT_FOUND, f"no saved assembly {assembly_id!r}")
        return self._install(loads(raw, **self._assembly_kwargs()))

    # ── Recovery ──────────────────────────────────────────────────────────────

    def create_safety_backup(self, reason: str = "manual") -> Result:
        """Snapshot the current state into the backup rotation.  The value is the backup key."""
        try:
            data = self._snapshot()
        except UnsafeObjectError as exc:
            return Result.failure(ErrorKind.UNSAFE_OBJECT_REFUSED, f"unsafe value at {exc.path}")
        return Result.success(self.backups.create_backup(self.assembly.id, data, reason=reason))

    def recover_assembly(
        self,
        assembly_id: str | None = None,
        *,
        skip_original: bool = False,
        allow_clean_slate: bool = False,
    ) -> Result:
        """
        Run the recovery chain and adopt the result.

        The live command log is offered to the history-rebuild strategy when
        recovering the current assembly.  The value is the RecoveryOutcome.
        """
        assembly_id = assembly_id or self.assembly.id
        history = self.history.to_data() if assembly_id == self.assembly.id and self.history.history else None
        outcome = self.recovery.recover(
            assembly_id,
            skip_original=skip_original,
            allow_clean_slate=allow_clean_slate,
            history=history,
        )
        if outcome.ok:
            self._adopt(outcome.value.decoded)
        return outcome

    def get_recovery_stats(self) -> dict[str, Any]:
        return self.recovery.get_recovery_stats()

    def clear_recovery_data(self, assembly_id: str | None = None) -> None:
        self.recovery.clear_recovery_data(assembly_id)
