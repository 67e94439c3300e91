"""
Compensation ledger for multi-step operations.

Records every side effect a unit of work applies, in completion order, and
undoes them in strict reverse order when the unit fails partway. Reversible
entries are undone through registered inverse operations run by the retry
engine; everything that cannot be undone automatically is reported with a
human-readable remediation instruction.
"""

import asyncio
import functools
import json
import logging
import threading
import time
from collections import deque
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional

from ..errors import LedgerError, UnitOfWorkNotFoundError, UnitOfWorkStateError
from ..events import EventBus
from ..models import ActionDescriptor, new_id
from ..monitoring.metrics import MetricsRegistry
from ..recovery.retry import RetryEngine
from .reversibility import (
    Reversibility,
    confirmation_instruction,
    get_reversibility,
    get_rule,
    manual_instruction,
    restore_parameters,
)


logger = logging.getLogger(__name__)


EVENT_SOURCE = "ledger"

# Rough per-entry cost used by estimate_duration
SECONDS_PER_INVERSE = 3.5


class CompensationStatus(str, Enum):
    NOT_ATTEMPTED = "not_attempted"
    COMPENSATED = "compensated"
    COMPENSATION_FAILED = "compensation_failed"
    MANUAL_STEPS_REQUIRED = "manual_steps_required"


class UnitOfWorkState(str, Enum):
    ACTIVE = "active"
    COMPENSATING = "compensating"
    COMPENSATED = "compensated"
    PARTIALLY_COMPENSATED = "partially_compensated"
    COMPENSATION_FAILED = "compensation_failed"


TERMINAL_STATES = frozenset({
    UnitOfWorkState.COMPENSATED,
    UnitOfWorkState.PARTIALLY_COMPENSATED,
    UnitOfWorkState.COMPENSATION_FAILED,
})

PENDING_STATUSES = frozenset({
    CompensationStatus.NOT_ATTEMPTED,
    CompensationStatus.COMPENSATION_FAILED,
})


@dataclass
class ExecutedAction:
    """One applied side effect recorded in a unit of work."""
    action_id: str
    unit_of_work_id: str
    action_type: str
    target: str
    parameters: Dict[str, Any]
    result: Any
    executed_at: float
    reversibility: Reversibility
    compensation_status: CompensationStatus = CompensationStatus.NOT_ATTEMPTED
    compensation_result: Any = None
    compensation_error: Optional[str] = None
    manual_instruction: Optional[str] = None
    compensated_at: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["reversibility"] = self.reversibility.value
        data["compensation_status"] = self.compensation_status.value
        return data


@dataclass
class UnitOfWork:
    """Ordered list of executed actions belonging to one multi-step operation."""
    id: str
    name: str
    entries: List[ExecutedAction] = field(default_factory=list)
    state: UnitOfWorkState = UnitOfWorkState.ACTIVE
    started_at: float = field(default_factory=time.time)
    completed_at: Optional[float] = None
    compensation_started_at: Optional[float] = None
    compensation_completed_at: Optional[float] = None
    manual_instructions: List[str] = field(default_factory=list)
    archived: bool = False

    @property
    def accepts_appends(self) -> bool:
        return self.state == UnitOfWorkState.ACTIVE and not self.archived

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "state": self.state.value,
            "archived": self.archived,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "compensation_started_at": self.compensation_started_at,
            "compensation_completed_at": self.compensation_completed_at,
            "manual_instructions": list(self.manual_instructions),
            "entries": [entry.to_dict() for entry in self.entries],
        }


@dataclass
class CompensationOptions:
    """Options for a compensation walk."""
    require_confirmation: bool = True
    stop_on_failure: bool = False
    max_actions: Optional[int] = None
    timeout_per_action: float = 30.0


@dataclass
class CompensationResult:
    """Outcome of a compensation walk. Lists hold action ids."""
    success: bool
    unit_of_work_id: str
    compensated: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    manual_steps_required: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    manual_instructions: List[str] = field(default_factory=list)
    duration: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ValidationReport:
    """Dry-run classification of a unit's entries."""
    can_compensate: bool
    reversible_count: int = 0
    non_reversible_count: int = 0
    confirmation_required_count: int = 0
    warnings: List[str] = field(default_factory=list)


InverseOperation = Callable[[ExecutedAction, Dict[str, Any]], Any]


class CompensationLedger:
    """
    Append-only record of side effects with reverse-order compensation.

    Inverse operations are registered per action type and called as
    ``inverse(entry, restore)``, where ``restore`` holds the previous-state
    values of a partially reversible entry and is empty otherwise.
    """

    def __init__(
        self,
        engine: Optional[RetryEngine] = None,
        options: Optional[CompensationOptions] = None,
        history_size: int = 1000,
        metrics: Optional[MetricsRegistry] = None,
        events: Optional[EventBus] = None,
        clock: Callable[[], float] = time.time
    ):
        """
        Initialize compensation ledger.

        Args:
            engine: Retry engine running inverse operations
            options: Default compensation options
            history_size: Finished units kept in history
            metrics: Registry receiving compensation counters
            events: Event bus receiving ledger events
            clock: Wall clock in epoch seconds
        """
        self.engine = engine if engine is not None else RetryEngine(metrics=metrics, events=events)
        self.options = options or CompensationOptions()
        self.metrics = metrics
        self.events = events
        self._clock = clock

        self._units: Dict[str, UnitOfWork] = {}
        self._history: Deque[UnitOfWork] = deque(maxlen=history_size)
        self._inverses: Dict[str, InverseOperation] = {}
        self._lock = threading.RLock()

    # Registration

    def register_inverse(self, action_type: str, inverse: InverseOperation) -> None:
        """Register the operation that undoes ``action_type`` (sync or async)."""
        with self._lock:
            self._inverses[action_type] = inverse
        logger.info(f"Inverse operation registered for {action_type}")

    def get_reversibility(self, action_type: str) -> Reversibility:
        return get_reversibility(action_type)

    # Recording

    def begin(self, unit_of_work_id: str, name: str = "") -> UnitOfWork:
        """
        Start tracking a unit of work.

        Raises:
            LedgerError: If the id is already in use
        """
        with self._lock:
            if unit_of_work_id in self._units or self._find_in_history(unit_of_work_id):
                raise LedgerError(f"Unit of work already exists: {unit_of_work_id}",
                                  details={"unit_of_work_id": unit_of_work_id})
            unit = UnitOfWork(id=unit_of_work_id, name=name, started_at=self._clock())
            self._units[unit_of_work_id] = unit

        logger.info(f"Started unit of work: {unit_of_work_id} - {name}")
        self._publish("begun", unit_of_work_id=unit_of_work_id, name=name)
        return unit

    def append(
        self,
        unit_of_work_id: str,
        action: ActionDescriptor,
        result: Any = None,
        action_id: Optional[str] = None
    ) -> ExecutedAction:
        """
        Record an executed action.

        Raises:
            UnitOfWorkNotFoundError: Unknown unit
            UnitOfWorkStateError: Unit archived or past ACTIVE
        """
        with self._lock:
            unit = self._live_unit(unit_of_work_id)
            if not unit.accepts_appends:
                raise UnitOfWorkStateError(
                    f"Cannot append to unit of work {unit_of_work_id} in state {unit.state.value}"
                    + (" (archived)" if unit.archived else ""),
                    details={"unit_of_work_id": unit_of_work_id, "state": unit.state.value},
                )

            entry = ExecutedAction(
                action_id=action_id or new_id("act"),
                unit_of_work_id=unit_of_work_id,
                action_type=action.action_type,
                target=action.target,
                parameters=dict(action.parameters),
                result=result,
                executed_at=self._clock(),
                reversibility=get_reversibility(action.action_type),
            )
            unit.entries.append(entry)

        logger.info(
            f"Recorded action {entry.action_id} for unit {unit_of_work_id} "
            f"(type={entry.action_type}, target={entry.target}, "
            f"reversibility={entry.reversibility.value})"
        )
        self._publish("appended", unit_of_work_id=unit_of_work_id, action_id=entry.action_id,
                      action_type=entry.action_type, reversibility=entry.reversibility.value)
        return entry

    def complete(self, unit_of_work_id: str) -> UnitOfWork:
        """Archive a unit of work; later appends and compensations are rejected."""
        with self._lock:
            unit = self._live_unit(unit_of_work_id)
            if unit.state == UnitOfWorkState.COMPENSATING:
                raise UnitOfWorkStateError(
                    f"Cannot complete unit of work {unit_of_work_id} while compensating",
                    details={"unit_of_work_id": unit_of_work_id},
                )
            unit.archived = True
            unit.completed_at = self._clock()
            self._archive(unit)

        logger.info(f"Unit of work {unit_of_work_id} completed")
        self._publish("completed", unit_of_work_id=unit_of_work_id, entries=len(unit.entries))
        return unit

    # Compensation

    async def compensate(self, unit_of_work_id: str,
                         options: Optional[CompensationOptions] = None) -> CompensationResult:
        """
        Undo every outstanding entry of a unit, newest first.

        Entries that were never attempted or whose compensation failed are
        walked; failures are reported per entry and never raised. A walk cut
        short by cancellation or an unexpected error leaves the unit
        PARTIALLY_COMPENSATED so the remaining entries can be compensated later.
        """
        options = options or self.options
        with self._lock:
            unit = self._start_compensation(unit_of_work_id)
            candidates = [e for e in reversed(unit.entries) if e.compensation_status in PENDING_STATUSES]

        logger.info(f"Compensating unit {unit_of_work_id}: {len(candidates)} actions in reverse order")
        return await self._run_walk(unit, candidates, options, partial=False)

    async def partial_compensate(self, unit_of_work_id: str, last_n: int,
                                 options: Optional[CompensationOptions] = None) -> CompensationResult:
        """
        Undo only the last ``last_n`` entries of a unit, newest first.

        Raises:
            LedgerError: If ``last_n`` is outside ``1..len(entries)``
        """
        options = options or self.options
        with self._lock:
            unit = self._live_unit(unit_of_work_id)
            if last_n <= 0 or last_n > len(unit.entries):
                raise LedgerError(
                    f"Invalid number of steps: {last_n} (max: {len(unit.entries)})",
                    details={"unit_of_work_id": unit_of_work_id, "last_n": last_n},
                )
            unit = self._start_compensation(unit_of_work_id)
            candidates = [
                e for e in reversed(unit.entries[-last_n:])
                if e.compensation_status in PENDING_STATUSES
            ]

        logger.info(f"Partially compensating unit {unit_of_work_id}: last {last_n} actions")
        return await self._run_walk(unit, candidates, options, partial=True)

    def _start_compensation(self, unit_of_work_id: str) -> UnitOfWork:
        unit = self._live_unit(unit_of_work_id)
        if unit.archived or unit.state not in (UnitOfWorkState.ACTIVE,
                                               UnitOfWorkState.PARTIALLY_COMPENSATED):
            raise UnitOfWorkStateError(
                f"Cannot compensate unit of work {unit_of_work_id} in state {unit.state.value}",
                details={"unit_of_work_id": unit_of_work_id, "state": unit.state.value},
            )
        unit.state = UnitOfWorkState.COMPENSATING
        unit.compensation_started_at = self._clock()
        self._publish("compensating", unit_of_work_id=unit_of_work_id)
        return unit

    async def _run_walk(self, unit: UnitOfWork, candidates: List[ExecutedAction],
                        options: CompensationOptions, partial: bool) -> CompensationResult:
        result = CompensationResult(success=False, unit_of_work_id=unit.id)
        started = self._clock()
        try:
            await self._walk(unit, candidates, options, result)
        except BaseException as e:
            result.duration = self._clock() - started
            logger.warning(f"Compensation of {unit.id} interrupted: {type(e).__name__}")
            self._finish(unit, result, partial=True)
            raise
        result.duration = self._clock() - started
        self._finish(unit, result, partial=partial)
        return result

    async def _walk(self, unit: UnitOfWork, candidates: List[ExecutedAction],
                    options: CompensationOptions, result: CompensationResult) -> None:
        visited = 0
        halted = False

        for entry in candidates:
            limit_reached = options.max_actions is not None and visited >= options.max_actions
            if halted or limit_reached:
                self._skip(entry, result, "compensation halted" if halted else "max_actions reached")
                continue

            visited += 1
            outcome = await self._compensate_entry(entry, options, result)
            if outcome is CompensationStatus.COMPENSATION_FAILED and options.stop_on_failure:
                logger.warning(f"Stopping compensation of {unit.id} after failure (stop_on_failure)")
                halted = True

    async def _compensate_entry(self, entry: ExecutedAction, options: CompensationOptions,
                                result: CompensationResult) -> CompensationStatus:
        kind = entry.reversibility

        if kind == Reversibility.NON_REVERSIBLE:
            logger.warning(f"Action {entry.action_id} ({entry.action_type}) is non-reversible")
            return self._require_manual(entry, result, self._instruction(entry))

        if kind == Reversibility.CONFIRMATION_REQUIRED and options.require_confirmation:
            logger.warning(f"Action {entry.action_id} requires confirmation before compensation")
            return self._require_manual(
                entry, result, confirmation_instruction(entry.action_type, entry.result)
            )

        restore: Dict[str, Any] = {}
        if kind == Reversibility.PARTIALLY_REVERSIBLE:
            restore = restore_parameters(entry.parameters)
            if not restore:
                return self._require_manual(
                    entry, result,
                    f"No previous state captured; restore manually\n{self._instruction(entry)}"
                )

        with self._lock:
            inverse = self._inverses.get(entry.action_type)
        if inverse is None:
            return self._require_manual(
                entry, result,
                f"No inverse operation registered for {entry.action_type}\n{self._instruction(entry)}"
            )

        return await self._run_inverse(entry, inverse, restore, options, result)

    async def _run_inverse(self, entry: ExecutedAction, inverse: InverseOperation,
                           restore: Dict[str, Any], options: CompensationOptions,
                           result: CompensationResult) -> CompensationStatus:
        rule = get_rule(entry.action_type)
        descriptor = ActionDescriptor(
            correlation_id=entry.action_id,
            action_type=rule.inverse_action or f"undo_{entry.action_type}",
            target=entry.target,
            parameters=restore or {"action_id": entry.action_id},
        )

        try:
            outcome = await asyncio.wait_for(
                self.engine.execute(descriptor, functools.partial(inverse, entry, restore)),
                options.timeout_per_action,
            )
        except asyncio.TimeoutError:
            error = f"Compensation timed out after {options.timeout_per_action}s"
        except Exception as e:
            error = str(e)
        else:
            entry.compensation_status = CompensationStatus.COMPENSATED
            entry.compensation_result = outcome
            entry.compensated_at = self._clock()
            result.compensated.append(entry.action_id)
            logger.info(f"Compensated action {entry.action_id} ({entry.action_type})")
            self._count("entries_compensated_total")
            self._publish("entry_compensated", unit_of_work_id=entry.unit_of_work_id,
                          action_id=entry.action_id, action_type=entry.action_type)
            return CompensationStatus.COMPENSATED

        logger.error(f"Failed to compensate action {entry.action_id} ({entry.action_type}): {error}")
        entry.compensation_status = CompensationStatus.COMPENSATION_FAILED
        entry.compensation_error = error
        entry.manual_instruction = f"Automatic compensation failed: {error}\n{self._instruction(entry)}"
        result.failed.append(entry.action_id)
        result.manual_steps_required.append(entry.action_id)
        result.manual_instructions.append(entry.manual_instruction)
        self._count("entries_failed_total")
        self._publish("entry_failed", unit_of_work_id=entry.unit_of_work_id,
                      action_id=entry.action_id, error=error)
        return CompensationStatus.COMPENSATION_FAILED

    def _require_manual(self, entry: ExecutedAction, result: CompensationResult,
                        instruction: str) -> CompensationStatus:
        entry.compensation_status = CompensationStatus.MANUAL_STEPS_REQUIRED
        entry.manual_instruction = instruction
        result.manual_steps_required.append(entry.action_id)
        result.manual_instructions.append(instruction)
        self._count("entries_manual_total")
        return CompensationStatus.MANUAL_STEPS_REQUIRED

    def _skip(self, entry: ExecutedAction, result: CompensationResult, reason: str) -> None:
        # Left NOT_ATTEMPTED so a later walk can pick it up
        instruction = f"Not compensated ({reason})\n{self._instruction(entry)}"
        entry.manual_instruction = instruction
        result.skipped.append(entry.action_id)
        result.manual_steps_required.append(entry.action_id)
        result.manual_instructions.append(instruction)

    def _instruction(self, entry: ExecutedAction) -> str:
        return manual_instruction(entry.action_id, entry.action_type, entry.target,
                                  entry.executed_at, entry.parameters, entry.result)

    def _finish(self, unit: UnitOfWork, result: CompensationResult, partial: bool) -> None:
        with self._lock:
            all_done = all(e.compensation_status == CompensationStatus.COMPENSATED for e in unit.entries)
            any_done = any(e.compensation_status == CompensationStatus.COMPENSATED for e in unit.entries)

            if all_done:
                unit.state = UnitOfWorkState.COMPENSATED
            elif partial or any_done:
                unit.state = UnitOfWorkState.PARTIALLY_COMPENSATED
            else:
                unit.state = UnitOfWorkState.COMPENSATION_FAILED

            result.success = all_done
            unit.compensation_completed_at = self._clock()
            unit.manual_instructions.extend(result.manual_instructions)

            if unit.state != UnitOfWorkState.PARTIALLY_COMPENSATED:
                self._archive(unit)

        log = logger.info if result.success else logger.warning
        log(
            f"Compensation of {unit.id} finished: state={unit.state.value}, "
            f"compensated={len(result.compensated)}, failed={len(result.failed)}, "
            f"manual={len(result.manual_steps_required)}, skipped={len(result.skipped)}"
        )
        self._count("compensations_total", outcome=unit.state.value)
        self._publish("compensation_finished", unit_of_work_id=unit.id, state=unit.state.value,
                      compensated=len(result.compensated), failed=len(result.failed),
                      manual=len(result.manual_steps_required))

    # Queries

    def validate(self, unit_of_work_id: str) -> ValidationReport:
        """Dry-run classification of a unit's entries; never raises."""
        unit = self.get_unit(unit_of_work_id)
        if unit is None:
            return ValidationReport(can_compensate=False,
                                    warnings=[f"Unit of work {unit_of_work_id} not found"])

        kinds = [e.reversibility for e in unit.entries]
        reversible = sum(1 for k in kinds if k in (Reversibility.REVERSIBLE,
                                                   Reversibility.PARTIALLY_REVERSIBLE))
        non_reversible = kinds.count(Reversibility.NON_REVERSIBLE)
        confirmation = kinds.count(Reversibility.CONFIRMATION_REQUIRED)

        warnings: List[str] = []
        if non_reversible:
            warnings.append(
                f"{non_reversible} action(s) cannot be automatically reversed "
                f"and will require manual intervention"
            )
        if confirmation:
            warnings.append(
                f"{confirmation} action(s) require confirmation before compensation "
                f"(destructive operations)"
            )
        if not unit.entries:
            warnings.append("No actions have been executed in this unit of work")

        compensable_state = not unit.archived and unit.state in (
            UnitOfWorkState.ACTIVE, UnitOfWorkState.PARTIALLY_COMPENSATED
        )
        if not compensable_state:
            warnings.append(f"Unit of work is {unit.state.value}"
                            + (" and archived" if unit.archived else ""))

        return ValidationReport(
            can_compensate=bool(unit.entries) and compensable_state,
            reversible_count=reversible,
            non_reversible_count=non_reversible,
            confirmation_required_count=confirmation,
            warnings=warnings,
        )

    def get_unit(self, unit_of_work_id: str) -> Optional[UnitOfWork]:
        with self._lock:
            return self._units.get(unit_of_work_id) or self._find_in_history(unit_of_work_id)

    def get_active_units(self) -> List[UnitOfWork]:
        with self._lock:
            return list(self._units.values())

    def get_history(self, limit: int = 50) -> List[UnitOfWork]:
        """Finished units, newest first."""
        with self._lock:
            return list(self._history)[:limit]

    def units_requiring_manual_intervention(self) -> List[UnitOfWork]:
        with self._lock:
            units = list(self._units.values()) + list(self._history)
        return [u for u in units if u.manual_instructions]

    def export_unit(self, unit_of_work_id: str) -> Optional[str]:
        unit = self.get_unit(unit_of_work_id)
        if unit is None:
            return None
        return json.dumps(unit.to_dict(), indent=2, default=str)

    def estimate_duration(self, unit_of_work_id: str) -> Optional[float]:
        """Rough seconds needed to compensate a unit's outstanding entries."""
        unit = self.get_unit(unit_of_work_id)
        if unit is None:
            return None
        outstanding = [
            e for e in unit.entries
            if e.compensation_status in PENDING_STATUSES
            and e.reversibility in (Reversibility.REVERSIBLE, Reversibility.PARTIALLY_REVERSIBLE)
        ]
        return len(outstanding) * SECONDS_PER_INVERSE

    def get_statistics(self) -> Dict[str, Any]:
        with self._lock:
            history = list(self._history)
            active = len(self._units)
        states = [u.state for u in history if u.compensation_started_at is not None]
        return {
            "active_units": active,
            "history_entries": len(history),
            "total_compensations": len(states),
            "successful_compensations": states.count(UnitOfWorkState.COMPENSATED),
            "partial_compensations": states.count(UnitOfWorkState.PARTIALLY_COMPENSATED),
            "failed_compensations": states.count(UnitOfWorkState.COMPENSATION_FAILED),
            "units_requiring_manual_intervention": len(self.units_requiring_manual_intervention()),
        }

    def reset(self) -> None:
        """Drop all units, history and registered inverses."""
        with self._lock:
            self._units.clear()
            self._history.clear()
            self._inverses.clear()
        logger.info("Compensation ledger reset")

    # Internals

    def _live_unit(self, unit_of_work_id: str) -> UnitOfWork:
        unit = self._units.get(unit_of_work_id)
        if unit is not None:
            return unit
        archived = self._find_in_history(unit_of_work_id)
        if archived is not None:
            raise UnitOfWorkStateError(
                f"Unit of work {unit_of_work_id} is {archived.state.value}"
                + (" and archived" if archived.archived else ""),
                details={"unit_of_work_id": unit_of_work_id, "state": archived.state.value},
            )
        raise UnitOfWorkNotFoundError(unit_of_work_id)

    def _find_in_history(self, unit_of_work_id: str) -> Optional[UnitOfWork]:
        for unit in self._history:
            if unit.id == unit_of_work_id:
                return unit
        return None

    def _archive(self, unit: UnitOfWork) -> None:
        self._units.pop(unit.id, None)
        self._history.appendleft(unit)

    def _count(self, name: str, **labels: str) -> None:
        if self.metrics is not None:
            self.metrics.counter(f"ledger_{name}").increment(1, labels or None)

    def _publish(self, event_type: str, **payload: Any) -> None:
        if self.events is not None:
            self.events.publish(EVENT_SOURCE, event_type, payload)


__all__ = [
    "CompensationStatus",
    "UnitOfWorkState",
    "ExecutedAction",
    "UnitOfWork",
    "CompensationOptions",
    "CompensationResult",
    "ValidationReport",
    "InverseOperation",
    "CompensationLedger",
]
