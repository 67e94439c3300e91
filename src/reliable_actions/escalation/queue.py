"""
Escalation queue for human-in-the-loop decisions.

Risky or uncertain actions wait here for an approve, modify or reject
decision. Every entry gets a deadline from its priority; when the deadline
passes without a decision the entry is auto-approved (low risk),
auto-rejected (high and critical risk) or marked expired for manual
follow-up, depending on configuration.
"""

import asyncio
import inspect
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Deque, Dict, List, Optional, Set, Union

from ..errors import EscalationError, EscalationNotFoundError, EscalationStateError
from ..events import EventBus
from ..models import ActionDescriptor, Priority, RiskLevel, new_id
from ..monitoring.metrics import MetricsRegistry
from ..persistence import RecordStore

if TYPE_CHECKING:
    from ..executor import ReliableExecutor


logger = logging.getLogger(__name__)


EVENT_SOURCE = "escalation"
SYSTEM_DECIDER = "system"


class Decision(str, Enum):
    PENDING = "pending"
    APPROVE = "approve"
    MODIFY = "modify"
    REJECT = "reject"
    EXPIRED = "expired"


class EscalationStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"


HUMAN_DECISIONS = frozenset({Decision.APPROVE, Decision.MODIFY, Decision.REJECT})

PRIORITY_RANK = {
    Priority.CRITICAL: 0,
    Priority.HIGH: 1,
    Priority.MEDIUM: 2,
    Priority.LOW: 3,
}


def _default_timeouts() -> Dict[Priority, Optional[float]]:
    return {
        Priority.LOW: 60 * 60.0,
        Priority.MEDIUM: 30 * 60.0,
        Priority.HIGH: 15 * 60.0,
        Priority.CRITICAL: None,
    }


@dataclass
class EscalationConfig:
    """Escalation deadlines (seconds, None for no deadline) and expiry policy."""
    timeouts: Dict[Priority, Optional[float]] = field(default_factory=_default_timeouts)
    auto_expiry_enabled: bool = True
    auto_approve_low_risk: bool = True
    auto_reject_high_risk: bool = True
    learning_feedback_enabled: bool = True
    decision_time_window: int = 100

    def __post_init__(self):
        for priority, timeout in self.timeouts.items():
            if timeout is not None and timeout <= 0:
                raise ValueError(f"timeout for {priority} must be positive or None")
        if self.decision_time_window <= 0:
            raise ValueError("decision_time_window must be positive")

    def timeout_for(self, priority: Priority) -> Optional[float]:
        return self.timeouts.get(priority)


@dataclass
class EscalationEntry:
    """One action awaiting a human decision."""
    approval_id: str
    action: ActionDescriptor
    priority: Priority
    risk_level: RiskLevel
    reason: str
    queued_at: float
    deadline: Optional[float] = None
    decision: Decision = Decision.PENDING
    decided_by: Optional[str] = None
    decided_at: Optional[float] = None
    modifications: Optional[Dict[str, Any]] = None
    rejection_reason: Optional[str] = None
    status: EscalationStatus = EscalationStatus.PENDING
    execution_result: Any = None
    execution_error: Optional[str] = None
    unit_of_work_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_pending(self) -> bool:
        return self.decision == Decision.PENDING

    def time_remaining(self, now: float) -> Optional[float]:
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "approval_id": self.approval_id,
            "action": self.action.model_dump(),
            "priority": self.priority.value,
            "risk_level": self.risk_level.value,
            "reason": self.reason,
            "queued_at": self.queued_at,
            "deadline": self.deadline,
            "decision": self.decision.value,
            "decided_by": self.decided_by,
            "decided_at": self.decided_at,
            "modifications": self.modifications,
            "rejection_reason": self.rejection_reason,
            "status": self.status.value,
            "execution_result": self.execution_result,
            "execution_error": self.execution_error,
            "unit_of_work_id": self.unit_of_work_id,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EscalationEntry":
        return cls(
            approval_id=data["approval_id"],
            action=ActionDescriptor(**data["action"]),
            priority=Priority(data["priority"]),
            risk_level=RiskLevel(data["risk_level"]),
            reason=data.get("reason", ""),
            queued_at=data["queued_at"],
            deadline=data.get("deadline"),
            decision=Decision(data.get("decision", Decision.PENDING.value)),
            decided_by=data.get("decided_by"),
            decided_at=data.get("decided_at"),
            modifications=data.get("modifications"),
            rejection_reason=data.get("rejection_reason"),
            status=EscalationStatus(data.get("status", EscalationStatus.PENDING.value)),
            execution_result=data.get("execution_result"),
            execution_error=data.get("execution_error"),
            unit_of_work_id=data.get("unit_of_work_id"),
            metadata=data.get("metadata") or {},
        )


Notifier = Callable[[EscalationEntry], Union[None, Awaitable[None]]]
FeedbackCallback = Callable[[Dict[str, Any]], Union[None, Awaitable[None]]]


class EscalationQueue:
    """
    Pending human decisions keyed by approval id.

    An approval id leaves PENDING exactly once: the first of ``resolve``,
    ``cancel`` or ``handle_expiry`` to claim it wins. A later ``resolve``
    raises ``EscalationStateError``; a later expiry is a no-op.
    """

    def __init__(
        self,
        executor: Optional["ReliableExecutor"] = None,
        config: Optional[EscalationConfig] = None,
        notifier: Optional[Notifier] = None,
        feedback_callback: Optional[FeedbackCallback] = None,
        store: Optional[RecordStore] = None,
        metrics: Optional[MetricsRegistry] = None,
        events: Optional[EventBus] = None,
        clock: Callable[[], float] = time.time
    ):
        """
        Initialize escalation queue.

        Args:
            executor: Runs approved and modified actions
            config: Deadlines and expiry policy
            notifier: Human-interface hook called with each new entry
            feedback_callback: Receives learning feedback after each decision
            store: Optional persistence for entries
            metrics: Registry receiving escalation counters
            events: Event bus receiving escalation events
            clock: Wall clock in epoch seconds
        """
        self.executor = executor
        self.config = config or EscalationConfig()
        self.notifier = notifier
        self.feedback_callback = feedback_callback
        self.store = store
        self.metrics = metrics
        self.events = events
        self._clock = clock

        self._entries: Dict[str, EscalationEntry] = {}
        self._timers: Dict[str, asyncio.TimerHandle] = {}
        self._expiry_tasks: Set[asyncio.Task] = set()
        self._lock = threading.Lock()

        self._decision_times: Deque[float] = deque(maxlen=self.config.decision_time_window)
        self.stats = self._empty_stats()

    @staticmethod
    def _empty_stats() -> Dict[str, Any]:
        return {
            "total_requests": 0,
            "approved": 0,
            "modified": 0,
            "rejected": 0,
            "expired": 0,
            "auto_approved": 0,
            "auto_rejected": 0,
            "executions_completed": 0,
            "executions_failed": 0,
            "decisions_by_risk": {},
        }

    # Enqueue

    async def enqueue(
        self,
        action: ActionDescriptor,
        reason: str,
        priority: Priority = Priority.MEDIUM,
        risk_level: RiskLevel = RiskLevel.MEDIUM,
        unit_of_work_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> str:
        """
        Queue an action for a human decision.

        Returns as soon as the entry is stored, its expiry is scheduled and
        the notifier has been called.

        Returns:
            Approval id
        """
        priority = Priority(priority)
        risk_level = RiskLevel(risk_level)
        now = self._clock()
        timeout = self.config.timeout_for(priority)

        entry = EscalationEntry(
            approval_id=new_id("apr"),
            action=action,
            priority=priority,
            risk_level=risk_level,
            reason=reason,
            queued_at=now,
            deadline=now + timeout if timeout is not None else None,
            unit_of_work_id=unit_of_work_id,
            metadata=dict(metadata or {}),
        )

        with self._lock:
            self._entries[entry.approval_id] = entry
            self.stats["total_requests"] += 1

        self._schedule_expiry(entry)

        logger.info(
            f"Escalation queued: {entry.approval_id} ({action.action_type} on {action.target}, "
            f"priority={priority.value}, risk={risk_level.value}, "
            f"timeout={'none' if timeout is None else f'{timeout:.0f}s'})"
        )
        self._count("queued_total", priority=priority.value)
        self._set_pending_gauge()
        self._publish("queued", entry, reason=reason, deadline=entry.deadline)

        await self._notify(entry)
        await self._persist(entry)
        return entry.approval_id

    # Decisions

    async def resolve(
        self,
        approval_id: str,
        decision: Decision,
        decided_by: str,
        modifications: Optional[Dict[str, Any]] = None,
        reason: Optional[str] = None
    ) -> EscalationEntry:
        """
        Record a human decision and act on it.

        APPROVE executes the action unchanged, MODIFY shallow-merges
        ``modifications`` into its parameters first, REJECT records
        ``reason`` and executes nothing. Execution failures are recorded
        on the entry, not raised.

        Raises:
            EscalationNotFoundError: Unknown approval id
            EscalationStateError: Entry no longer pending
            EscalationError: Decision is not APPROVE, MODIFY or REJECT
        """
        decision = Decision(decision)
        if decision not in HUMAN_DECISIONS:
            raise EscalationError(f"Invalid decision: {decision.value}",
                                  details={"approval_id": approval_id})

        entry = self._claim(approval_id, decision)
        if entry is None:
            current = self._entries[approval_id]
            raise EscalationStateError(approval_id, current.decision.value)

        return await self._apply(entry, decided_by, modifications, reason)

    async def cancel(self, approval_id: str, decided_by: str = SYSTEM_DECIDER,
                     reason: str = "Cancelled before deadline") -> EscalationEntry:
        """Reject a pending entry before its deadline."""
        logger.info(f"Cancelling escalation {approval_id}: {reason}")
        return await self.resolve(approval_id, Decision.REJECT, decided_by, reason=reason)

    async def handle_expiry(self, approval_id: str) -> Optional[EscalationEntry]:
        """
        Apply the expiry policy to an entry whose deadline passed.

        Never raises. Entries already decided are left untouched.
        """
        try:
            return await self._expire(approval_id)
        except Exception as e:
            logger.error(f"Expiry handling failed for {approval_id}: {e}", exc_info=True)
            return None

    async def expire_overdue(self) -> List[EscalationEntry]:
        """Run expiry for every pending entry whose deadline has passed."""
        now = self._clock()
        with self._lock:
            overdue = [
                e.approval_id for e in self._entries.values()
                if e.is_pending and e.deadline is not None and e.deadline <= now
            ]
        expired = []
        for approval_id in overdue:
            entry = await self.handle_expiry(approval_id)
            if entry is not None:
                expired.append(entry)
        return expired

    async def _expire(self, approval_id: str) -> Optional[EscalationEntry]:
        entry = self._entries.get(approval_id)
        if entry is None:
            logger.warning(f"Escalation not found for expiry: {approval_id}")
            return None
        if not entry.is_pending:
            logger.debug(f"Escalation {approval_id} already decided ({entry.decision.value}), skipping expiry")
            return entry

        cfg = self.config
        risk = entry.risk_level

        if cfg.auto_expiry_enabled and risk == RiskLevel.LOW and cfg.auto_approve_low_risk:
            if self._claim(approval_id, Decision.APPROVE) is None:
                return entry
            logger.info(f"Auto-approving low risk escalation {approval_id} after deadline")
            with self._lock:
                self.stats["auto_approved"] += 1
            self._publish("expired", entry, outcome="auto_approved")
            return await self._apply(entry, SYSTEM_DECIDER, None, None)

        if cfg.auto_expiry_enabled and risk in (RiskLevel.HIGH, RiskLevel.CRITICAL) and cfg.auto_reject_high_risk:
            if self._claim(approval_id, Decision.REJECT) is None:
                return entry
            logger.warning(f"Auto-rejecting {risk.value} risk escalation {approval_id} after deadline")
            with self._lock:
                self.stats["auto_rejected"] += 1
            self._publish("expired", entry, outcome="auto_rejected")
            return await self._apply(entry, SYSTEM_DECIDER, None,
                                     "Auto-rejected due to timeout and high risk")

        if self._claim(approval_id, Decision.EXPIRED) is None:
            return entry

        self._cancel_timer(approval_id)
        entry.status = EscalationStatus.EXPIRED
        entry.decided_by = SYSTEM_DECIDER
        entry.decided_at = self._clock()
        time_to_decision = entry.decided_at - entry.queued_at
        with self._lock:
            self._decision_times.append(time_to_decision)
            self.stats["expired"] += 1
            self._count_risk_decision(entry)

        logger.warning(f"Escalation {approval_id} expired, requires manual review")
        self._count("decisions_total", decision=Decision.EXPIRED.value, risk_level=risk.value)
        self._set_pending_gauge()
        self._publish("expired", entry, outcome="manual_review")
        await self._feedback(entry, time_to_decision, None)
        await self._persist(entry)
        return entry

    def _claim(self, approval_id: str, decision: Decision) -> Optional[EscalationEntry]:
        """Atomically move an entry out of PENDING; None if already decided."""
        with self._lock:
            entry = self._entries.get(approval_id)
            if entry is None:
                raise EscalationNotFoundError(approval_id)
            if not entry.is_pending:
                return None
            entry.decision = decision
            return entry

    async def _apply(self, entry: EscalationEntry, decided_by: str,
                     modifications: Optional[Dict[str, Any]],
                     reason: Optional[str]) -> EscalationEntry:
        self._cancel_timer(entry.approval_id)

        now = self._clock()
        entry.decided_by = decided_by
        entry.decided_at = now
        entry.modifications = modifications if entry.decision == Decision.MODIFY else None
        time_to_decision = now - entry.queued_at

        with self._lock:
            self._decision_times.append(time_to_decision)
            key = {
                Decision.APPROVE: "approved",
                Decision.MODIFY: "modified",
                Decision.REJECT: "rejected",
            }[entry.decision]
            self.stats[key] += 1
            self._count_risk_decision(entry)

        logger.info(
            f"Escalation {entry.approval_id} decided: {entry.decision.value} by {decided_by} "
            f"after {time_to_decision:.0f}s"
        )
        self._count("decisions_total", decision=entry.decision.value, risk_level=entry.risk_level.value)
        self._set_pending_gauge()
        self._publish("resolved", entry, decision=entry.decision.value, decided_by=decided_by,
                      time_to_decision=time_to_decision)

        outcome: Optional[Dict[str, Any]] = None
        if entry.decision == Decision.REJECT:
            entry.status = EscalationStatus.REJECTED
            entry.rejection_reason = reason
            logger.warning(f"Escalation {entry.approval_id} rejected: {reason}")
        else:
            entry.status = EscalationStatus.APPROVED
            action = entry.action
            if entry.decision == Decision.MODIFY:
                action = action.with_parameters(modifications)
            outcome = await self._execute(entry, action)

        await self._feedback(entry, time_to_decision, outcome)
        await self._persist(entry)
        return entry

    async def _execute(self, entry: EscalationEntry, action: ActionDescriptor) -> Dict[str, Any]:
        entry.status = EscalationStatus.EXECUTING
        self._publish("executing", entry)
        logger.info(f"Executing approved action for {entry.approval_id}: {action.action_type}")

        try:
            if self.executor is None:
                raise EscalationError("No executor configured for approved actions",
                                      details={"approval_id": entry.approval_id})
            result = await self.executor.execute(action, unit_of_work_id=entry.unit_of_work_id)
        except Exception as e:
            entry.status = EscalationStatus.FAILED
            entry.execution_error = str(e)
            with self._lock:
                self.stats["executions_failed"] += 1
            logger.error(f"Approved action failed for {entry.approval_id}: {e}")
            self._publish("failed", entry, error=str(e))
            return {"success": False, "error": str(e)}

        entry.status = EscalationStatus.COMPLETED
        entry.execution_result = result
        with self._lock:
            self.stats["executions_completed"] += 1
        logger.info(f"Approved action completed for {entry.approval_id}")
        self._publish("completed", entry)
        return {"success": True, "result": result}

    async def _feedback(self, entry: EscalationEntry, time_to_decision: float,
                        outcome: Optional[Dict[str, Any]]) -> None:
        if not self.config.learning_feedback_enabled:
            return

        feedback = {
            "approval_id": entry.approval_id,
            "decision": entry.decision.value,
            "time_to_decision": time_to_decision,
            "modifications": entry.modifications,
            "execution_outcome": outcome,
            "risk_level": entry.risk_level.value,
            "decided_by": entry.decided_by,
        }

        if self.feedback_callback is not None:
            try:
                ret = self.feedback_callback(feedback)
                if inspect.isawaitable(ret):
                    await ret
            except Exception as e:
                logger.error(f"Learning feedback callback failed: {e}")

        if self.events is not None:
            self.events.publish(EVENT_SOURCE, "feedback", feedback)

    # Timers

    def _schedule_expiry(self, entry: EscalationEntry) -> None:
        if entry.deadline is None:
            return
        loop = asyncio.get_running_loop()
        delay = max(0.0, entry.deadline - self._clock())
        self._timers[entry.approval_id] = loop.call_later(delay, self._on_deadline, entry.approval_id)

    def _on_deadline(self, approval_id: str) -> None:
        self._timers.pop(approval_id, None)
        task = asyncio.ensure_future(self.handle_expiry(approval_id))
        self._expiry_tasks.add(task)
        task.add_done_callback(self._expiry_tasks.discard)

    def _cancel_timer(self, approval_id: str) -> None:
        timer = self._timers.pop(approval_id, None)
        if timer is not None:
            timer.cancel()

    # Queries

    def get(self, approval_id: str) -> Optional[EscalationEntry]:
        return self._entries.get(approval_id)

    def list_pending(self) -> List[EscalationEntry]:
        """Pending entries, most urgent priority first, then oldest first."""
        with self._lock:
            pending = [e for e in self._entries.values() if e.is_pending]
        return sorted(pending, key=lambda e: (PRIORITY_RANK[e.priority], e.queued_at))

    def list_requiring_follow_up(self) -> List[EscalationEntry]:
        """Expired entries nobody decided on."""
        with self._lock:
            return [e for e in self._entries.values() if e.status == EscalationStatus.EXPIRED]

    def get_statistics(self) -> Dict[str, Any]:
        with self._lock:
            stats = dict(self.stats)
            stats["decisions_by_risk"] = {
                risk: dict(counts) for risk, counts in self.stats["decisions_by_risk"].items()
            }
            times = list(self._decision_times)
            stats["pending"] = sum(1 for e in self._entries.values() if e.is_pending)
        stats["avg_time_to_decision"] = sum(times) / len(times) if times else 0.0
        return stats

    def format_statistics(self) -> str:
        stats = self.get_statistics()
        lines = [
            "Escalation Queue Statistics",
            f"  Total requests: {stats['total_requests']}",
            f"  Approved: {stats['approved']}",
            f"  Modified: {stats['modified']}",
            f"  Rejected: {stats['rejected']}",
            f"  Expired: {stats['expired']}",
            f"  Auto-approved: {stats['auto_approved']}",
            f"  Auto-rejected: {stats['auto_rejected']}",
            f"  Pending: {stats['pending']}",
        ]
        if stats["avg_time_to_decision"] > 0:
            lines.append(f"  Average decision time: {stats['avg_time_to_decision'] / 60:.1f} minutes")
        for risk, counts in sorted(stats["decisions_by_risk"].items()):
            summary = ", ".join(f"{d}={n}" for d, n in sorted(counts.items()))
            lines.append(f"  {risk.upper()}: {summary}")
        return "\n".join(lines)

    # Lifecycle

    def clear_completed(self) -> int:
        """Drop completed, rejected and failed entries. Expired ones stay for follow-up."""
        done = (EscalationStatus.COMPLETED, EscalationStatus.REJECTED, EscalationStatus.FAILED)
        with self._lock:
            ids = [i for i, e in self._entries.items() if e.status in done]
            for approval_id in ids:
                del self._entries[approval_id]
        logger.info(f"Cleared {len(ids)} completed escalations")
        return len(ids)

    def reset_statistics(self) -> None:
        with self._lock:
            self.stats = self._empty_stats()
            self._decision_times.clear()
        logger.info("Escalation statistics reset")

    def destroy(self) -> None:
        """Cancel every timer and drop all entries."""
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        for task in list(self._expiry_tasks):
            task.cancel()
        self._expiry_tasks.clear()
        with self._lock:
            self._entries.clear()
            self.stats = self._empty_stats()
            self._decision_times.clear()
        logger.info("Escalation queue destroyed")

    async def load(self) -> int:
        """Restore entries from the store and reschedule pending deadlines."""
        if self.store is None:
            return 0
        try:
            records = await self.store.load_all()
        except Exception as e:
            logger.error(f"Failed to load escalations: {e}")
            return 0

        loaded = 0
        for approval_id, data in records.items():
            try:
                entry = EscalationEntry.from_dict(data)
            except (KeyError, ValueError, TypeError) as e:
                logger.warning(f"Skipping unreadable escalation record {approval_id}: {e}")
                continue
            with self._lock:
                self._entries[entry.approval_id] = entry
            if entry.is_pending:
                self._schedule_expiry(entry)
            loaded += 1

        logger.info(f"Loaded {loaded} escalations from store")
        self._set_pending_gauge()
        return loaded

    # Internals

    def _count_risk_decision(self, entry: EscalationEntry) -> None:
        by_risk = self.stats["decisions_by_risk"].setdefault(entry.risk_level.value, {})
        by_risk[entry.decision.value] = by_risk.get(entry.decision.value, 0) + 1

    async def _notify(self, entry: EscalationEntry) -> None:
        if self.notifier is None:
            return
        try:
            ret = self.notifier(entry)
            if inspect.isawaitable(ret):
                await ret
        except Exception as e:
            logger.error(f"Escalation notifier failed for {entry.approval_id}: {e}")

    async def _persist(self, entry: EscalationEntry) -> None:
        if self.store is None:
            return
        try:
            await self.store.save(entry.approval_id, entry.to_dict())
        except Exception as e:
            logger.error(f"Failed to persist escalation {entry.approval_id}: {e}")

    def _count(self, name: str, **labels: str) -> None:
        if self.metrics is not None:
            self.metrics.counter(f"escalation_{name}").increment(1, labels or None)

    def _set_pending_gauge(self) -> None:
        if self.metrics is not None:
            with self._lock:
                pending = sum(1 for e in self._entries.values() if e.is_pending)
            self.metrics.gauge("escalation_pending").set(pending)

    def _publish(self, event_type: str, entry: EscalationEntry, **payload: Any) -> None:
        if self.events is not None:
            self.events.publish(EVENT_SOURCE, event_type, {
                "approval_id": entry.approval_id,
                "priority": entry.priority.value,
                "risk_level": entry.risk_level.value,
                **entry.action.summary(),
                **payload,
            })


__all__ = [
    "Decision",
    "EscalationStatus",
    "EscalationConfig",
    "EscalationEntry",
    "EscalationQueue",
    "Notifier",
    "FeedbackCallback",
]
