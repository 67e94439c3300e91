"""
Reliable execution path shared by direct callers and the escalation queue.

An action runs through the idempotency cache, then the retry engine, and is
appended to its unit of work in the compensation ledger only when it
actually executed (a cache hit records nothing new).
"""

import functools
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from .compensation.ledger import CompensationLedger
from .compensation.reversibility import manual_instruction
from .errors import (
    LedgerError,
    ReliabilityError,
    UnitOfWorkNotFoundError,
    UnitOfWorkStateError,
    UnrecordedActionError,
)
from .idempotency.cache import IdempotencyCache
from .models import ActionDescriptor
from .recovery.retry import CancellationToken, RetryEngine, RetryPolicy


logger = logging.getLogger(__name__)


ActionHandler = Callable[[ActionDescriptor], Union[Any, Awaitable[Any]]]


class ReliableExecutor:
    """
    Idempotent, retried, ledger-recorded execution of actions.

    Actions are performed either by an explicit ``fn`` or by the handler
    registered for their action type.
    """

    def __init__(
        self,
        engine: Optional[RetryEngine] = None,
        cache: Optional[IdempotencyCache] = None,
        ledger: Optional[CompensationLedger] = None
    ):
        self.engine = engine if engine is not None else RetryEngine()
        self.cache = cache if cache is not None else IdempotencyCache()
        self.ledger = ledger if ledger is not None else CompensationLedger(engine=self.engine)
        self._handlers: Dict[str, ActionHandler] = {}

    def register_handler(self, action_type: str, handler: ActionHandler) -> None:
        """Register the coroutine (or function) that performs ``action_type``."""
        self._handlers[action_type] = handler
        logger.debug(f"Handler registered for {action_type}")

    def has_handler(self, action_type: str) -> bool:
        return action_type in self._handlers

    async def execute(
        self,
        action: ActionDescriptor,
        fn: Optional[Callable[[], Any]] = None,
        unit_of_work_id: Optional[str] = None,
        policy: Optional[RetryPolicy] = None,
        cancel_token: Optional[CancellationToken] = None,
        ttl: Optional[float] = None
    ) -> Any:
        """
        Execute an action at most once, with retries.

        Args:
            action: Action to execute
            fn: Zero-argument callable performing it; defaults to the registered handler
            unit_of_work_id: Unit of work to record the executed action in
            policy: Retry policy override
            cancel_token: Cancellation observed between attempts
            ttl: Explicit idempotency TTL

        Returns:
            Result of the action (cached on a duplicate)

        Raises:
            ClassifiedFault: Retries exhausted or non-retryable fault
            ReliabilityError: No ``fn`` and no handler for the action type
            UnitOfWorkNotFoundError: Unknown unit of work
            UnitOfWorkStateError: Unit of work no longer accepts actions
            UnrecordedActionError: Action executed (and cached) but the unit of
                work stopped accepting actions while it was in flight
        """
        call = fn or self._handler_call(action)
        if unit_of_work_id is not None:
            self._check_unit(unit_of_work_id)

        unrecorded: List[LedgerError] = []

        async def run_once():
            result = await self.engine.execute(action, call, policy=policy, cancel_token=cancel_token)
            if unit_of_work_id is not None:
                try:
                    self.ledger.append(unit_of_work_id, action, result)
                except LedgerError as e:
                    # Result is cached even when recording fails
                    unrecorded.append(e)
            return result

        result = await self.cache.wrap(action, run_once, ttl=ttl)
        if unrecorded:
            raise self._unrecorded(action, unit_of_work_id, result, unrecorded[0])
        return result

    def _unrecorded(self, action: ActionDescriptor, unit_of_work_id: str, result: Any,
                    cause: LedgerError) -> UnrecordedActionError:
        instruction = manual_instruction(action.correlation_id, action.action_type, action.target,
                                         time.time(), action.parameters, result)
        logger.error(
            f"{action.action_type} on {action.target} executed but could not be recorded in "
            f"unit {unit_of_work_id}: {cause.message}"
        )
        return UnrecordedActionError(unit_of_work_id, action.action_type, result, instruction, cause=cause)

    def _handler_call(self, action: ActionDescriptor) -> Callable[[], Any]:
        handler = self._handlers.get(action.action_type)
        if handler is None:
            raise ReliabilityError(
                f"No handler registered for action type: {action.action_type}",
                details=action.summary(),
            )

        return functools.partial(handler, action)

    def _check_unit(self, unit_of_work_id: str) -> None:
        unit = self.ledger.get_unit(unit_of_work_id)
        if unit is None:
            raise UnitOfWorkNotFoundError(unit_of_work_id)
        if not unit.accepts_appends:
            raise UnitOfWorkStateError(
                f"Unit of work {unit_of_work_id} does not accept actions in state {unit.state.value}",
                details={"unit_of_work_id": unit_of_work_id, "state": unit.state.value},
            )


__all__ = ["ActionHandler", "ReliableExecutor"]
