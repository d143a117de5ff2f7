"""
optimistic_service.py — Optimistic Update Coordinator

Applies a tentative state to the visible model immediately, then runs the
remote sync with retry/backoff and either confirms the change or rolls it
back to the original snapshot.

Business Rules:
- Operation lifecycle: PENDING → SYNCING → CONFIRMED | FAILED → ROLLED_BACK
- Up to `retry_attempts` sync attempts, delay retry_delay_ms * 2^attempt
  between them; no delay after the last attempt
- Non-retryable codes and conflict-shaped errors fail on first occurrence
- Conflicts are routed to on_conflict after the rollback
- on_confirm / on_rollback / on_conflict failures are logged only
- A failing rollback is a FatalInconsistency: CRITICAL log, on_inconsistent
  hook, raised to the caller
- At most one operation per entity id in flight; a second one is rejected
  with OperationInFlightError

Called by: services/workflow_service.py
Depends on: exceptions.py, config.py
"""

import asyncio
import inspect
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable

from loguru import logger

from ..config import settings
from ..exceptions import (
    FatalInconsistency,
    OperationInFlightError,
    error_code_of,
    is_conflict_error,
    is_non_retryable_error,
)
from ..utils import utcnow


class OptimisticStatus(str, Enum):
    PENDING = "pending"
    SYNCING = "syncing"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


_IN_FLIGHT = (OptimisticStatus.PENDING, OptimisticStatus.SYNCING)


@dataclass
class OptimisticOperation:
    id: str
    entity_id: str | None
    original_state: Any
    optimistic_state: Any
    status: OptimisticStatus = OptimisticStatus.PENDING
    started_at: datetime = field(default_factory=utcnow)
    attempts: int = 0
    error: BaseException | None = None
    result: Any = None
    _t0: float = field(default_factory=time.monotonic, repr=False)

    @property
    def duration_ms(self) -> int:
        return int((time.monotonic() - self._t0) * 1000)


@dataclass
class OptimisticResult:
    status: OptimisticStatus
    result: Any = None
    error: BaseException | None = None
    was_conflict: bool = False
    attempts: int = 0
    duration_ms: int = 0

    @property
    def confirmed(self) -> bool:
        return self.status == OptimisticStatus.CONFIRMED


async def _maybe_await(value):
    if inspect.isawaitable(value):
        return await value
    return value


class OptimisticCoordinator:
    """Arena of optimistic operations keyed by operation id."""

    def __init__(
        self,
        retry_attempts: int | None = None,
        retry_delay_ms: int | None = None,
        on_inconsistent: Callable[[OptimisticOperation, BaseException], Any] | None = None,
    ):
        self.retry_attempts = max(1, retry_attempts if retry_attempts is not None else settings.sync_retry_attempts)
        self.retry_delay_ms = retry_delay_ms if retry_delay_ms is not None else settings.sync_retry_delay_ms
        self.on_inconsistent = on_inconsistent
        self._operations: dict[str, OptimisticOperation] = {}
        self._entities: dict[str, str] = {}
        self._listeners: list[Callable[[dict], Any]] = []

    # ── Introspection ────────────────────────────────────────────────

    def get_state(self) -> dict:
        pending = [
            {
                "id": op.id,
                "entity_id": op.entity_id,
                "status": op.status.value,
                "duration_ms": op.duration_ms,
            }
            for op in self._operations.values()
        ]
        return {"pending_count": len(pending), "pending": pending, "has_pending": bool(pending)}

    def is_pending(self, operation_id: str) -> bool:
        op = self._operations.get(operation_id)
        return op is not None and op.status in _IN_FLIGHT

    def is_entity_pending(self, entity_id: str) -> bool:
        return entity_id in self._entities

    def get_operation(self, operation_id: str) -> OptimisticOperation | None:
        return self._operations.get(operation_id)

    def subscribe(self, listener: Callable[[dict], Any]) -> Callable[[], None]:
        """Register a state listener. Returns the unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self):
        snapshot = self.get_state()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception as e:
                logger.error("Optimistic listener failed: {}", e)

    # ── Execution ────────────────────────────────────────────────────

    async def execute(
        self,
        operation_id: str,
        *,
        original_state: Any,
        optimistic_state: Any,
        apply_optimistic: Callable[[Any], Any],
        sync_to_backend: Callable[[], Awaitable[Any]],
        on_confirm: Callable[[Any], Any] | None = None,
        on_rollback: Callable[[BaseException], Any] | None = None,
        on_conflict: Callable[[BaseException], Any] | None = None,
        entity_id: str | None = None,
    ) -> OptimisticResult:
        if operation_id in self._operations:
            raise OperationInFlightError(entity_id or operation_id, operation_id)
        if entity_id is not None and entity_id in self._entities:
            raise OperationInFlightError(entity_id, operation_id)

        op = OptimisticOperation(
            id=operation_id,
            entity_id=entity_id,
            original_state=original_state,
            optimistic_state=optimistic_state,
        )
        self._operations[operation_id] = op
        if entity_id is not None:
            self._entities[entity_id] = operation_id

        try:
            apply_optimistic(optimistic_state)
            logger.debug("Optimistic {} applied (entity={})", operation_id, entity_id)
            self._notify()

            op.status = OptimisticStatus.SYNCING
            self._notify()
            try:
                op.result = await self._sync_with_retry(op, sync_to_backend)
            except Exception as e:
                return await self._rollback(op, e, apply_optimistic, on_rollback, on_conflict)

            op.status = OptimisticStatus.CONFIRMED
            logger.info(
                "Optimistic {} confirmed after {} attempt(s) in {}ms",
                operation_id, op.attempts, op.duration_ms,
            )
            await self._safe_callback("on_confirm", on_confirm, op.result)
            return OptimisticResult(
                status=op.status,
                result=op.result,
                attempts=op.attempts,
                duration_ms=op.duration_ms,
            )
        finally:
            self._operations.pop(operation_id, None)
            if entity_id is not None and self._entities.get(entity_id) == operation_id:
                del self._entities[entity_id]
            self._notify()

    async def _sync_with_retry(self, op: OptimisticOperation, sync_to_backend):
        last_error: Exception | None = None
        for attempt in range(self.retry_attempts):
            op.attempts = attempt + 1
            try:
                return await _maybe_await(sync_to_backend())
            except Exception as e:
                last_error = e
                if is_non_retryable_error(e):
                    logger.warning(
                        "Sync for {} failed with non-retryable {}: {}",
                        op.id, error_code_of(e) or type(e).__name__, e,
                    )
                    raise
                if attempt < self.retry_attempts - 1:
                    delay = self.retry_delay_ms * (2 ** attempt) / 1000
                    logger.warning(
                        "Sync for {} failed (attempt {}/{}), retrying in {}s: {}",
                        op.id, attempt + 1, self.retry_attempts, delay, e,
                    )
                    await asyncio.sleep(delay)
        logger.error("Sync for {} failed after {} attempts: {}", op.id, self.retry_attempts, last_error)
        raise last_error

    async def _rollback(self, op, error, apply_optimistic, on_rollback, on_conflict) -> OptimisticResult:
        op.status = OptimisticStatus.FAILED
        op.error = error
        conflict = is_conflict_error(error)
        self._notify()

        try:
            apply_optimistic(op.original_state)
        except Exception as rollback_error:
            logger.critical(
                "Rollback failed for {} (entity={}); state is inconsistent: {}",
                op.id, op.entity_id, rollback_error,
            )
            if self.on_inconsistent is not None:
                try:
                    await _maybe_await(self.on_inconsistent(op, rollback_error))
                except Exception as hook_error:
                    logger.error("on_inconsistent hook failed for {}: {}", op.id, hook_error)
            raise FatalInconsistency(op.id, rollback_error) from rollback_error

        await self._safe_callback("on_rollback", on_rollback, error)
        if conflict:
            logger.warning("Conflict detected for {}: {}", op.id, error)
            await self._safe_callback("on_conflict", on_conflict, error)

        op.status = OptimisticStatus.ROLLED_BACK
        logger.info("Optimistic {} rolled back: {}", op.id, error)
        return OptimisticResult(
            status=op.status,
            error=error,
            was_conflict=conflict,
            attempts=op.attempts,
            duration_ms=op.duration_ms,
        )

    async def _safe_callback(self, name, callback, arg):
        if callback is None:
            return
        try:
            await _maybe_await(callback(arg))
        except Exception as e:
            logger.error("Optimistic {} callback failed: {}", name, e)
