"""
test_optimistic_service.py — Tests for services/optimistic_service.py

Covers: confirm on first attempt, retry with backoff, non-retryable
short-circuit, conflict routing, callback failures, rollback failure,
per-entity in-flight guard, introspection and listeners.

Called by: pytest
Depends on: services/optimistic_service.py
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from quoteflow.exceptions import (
    ConflictError,
    FatalInconsistency,
    OperationInFlightError,
    RetryableSyncError,
    SyncError,
)
from quoteflow.services.optimistic_service import OptimisticCoordinator, OptimisticStatus


def _run(coordinator, sync, *, entity_id=None, operation_id="op-1", **callbacks):
    applied = []
    return applied, coordinator.execute(
        operation_id,
        original_state="original",
        optimistic_state="optimistic",
        apply_optimistic=applied.append,
        sync_to_backend=sync,
        entity_id=entity_id,
        **callbacks,
    )


@pytest.mark.asyncio
async def test_confirm_on_first_attempt(coordinator):
    sync = AsyncMock(return_value="saved")
    on_confirm = MagicMock()
    applied, call = _run(coordinator, sync, on_confirm=on_confirm)
    result = await call

    assert result.status == OptimisticStatus.CONFIRMED
    assert result.result == "saved"
    assert result.attempts == 1
    sync.assert_awaited_once()
    assert applied == ["optimistic"]
    on_confirm.assert_called_once_with("saved")
    assert coordinator.get_state()["has_pending"] is False


@pytest.mark.asyncio
async def test_non_retryable_rolls_back_once(coordinator):
    sync = AsyncMock(side_effect=SyncError("PERMISSION_DENIED", "nope"))
    on_rollback = MagicMock()
    applied, call = _run(coordinator, sync, on_rollback=on_rollback)
    result = await call

    assert result.status == OptimisticStatus.ROLLED_BACK
    assert sync.await_count == 1
    assert applied.count("original") == 1
    assert applied == ["optimistic", "original"]
    on_rollback.assert_called_once()
    assert result.was_conflict is False


@pytest.mark.asyncio
@pytest.mark.parametrize("code", [
    "PERMISSION_DENIED", "UNAUTHENTICATED", "INVALID_ARGUMENT",
    "NOT_FOUND", "ALREADY_EXISTS", "FAILED_PRECONDITION", "permission-denied",
])
async def test_each_non_retryable_code_short_circuits(coordinator, code):
    sync = AsyncMock(side_effect=SyncError(code, "failed"))
    _, call = _run(coordinator, sync)
    result = await call
    assert sync.await_count == 1
    assert result.status == OptimisticStatus.ROLLED_BACK


@pytest.mark.asyncio
async def test_transient_errors_retried_then_confirmed(coordinator):
    sync = AsyncMock(side_effect=[RetryableSyncError("blip"), RetryableSyncError("blip"), "ok"])
    applied, call = _run(coordinator, sync)
    result = await call
    assert result.status == OptimisticStatus.CONFIRMED
    assert result.attempts == 3
    assert "original" not in applied


@pytest.mark.asyncio
async def test_retry_exhaustion_rolls_back(coordinator):
    sync = AsyncMock(side_effect=RetryableSyncError("still down"))
    applied, call = _run(coordinator, sync)
    result = await call
    assert sync.await_count == 3
    assert result.status == OptimisticStatus.ROLLED_BACK
    assert isinstance(result.error, RetryableSyncError)
    assert applied[-1] == "original"


@pytest.mark.asyncio
async def test_backoff_delays_double():
    coordinator = OptimisticCoordinator(retry_attempts=3, retry_delay_ms=1000)
    sync = AsyncMock(side_effect=RetryableSyncError("down"))
    with patch("quoteflow.services.optimistic_service.asyncio.sleep", new_callable=AsyncMock) as sleep:
        _, call = _run(coordinator, sync)
        await call
    assert [c.args[0] for c in sleep.await_args_list] == [1.0, 2.0]


@pytest.mark.asyncio
async def test_conflict_routed_to_on_conflict(coordinator):
    sync = AsyncMock(side_effect=ConflictError("version mismatch: stale"))
    on_conflict = MagicMock()
    on_rollback = MagicMock()
    _, call = _run(coordinator, sync, on_conflict=on_conflict, on_rollback=on_rollback)
    result = await call
    assert result.was_conflict is True
    assert sync.await_count == 1
    on_rollback.assert_called_once()
    on_conflict.assert_called_once()


@pytest.mark.asyncio
async def test_conflict_detected_from_message_of_plain_exception(coordinator):
    sync = AsyncMock(side_effect=RuntimeError("Document was Concurrent Modification victim"))
    _, call = _run(coordinator, sync)
    result = await call
    assert result.was_conflict is True
    assert sync.await_count == 1


@pytest.mark.asyncio
async def test_callback_failures_do_not_change_outcome(coordinator):
    sync = AsyncMock(return_value="ok")
    _, call = _run(coordinator, sync, on_confirm=MagicMock(side_effect=ValueError("ui broke")))
    result = await call
    assert result.status == OptimisticStatus.CONFIRMED


@pytest.mark.asyncio
async def test_async_callbacks_awaited(coordinator):
    sync = AsyncMock(side_effect=SyncError("NOT_FOUND", "gone"))
    on_rollback = AsyncMock()
    _, call = _run(coordinator, sync, on_rollback=on_rollback)
    await call
    on_rollback.assert_awaited_once()


@pytest.mark.asyncio
async def test_rollback_failure_is_fatal():
    hook = MagicMock()
    coordinator = OptimisticCoordinator(retry_attempts=1, retry_delay_ms=0, on_inconsistent=hook)

    def apply(state):
        if state == "original":
            raise RuntimeError("view gone")

    sync = AsyncMock(side_effect=SyncError("INVALID_ARGUMENT", "bad"))
    with pytest.raises(FatalInconsistency) as exc:
        await coordinator.execute(
            "op-fatal",
            original_state="original",
            optimistic_state="optimistic",
            apply_optimistic=apply,
            sync_to_backend=sync,
            entity_id="quot_1",
        )
    assert exc.value.operation_id == "op-fatal"
    hook.assert_called_once()
    op, error = hook.call_args.args
    assert op.status == OptimisticStatus.FAILED
    assert isinstance(error, RuntimeError)
    assert coordinator.is_entity_pending("quot_1") is False


@pytest.mark.asyncio
async def test_second_operation_on_same_entity_rejected(coordinator):
    seen = {}

    async def slow_sync():
        seen["pending"] = coordinator.is_entity_pending("quot_1")
        seen["op_pending"] = coordinator.is_pending("op-1")
        with pytest.raises(OperationInFlightError):
            await coordinator.execute(
                "op-2",
                original_state=None,
                optimistic_state=None,
                apply_optimistic=lambda s: None,
                sync_to_backend=AsyncMock(),
                entity_id="quot_1",
            )
        state = coordinator.get_state()
        seen["count"] = state["pending_count"]
        seen["status"] = state["pending"][0]["status"]
        return "done"

    _, call = _run(coordinator, slow_sync, entity_id="quot_1")
    result = await call
    assert result.status == OptimisticStatus.CONFIRMED
    assert seen == {"pending": True, "op_pending": True, "count": 1, "status": "syncing"}
    assert coordinator.is_entity_pending("quot_1") is False


@pytest.mark.asyncio
async def test_other_entities_run_independently(coordinator):
    async def sync():
        inner = await coordinator.execute(
            "op-b",
            original_state=None,
            optimistic_state=None,
            apply_optimistic=lambda s: None,
            sync_to_backend=AsyncMock(return_value="b"),
            entity_id="quot_b",
        )
        return inner.result

    _, call = _run(coordinator, sync, entity_id="quot_a", operation_id="op-a")
    result = await call
    assert result.result == "b"


@pytest.mark.asyncio
async def test_listeners_notified_and_unsubscribe(coordinator):
    snapshots = []
    unsubscribe = coordinator.subscribe(snapshots.append)
    coordinator.subscribe(MagicMock(side_effect=RuntimeError("listener bug")))

    _, call = _run(coordinator, AsyncMock(return_value=1))
    await call
    assert snapshots
    assert snapshots[-1]["has_pending"] is False
    assert any(s["has_pending"] for s in snapshots)

    count = len(snapshots)
    unsubscribe()
    _, call = _run(coordinator, AsyncMock(return_value=1), operation_id="op-2")
    await call
    assert len(snapshots) == count
