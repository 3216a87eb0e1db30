"""Deferred operation worker - claims ready operations and executes them."""

import asyncio
import os
import socket
import traceback
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Coroutine, Optional

import structlog

from app import __version__
from app.provisioning.models import DeferredOperation
from app.provisioning.registry import ActionRegistry
from app.routers.metrics import record_deferred_operation
from app.services.provisioning.crypto import CredentialCipherError
from app.services.provisioning.deferred_queue import DeferredOperationQueue
from app.services.provisioning.errors import DeferredAttemptError, OperationThrottledError

logger = structlog.get_logger(__name__)

# Called after an operation settles, e.g. to resume its job
SettledCallback = Callable[[DeferredOperation], Coroutine[Any, Any, None]]


def generate_worker_id() -> str:
    """Generate a unique worker ID: hostname:pid."""
    return f"{socket.gethostname()}:{os.getpid()}"


class DeferredOperationWorker:
    """Worker that polls the deferred queue and dispatches by action type."""

    def __init__(
        self,
        queue: DeferredOperationQueue,
        registry: ActionRegistry,
        worker_id: Optional[str] = None,
        poll_interval: float = 5.0,
        batch_size: int = 10,
        throttle_delay_seconds: float = 300.0,
        on_settled: Optional[SettledCallback] = None,
    ):
        self._queue = queue
        self._registry = registry
        self._worker_id = worker_id or generate_worker_id()
        self._poll_interval = poll_interval
        self._batch_size = batch_size
        self._throttle_delay = throttle_delay_seconds
        self._on_settled = on_settled
        self._running = False
        # Resume tasks started from settled operations
        self._background: set[asyncio.Task] = set()

    @property
    def worker_id(self) -> str:
        return self._worker_id

    async def start(self):
        """Start the worker loop."""
        self._running = True
        logger.info(
            "deferred_worker_started",
            worker_id=self._worker_id,
            version=__version__,
            action_types=[a.value for a in self._registry.action_types],
        )

        while self._running:
            try:
                processed = await self.run_once()
                if not processed:
                    await asyncio.sleep(self._poll_interval)
            except asyncio.CancelledError:
                logger.info("deferred_worker_cancelled", worker_id=self._worker_id)
                break
            except Exception as e:
                logger.error(
                    "deferred_worker_loop_error",
                    error=str(e),
                    traceback=traceback.format_exc(),
                )
                await asyncio.sleep(self._poll_interval)

        logger.info("deferred_worker_stopped", worker_id=self._worker_id)

    async def stop(self):
        """Stop the worker loop gracefully."""
        self._running = False
        for task in list(self._background):
            task.cancel()

    async def run_once(self) -> int:
        """Claim one batch of ready operations and execute them in order."""
        operations = await self._queue.dequeue_ready(self._worker_id, self._batch_size)
        for operation in operations:
            await self._execute(operation)
        return len(operations)

    async def _execute(self, operation: DeferredOperation) -> None:
        """Execute a single operation."""
        action = operation.action_type.value
        log = logger.bind(
            operation_id=str(operation.id),
            action_type=action,
            attempts=operation.attempts,
            job_id=str(operation.job_id) if operation.job_id else None,
        )
        log.info("deferred_operation_executing")

        try:
            handler = self._registry.get_handler(operation.action_type)
        except KeyError:
            error = f"No handler registered for action type: {action}"
            log.error("deferred_operation_no_handler", error=error)
            await self._queue.fail(operation, error, retryable=False)
            record_deferred_operation(action, "failed")
            return

        try:
            token = self._queue.decode_credential(operation)
        except (CredentialCipherError, ValueError) as e:
            log.error("deferred_operation_credential_invalid", error=str(e))
            await self._queue.fail(operation, f"Stored credential unusable: {e}", retryable=False)
            record_deferred_operation(action, "failed")
            await self._settled(operation)
            return

        try:
            result = await handler(operation, token)
        except OperationThrottledError as e:
            not_before = e.reset_at or datetime.now(timezone.utc) + timedelta(
                seconds=self._throttle_delay
            )
            log.info("deferred_operation_throttled", not_before=not_before.isoformat())
            await self._queue.reschedule(operation, not_before, e.message)
            record_deferred_operation(action, "throttled")
            return
        except DeferredAttemptError as e:
            log.warning("deferred_operation_attempt_failed", error=e.message, retryable=e.retryable)
            updated = await self._queue.fail(operation, e.message, retryable=e.retryable)
            requeued = updated is not None and updated.status.is_active
            record_deferred_operation(action, "rescheduled" if requeued else "failed")
            if not requeued:
                await self._settled(operation)
            return
        except Exception as e:
            log.error(
                "deferred_operation_handler_failed",
                error=str(e),
                traceback=traceback.format_exc(),
            )
            updated = await self._queue.fail(operation, str(e))
            requeued = updated is not None and updated.status.is_active
            record_deferred_operation(action, "rescheduled" if requeued else "failed")
            if not requeued:
                await self._settled(operation)
            return

        await self._queue.complete(operation, result)
        record_deferred_operation(action, "completed")
        log.info("deferred_operation_completed", result=result)
        await self._settled(operation)

    async def _settled(self, operation: DeferredOperation) -> None:
        if self._on_settled is None:
            return
        task = asyncio.create_task(self._run_settled(operation))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _run_settled(self, operation: DeferredOperation) -> None:
        try:
            await self._on_settled(operation)
        except Exception as e:
            logger.error(
                "deferred_operation_settle_failed",
                operation_id=str(operation.id),
                error=str(e),
                traceback=traceback.format_exc(),
            )
