"""Bounded worker pool for per-domain tasks."""

from __future__ import annotations

import asyncio
import uuid
from abc import ABC, abstractmethod
import structlog

from fleetdeploy.domain.models.results import DomainDeploymentResult
from fleetdeploy.domain.models.retry import CancellationToken
from fleetdeploy.domain.models.task import DomainTask
from fleetdeploy.domain.ports.services import EventPublisher


logger = structlog.get_logger(__name__)


class WorkerPool(ABC):
    """Runs domain tasks with at most ``max_concurrent`` in flight.

    Implements the Template Method pattern for the task lifecycle: subclasses
    provide :meth:`execute` and may override the hooks. Only :meth:`execute`
    runs under the per-task timeout; :meth:`on_task_finished` runs after it.
    """

    def __init__(
        self,
        worker_id: str | None = None,
        event_publisher: EventPublisher | None = None,
        max_concurrent: int = 3,
    ) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self._worker_id = worker_id or f"pool-{uuid.uuid4().hex[:8]}"
        self._event_publisher = event_publisher
        self._active_tasks: set[str] = set()
        self._semaphore = asyncio.Semaphore(max_concurrent)

    @property
    def worker_id(self) -> str:
        return self._worker_id

    @property
    def active_task_count(self) -> int:
        return len(self._active_tasks)

    async def run(
        self,
        tasks: list[DomainTask],
        cancellation: CancellationToken | None = None,
    ) -> list[DomainTask]:
        """Run every task to a terminal status; returns them in input order."""
        await asyncio.gather(
            *(self._execute_task_lifecycle(task, cancellation) for task in tasks)
        )
        return tasks

    async def _execute_task_lifecycle(
        self, task: DomainTask, cancellation: CancellationToken | None
    ) -> None:
        async with self._semaphore:
            if cancellation is not None and cancellation.is_cancelled:
                task.cancel(await self.on_task_cancelled(task, cancellation.reason))
                logger.info("task_cancelled", task_id=task.id, domain=task.domain.key)
                await self._publish(task)
                return

            self._active_tasks.add(task.id)
            try:
                task.start()
                logger.info(
                    "task_execution_started",
                    task_id=task.id,
                    worker_id=self._worker_id,
                    domain=task.domain.key,
                    batch=task.batch_index,
                )

                try:
                    result = await asyncio.wait_for(
                        self.execute(task),
                        timeout=task.timeout_seconds,
                    )
                    result = await self.on_task_finished(task, result)
                    if result.success or result.skipped:
                        task.succeed(result)
                    else:
                        task.fail(result.error or "deployment failed", result)
                    logger.info("task_finished", task_id=task.id, status=task.status.value)
                except asyncio.TimeoutError:
                    task.timeout(await self.on_task_timeout(task))
                    logger.warning(
                        "task_timed_out", task_id=task.id, timeout_seconds=task.timeout_seconds
                    )
                except Exception as e:
                    logger.exception("task_failed", task_id=task.id, error=str(e))
                    task.fail(str(e), await self.on_task_error(task, e))

                await self._publish(task)
            finally:
                self._active_tasks.discard(task.id)

    async def _publish(self, task: DomainTask) -> None:
        if self._event_publisher:
            await self._event_publisher.publish(
                f"task.{task.status.value}",
                {
                    "task_id": task.id,
                    "domain": task.domain.name,
                    "environment": task.domain.environment,
                    "worker_id": self._worker_id,
                    "status": task.status.value,
                },
            )

    @abstractmethod
    async def execute(self, task: DomainTask) -> DomainDeploymentResult:
        """Execute the task. Subclasses implement specific logic."""

    async def on_task_finished(
        self, task: DomainTask, result: DomainDeploymentResult
    ) -> DomainDeploymentResult:
        return result

    async def on_task_timeout(self, task: DomainTask) -> DomainDeploymentResult | None:
        return None

    async def on_task_error(
        self, task: DomainTask, error: Exception
    ) -> DomainDeploymentResult | None:
        return None

    async def on_task_cancelled(
        self, task: DomainTask, reason: str | None
    ) -> DomainDeploymentResult | None:
        return None

