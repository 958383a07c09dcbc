"""Periodic background loops on Temporal.

Each PeriodicTask is one PeriodicTaskWorkflow execution that runs the task's
callable as an activity, waits `interval` seconds and runs it again.
Cancelling the workflow is the loop's cancellation token. A failed pass is
logged here with its traceback and the loop continues with the next pass.
"""

import asyncio
from typing import Awaitable, Callable, Dict, List, Optional

from temporalio import activity
from temporalio.client import Client, WorkflowFailureError, WorkflowHandle
from temporalio.common import WorkflowIDConflictPolicy
from temporalio.worker import Worker

from core.config import PERIODIC_TASK_QUEUE
from core.observability.logging import get_logger, with_correlation
from workflows.periodic import PeriodicTaskInput, PeriodicTaskWorkflow

logger = get_logger(__name__)


class PeriodicTask:
    """One named polling loop."""

    def __init__(
        self,
        name: str,
        fn: Callable[[], Awaitable[object]],
        interval: float,
        run_immediately: bool = True,
    ):
        self.name = name
        self.fn = fn
        self.interval = interval
        self.run_immediately = run_immediately
        self.passes = 0
        self.failures = 0
        self.handle: Optional[WorkflowHandle] = None
        self.activity = self._define_activity()

    @property
    def running(self) -> bool:
        return self.handle is not None

    def _define_activity(self) -> Callable:
        task = self

        @activity.defn(name=self.name)
        async def run_pass() -> None:
            with with_correlation(stage=task.name):
                try:
                    await task.fn()
                except Exception:
                    task.failures += 1
                    logger.exception(f"Periodic task {task.name} failed")
                    raise
                finally:
                    task.passes += 1

        return run_pass


class Scheduler:
    """Starts and stops a set of periodic tasks together.

    Usage:
        scheduler = Scheduler(client)
        scheduler.add("permission-cache-rebuild", rebuilder.rebuild_once, interval=0)
        await scheduler.start()
        ...
        await scheduler.stop()
    """

    def __init__(self, client: Optional[Client], task_queue: str = PERIODIC_TASK_QUEUE):
        self.client = client
        self.task_queue = task_queue
        self._tasks: Dict[str, PeriodicTask] = {}
        self._worker: Optional[Worker] = None
        self._worker_task: Optional[asyncio.Task] = None

    def add(self, name: str, fn: Callable[[], Awaitable[object]], interval: float, run_immediately: bool = True) -> PeriodicTask:
        if name in self._tasks:
            raise ValueError(f"Periodic task {name} already exists")
        task = PeriodicTask(name, fn, interval, run_immediately)
        self._tasks[name] = task
        return task

    def get(self, name: str) -> PeriodicTask:
        return self._tasks[name]

    @property
    def tasks(self) -> List[PeriodicTask]:
        return list(self._tasks.values())

    def workflow_id(self, name: str) -> str:
        return f"{self.task_queue}/{name}"

    async def start(self) -> None:
        if not self._tasks or self._worker is not None:
            return
        self._worker = Worker(
            self.client,
            task_queue=self.task_queue,
            workflows=[PeriodicTaskWorkflow],
            activities=[task.activity for task in self._tasks.values()],
        )
        self._worker_task = asyncio.create_task(self._worker.run(), name="periodic-tasks")

        for task in self._tasks.values():
            # A loop already started by another engine instance is reused
            task.handle = await self.client.start_workflow(
                PeriodicTaskWorkflow.run,
                PeriodicTaskInput(
                    name=task.name,
                    task_queue=self.task_queue,
                    interval=task.interval,
                    run_immediately=task.run_immediately,
                ),
                id=self.workflow_id(task.name),
                task_queue=self.task_queue,
                id_conflict_policy=WorkflowIDConflictPolicy.USE_EXISTING,
            )
            logger.info(f"Started periodic task {task.name} (interval {task.interval}s)")

    async def _cancel(self, task: PeriodicTask) -> None:
        await task.handle.cancel()
        try:
            await task.handle.result()
        except WorkflowFailureError:
            pass
        task.handle = None

    async def stop(self) -> None:
        """Cancel every loop and stop the worker."""
        await asyncio.gather(*[self._cancel(task) for task in self._tasks.values() if task.handle is not None])
        if self._worker is not None:
            await self._worker.shutdown()
            await asyncio.gather(self._worker_task, return_exceptions=True)
            self._worker = None
            self._worker_task = None
