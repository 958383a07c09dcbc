"""Named job queues on Temporal.

Each named queue has its own Temporal task queue and its own worker, whose
activity slots (`concurrent`) bound the jobs it runs at once, so a stalled
queue never starves another one. A job is one SyncJobWorkflow execution keyed
by the job id; Temporal keeps pending jobs across process restarts.

The queue's processing function runs as the `process_job` activity. Its
outcome is settled by the `settle_job` activity, which completes the job's
operation report item exactly once (see workflows/sync_job.py).

Usage:
    manager = QueueManager(client, db_path)
    queue = manager.create_queue("sapContactUpdate", partial(sync_contact, ctx), QueueOptions(concurrent=2))
    await manager.start()
    await queue.push({"id": "S0001", "operation_report_item_id": 12, ...})
    await manager.drain()
"""

import asyncio
import inspect
import uuid
from collections import defaultdict
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from temporalio import activity
from temporalio.client import Client, WorkflowExecutionStatus, WorkflowHandle
from temporalio.common import WorkflowIDConflictPolicy
from temporalio.service import RPCError, RPCStatusCode
from temporalio.worker import Worker

from activities.context import TaskFailure, TaskResult
from core.config import DEFAULT_DB_PATH, QueueOptions
from core.models.operations import Job, JobStatus
from core.observability.logging import get_logger, with_correlation
from core.observability.metrics import JobMetrics
from core.storage.db import DbPath
from core.storage.repository import complete_operation_report_item
from workflows.sync_job import (
    EVENT_TASK_FAILED,
    EVENT_TASK_FINISH,
    EVENT_TASK_RETRY,
    EVENT_TASK_SUPERSEDED,
    PROCESS_ACTIVITY,
    PUSH_SIGNAL,
    SETTLE_ACTIVITY,
    JobOutcome,
    JobState,
    SyncJobInput,
    SyncJobWorkflow,
)

logger = get_logger(__name__)

__all__ = [
    "EVENT_TASK_FAILED",
    "EVENT_TASK_FINISH",
    "EVENT_TASK_RETRY",
    "EVENT_TASK_SUPERSEDED",
    "ManagedQueue",
    "QueueManager",
]

ProcessFn = Callable[[Dict[str, Any]], Union[Awaitable[Optional[TaskResult]], Optional[TaskResult]]]
Listener = Callable[[Job, str], Any]


def _to_job(state: JobState, queue_name: str) -> Job:
    return Job(
        id=state.job_id,
        queue_name=queue_name,
        payload=state.payload,
        status=JobStatus(state.status),
        attempts=state.attempts,
    )


class ManagedQueue:
    """One named queue: task queue, worker and lifecycle events."""

    def __init__(
        self,
        name: str,
        process_fn: ProcessFn,
        options: QueueOptions,
        client: Client,
        task_queue: str,
        db_path: DbPath,
        metrics: JobMetrics,
    ):
        self.name = name
        self.process_fn = process_fn
        self.options = options
        self.client = client
        self.task_queue = task_queue
        self.db_path = db_path
        self.metrics = metrics
        self._listeners: Dict[str, List[Listener]] = defaultdict(list)
        self._handles: Dict[str, WorkflowHandle] = {}
        self._worker: Optional[Worker] = None
        self._worker_task: Optional[asyncio.Task] = None
        self.activities = self._define_activities()

    def on(self, event: str, callback: Listener) -> None:
        """Register a listener for task_finish, task_failed, task_retry or task_superseded."""
        self._listeners[event].append(callback)

    @property
    def running(self) -> bool:
        return self._worker_task is not None and not self._worker_task.done()

    def workflow_id(self, job_id: str) -> str:
        return f"{self.task_queue}/{job_id}"

    # =========================================================================
    # Activities
    # =========================================================================

    def _define_activities(self) -> List[Callable]:
        queue = self

        @activity.defn(name=PROCESS_ACTIVITY)
        async def process_job(payload: Dict[str, Any]) -> Optional[TaskResult]:
            """Run the queue's processing function on one payload."""
            queue.metrics.record_job_started(queue.name)
            with with_correlation(
                queue_name=queue.name,
                job_id=payload.get("id"),
                operation_report_id=payload.get("operation_report_id"),
                operation_report_item_id=payload.get("operation_report_item_id"),
            ):
                try:
                    result = queue.process_fn(dict(payload))
                    if inspect.isawaitable(result):
                        result = await result
                except TaskFailure:
                    raise
                except Exception as e:
                    logger.exception(f"Job {payload.get('id')} raised {type(e).__name__}")
                    raise
            if queue.options.after_process_delay:
                await asyncio.sleep(queue.options.after_process_delay)
            return result

        @activity.defn(name=SETTLE_ACTIVITY)
        async def settle_job(outcome: JobOutcome) -> bool:
            """Record an attempt's outcome and complete its report item."""
            with with_correlation(
                queue_name=queue.name,
                job_id=outcome.job_id,
                operation_report_id=outcome.payload.get("operation_report_id"),
                operation_report_item_id=outcome.operation_report_item_id,
            ):
                return await queue._settle(outcome)

        return [process_job, settle_job]

    async def _settle(self, outcome: JobOutcome) -> bool:
        job = Job(
            id=outcome.job_id,
            queue_name=self.name,
            payload=outcome.payload,
            status=JobStatus.FINISHED if outcome.success else JobStatus.FAILED,
            attempts=outcome.attempts,
        )

        if outcome.event == EVENT_TASK_RETRY:
            job.status = JobStatus.PENDING
            self.metrics.record_job_retried(self.name)
            logger.info(f"{outcome.message} (attempt {outcome.attempts}/{self.options.max_attempts})")
            await self._emit(outcome.event, job, outcome.message)
            return False

        if outcome.event == EVENT_TASK_FINISH:
            self.metrics.record_job_finished(self.name, outcome.duration_ms)
            logger.info(outcome.message)
        elif outcome.event == EVENT_TASK_FAILED:
            self.metrics.record_job_failed(self.name, outcome.duration_ms)
            logger.warning(outcome.message)
        else:
            logger.info(f"Operation report item {outcome.operation_report_item_id}: {outcome.message}")

        completed = False
        if outcome.operation_report_item_id is not None:
            completed = complete_operation_report_item(
                outcome.operation_report_item_id,
                outcome.message,
                outcome.success,
                db_path=self.db_path,
            )
            if not completed:
                logger.warning(f"Operation report item {outcome.operation_report_item_id} was already completed")

        await self._emit(outcome.event, job, outcome.message)
        return completed

    async def _emit(self, event: str, job: Job, message: str) -> None:
        for callback in self._listeners.get(event, []):
            try:
                result = callback(job, message)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(f"Listener for {event} failed on job {job.id}")

    # =========================================================================
    # Jobs
    # =========================================================================

    def _job_input(self, job_id: str) -> SyncJobInput:
        return SyncJobInput(
            queue_name=self.name,
            job_id=job_id,
            task_queue=self.task_queue,
            max_timeout=self.options.effective_timeout,
            max_attempts=self.options.max_attempts,
            retry_delay=self.options.retry_delay,
            after_process_delay=self.options.after_process_delay,
        )

    async def push(self, payload: Dict[str, Any]) -> str:
        """Enqueue a job keyed by payload["id"], or hand the payload to its running workflow.

        Returns:
            The job id (generated when the payload has none)
        """
        job_id = str(payload.get("id") or uuid.uuid4())
        handle = await self.client.start_workflow(
            SyncJobWorkflow.run,
            self._job_input(job_id),
            id=self.workflow_id(job_id),
            task_queue=self.task_queue,
            id_conflict_policy=WorkflowIDConflictPolicy.USE_EXISTING,
            start_signal=PUSH_SIGNAL,
            start_signal_args=[{**payload, "id": job_id}],
        )
        self._handles[job_id] = handle
        return job_id

    async def get_job(self, job_id: str) -> Optional[Job]:
        """Current state of a job, or None if it was never pushed."""
        handle = self.client.get_workflow_handle_for(SyncJobWorkflow.run, self.workflow_id(job_id))
        try:
            description = await handle.describe()
        except RPCError as e:
            if e.status == RPCStatusCode.NOT_FOUND:
                return None
            raise
        if description.status == WorkflowExecutionStatus.RUNNING:
            state = await handle.query(SyncJobWorkflow.state)
        else:
            state = await handle.result()
        return _to_job(state, self.name)

    async def wait_for(self, job_id: str, timeout: Optional[float] = None) -> Job:
        """Wait until the latest run of a job completes, pushed here or elsewhere."""
        handle = self.client.get_workflow_handle_for(SyncJobWorkflow.run, self.workflow_id(job_id))
        state = await asyncio.wait_for(handle.result(), timeout)
        return _to_job(state, self.name)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Start polling the task queue; jobs pushed earlier run now."""
        if self.running:
            return
        self._worker = Worker(
            self.client,
            task_queue=self.task_queue,
            workflows=[SyncJobWorkflow],
            activities=self.activities,
            max_concurrent_activities=self.options.concurrent,
        )
        self._worker_task = asyncio.create_task(self._worker.run(), name=f"queue-{self.name}")
        logger.info(f"Queue {self.name} polling task queue {self.task_queue} ({self.options.concurrent} slots)")

    async def stop(self) -> None:
        """Stop the worker. Unfinished jobs stay in Temporal and run on next start."""
        if self._worker is None:
            return
        await self._worker.shutdown()
        if self._worker_task is not None:
            await asyncio.gather(self._worker_task, return_exceptions=True)
        self._worker = None
        self._worker_task = None

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait until every job pushed through this queue has completed."""
        if not self.running:
            raise RuntimeError(f"Queue {self.name} is not started")
        await asyncio.wait_for(self._wait_idle(), timeout)

    async def _wait_idle(self) -> None:
        while self._handles:
            handles = dict(self._handles)
            await asyncio.gather(*(handle.result() for handle in handles.values()))
            for job_id, handle in handles.items():
                if self._handles.get(job_id) is handle:
                    del self._handles[job_id]


class QueueManager:
    """Owns every named queue of the engine."""

    def __init__(
        self,
        client: Client,
        db_path: DbPath = DEFAULT_DB_PATH,
        task_queue_prefix: str = "",
        metrics: Optional[JobMetrics] = None,
    ):
        self.client = client
        self.db_path = db_path
        self.task_queue_prefix = task_queue_prefix
        self.metrics = metrics or JobMetrics()
        self._queues: Dict[str, ManagedQueue] = {}

    def create_queue(self, name: str, process_fn: ProcessFn, options: Optional[QueueOptions] = None) -> ManagedQueue:
        if name in self._queues:
            raise ValueError(f"Queue {name} already exists")
        queue = ManagedQueue(
            name,
            process_fn,
            options or QueueOptions(),
            self.client,
            f"{self.task_queue_prefix}{name}",
            self.db_path,
            self.metrics,
        )
        self._queues[name] = queue
        return queue

    def get_queue(self, name: str) -> ManagedQueue:
        try:
            return self._queues[name]
        except KeyError:
            raise ValueError(f"Unknown queue {name}")

    @property
    def queue_names(self) -> List[str]:
        return list(self._queues)

    async def push(self, queue_name: str, payload: Dict[str, Any]) -> str:
        return await self.get_queue(queue_name).push(payload)

    async def start(self, names: Optional[List[str]] = None) -> None:
        for name in names or self.queue_names:
            await self.get_queue(name).start()

    async def stop(self) -> None:
        await asyncio.gather(*[queue.stop() for queue in self._queues.values()])

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait until every started queue is idle."""
        queues = [queue for queue in self._queues.values() if queue.running]
        await asyncio.wait_for(asyncio.gather(*[queue.drain() for queue in queues]), timeout)
