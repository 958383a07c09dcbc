"""Job workflow for the named reconciliation queues.

One workflow execution per (queue, job id). Jobs are pushed with
signal-with-start, so pushing the id of a running job signals the running
execution instead of starting a second one:

- a push while the job waits to run rebinds its payload; the item of the
  replaced payload is completed as superseded
- a push while the job runs queues the new payload to run after the current
  attempt; if that attempt asks for a retry, the newer payload takes over and
  the older item is completed as superseded

The queue's process activity returns a TaskResult or fails. The outcome is
settled by the queue's settle activity, which completes the job's operation
report item exactly once:

- TaskResult: item completed as success with the result message
- TaskResult(retry=True): item stays pending, the job runs again after
  retry_delay until max_attempts is reached
- TaskFailure, any other exception, or start-to-close timeout: item
  completed as failure with the failure message
"""

import asyncio
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Optional

from temporalio import workflow
from temporalio.common import RetryPolicy
from temporalio.exceptions import ActivityError, ApplicationError
from temporalio.exceptions import TimeoutError as ActivityTimeoutError

with workflow.unsafe.imports_passed_through():
    from activities.context import TaskResult
    from core.models.operations import JobStatus


PUSH_SIGNAL = "push"
PROCESS_ACTIVITY = "process_job"
SETTLE_ACTIVITY = "settle_job"

EVENT_TASK_FINISH = "task_finish"
EVENT_TASK_FAILED = "task_failed"
EVENT_TASK_RETRY = "task_retry"
EVENT_TASK_SUPERSEDED = "task_superseded"

# Failures are reported on the report item, never retried by Temporal
PROCESS_RETRY_POLICY = RetryPolicy(maximum_attempts=1)

# Completing an item is conditional, so settling can be retried safely
SETTLE_RETRY_POLICY = RetryPolicy(
    maximum_attempts=5,
    initial_interval=timedelta(seconds=1),
    maximum_interval=timedelta(seconds=30),
    backoff_coefficient=2.0,
)


@dataclass
class SyncJobInput:
    """Static settings of one job workflow.

    Attributes:
        queue_name: Named queue the job belongs to
        job_id: Application supplied job id
        task_queue: Temporal task queue of the queue's worker
        max_timeout: Start-to-close timeout of one attempt (seconds)
        max_attempts: Attempts before a retry requesting job fails
        retry_delay: Seconds before a retry requesting job runs again
        after_process_delay: Seconds a worker slot pauses after each job
    """
    queue_name: str
    job_id: str
    task_queue: str
    max_timeout: float
    max_attempts: int = 10
    retry_delay: float = 1.0
    after_process_delay: float = 0.0


@dataclass
class JobOutcome:
    """Outcome of one attempt, settled by the queue's settle activity."""
    job_id: str
    event: str
    message: str
    success: bool = False
    operation_report_item_id: Optional[int] = None
    attempts: int = 0
    duration_ms: float = 0.0
    payload: Dict[str, Any] = field(default_factory=dict)


@dataclass
class JobState:
    job_id: str
    status: str
    attempts: int = 0
    payload: Dict[str, Any] = field(default_factory=dict)


def _item_id(payload: Dict[str, Any]) -> Optional[int]:
    return payload.get("operation_report_item_id")


@workflow.defn
class SyncJobWorkflow:
    """Runs the pushed payloads of one job, one at a time."""

    def __init__(self):
        self._job_id = ""
        self._pending: Optional[Dict[str, Any]] = None
        self._payload: Dict[str, Any] = {}
        self._superseded: List[Dict[str, Any]] = []
        self._status = JobStatus.PENDING
        self._attempts = 0

    @workflow.signal(name=PUSH_SIGNAL)
    def push(self, payload: Dict[str, Any]) -> None:
        if self._pending is not None:
            self._supersede(self._pending, payload)
        self._pending = payload

    @workflow.query
    def state(self) -> JobState:
        return JobState(
            job_id=self._job_id,
            status=self._status.value,
            attempts=self._attempts,
            payload=self._pending or self._payload,
        )

    @workflow.run
    async def run(self, input: SyncJobInput) -> JobState:
        self._job_id = input.job_id
        await workflow.wait_condition(lambda: self._pending is not None)

        while True:
            await self._settle_superseded(input)
            if self._pending is None:
                break
            payload, self._pending = self._pending, None
            await self._process(input, payload)

        return self.state()

    def _supersede(self, old: Dict[str, Any], new: Dict[str, Any]) -> None:
        old_item = _item_id(old)
        if old_item is not None and old_item != _item_id(new):
            self._superseded.append(old)

    async def _settle_superseded(self, input: SyncJobInput) -> None:
        while self._superseded:
            payload = self._superseded.pop(0)
            await self._settle(input, JobOutcome(
                job_id=input.job_id,
                event=EVENT_TASK_SUPERSEDED,
                message=f"Superseded by a newer push of job {input.job_id}",
                operation_report_item_id=_item_id(payload),
                attempts=self._attempts,
                payload=payload,
            ))

    async def _process(self, input: SyncJobInput, payload: Dict[str, Any]) -> None:
        self._payload = payload
        self._attempts = 0

        while True:
            self._attempts += 1
            self._status = JobStatus.ACTIVE
            started = workflow.now()
            outcome = await self._attempt(input, payload)
            outcome.duration_ms = (workflow.now() - started).total_seconds() * 1000

            if outcome.event == EVENT_TASK_RETRY:
                if self._pending is not None:
                    # Pushed again while running: the newer payload takes over
                    self._supersede(payload, self._pending)
                    self._status = JobStatus.PENDING
                    return
                if self._attempts < input.max_attempts:
                    self._status = JobStatus.PENDING
                    await self._settle(input, outcome)
                    if await self._wait_for_push(input.retry_delay):
                        self._supersede(payload, self._pending)
                        return
                    continue
                outcome.event = EVENT_TASK_FAILED
                outcome.message = f"{outcome.message}; gave up after {self._attempts} attempts"

            self._status = JobStatus.FINISHED if outcome.success else JobStatus.FAILED
            await self._settle(input, outcome)
            return

    async def _wait_for_push(self, seconds: float) -> bool:
        """Sleep before a retry. Returns True when a newer payload was pushed."""
        if seconds <= 0:
            return self._pending is not None
        try:
            await workflow.wait_condition(lambda: self._pending is not None, timeout=timedelta(seconds=seconds))
        except asyncio.TimeoutError:
            return False
        return True

    async def _attempt(self, input: SyncJobInput, payload: Dict[str, Any]) -> JobOutcome:
        outcome = JobOutcome(
            job_id=input.job_id,
            event=EVENT_TASK_FAILED,
            message="",
            operation_report_item_id=_item_id(payload),
            attempts=self._attempts,
            payload=payload,
        )
        try:
            result = await workflow.execute_activity(
                PROCESS_ACTIVITY,
                payload,
                task_queue=input.task_queue,
                start_to_close_timeout=timedelta(seconds=input.max_timeout + input.after_process_delay),
                retry_policy=PROCESS_RETRY_POLICY,
                result_type=TaskResult,
            )
        except ActivityError as e:
            cause = e.cause
            if isinstance(cause, ActivityTimeoutError):
                outcome.message = f"Task timed out after {input.max_timeout} seconds"
            elif isinstance(cause, ApplicationError):
                outcome.message = cause.message or cause.type or "Task failed"
                if cause.type == "TaskFailure" and cause.details and cause.details[0] is not None:
                    outcome.operation_report_item_id = cause.details[0]
            else:
                outcome.message = str(cause or e)
            return outcome

        if result is None:
            result = TaskResult(message="")
        outcome.event = EVENT_TASK_RETRY if result.retry else EVENT_TASK_FINISH
        outcome.success = not result.retry
        outcome.message = result.message
        if result.operation_report_item_id is not None:
            outcome.operation_report_item_id = result.operation_report_item_id
        return outcome

    async def _settle(self, input: SyncJobInput, outcome: JobOutcome) -> None:
        await workflow.execute_activity(
            SETTLE_ACTIVITY,
            outcome,
            task_queue=input.task_queue,
            start_to_close_timeout=timedelta(seconds=30),
            retry_policy=SETTLE_RETRY_POLICY,
        )
