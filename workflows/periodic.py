"""Periodic task workflow.

Runs one named activity, sleeps `interval` seconds and runs it again until
the workflow is cancelled. Passes never overlap. A failed pass is logged and
the loop continues with the next pass. The history is bounded by continuing
as new after MAX_PASSES_PER_RUN passes.
"""

from dataclasses import dataclass
from datetime import timedelta

from temporalio import workflow
from temporalio.common import RetryPolicy
from temporalio.exceptions import ActivityError, CancelledError

MAX_PASSES_PER_RUN = 200


@dataclass
class PeriodicTaskInput:
    """
    Attributes:
        name: Task name, also the name of the activity it runs
        task_queue: Task queue of the scheduler's worker
        interval: Seconds between the end of a pass and the next one
        run_immediately: If False the first pass waits one interval
        timeout: Start-to-close timeout of one pass (seconds)
    """
    name: str
    task_queue: str
    interval: float
    run_immediately: bool = True
    timeout: float = 60.0 * 60


@workflow.defn
class PeriodicTaskWorkflow:
    """Unbounded poll loop; cancelling the workflow stops it."""

    @workflow.run
    async def run(self, input: PeriodicTaskInput) -> None:
        if not input.run_immediately:
            await self._wait(input)

        for _ in range(MAX_PASSES_PER_RUN):
            await self._run_pass(input)
            await self._wait(input)

        workflow.continue_as_new(PeriodicTaskInput(
            name=input.name,
            task_queue=input.task_queue,
            interval=input.interval,
            run_immediately=True,
            timeout=input.timeout,
        ))

    async def _run_pass(self, input: PeriodicTaskInput) -> None:
        try:
            await workflow.execute_activity(
                input.name,
                task_queue=input.task_queue,
                start_to_close_timeout=timedelta(seconds=input.timeout),
                retry_policy=RetryPolicy(maximum_attempts=1),
            )
        except ActivityError as e:
            if isinstance(e.cause, CancelledError):
                raise
            workflow.logger.warning(f"Periodic task {input.name} failed: {e.cause}")

    async def _wait(self, input: PeriodicTaskInput) -> None:
        if input.interval > 0:
            await workflow.sleep(timedelta(seconds=input.interval))
