"""Run a roster of review tasks concurrently and join on all of them.

Every task sees the same read-only snapshot. The round ends only when each
task has produced a result, failed, or overrun its deadline; failures and
overruns become synthetic CRITICAL results so they can never drop out of
the aggregate.
"""

from __future__ import annotations

import concurrent.futures
import threading
import time
from typing import Any, Mapping, Optional, Sequence

from loguru import logger

from .constants import (
    DEADLINE_CONFIG_KEY,
    DEFAULT_MAX_WORKERS,
    DEFAULT_POLL_INTERVAL_SECONDS,
    DEFAULT_TASK_TIMEOUT_SECONDS,
)
from .models import InputSnapshot, MalformedResultError, TaskResult
from .review_tasks import ReviewTask, ReviewTaskTimeout
from .validation import parse_task_result


class DispatchCancelled(RuntimeError):
    """The dispatch round was abandoned before every task finished."""


class ReviewDispatcher:
    """Fan a roster out over a thread pool and fan the results back in."""

    def __init__(
        self,
        max_workers: int = DEFAULT_MAX_WORKERS,
        default_timeout_seconds: float = DEFAULT_TASK_TIMEOUT_SECONDS,
        poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
    ):
        """Initialize the dispatcher.

        Args:
            max_workers: Maximum number of tasks running at once.
            default_timeout_seconds: Deadline for tasks that do not declare one.
            poll_interval: How often the join loop checks deadlines and cancellation.
        """
        self.max_workers = max(1, int(max_workers))
        self.default_timeout_seconds = default_timeout_seconds
        self.poll_interval = poll_interval

    def _deadline_for(self, task: ReviewTask) -> float:
        timeout = getattr(task, "timeout_seconds", None)
        return float(timeout) if timeout else float(self.default_timeout_seconds)

    @staticmethod
    def _check_roster(roster: Sequence[ReviewTask]) -> list[str]:
        if not roster:
            raise ValueError("Cannot dispatch an empty review roster")
        names = [task.name for task in roster]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"Duplicate review task names in roster: {duplicates}")
        return names

    @staticmethod
    def _run_one(task: ReviewTask, snapshot: InputSnapshot, config: Mapping[str, Any]) -> TaskResult:
        """Run a task and convert every non-success outcome into a failure result."""
        name = task.name
        started = time.monotonic()
        try:
            raw = task.run(snapshot, config)
            if isinstance(raw, dict):
                result = parse_task_result(raw, expected_source=name)
            elif isinstance(raw, TaskResult):
                if raw.source != name:
                    raise MalformedResultError(f"result source {raw.source!r} does not match task {name!r}")
                result = raw
            else:
                raise MalformedResultError(f"task returned {type(raw).__name__}, expected TaskResult")
        except ReviewTaskTimeout as exc:
            logger.warning("Review task {} timed out: {}", name, exc)
            return TaskResult.failure(name, str(exc), timed_out=True)
        except MalformedResultError as exc:
            logger.warning("Review task {} returned a malformed result: {}", name, exc)
            return TaskResult.failure(name, f"malformed result: {exc}")
        except Exception as exc:
            logger.exception("Review task {} raised: {}", name, exc)
            return TaskResult.failure(name, f"{exc.__class__.__name__}: {exc}")

        return TaskResult(
            source=result.source,
            findings=result.findings,
            local_assessment=result.local_assessment,
            error=result.error,
            duration_seconds=time.monotonic() - started,
        )

    def dispatch(
        self,
        roster: Sequence[ReviewTask],
        snapshot: InputSnapshot,
        *,
        config: Optional[Mapping[str, Any]] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> list[TaskResult]:
        """Run every task in ``roster`` against ``snapshot`` and wait for all of them.

        Args:
            roster: Review tasks with unique names.
            snapshot: Immutable input shared by all tasks.
            config: Read-only configuration bundle handed to every task. Each
                task's copy also carries its effective deadline under
                ``deadline_seconds``.
            cancel_event: When set during the round, the round is abandoned.

        Returns:
            One result per task, in roster order.

        Raises:
            ValueError: If the roster is empty or has duplicate names.
            DispatchCancelled: If ``cancel_event`` was set before the join completed.
        """
        names = self._check_roster(roster)
        task_config: Mapping[str, Any] = dict(config or {})
        deadlines = [self._deadline_for(task) for task in roster]
        results: list[Optional[TaskResult]] = [None] * len(roster)
        queued = list(range(len(roster)))
        pending: dict[concurrent.futures.Future, int] = {}
        started_at: dict[int, float] = {}

        logger.info("Dispatching {} review task(s) against {}", len(roster), snapshot.ref)

        # One thread per task: an overrun task keeps its thread, but gives its
        # slot back so queued tasks are never stuck behind it.
        executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=len(roster),
            thread_name_prefix="review-task",
        )

        def _start_queued() -> None:
            while queued and len(pending) < self.max_workers:
                index = queued.pop(0)
                bundle = {**task_config, DEADLINE_CONFIG_KEY: deadlines[index]}
                started_at[index] = time.monotonic()
                pending[executor.submit(self._run_one, roster[index], snapshot, bundle)] = index

        try:
            _start_queued()
            while pending:
                if cancel_event is not None and cancel_event.is_set():
                    logger.warning(
                        "Dispatch against {} cancelled with {} task(s) in flight",
                        snapshot.ref,
                        len(pending) + len(queued),
                    )
                    raise DispatchCancelled(f"Dispatch against {snapshot.ref} was cancelled")

                done, _ = concurrent.futures.wait(
                    pending,
                    timeout=self.poll_interval,
                    return_when=concurrent.futures.FIRST_COMPLETED,
                )
                for future in done:
                    index = pending.pop(future)
                    results[index] = future.result()
                    logger.info(
                        "Review task {} completed: assessment={} findings={}",
                        names[index],
                        results[index].local_assessment.value,
                        len(results[index].findings),
                    )

                now = time.monotonic()
                overdue = [
                    future for future, index in pending.items() if now - started_at[index] > deadlines[index]
                ]
                for future in overdue:
                    index = pending.pop(future)
                    future.cancel()
                    logger.warning("Review task {} exceeded its {}s deadline", names[index], deadlines[index])
                    results[index] = TaskResult.failure(
                        names[index],
                        f"no result within {deadlines[index]}s",
                        timed_out=True,
                    )
                _start_queued()
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        final = [r for r in results if r is not None]
        failed = [r.source for r in final if r.failed]
        if failed:
            logger.warning("Dispatch against {} finished with failing task(s): {}", snapshot.ref, failed)
        return final

    def run_follow_up(
        self,
        task: ReviewTask,
        snapshot: InputSnapshot,
        *,
        config: Optional[Mapping[str, Any]] = None,
    ) -> TaskResult:
        """Run the single follow-up task under the same deadline and failure rules."""
        return self.dispatch([task], snapshot, config=config)[0]
