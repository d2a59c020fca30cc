"""Review task adapters: the capability boundary between the dispatcher and analysers.

The dispatcher knows nothing about what a task inspects. It only needs a
``name``, an optional deadline, and a ``run`` method that returns a
:class:`TaskResult` or raises.
"""

from __future__ import annotations

import os
import signal
import subprocess
from abc import ABC, abstractmethod
from typing import Any, Callable, Mapping, Optional

from loguru import logger

from .config import ReviewTaskSpec
from .constants import DEADLINE_CONFIG_KEY, PROJECT_ENV_VAR, SNAPSHOT_ENV_VAR, TASK_ENV_VAR
from .models import InputSnapshot, MalformedResultError, TaskResult
from .validation import extract_json_object, parse_task_result


class ReviewTaskError(RuntimeError):
    """A review task could not produce a result."""


class ReviewTaskTimeout(ReviewTaskError):
    """A review task exceeded its deadline."""


class ReviewTask(ABC):
    """Abstract base for one independent review check."""

    timeout_seconds: Optional[float] = None

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique name of the task within a roster."""

    @abstractmethod
    def run(self, snapshot: InputSnapshot, config: Mapping[str, Any]) -> TaskResult:
        """Inspect ``snapshot`` and return this task's result.

        Implementations must not mutate the snapshot or any shared workflow state.
        """


class FunctionReviewTask(ReviewTask):
    """Wrap a plain callable as a review task."""

    def __init__(
        self,
        name: str,
        fn: Callable[[InputSnapshot, Mapping[str, Any]], TaskResult],
        *,
        timeout_seconds: Optional[float] = None,
    ) -> None:
        self._name = name
        self._fn = fn
        self.timeout_seconds = timeout_seconds

    @property
    def name(self) -> str:
        return self._name

    def run(self, snapshot: InputSnapshot, config: Mapping[str, Any]) -> TaskResult:
        return self._fn(snapshot, config)


class CommandReviewTask(ReviewTask):
    """Run an external command that prints a JSON task result on stdout.

    The snapshot reference is passed through the ``REVIEW_GATE_SNAPSHOT``
    environment variable; the task's own name through ``REVIEW_GATE_TASK``.
    """

    def __init__(
        self,
        name: str,
        command: str,
        *,
        timeout_seconds: Optional[float] = None,
        task_config: Optional[Mapping[str, Any]] = None,
    ) -> None:
        self._name = name
        self.command = command
        self.timeout_seconds = timeout_seconds
        self.task_config = dict(task_config or {})

    @property
    def name(self) -> str:
        return self._name

    def _env(self, snapshot: InputSnapshot) -> dict[str, str]:
        env = dict(os.environ)
        env[SNAPSHOT_ENV_VAR] = snapshot.ref
        env[TASK_ENV_VAR] = self._name
        if snapshot.project_dir is not None:
            env[PROJECT_ENV_VAR] = str(snapshot.project_dir)
        for key, value in self.task_config.get("env", {}).items():
            env[str(key)] = str(value)
        return env

    def _deadline(self, config: Mapping[str, Any]) -> Optional[float]:
        if self.timeout_seconds:
            return float(self.timeout_seconds)
        deadline = config.get(DEADLINE_CONFIG_KEY)
        return float(deadline) if deadline else None

    @staticmethod
    def _kill(proc: subprocess.Popen) -> None:
        # The command runs in its own session, so the whole group goes with it.
        try:
            if hasattr(os, "killpg"):
                os.killpg(proc.pid, signal.SIGKILL)
            else:
                proc.kill()
        except ProcessLookupError:
            pass

    def run(self, snapshot: InputSnapshot, config: Mapping[str, Any]) -> TaskResult:
        timeout = self._deadline(config)
        logger.debug("Running review command for {} (timeout {}s): {}", self._name, timeout, self.command)
        proc = subprocess.Popen(
            self.command,
            cwd=snapshot.project_dir,
            shell=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            env=self._env(snapshot),
            start_new_session=True,
        )
        try:
            stdout, stderr = proc.communicate(timeout=timeout)
        except subprocess.TimeoutExpired:
            self._kill(proc)
            proc.communicate()
            raise ReviewTaskTimeout(f"command timed out after {timeout}s") from None
        except BaseException:
            self._kill(proc)
            proc.wait()
            raise

        try:
            payload = extract_json_object(stdout)
        except MalformedResultError as exc:
            stderr_tail = (stderr or "").strip()[-400:]
            if proc.returncode != 0:
                raise ReviewTaskError(
                    f"command exited {proc.returncode} without a result: {stderr_tail or exc}"
                ) from None
            raise ReviewTaskError(f"unparseable output: {exc}") from None

        return parse_task_result(payload, expected_source=self._name)


def build_review_task(spec: ReviewTaskSpec, default_timeout_seconds: Optional[float] = None) -> ReviewTask:
    """Create the command-backed task described by a roster entry.

    Entries without their own ``timeout_seconds`` get ``default_timeout_seconds``
    so the child process is always bounded.
    """
    return CommandReviewTask(
        spec.name,
        spec.command,
        timeout_seconds=spec.timeout_seconds or default_timeout_seconds,
        task_config=spec.config,
    )
