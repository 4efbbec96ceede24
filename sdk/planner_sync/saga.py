"""
Multi-collection writes as a saga.

The backend commits atomically only within one collection, so operations
touching events, taskEvents and expenseEvents run as a sequence of
per-collection commits. Each step may carry a compensating action; when a
later step fails, the compensations of the steps that already committed run
in reverse order.

Invariants:
    - Steps run strictly in order; a step starts only after the previous
      commit was acknowledged
    - A failing first step raises the original RemoteWriteError (nothing
      committed, nothing to undo)
    - A failing later step raises PartialBatchError after compensating
    - Compensation is best-effort; its failures are logged and reported,
      never retried
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Optional

from .errors import PartialBatchError, RemoteWriteError
from .remote.base import WriteResult

logger = logging.getLogger(__name__)


@dataclass
class SagaStep:
    """One committed unit of a saga.

    Attributes:
        name: Step name used in logs and errors
        action: Coroutine function performing the commit
        compensate: Coroutine function undoing the commit, if any
    """

    name: str
    action: Callable[[], Awaitable[WriteResult]]
    compensate: Optional[Callable[[], Awaitable[Any]]] = None


class Saga:
    """Ordered per-collection commits with compensating actions.

    Example:
        >>> saga = Saga("create_event")
        >>> saga.step("events", write_event, compensate=delete_event)
        >>> saga.step("taskEvents", write_task_event, compensate=delete_task_event)
        >>> results = await saga.run()
    """

    def __init__(self, operation: str) -> None:
        self.operation = operation
        self._steps: List[SagaStep] = []

    def step(
        self,
        name: str,
        action: Callable[[], Awaitable[WriteResult]],
        compensate: Optional[Callable[[], Awaitable[Any]]] = None,
    ) -> Saga:
        """Append a step. Returns self for chaining."""
        self._steps.append(SagaStep(name=name, action=action, compensate=compensate))
        return self

    def __len__(self) -> int:
        return len(self._steps)

    async def run(self) -> List[WriteResult]:
        """Run all steps.

        Returns:
            WriteResult of every step, in order

        Raises:
            RemoteWriteError: If the first step fails
            PartialBatchError: If a later step fails
        """
        completed: List[SagaStep] = []
        results: List[WriteResult] = []

        for step in self._steps:
            try:
                results.append(await step.action())
            except RemoteWriteError as e:
                if not completed:
                    raise
                logger.warning(
                    "Saga step failed, compensating",
                    extra={
                        "operation": self.operation,
                        "step": step.name,
                        "completed": [s.name for s in completed],
                        "error": str(e),
                    },
                )
                failures = await self._compensate(completed)
                raise PartialBatchError(
                    self.operation,
                    step.name,
                    completed_steps=[s.name for s in completed],
                    compensation_failures=failures,
                ) from e
            completed.append(step)

        return results

    async def _compensate(self, completed: List[SagaStep]) -> List[str]:
        failures: List[str] = []
        for step in reversed(completed):
            if step.compensate is None:
                continue
            try:
                await step.compensate()
            except RemoteWriteError as e:
                logger.error(
                    "Saga compensation failed",
                    extra={"operation": self.operation, "step": step.name, "error": str(e)},
                )
                failures.append(step.name)
        return failures
