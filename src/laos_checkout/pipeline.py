"""
Linear checkout pipeline with saga-style compensation.

Stages run strictly in order. When one fails, every stage that already
completed gets a chance to undo its work, newest first, and the original
error is re-raised.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import List, Sequence

from .models import CheckoutContext

logger = logging.getLogger(__name__)


class PipelineStage(ABC):
    """A single forward step of the checkout pipeline."""

    #: Name used in logs.
    name: str = "stage"

    @abstractmethod
    async def execute(self, context: CheckoutContext) -> CheckoutContext:
        """
        Run the stage.

        Args:
            context: Context produced by the previous stage

        Returns:
            Context carrying every prior field plus this stage's additions
        """

    async def compensate(self, context: CheckoutContext) -> None:
        """Undo this stage's side effects. Stages without any leave this as is."""
        return None

    @property
    def has_compensation(self) -> bool:
        return type(self).compensate is not PipelineStage.compensate


class CheckoutPipeline:
    """
    Runs a fixed sequence of stages against one checkout context.

    Compensation is best effort and in-process: a handler that raises is
    logged and the unwind continues with the remaining stages. The error that
    stopped forward progress is always the one re-raised.
    """

    def __init__(self, stages: Sequence[PipelineStage]):
        self._stages: List[PipelineStage] = list(stages)

    @property
    def stages(self) -> List[PipelineStage]:
        return list(self._stages)

    async def execute(self, context: CheckoutContext) -> CheckoutContext:
        executed: List[PipelineStage] = []

        for stage in self._stages:
            logger.info("Executing stage: %s", stage.name)
            try:
                context = await stage.execute(context)
            except Exception as exc:
                logger.warning(
                    "Stage %s failed: %s",
                    stage.name,
                    exc,
                    extra={"stage": stage.name, "error_type": type(exc).__name__},
                )
                await self._compensate(executed, context)
                raise
            executed.append(stage)

        return context

    async def _compensate(
        self,
        executed: List[PipelineStage],
        context: CheckoutContext,
    ) -> None:
        for stage in reversed(executed):
            if not stage.has_compensation:
                continue
            logger.info("Compensating stage: %s", stage.name)
            try:
                await stage.compensate(context)
            except Exception:
                logger.error(
                    "Compensation failed for stage %s",
                    stage.name,
                    exc_info=True,
                )
