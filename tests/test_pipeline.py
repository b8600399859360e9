"""Tests for laos_checkout.pipeline."""
from __future__ import annotations

from dataclasses import replace

import pytest

from laos_checkout.models import CheckoutContext, CheckoutRequest, PaymentMethod
from laos_checkout.pipeline import CheckoutPipeline, PipelineStage


class RecordingStage(PipelineStage):
    """Stage that appends to a shared journal and optionally fails."""

    def __init__(self, name, journal, fail=False, fail_compensation=False):
        self.name = name
        self._journal = journal
        self._fail = fail
        self._fail_compensation = fail_compensation

    async def execute(self, context):
        self._journal.append(f"execute:{self.name}")
        if self._fail:
            raise RuntimeError(f"{self.name} failed")
        return replace(context, order_id=f"after-{self.name}")

    async def compensate(self, context):
        self._journal.append(f"compensate:{self.name}")
        if self._fail_compensation:
            raise RuntimeError(f"{self.name} compensation failed")


class ReadOnlyStage(PipelineStage):
    name = "readonly"

    def __init__(self, journal):
        self._journal = journal

    async def execute(self, context):
        self._journal.append("execute:readonly")
        return context


@pytest.fixture
def context():
    return CheckoutContext(
        user_id="user_1",
        request=CheckoutRequest(payment_method=PaymentMethod.CARD),
    )


class TestCheckoutPipeline:
    """Tests for CheckoutPipeline."""

    @pytest.mark.asyncio
    async def test_runs_stages_in_order(self, context):
        """Should pass each stage's output context to the next stage."""
        journal = []
        pipeline = CheckoutPipeline([
            RecordingStage("a", journal),
            RecordingStage("b", journal),
        ])

        result = await pipeline.execute(context)

        assert journal == ["execute:a", "execute:b"]
        assert result.order_id == "after-b"
        assert result.user_id == "user_1"

    @pytest.mark.asyncio
    async def test_compensates_completed_stages_in_reverse(self, context):
        """Should undo executed stages newest first and re-raise the stage error."""
        journal = []
        pipeline = CheckoutPipeline([
            RecordingStage("a", journal),
            RecordingStage("b", journal),
            RecordingStage("c", journal, fail=True),
        ])

        with pytest.raises(RuntimeError, match="c failed"):
            await pipeline.execute(context)

        assert journal == [
            "execute:a",
            "execute:b",
            "execute:c",
            "compensate:b",
            "compensate:a",
        ]

    @pytest.mark.asyncio
    async def test_failing_compensation_does_not_stop_unwind(self, context):
        """Should keep compensating and surface the original error."""
        journal = []
        pipeline = CheckoutPipeline([
            RecordingStage("a", journal),
            RecordingStage("b", journal, fail_compensation=True),
            RecordingStage("c", journal, fail=True),
        ])

        with pytest.raises(RuntimeError, match="c failed"):
            await pipeline.execute(context)

        assert journal[-2:] == ["compensate:b", "compensate:a"]

    @pytest.mark.asyncio
    async def test_first_stage_failure_compensates_nothing(self, context):
        """Should not compensate when no stage completed."""
        journal = []
        pipeline = CheckoutPipeline([
            RecordingStage("a", journal, fail=True),
            RecordingStage("b", journal),
        ])

        with pytest.raises(RuntimeError):
            await pipeline.execute(context)

        assert journal == ["execute:a"]

    @pytest.mark.asyncio
    async def test_stages_without_compensation_are_skipped(self, context):
        """Should skip stages that do not override compensate."""
        journal = []
        readonly = ReadOnlyStage(journal)
        pipeline = CheckoutPipeline([
            RecordingStage("a", journal),
            readonly,
            RecordingStage("c", journal, fail=True),
        ])

        with pytest.raises(RuntimeError):
            await pipeline.execute(context)

        assert readonly.has_compensation is False
        assert journal[-1] == "compensate:a"
        assert "compensate:readonly" not in journal
