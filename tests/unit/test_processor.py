"""
Unit tests for processing steps
"""

import pytest

from src.delivery.processor import CallableProcessingStep, ProcessingResult, SimulatedProcessingStep
from tests.doubles import make_event


class TestCallableProcessingStep:
    """Test adapting plain async callables"""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "returned,success",
        [(None, True), (True, True), (False, False), (ProcessingResult.failed("nope"), False)],
    )
    async def test_return_values(self, returned, success):
        async def handler(event):
            return returned

        result = await CallableProcessingStep(handler).process(make_event())

        assert result.success is success

    @pytest.mark.asyncio
    async def test_handler_receives_event(self):
        seen = []

        async def handler(event):
            seen.append(event.event_type)

        await CallableProcessingStep(handler).process(make_event("invoice.paid"))

        assert seen == ["invoice.paid"]


class TestSimulatedProcessingStep:
    """Test the simulated step"""

    @pytest.mark.asyncio
    async def test_always_fails_at_rate_one(self):
        step = SimulatedProcessingStep(min_delay_seconds=0, max_delay_seconds=0, failure_rate=1.0)

        result = await step.process(make_event())

        assert not result.success
        assert result.error == "Simulated processing failure"

    @pytest.mark.asyncio
    async def test_never_fails_at_rate_zero(self):
        step = SimulatedProcessingStep(min_delay_seconds=0, max_delay_seconds=0, failure_rate=0.0)

        results = [await step.process(make_event()) for _ in range(10)]

        assert all(r.success for r in results)

    @pytest.mark.asyncio
    async def test_seed_is_reproducible(self):
        def run(seed):
            return SimulatedProcessingStep(
                min_delay_seconds=0, max_delay_seconds=0, failure_rate=0.5, seed=seed
            )

        first, second = run(7), run(7)
        a = [(await first.process(make_event())).success for _ in range(20)]
        b = [(await second.process(make_event())).success for _ in range(20)]

        assert a == b

    def test_invalid_failure_rate(self):
        with pytest.raises(ValueError):
            SimulatedProcessingStep(failure_rate=1.5)
