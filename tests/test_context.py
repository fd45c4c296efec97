"""Tests for run tracing."""

import asyncio

from flux_template.context import current_trace, trace_context


def test_nested_trace() -> None:
    """Test nested stages are joined outermost first and unwound on exit."""
    assert current_trace() == ""
    with trace_context("cluster prod"):
        with trace_context("compile"):
            assert current_trace() == "cluster prod > compile"
        assert current_trace() == "cluster prod"
    assert current_trace() == ""


def test_trace_unwound_on_error() -> None:
    """Test a stage raising an exception is removed from the trace."""
    try:
        with trace_context("validate"):
            raise ValueError("boom")
    except ValueError:
        pass
    assert current_trace() == ""


async def test_trace_per_task() -> None:
    """Test concurrent tasks each see their own stages."""

    async def stage(name: str) -> str:
        with trace_context(name):
            await asyncio.sleep(0)
            return current_trace()

    with trace_context("sources"):
        results = await asyncio.gather(stage("a"), stage("b"))
    assert results == ["sources > a", "sources > b"]
