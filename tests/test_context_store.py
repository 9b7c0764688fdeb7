"""
Tests for the call context store.

Tests cover:
1. Fallback context and explicit scopes
2. Relationship snapshots (sequence, parent pointers)
3. Propagation across concurrent and nested asyncio tasks
4. Agent stack and metadata helpers
"""
import asyncio

import pytest

from llm_meter import context


# =============================================================================
# Fallback and scopes
# =============================================================================

class TestFallbackContext:
    """Tests for the process-wide fallback context."""

    def test_current_creates_fallback_lazily(self):
        """Without a scope, current() returns one stable fallback context."""
        assert not context.has_context()
        first = context.current()
        assert context.current() is first

    def test_reset_global_context(self):
        """reset_global_context() drops the fallback."""
        first = context.current()
        context.reset_global_context()
        assert context.current() is not first

    def test_fallback_produces_coherent_trace(self):
        """Calls without a scope share the fallback trace id."""
        a = context.record_call_relationship("span-a")
        b = context.record_call_relationship("span-b")
        assert a.trace_id == b.trace_id
        assert (a.sequence, b.sequence) == (1, 2)


class TestScopes:
    """Tests for enter_scope / exit_scope and the scope() manager."""

    def test_enter_and_exit_scope(self):
        """An explicit scope replaces the fallback until exited."""
        fallback = context.current()
        ctx, token = context.enter_scope(trace_id="trace-1", metadata={"user": "u1"})
        try:
            assert context.has_context()
            assert context.current() is ctx
            assert ctx.trace_id == "trace-1"
            assert context.get_metadata("user") == "u1"
        finally:
            context.exit_scope(token)
        assert context.current() is fallback

    def test_scope_exits_on_error(self):
        """scope() restores the previous context when the block raises."""
        with pytest.raises(RuntimeError):
            with context.scope(trace_id="t-err"):
                raise RuntimeError("boom")
        assert not context.has_context()

    async def test_async_scope(self):
        """scope() also works with async with."""
        async with context.scope(trace_id="t-async") as ctx:
            assert context.current() is ctx
        assert not context.has_context()

    def test_nested_scopes_get_fresh_traces(self):
        """A nested scope has its own trace and sequence."""
        with context.scope() as outer:
            context.record_call_relationship("outer-1")
            with context.scope() as inner:
                rel = context.record_call_relationship("inner-1")
                assert rel.trace_id == inner.trace_id != outer.trace_id
                assert rel.sequence == 1
            assert context.current() is outer


# =============================================================================
# Relationships
# =============================================================================

class TestCallRelationship:
    """Tests for record_call_relationship()."""

    def test_snapshot_then_parent_update(self):
        """The snapshot holds the previous parent; the new span becomes parent."""
        with context.scope() as ctx:
            first = context.record_call_relationship("span-1")
            assert first.parent_span_id is None
            assert ctx.parent_span_id == "span-1"

            second = context.record_call_relationship("span-2")
            assert second.parent_span_id == "span-1"
            assert second.sequence == 2

    def test_snapshot_copies_agent_stack(self):
        """Later pushes do not change an earlier snapshot."""
        with context.scope():
            context.push_agent("PlannerAgent")
            rel = context.record_call_relationship("span-1")
            context.push_agent("WriterAgent")
            assert rel.agent_stack == ("PlannerAgent",)


class TestAsyncPropagation:
    """Tests for context propagation across asyncio tasks."""

    async def test_child_tasks_share_scope(self):
        """Sibling tasks in one scope share trace id and sequence counter."""
        async with context.scope() as ctx:
            async def call(span_id):
                await asyncio.sleep(0)
                return context.record_call_relationship(span_id)

            results = await asyncio.gather(*(call(f"s{i}") for i in range(5)))

        assert {r.trace_id for r in results} == {ctx.trace_id}
        assert sorted(r.sequence for r in results) == [1, 2, 3, 4, 5]
        assert ctx.sequence == 5

    async def test_parallel_scopes_are_isolated(self):
        """Tasks that each open a scope get independent traces."""
        async def worker(name):
            async with context.scope(metadata={"name": name}) as ctx:
                await asyncio.sleep(0)
                context.record_call_relationship(f"{name}-1")
                await asyncio.sleep(0)
                rel = context.record_call_relationship(f"{name}-2")
                return ctx, rel

        (ctx_a, rel_a), (ctx_b, rel_b) = await asyncio.gather(worker("a"), worker("b"))
        assert ctx_a.trace_id != ctx_b.trace_id
        assert rel_a.parent_span_id == "a-1"
        assert rel_b.parent_span_id == "b-1"

    async def test_nested_call_sees_parent_before_outer_resolves(self):
        """A call issued while another is in flight has it as parent."""
        async with context.scope():
            outer = context.record_call_relationship("outer")
            inner = context.record_call_relationship("inner")
            assert outer.parent_span_id is None
            assert inner.parent_span_id == "outer"


# =============================================================================
# Agents and metadata
# =============================================================================

class TestAgentsAndMetadata:
    """Tests for agent stack and metadata helpers."""

    def test_push_pop(self):
        """push_agent / pop_agent behave like a stack."""
        with context.scope():
            context.push_agent("A")
            context.push_agent("B")
            assert context.get_agent_stack() == ["A", "B"]
            assert context.pop_agent() == "B"
            assert context.pop_agent() == "A"
            assert context.pop_agent() is None

    def test_agent_pops_on_error(self):
        """agent() pops even when the block raises."""
        with context.scope():
            with pytest.raises(ValueError):
                with context.agent("ResearchAgent"):
                    assert context.get_agent_stack() == ["ResearchAgent"]
                    raise ValueError("fail")
            assert context.get_agent_stack() == []

    async def test_async_agent(self):
        """agent() also works with async with."""
        async with context.scope():
            async with context.agent("ResearchAgent"):
                assert context.get_agent_stack() == ["ResearchAgent"]
            assert context.get_agent_stack() == []

    def test_metadata(self):
        """set_metadata / get_metadata read and write the current context."""
        with context.scope():
            context.set_metadata("tenant", "acme")
            assert context.get_metadata("tenant") == "acme"
            assert context.get_metadata("missing", "default") == "default"
