"""Pytest configuration and shared fixtures.

Deadlines are configured small so that timeout and cancellation paths run
in well under a second.
"""

import asyncio
import sys
from pathlib import Path

import pytest

# Ensure project root is in PYTHONPATH for imports to work
project_root = Path(__file__).parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

from taskrelay.config.settings import EngineSettings, RpcSettings, Settings, StateSettings
from taskrelay.domain.errors import ToolInvocationError
from taskrelay.domain.state.state_store import VisibilityClass
from taskrelay.domain.tool.tool_registry import ToolRegistry


def script(*actions):
    """Request metadata for the scripted driver"""
    return {"script": list(actions)}


async def _wait_until(predicate, timeout: float = 2.0, interval: float = 0.005):
    async def _poll():
        while not predicate():
            await asyncio.sleep(interval)

    await asyncio.wait_for(_poll(), timeout=timeout)


@pytest.fixture
def wait_until():
    """Poll a predicate until it holds, failing after a deadline"""
    return _wait_until


@pytest.fixture
def make_script():
    return script


@pytest.fixture
def engine_settings():
    return EngineSettings(
        approval_timeout=2.0,
        tool_timeout=2.0,
        cancel_grace_period=0.2,
        max_steps=50,
    )


@pytest.fixture
def settings(engine_settings):
    return Settings(
        engine=engine_settings,
        rpc=RpcSettings(unary_deadline=2.0),
        state=StateSettings(history_limit=5),
    )


@pytest.fixture
def registry():
    """Registry with a small set of well-behaved and misbehaving tools"""

    registry = ToolRegistry()

    @registry.tool(
        "toolA",
        parameters_schema={
            "type": "object",
            "properties": {"x": {"type": "integer"}},
            "required": ["x"],
        },
        result_schema={
            "type": "object",
            "properties": {"y": {"type": "integer"}},
            "required": ["y"],
        },
    )
    async def tool_a(arguments, context):
        """Adds one to x"""
        return {"y": arguments["x"] + 1}

    @registry.tool("echo", requires_approval=False)
    async def echo(arguments, context):
        """Returns its arguments"""
        return {"echo": arguments}

    @registry.tool("slow_cancellable", cancellable=True, requires_approval=False)
    async def slow_cancellable(arguments, context):
        """Runs until aborted"""
        await context.cancellation.wait()
        context.cancellation.raise_if_set()
        return {}

    @registry.tool("failing", requires_approval=True, category="faulty")
    async def failing(arguments, context):
        """Always reports an upstream failure"""
        raise ToolInvocationError("upstream unavailable", kind="upstream")

    @registry.tool(
        "remember",
        requires_approval=False,
        category="state",
        parameters_schema={"type": "object", "required": ["value"]},
    )
    async def remember(arguments, context):
        """Stores a value in the workspace"""
        await context.state.set("last", arguments["value"], VisibilityClass.DURABLE_WORKSPACE)
        return {"stored": True}

    return registry
