"""Unit-test conftest — MockOracle, shared fixtures, and helpers.

All fixtures here are available to every test under tests/unit/ without import.
"""

from __future__ import annotations

import asyncio
import json

import pytest

from kiln.capabilities import CapabilityRegistry
from kiln.config import KilnSettings
from kiln.models.synapse import SynapseEventBus
from kiln.tools.function_store import FunctionStore


ADD_CODE = "def add(params):\n    return params['a'] + params['b']\n"


# ─────────────────────────────────────────────────────────────────────────────
# MockOracle: drop-in replacement for OracleClient
# ─────────────────────────────────────────────────────────────────────────────

class MockOracle:
    """Configurable fake OracleClient for unit tests.

    Args:
        responses:   Strings returned by successive chat_simple calls. The
                     last one repeats once the script runs out.
        chat_delay:  Seconds to sleep before chat_simple returns.
        raises:      If set, chat_simple raises this exception.
    """

    def __init__(
        self,
        responses: list[str] | None = None,
        *,
        chat_delay: float = 0.0,
        raises: Exception | None = None,
    ) -> None:
        self.responses = list(responses or ["mock response"])
        self.chat_delay = chat_delay
        self.raises = raises
        # Call counters / captured prompts for assertion
        self.chat_simple_calls: int = 0
        self.prompts: list[str] = []

    async def chat_simple(self, prompt: str = "", system: str = "", **kwargs) -> str:
        self.chat_simple_calls += 1
        self.prompts.append(prompt)
        if self.raises:
            raise self.raises
        if self.chat_delay > 0:
            await asyncio.sleep(self.chat_delay)
        index = min(self.chat_simple_calls - 1, len(self.responses) - 1)
        return self.responses[index]

    async def health(self) -> dict:
        return {"status": "ok"}

    async def close(self) -> None:
        pass


class ScriptedOracle(MockOracle):
    """MockOracle whose script may contain exceptions as well as strings."""

    def __init__(self, script: list[str | Exception]) -> None:
        super().__init__()
        self.script = script

    async def chat_simple(self, prompt: str = "", system: str = "", **kwargs) -> str:
        self.chat_simple_calls += 1
        self.prompts.append(prompt)
        step = self.script[min(self.chat_simple_calls - 1, len(self.script) - 1)]
        if isinstance(step, Exception):
            raise step
        return step


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

def make_settings(tmp_path, **overrides) -> KilnSettings:
    values = {
        "function_store_dir": tmp_path / "functions",
        "trace_dir": tmp_path / "traces",
        "persist_traces": False,
        "sandbox_timeout": 10.0,
    }
    values.update(overrides)
    return KilnSettings(**values)


# ─────────────────────────────────────────────────────────────────────────────
# Fixtures
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def synapse():
    """A fresh in-memory SynapseEventBus for each test."""
    return SynapseEventBus(persist=False)


@pytest.fixture
def settings(tmp_path):
    """Settings pointing every directory at the test's tmp_path."""
    return make_settings(tmp_path)


@pytest.fixture
def store(tmp_path):
    """An empty FunctionStore in a temp dir."""
    return FunctionStore(tmp_path / "functions")


@pytest.fixture
def mock_oracle():
    """A MockOracle that always answers with a valid ``add`` implementation."""
    return MockOracle([ADD_CODE])


@pytest.fixture
def mock_oracle_failing():
    """A MockOracle that always raises RuntimeError."""
    return MockOracle(raises=RuntimeError("oracle offline"))


@pytest.fixture
def registry():
    """A small capability registry: echo and upper."""
    reg = CapabilityRegistry()

    @reg.capability("echo", "Returns its args as a JSON string.")
    async def echo(args: dict) -> str:
        return json.dumps(args, sort_keys=True)

    @reg.capability("upper", "Uppercases args['text'].")
    async def upper(args: dict) -> str:
        return str(args.get("text", "")).upper()

    return reg


@pytest.fixture
def scripted_oracle():
    """Factory: ``scripted_oracle(["bad code", ValueError("x"), ADD_CODE])``."""
    return ScriptedOracle


@pytest.fixture
def add_code():
    return ADD_CODE
