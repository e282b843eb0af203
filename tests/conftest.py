import pytest
from unittest.mock import MagicMock

from moral_agent.ledger import LEDGER_PATH, EconomicLedger
from moral_agent.models import ReasoningResult, TokenUsage, ToolCall
from moral_agent.sandbox import PathSandbox
from moral_agent.storage import AgentStorage


@pytest.fixture
def sandbox(tmp_path):
    return PathSandbox(tmp_path)


@pytest.fixture
def storage(sandbox):
    agent_storage = AgentStorage(sandbox)
    agent_storage.init_directories()
    return agent_storage


@pytest.fixture
def ledger(sandbox):
    return EconomicLedger.open(sandbox.validate(LEDGER_PATH), initial_budget=50.0)


def make_result(text="", input_tokens=0, output_tokens=0, tool_calls=None, stop_reason="stop"):
    return ReasoningResult(
        text=text,
        usage=TokenUsage(input_tokens=input_tokens, output_tokens=output_tokens),
        stop_reason=stop_reason,
        tool_calls=[ToolCall(**call) for call in (tool_calls or [])],
    )


@pytest.fixture
def reasoning():
    client = MagicMock()
    client.available = True
    client.model = "test/model"
    return client
