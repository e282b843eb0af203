from types import SimpleNamespace

import httpx
import openai
from unittest.mock import MagicMock

from moral_agent.reasoning import FatalBackendError, ReasoningClient, TransientBackendError, classify

URL = "https://openrouter.ai/api/v1/chat/completions"


def _status_error(cls, status):
    response = httpx.Response(status, request=httpx.Request("POST", URL))
    return cls(f"status {status}", response=response, body=None)


def _response(text="done", tool_calls=None, prompt_tokens=10, completion_tokens=5):
    message = SimpleNamespace(content=text, tool_calls=tool_calls)
    return SimpleNamespace(
        choices=[SimpleNamespace(message=message, finish_reason="stop")],
        usage=SimpleNamespace(prompt_tokens=prompt_tokens, completion_tokens=completion_tokens),
    )


def _client(side_effect):
    client = MagicMock()
    client.chat.completions.create.side_effect = side_effect
    return client

# ---------------------------------------------------------------------------
# Error taxonomy
# ---------------------------------------------------------------------------

def test_classify():
    assert isinstance(classify(_status_error(openai.AuthenticationError, 401)), FatalBackendError)
    assert isinstance(classify(_status_error(openai.RateLimitError, 429)), TransientBackendError)
    assert isinstance(classify(_status_error(openai.InternalServerError, 500)), TransientBackendError)
    assert isinstance(classify(_status_error(openai.APIStatusError, 529)), TransientBackendError)
    assert isinstance(classify(openai.APIConnectionError(request=httpx.Request("POST", URL))), TransientBackendError)

    bad_request = _status_error(openai.BadRequestError, 400)
    assert classify(bad_request) is bad_request

# ---------------------------------------------------------------------------
# reason()
# ---------------------------------------------------------------------------

def test_reason_returns_result():
    client = _client([_response("  hello  ", prompt_tokens=120, completion_tokens=30)])
    reasoning = ReasoningClient(None, "test/model", client=client)

    result = reasoning.reason("system", "briefing", max_tokens=100)

    assert result.text == "hello"
    assert result.usage.input_tokens == 120
    assert result.usage.output_tokens == 30
    assert result.stop_reason == "stop"
    kwargs = client.chat.completions.create.call_args.kwargs
    assert kwargs["messages"][0] == {"role": "system", "content": "system"}
    assert kwargs["max_tokens"] == 100
    assert "tools" not in kwargs

def test_transient_error_retried_with_backoff():
    sleep = MagicMock()
    client = _client([_status_error(openai.RateLimitError, 429), _response("ok")])
    reasoning = ReasoningClient(None, "m", client=client, sleep=sleep)

    assert reasoning.reason("s", "u", 10).text == "ok"
    sleep.assert_called_once_with(2.0)

def test_exhausted_retries_return_none():
    sleep = MagicMock()
    client = _client(_status_error(openai.InternalServerError, 503))
    reasoning = ReasoningClient(None, "m", client=client, sleep=sleep)

    assert reasoning.reason("s", "u", 10) is None
    assert client.chat.completions.create.call_count == 3
    assert [c.args[0] for c in sleep.call_args_list] == [2.0, 4.0]
    assert reasoning.available

def test_authentication_failure_disables_client():
    sleep = MagicMock()
    client = _client(_status_error(openai.AuthenticationError, 401))
    reasoning = ReasoningClient(None, "m", client=client, sleep=sleep)

    assert reasoning.reason("s", "u", 10) is None
    assert not reasoning.available
    sleep.assert_not_called()

    assert reasoning.reason("s", "u", 10) is None
    assert client.chat.completions.create.call_count == 1

def test_non_retryable_error_returns_none_without_retry():
    client = _client(_status_error(openai.BadRequestError, 400))
    reasoning = ReasoningClient(None, "m", client=client, sleep=MagicMock())

    assert reasoning.reason("s", "u", 10) is None
    assert client.chat.completions.create.call_count == 1
    assert reasoning.available

def test_no_key_and_no_client_is_unavailable():
    assert not ReasoningClient(None, "m").available

# ---------------------------------------------------------------------------
# converse() with tools
# ---------------------------------------------------------------------------

def test_converse_parses_tool_calls():
    call = SimpleNamespace(
        id="call_1",
        function=SimpleNamespace(name="read_file", arguments='{"path": "/self/identity.md"}'),
    )
    broken = SimpleNamespace(id="call_2", function=SimpleNamespace(name="list_files", arguments="{oops"))
    client = _client([_response(None, tool_calls=[call, broken])])
    reasoning = ReasoningClient(None, "m", client=client)

    result = reasoning.converse([{"role": "user", "content": "go"}], max_tokens=50, tools=[{"type": "function"}])

    assert result.text == ""
    assert result.tool_calls[0].name == "read_file"
    assert result.tool_calls[0].arguments == {"path": "/self/identity.md"}
    assert result.tool_calls[1].arguments == {}
    assert client.chat.completions.create.call_args.kwargs["tools"] == [{"type": "function"}]
