"""Completion clients: OpenAI SDK wrapper error mapping and the stub backend."""

import time
from types import SimpleNamespace

import httpx
import openai
import pytest

from chatrelay.config import CompletionBackend, Settings
from chatrelay.service.completion import (
    UPSTREAM_UNAVAILABLE,
    OpenAICompletionClient,
    StubCompletionClient,
    build_completion_client,
)
from chatrelay.service.errors import UpstreamError


class FakeCompletions:
    def __init__(self, handler):
        self.handler = handler
        self.calls = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        return self.handler(**kwargs)


def _fake_sdk(handler):
    completions = FakeCompletions(handler)
    return SimpleNamespace(chat=SimpleNamespace(completions=completions)), completions


def _reply(content):
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=content))]
    )


def _client(sdk, **kwargs):
    return OpenAICompletionClient(api_key="sk-test", model="gpt-4", client=sdk, **kwargs)


async def test_returns_first_choice_and_passes_parameters():
    sdk, completions = _fake_sdk(lambda **_: _reply("hi back"))
    client = _client(sdk, temperature=0.5, max_tokens=64)
    messages = [{"role": "system", "content": "s"}, {"role": "user", "content": "hi"}]

    assert await client.complete(messages) == "hi back"
    assert completions.calls == [
        {"model": "gpt-4", "messages": messages, "temperature": 0.5, "max_tokens": 64}
    ]


async def test_sdk_error_becomes_upstream_error():
    request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")

    def _raise(**_):
        raise openai.APIConnectionError(request=request)

    sdk, _ = _fake_sdk(_raise)

    with pytest.raises(UpstreamError) as excinfo:
        await _client(sdk).complete([{"role": "user", "content": "hi"}])

    assert excinfo.value.message == UPSTREAM_UNAVAILABLE
    assert excinfo.value.status_code == 500


@pytest.mark.parametrize("response", [SimpleNamespace(choices=[]), _reply(""), _reply(None)])
async def test_empty_response_is_upstream_error(response):
    sdk, _ = _fake_sdk(lambda **_: response)

    with pytest.raises(UpstreamError):
        await _client(sdk).complete([{"role": "user", "content": "hi"}])


async def test_timeout_is_upstream_error():
    def _slow(**_):
        time.sleep(0.3)
        return _reply("late")

    sdk, _ = _fake_sdk(_slow)

    with pytest.raises(UpstreamError):
        await _client(sdk, timeout_seconds=0.05).complete([{"role": "user", "content": "hi"}])


async def test_stub_records_requests_and_can_fail():
    stub = StubCompletionClient()

    assert await stub.complete([{"role": "user", "content": "hi"}]) == stub.STUB_RESPONSE
    assert stub.requests == [[{"role": "user", "content": "hi"}]]

    stub.fail_with = RuntimeError("down")
    with pytest.raises(UpstreamError):
        await stub.complete([{"role": "user", "content": "again"}])
    assert len(stub.requests) == 2


def test_build_completion_client_selects_backend():
    stub_settings = Settings(jwt_secret="s", completion_backend=CompletionBackend.STUB)
    assert isinstance(build_completion_client(stub_settings), StubCompletionClient)

    openai_settings = Settings(
        jwt_secret="s",
        openai_api_key="sk-test",
        completion_model="gpt-4o-mini",
        completion_timeout_seconds=12,
    )
    client = build_completion_client(openai_settings)
    assert isinstance(client, OpenAICompletionClient)
    assert client.model == "gpt-4o-mini"
    assert client.timeout_seconds == 12
