import asyncio

import pytest

from action_engine.errors import CascadeExhaustedError, ModelCallError
from action_engine.model_client import MockModelClient, ModelRequest, OpenAIModelClient
from action_engine.schemas import NO_TOOL_CHOICE, NO_TOOL_USE
from action_engine.settings import EndpointSettings
from action_engine.stats import ModelStatsStore
from action_engine.storage import InMemoryStore

from conftest import ScriptedClient, candidate, make_cascade, structured, tool_call

MESSAGES = [{"role": "user", "content": "hi"}]
TOOLS = [{"type": "function", "function": {"name": "STOP", "description": "d", "parameters": {"type": "object"}}}]


def fail(message="boom"):
    return ModelCallError(message)


def test_candidates_cascade_into_lower_tiers():
    cascade = make_cascade(ScriptedClient())
    assert [c.model_id for c in cascade.select_candidates("HIGH")] == ["high-a", "med-a", "med-b", "low-a"]
    assert [c.model_id for c in cascade.select_candidates("MEDIUM")] == ["med-a", "med-b", "low-a"]
    assert [c.model_id for c in cascade.select_candidates("LOW")] == ["low-a"]


@pytest.mark.asyncio
async def test_kth_candidate_succeeds_without_fallback():
    client = ScriptedClient({"med-a": [fail()], "med-b": [structured({"ok": 1})]})
    cascade = make_cascade(client)

    generation = await cascade.generate(ModelRequest(messages=MESSAGES, output_schema={"type": "object"}), tier="MEDIUM")

    assert generation.candidate.model_id == "med-b"
    assert generation.response.structured == {"ok": 1}
    assert client.models == ["med-a", "med-b"]
    assert [a.phase for a in generation.attempts] == ["cascade", "cascade"]
    assert await cascade.stats.count_since(candidate("med-a").key, "error", 60) == 1
    assert await cascade.stats.count_since(candidate("med-b").key, "success", 60) == 1


@pytest.mark.asyncio
async def test_fallback_pass_sorted_by_recent_errors_then_exhausted(clock):
    client = ScriptedClient(default=fail())
    cascade = make_cascade(client, clock=clock)
    for _ in range(3):
        await cascade.record_error(candidate("high-a"))
    await cascade.record_error(candidate("med-a"))

    with pytest.raises(CascadeExhaustedError) as info:
        await cascade.generate(ModelRequest(messages=MESSAGES), tier="LOW")

    # low-a fails in the tier pass, then every candidate is retried, fewest errors first.
    assert client.models == ["low-a", "med-b", "med-a", "low-a", "high-a"]
    assert str(info.value) == "All models failed. Last error: boom"
    assert [a["phase"] for a in info.value.attempts] == ["cascade"] + ["fallback"] * 4


@pytest.mark.asyncio
async def test_fallback_ignores_backoff_and_can_recover(clock):
    client = ScriptedClient({"low-a": [fail(), fail()], "high-a": [structured({"v": 1})]})
    cascade = make_cascade(client, tiers={"HIGH": [candidate("high-a")], "LOW": [candidate("low-a")]}, clock=clock)
    await cascade.record_error(candidate("high-a"))
    await cascade.record_error(candidate("high-a"))

    generation = await cascade.generate(ModelRequest(messages=MESSAGES), tier="HIGH")

    # high-a is in backoff for the tier pass but is still tried during fallback.
    assert client.models == ["low-a", "low-a", "high-a"]
    assert generation.attempts[-1].phase == "fallback"


@pytest.mark.asyncio
async def test_backoff_skips_once_per_error(clock):
    client = ScriptedClient(
        {"med-a": [fail(), structured({"from": "a"})], "med-b": [structured({"from": "b"}), structured({"from": "b"})]}
    )
    cascade = make_cascade(client, clock=clock)
    request = ModelRequest(messages=MESSAGES)

    assert (await cascade.generate(request)).candidate.model_id == "med-b"
    clock.advance(10)
    assert (await cascade.generate(request)).candidate.model_id == "med-b"
    clock.advance(10)
    assert (await cascade.generate(request)).candidate.model_id == "med-a"

    assert client.models == ["med-a", "med-b", "med-b", "med-a"]
    assert await cascade.stats.count_since(candidate("med-a").key, "skip", 3600) == 1


@pytest.mark.asyncio
async def test_backoff_expires_after_skip_window(clock):
    stats = ModelStatsStore(InMemoryStore(), clock=clock)
    key = candidate("med-a").key
    await stats.increment(key, "error")
    clock.advance(61)
    assert not await stats.should_skip(key, window_s=60)

    await stats.increment(key, "success")
    assert not await stats.should_skip(key, window_s=60)


@pytest.mark.asyncio
async def test_skip_in_the_same_tick_as_the_error_counts(clock):
    stats = ModelStatsStore(InMemoryStore(), clock=clock)
    key = candidate("med-a").key
    await stats.increment(key, "error")

    assert await stats.should_skip(key, window_s=60)
    assert not await stats.should_skip(key, window_s=60)


@pytest.mark.asyncio
async def test_candidates_without_tool_use_skipped_for_tool_requests():
    client = ScriptedClient(default=tool_call("STOP"))
    tiers = {"MEDIUM": [candidate("no-tools", NO_TOOL_USE), candidate("med-b")]}
    cascade = make_cascade(client, tiers=tiers)

    await cascade.generate(ModelRequest(messages=MESSAGES, tools=TOOLS))
    assert client.models == ["med-b"]

    await cascade.generate(ModelRequest(messages=MESSAGES))
    assert client.models == ["med-b", "no-tools"]


@pytest.mark.asyncio
async def test_tool_choice_rejection_is_learned(clock):
    rejection = ModelCallError("tool_choice is not supported", tool_choice_unsupported=True)
    client = ScriptedClient({"med-a": [rejection, tool_call("STOP")], "med-b": [tool_call("STOP")] * 2})
    cascade = make_cascade(client, tiers={"MEDIUM": [candidate("med-a"), candidate("med-b")]}, clock=clock)

    await cascade.generate(ModelRequest(messages=MESSAGES, tools=TOOLS))
    assert NO_TOOL_CHOICE in await cascade.stats.flags(candidate("med-a").key)

    clock.advance(61)
    await cascade.generate(ModelRequest(messages=MESSAGES, tools=TOOLS))
    learned, _ = client.calls[-1]
    assert learned.model_id == "med-a"
    assert learned.no_tool_choice

    # Requests that must force a tool call skip med-a entirely.
    await cascade.generate(ModelRequest(messages=MESSAGES, tools=TOOLS, force_tool_choice=True))
    assert client.models == ["med-a", "med-b", "med-a", "med-b"]


@pytest.mark.asyncio
async def test_attempt_timeout_moves_to_next_candidate():
    async def slow(request, cand):
        await asyncio.sleep(1)

    client = ScriptedClient({"med-a": [slow], "med-b": [structured({"ok": True})]})
    cascade = make_cascade(client, attempt_timeout_s=0.05)

    generation = await cascade.generate(ModelRequest(messages=MESSAGES))

    assert generation.candidate.model_id == "med-b"
    assert "timed out" in generation.attempts[0].error


def test_openai_request_shape():
    client = OpenAIModelClient({"test": EndpointSettings(base_url="http://localhost", api_key="k")})
    routed = candidate("m").model_copy(update={"provider": "Cerebras"})

    kwargs = client.build_kwargs(ModelRequest(messages=MESSAGES, tools=TOOLS), routed)
    assert kwargs["tool_choice"] == "required"
    assert kwargs["extra_body"] == {"provider": {"only": ["Cerebras"]}}

    kwargs = client.build_kwargs(ModelRequest(messages=MESSAGES, tools=TOOLS), candidate("m", NO_TOOL_CHOICE))
    assert "tool_choice" not in kwargs
    assert "extra_body" not in kwargs

    kwargs = client.build_kwargs(ModelRequest(messages=MESSAGES, output_schema={"type": "object"}), candidate("m"))
    assert kwargs["response_format"]["type"] == "json_schema"
    assert kwargs["response_format"]["json_schema"]["strict"] is True


@pytest.mark.asyncio
async def test_mock_client_picks_stop_tool_and_fills_schema():
    client = MockModelClient()
    tools = TOOLS + [{"type": "function", "function": {"name": "OTHER", "parameters": {"type": "object"}}}]
    response = await client.call(ModelRequest(messages=MESSAGES, tools=tools, stop_tool="STOP"), candidate("m"))
    assert response.tool_calls[0].name == "STOP"

    schema = {"type": "object", "properties": {"answer": {"type": "string"}, "n": {"type": "number"}}}
    response = await client.call(ModelRequest(messages=MESSAGES, output_schema=schema), candidate("m"))
    assert response.structured == {"answer": "[mock] hi", "n": 0}
