import pytest

from action_engine.context_provider import DefaultAmbientContext, current_datetime
from action_engine.state import RunContext
from action_engine.storage import InMemoryStore
from action_engine.templates import PromptResolver, render, template_variables

from conftest import FixedAmbient


def test_interpolation_conditionals_and_loops():
    template = "Hello {{ name }}{% if title %}, {{ title }}{% endif %}:{% for i in items %} {{ i }}{% endfor %}"
    assert render(template, {"name": "Ada", "items": [1, 2]}) == "Hello Ada: 1 2"
    assert render(template, {"name": "Ada", "title": "Dr", "items": []}) == "Hello Ada, Dr:"


def test_unknown_variables_render_empty():
    assert render("[{{ nothing }}][{{ nothing.deeper }}]", {}) == "[][]"


def test_template_variables_lists_top_level_names():
    assert template_variables("{{ a }} {% for x in b %}{{ x.c }}{% endfor %}") == {"a", "b"}


@pytest.mark.asyncio
async def test_resolver_fetches_only_used_ambient_values_every_time():
    ambient = FixedAmbient({"current_datetime": "now", "weather": "rain"})
    resolver = PromptResolver(ambient)
    ctx = RunContext.from_params({"name": "Ada"})

    first = await resolver.render({"message": "{{ name }} at {{ current_datetime }}"}, ctx)
    await resolver.render({"message": "{{ name }} at {{ current_datetime }}"}, ctx)

    assert first == {"message": "Ada at now"}
    assert ambient.fetches == [["current_datetime"], ["current_datetime"]]


@pytest.mark.asyncio
async def test_extra_values_and_conversation_are_available():
    resolver = PromptResolver(FixedAmbient({}))
    ctx = RunContext.from_params({}, [{"role": "user", "content": "hi"}])
    rendered = await resolver.render({"m": "{{ stop_action }} {{ conversation | length }}"}, ctx, {"stop_action": "STOP"})
    assert rendered == {"m": "STOP 1"}


@pytest.mark.asyncio
async def test_ambient_values_are_fresh_unless_ttl_configured():
    calls = []
    ambient = DefaultAmbientContext(cache_ttl_s=0)
    ambient.register("counter", lambda: calls.append(1) or len(calls))
    assert (await ambient.fetch(["counter"]))["counter"] == 1
    assert (await ambient.fetch(["counter"]))["counter"] == 2

    now = [0.0]
    cached = DefaultAmbientContext(cache_ttl_s=30, clock=lambda: now[0])
    cached.register("counter", lambda: calls.append(1) or len(calls))
    value = (await cached.fetch(["counter"]))["counter"]
    assert (await cached.fetch(["counter"]))["counter"] == value
    now[0] = 31.0
    assert (await cached.fetch(["counter"]))["counter"] == value + 1


@pytest.mark.asyncio
async def test_failing_ambient_fetcher_yields_none():
    ambient = DefaultAmbientContext()

    def broken():
        raise RuntimeError("offline")

    ambient.register("broken", broken)
    assert await ambient.fetch(["broken", "unknown"]) == {"broken": None}


@pytest.mark.asyncio
async def test_previous_chat_reads_store():
    store = InMemoryStore()
    ambient = DefaultAmbientContext(store=store)
    assert (await ambient.fetch(["previous_chat"]))["previous_chat"] is None
    await store.set("previous_chat", {"goal": "g", "answer": "a", "timestamp": 0})
    value = (await ambient.fetch(["previous_chat"]))["previous_chat"]
    assert value["goal"] == "g"
    assert value["minutes_ago"] > 0


def test_current_datetime_utc():
    now = current_datetime("UTC")
    assert now["timezone"] == "UTC"
    assert "T" in now["iso"]
    assert now["epoch_seconds"] > 0
