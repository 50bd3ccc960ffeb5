"""Model invocation layer.

Isolates transport details (endpoint routing, request shape, provider errors)
from cascade and loop logic. A client either returns a structured payload that
matches the requested schema or the model's tool selection, and raises
``ModelCallError`` for anything the cascade should treat as a candidate failure.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from typing import Any, Mapping, Protocol

import openai
from openai import AsyncOpenAI

from .errors import ModelCallError
from .schemas import Message, ModelCandidate
from .settings import EndpointSettings


@dataclass
class ModelRequest:
    messages: list[Message]
    output_schema: dict[str, Any] | None = None
    tools: list[dict[str, Any]] | None = None
    schema_name: str = "response"
    # Name of the terminal tool, when the request is a tool-choice turn.
    stop_tool: str | None = None
    # Candidates that cannot be forced to call a tool are skipped when set.
    force_tool_choice: bool = False

    @property
    def requires_tools(self) -> bool:
        return bool(self.tools)


@dataclass
class ToolCall:
    id: str
    name: str
    arguments: str


@dataclass
class ModelResponse:
    content: str | None = None
    structured: dict[str, Any] | None = None
    tool_calls: list[ToolCall] = field(default_factory=list)
    usage: dict[str, Any] = field(default_factory=dict)
    model: str | None = None

    def assistant_message(self) -> Message:
        if not self.tool_calls:
            return {"role": "assistant", "content": self.content or ""}
        return {
            "role": "assistant",
            "content": self.content or "",
            "tool_calls": [
                {
                    "id": call.id,
                    "type": "function",
                    "function": {"name": call.name, "arguments": call.arguments},
                }
                for call in self.tool_calls
            ],
        }

    def summary(self) -> dict[str, Any]:
        if self.tool_calls:
            return {"tool_calls": [{"name": c.name, "arguments": c.arguments} for c in self.tool_calls]}
        if self.structured is not None:
            return {"structured": self.structured}
        return {"content": self.content}


class ModelClient(Protocol):
    async def call(self, request: ModelRequest, candidate: ModelCandidate) -> ModelResponse:
        ...


def is_tool_choice_error(message: str) -> bool:
    lowered = message.lower()
    return (
        "tool_choice" in lowered
        or "tool choice" in lowered
        or ("tool" in lowered and "not supported" in lowered)
    )


class OpenAIModelClient:
    """Calls any OpenAI-compatible chat completions endpoint."""

    def __init__(self, endpoints: Mapping[str, EndpointSettings], *, timeout_s: float = 40.0) -> None:
        self._endpoints = dict(endpoints)
        self._timeout_s = timeout_s
        self._clients: dict[str, AsyncOpenAI] = {}

    def _client(self, endpoint: str) -> AsyncOpenAI:
        if endpoint in self._clients:
            return self._clients[endpoint]
        config = self._endpoints.get(endpoint)
        if config is None:
            raise ModelCallError(f"Endpoint not configured: {endpoint}")
        if not config.api_key:
            raise ModelCallError(f"No API key configured for endpoint: {endpoint}")
        client = AsyncOpenAI(
            base_url=config.base_url,
            api_key=config.api_key,
            timeout=self._timeout_s,
            max_retries=0,
        )
        self._clients[endpoint] = client
        return client

    def build_kwargs(self, request: ModelRequest, candidate: ModelCandidate) -> dict[str, Any]:
        kwargs: dict[str, Any] = {"model": candidate.model_id, "messages": request.messages}
        if request.tools:
            kwargs["tools"] = request.tools
            if not candidate.no_tool_choice:
                kwargs["tool_choice"] = "required"
        elif request.output_schema is not None:
            kwargs["response_format"] = {
                "type": "json_schema",
                "json_schema": {"name": request.schema_name, "strict": True, "schema": request.output_schema},
            }
        if candidate.provider:
            kwargs["extra_body"] = {"provider": {"only": [candidate.provider]}}
        return kwargs

    async def call(self, request: ModelRequest, candidate: ModelCandidate) -> ModelResponse:
        client = self._client(candidate.endpoint)
        try:
            response = await client.chat.completions.create(**self.build_kwargs(request, candidate))
        except openai.APIStatusError as exc:
            message = _status_error_message(exc)
            raise ModelCallError(
                message,
                tool_choice_unsupported=is_tool_choice_error(message),
                details={"status_code": exc.status_code},
            ) from exc
        except openai.APIError as exc:
            raise ModelCallError(str(exc)) from exc

        if not response.choices:
            raise ModelCallError("Empty response from API")
        message = response.choices[0].message
        tool_calls = [
            ToolCall(id=call.id, name=call.function.name or "", arguments=call.function.arguments or "")
            for call in (message.tool_calls or [])
        ]
        if request.tools and tool_calls and not tool_calls[0].name:
            raise ModelCallError("Invalid tool call: missing function name")

        structured = None
        if request.output_schema is not None:
            structured = parse_structured(message.content)
        usage = response.usage.model_dump() if response.usage else {}
        return ModelResponse(
            content=message.content,
            structured=structured,
            tool_calls=tool_calls,
            usage=usage,
            model=response.model or candidate.model_id,
        )


def parse_structured(content: str | None) -> dict[str, Any]:
    if not content:
        raise ModelCallError("Empty structured response")
    try:
        payload = json.loads(content)
    except json.JSONDecodeError as exc:
        raise ModelCallError(f"Invalid JSON in schema response: {exc}") from exc
    if not isinstance(payload, dict):
        raise ModelCallError("Structured response must be a JSON object")
    return payload


def _status_error_message(exc: openai.APIStatusError) -> str:
    body = exc.body if isinstance(exc.body, dict) else {}
    error = body.get("error", body) if isinstance(body, dict) else {}
    message = error.get("message") if isinstance(error, dict) else None
    metadata = error.get("metadata") if isinstance(error, dict) else None
    detail = ""
    if isinstance(metadata, dict):
        detail = metadata.get("raw") or metadata.get("provider_name") or ""
    message = message or str(exc)
    return f"{message} - {detail}" if detail else message


class MockModelClient:
    """Deterministic offline client: fills schemas and always picks the stop tool."""

    async def call(self, request: ModelRequest, candidate: ModelCandidate) -> ModelResponse:
        hint = _last_user_text(request.messages)
        if request.tools:
            names = [tool["function"]["name"] for tool in request.tools]
            name = request.stop_tool if request.stop_tool in names else names[0]
            tool = request.tools[names.index(name)]
            arguments = _fill(tool["function"].get("parameters") or {}, hint)
            return ModelResponse(
                tool_calls=[ToolCall(id=f"call_{uuid.uuid4().hex[:12]}", name=name, arguments=json.dumps(arguments))],
                model=candidate.model_id,
            )
        structured = _fill(request.output_schema or {"type": "object"}, hint)
        return ModelResponse(content=json.dumps(structured), structured=structured, model=candidate.model_id)


def _last_user_text(messages: list[Message]) -> str:
    for message in reversed(messages):
        if message.get("role") == "user" and message.get("content"):
            return f"[mock] {str(message['content'])[:200]}"
    return "[mock]"


def _fill(schema: dict[str, Any], hint: str) -> Any:
    schema_type = schema.get("type", "object")
    if schema.get("enum"):
        return schema["enum"][0]
    if schema_type == "object":
        return {key: _fill(sub, hint) for key, sub in (schema.get("properties") or {}).items()}
    if schema_type == "string":
        return hint
    if schema_type in ("number", "integer"):
        return 0
    if schema_type == "boolean":
        return False
    if schema_type == "array":
        return []
    return None
