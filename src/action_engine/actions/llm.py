"""LLM_TOOL action: general knowledge and reasoning, two model calls."""

from __future__ import annotations

from ..prompts import PROMPT_GENERATOR_MESSAGE, PROMPT_GENERATOR_SYSTEM
from ..schemas import Action, FieldSpec, ModelStep

LLM_TOOL = "LLM_TOOL"

PROMPT_OUTPUT_SCHEMA = {
    "type": "object",
    "properties": {
        "generated_prompt": {"type": "string", "description": "System prompt for the answering call"},
    },
    "required": ["generated_prompt"],
    "additionalProperties": False,
}

RESPONSE_OUTPUT_SCHEMA = {
    "type": "object",
    "properties": {
        "response": {"type": "string", "description": "The response to the instruction"},
    },
    "required": ["response"],
    "additionalProperties": False,
}


def llm_action() -> Action:
    return Action(
        name=LLM_TOOL,
        description=(
            "Ask a language model for general knowledge, analysis, reasoning or planning. "
            "No access to live information, browsing or files."
        ),
        input_schema={
            "justification": FieldSpec("string", required=True, description="Why this tool is being used"),
            "instruction": FieldSpec("string", required=True, description="What the model should produce"),
        },
        steps=(
            ModelStep(
                system_prompt=PROMPT_GENERATOR_SYSTEM,
                message=PROMPT_GENERATOR_MESSAGE,
                tier="LOW",
                output_schema=PROMPT_OUTPUT_SCHEMA,
            ),
            ModelStep(
                system_prompt="{{ generated_prompt }}",
                message="{{ instruction }}",
                tier="HIGH",
                output_schema=RESPONSE_OUTPUT_SCHEMA,
            ),
        ),
        examples=("Explain how async/await works", "Help me plan a project structure"),
    )
