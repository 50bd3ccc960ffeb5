"""FINAL_RESPONSE action: turns the conversation into the user-facing answer.

The decision call answers directly when it can; the extraction call only runs
when the decision asked for one.
"""

from __future__ import annotations

import json

from ..prompts import FINAL_DECISION_MESSAGE, FINAL_DECISION_SYSTEM, FINAL_EXTRACTION_MESSAGE
from ..schemas import Action, FieldSpec, FunctionStep, ModelStep
from ..state import RunContext

FINAL_RESPONSE = "FINAL_RESPONSE"

DECISION_OUTPUT_SCHEMA = {
    "type": "object",
    "properties": {
        "final_answer": {"type": "string", "description": "Direct answer, or empty when extraction is needed"},
        "method": {"type": "string", "description": "Steps taken, or empty when extraction is needed"},
        "extraction_prompt": {"type": "string", "description": "System prompt for extraction, or empty"},
    },
    "required": ["final_answer", "method", "extraction_prompt"],
    "additionalProperties": False,
}

FINAL_OUTPUT_SCHEMA = {
    "type": "object",
    "properties": {
        "final_answer": {"type": "string", "description": "The answer to present to the user"},
        "method": {"type": "string", "description": "Steps taken to gather the data"},
    },
    "required": ["final_answer", "method"],
    "additionalProperties": False,
}


def messages_history(ctx: RunContext) -> dict:
    visible = [m for m in ctx.conversation if m.get("role") != "system"]
    return {"messages_history": json.dumps(visible, ensure_ascii=False, indent=2, default=str)}


def final_answer(ctx: RunContext) -> dict:
    return {"final_answer": ctx.get("final_answer") or "", "method": ctx.get("method") or ""}


def final_response_action() -> Action:
    return Action(
        name=FINAL_RESPONSE,
        description=(
            "MANDATORY FINAL STEP. Call once the objective is achieved or cannot progress "
            "(for example the same error happened twice). Produces the answer the user sees "
            "and ends the task."
        ),
        input_schema={
            "justification": FieldSpec(
                "string", required=True, description="Why the task is complete and ready to deliver"
            ),
        },
        steps=(
            FunctionStep(messages_history, name="messages_history"),
            ModelStep(
                system_prompt=FINAL_DECISION_SYSTEM,
                message=FINAL_DECISION_MESSAGE,
                tier="LOW",
                output_schema=DECISION_OUTPUT_SCHEMA,
            ),
            ModelStep(
                system_prompt="{{ extraction_prompt }}",
                message=FINAL_EXTRACTION_MESSAGE,
                tier="MEDIUM",
                output_schema=FINAL_OUTPUT_SCHEMA,
                skip_if=lambda ctx: bool(ctx.get("final_answer")),
            ),
            FunctionStep(final_answer, name="final_answer"),
        ),
        examples=("Give me the final answer", "The task is complete, show the result"),
    )
