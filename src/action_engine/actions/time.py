"""CURRENT_TIME action (no external dependency)."""

from __future__ import annotations

from ..context_provider import current_datetime
from ..schemas import Action, FieldSpec, FunctionStep
from ..state import RunContext

CURRENT_TIME = "CURRENT_TIME"


def current_time_action(default_timezone: str = "UTC") -> Action:
    def get_current_time(ctx: RunContext) -> dict:
        # Resolve timezone from input or default setting.
        return current_datetime(ctx.get("timezone") or default_timezone)

    return Action(
        name=CURRENT_TIME,
        description="Get the current date and time, optionally for an IANA timezone such as Europe/Paris.",
        input_schema={
            "timezone": FieldSpec("string", description="IANA timezone name; defaults to the server timezone"),
        },
        steps=(FunctionStep(get_current_time, name="get_current_time"),),
        examples=("What time is it?", "What is the date in Tokyo?"),
    )
