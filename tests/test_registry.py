import pytest

from action_engine.errors import ConfigurationError, RegistryError, UnknownActionError
from action_engine.registry import ActionRegistry
from action_engine.schemas import Action, FieldSpec, FunctionStep, ModelStep, SubActionStep, ToolChoice


def noop(ctx):
    return {}


def simple(name, **kwargs):
    return Action(name=name, steps=(FunctionStep(noop),), **kwargs)


def test_duplicate_names_rejected():
    with pytest.raises(RegistryError):
        ActionRegistry([simple("A"), simple("A")])


def test_dangling_references_rejected_at_build():
    parent = Action(name="P", steps=(SubActionStep("MISSING"),))
    with pytest.raises(RegistryError) as info:
        ActionRegistry([parent])
    assert info.value.details["unresolved"] == ["P -> MISSING"]


def test_unknown_lookup_and_membership():
    registry = ActionRegistry([simple("A")])
    assert "A" in registry
    assert "B" not in registry
    assert registry.get("B") is None
    with pytest.raises(UnknownActionError):
        registry["B"]


def test_stop_action_must_be_available():
    with pytest.raises(ConfigurationError):
        ToolChoice(available_actions=("A", "B"), stop_action="STOP")
    with pytest.raises(ConfigurationError):
        ToolChoice(available_actions=("STOP",), stop_action="STOP", max_iterations=0)


def test_model_step_is_single_or_multi_turn_never_both():
    choice = ToolChoice(available_actions=("STOP",), stop_action="STOP")
    with pytest.raises(ConfigurationError):
        ModelStep(system_prompt="s", message="m", output_schema={"type": "object"}, tool_choice=choice)
    with pytest.raises(ConfigurationError):
        ModelStep(system_prompt="s", message="m")
    with pytest.raises(ConfigurationError):
        ModelStep(system_prompt="s", message="m", output_schema={"type": "object"}, continuation_message="c")


def test_invalid_step_type_rejected():
    with pytest.raises(ConfigurationError):
        Action(name="X", steps=("not a step",))


def test_build_tools_marks_stop_action():
    registry = ActionRegistry(
        [
            simple("A", description="Does A", input_schema={"q": FieldSpec("string", required=True)}),
            simple("STOP", description="Finish"),
        ]
    )
    tools = registry.build_tools(["A", "STOP"], stop_action="STOP")
    assert [t["function"]["name"] for t in tools] == ["A", "STOP"]
    assert tools[0]["function"]["parameters"] == {
        "type": "object",
        "properties": {"q": {"type": "string"}},
        "required": ["q"],
    }
    assert "STOP ACTION" in tools[1]["function"]["description"]
    assert "STOP ACTION" not in tools[0]["function"]["description"]
