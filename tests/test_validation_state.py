from action_engine.schemas import FieldSpec
from action_engine.state import RunContext
from action_engine.validation import validate_params

SCHEMA = {
    "goal": FieldSpec("string", required=True),
    "count": FieldSpec("number"),
    "flags": FieldSpec("array"),
    "mode": FieldSpec("string", enum=("fast", "slow")),
}


def test_valid_params_pass():
    result = validate_params({"goal": "x", "count": 2.5, "flags": [], "mode": "fast", "other": 1}, SCHEMA)
    assert result.valid
    assert result.errors == []


def test_missing_and_none_required_fields_fail():
    assert validate_params({}, SCHEMA).errors == ["Missing required field: goal"]
    assert validate_params({"goal": None}, SCHEMA).errors == ["Missing required field: goal"]


def test_type_mismatches_are_listed():
    result = validate_params({"goal": 1, "count": True, "flags": "a", "mode": "medium"}, SCHEMA)
    assert not result.valid
    assert result.errors == [
        "Field goal must be a string, got int",
        "Field count must be a number, got bool",
        "Field flags must be a array, got str",
        "Field mode must be one of ['fast', 'slow']",
    ]


def test_non_mapping_params_never_raise():
    assert validate_params(["goal"], SCHEMA).errors == ["Parameters must be an object"]


def test_merge_later_wins_and_untouched_keys_persist():
    ctx = RunContext.from_params({"a": 0, "b": 2})
    ctx.merge({"a": 1})
    assert ctx.values == {"a": 1, "b": 2}


def test_project_only_declared_fields_and_is_a_snapshot():
    ctx = RunContext.from_params({"x": {"n": 1}, "secret": 2}, [{"role": "user", "content": "hi"}])
    child = ctx.child({"x": FieldSpec("object"), "missing": FieldSpec("string")})
    ctx.values["x"]["n"] = 99
    ctx.conversation.append({"role": "user", "content": "later"})

    assert child.values == {"x": {"n": 1}}
    assert child.conversation == [{"role": "user", "content": "hi"}]


def test_from_params_copies_input():
    params = {"items": [1]}
    ctx = RunContext.from_params(params)
    ctx.values["items"].append(2)
    assert params == {"items": [1]}
