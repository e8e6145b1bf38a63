import pytest

from voice_lesson.errors import InvalidToolCall
from voice_lesson.lesson_scripts import TAXI_RIDE_LESSON, TAXI_RIDE_TOOLS
from voice_lesson.models import ToolCall
from voice_lesson.tools import ToolContract, ToolDeclaration


def test_taxi_contract_declares_exactly_two_tools():
    assert TAXI_RIDE_TOOLS.names == ("finish_lesson", "show_hint")
    schema = TAXI_RIDE_TOOLS.to_schema()
    assert schema[0]["parameters"]["required"] == ["success"]
    assert schema[1]["parameters"]["properties"]["hint_text"]["type"] == "string"
    assert TAXI_RIDE_LESSON.tools is TAXI_RIDE_TOOLS


@pytest.mark.parametrize("call", [
    ToolCall("show_hint", {"hint_text": "Try: Voy al hotel"}),
    ToolCall("finish_lesson", {"success": True}),
    ToolCall("finish_lesson", {"success": False}),
])
def test_valid_calls_pass(call):
    assert TAXI_RIDE_TOOLS.validate(call) is call


@pytest.mark.parametrize("call", [
    ToolCall("web_search", {"query": "Bogotá"}),
    ToolCall("show_hint", {}),
    ToolCall("show_hint", {"hint_text": 42}),
    ToolCall("finish_lesson", {"success": "yes"}),
    ToolCall("finish_lesson", {"success": True, "score": 10}),
])
def test_invalid_calls_rejected(call):
    with pytest.raises(InvalidToolCall) as exc_info:
        TAXI_RIDE_TOOLS.validate(call)
    assert exc_info.value.code == "FUNCTION_CALL_ERROR"


def test_bool_is_not_accepted_as_number():
    contract = ToolContract([
        ToolDeclaration("rate", "Rate the answer", {
            "type": "object",
            "properties": {"score": {"type": "integer"}},
            "required": ["score"],
        })
    ])
    assert contract.validate(ToolCall("rate", {"score": 3}))
    with pytest.raises(InvalidToolCall):
        contract.validate(ToolCall("rate", {"score": True}))


def test_duplicate_names_rejected():
    with pytest.raises(ValueError):
        ToolContract([ToolDeclaration("a", "x"), ToolDeclaration("a", "y")])


def test_tool_call_args_are_read_only():
    call = ToolCall("show_hint", {"hint_text": "Hola"})
    with pytest.raises(TypeError):
        call.args["hint_text"] = "changed"
    assert call == ToolCall("show_hint", {"hint_text": "Hola"})
