import pytest
from pydantic import BaseModel, Field, ValidationError

from corpus_agent.agent.registry import ToolRegistry, ToolSpec


class EchoInput(BaseModel):
    text: str = Field(min_length=1)
    times: int = Field(default=1, ge=1, le=3)


async def _echo(data: EchoInput) -> str:
    return " ".join([data.text] * data.times)


def _spec(name: str = "echo") -> ToolSpec:
    return ToolSpec(name=name, description="Repeat text", args_schema=EchoInput, handler=_echo)


async def test_execute_validates_payload_before_calling_handler() -> None:
    registry = ToolRegistry()
    registry.register(_spec())

    assert await registry.execute("echo", {"text": "hi", "times": 2}) == "hi hi"
    with pytest.raises(ValidationError):
        await registry.execute("echo", {"text": "", "times": 2})


async def test_execute_unknown_tool_raises_key_error() -> None:
    with pytest.raises(KeyError):
        await ToolRegistry().execute("missing", {})


def test_duplicate_registration_is_rejected() -> None:
    registry = ToolRegistry()
    registry.register(_spec())

    with pytest.raises(ValueError):
        registry.register(_spec())


async def test_langchain_export_respects_allowlist() -> None:
    registry = ToolRegistry()
    registry.register(_spec("echo"))
    registry.register(_spec("shout"))

    everything = registry.as_langchain_tools()
    allowed = registry.as_langchain_tools(["shout"])

    assert [tool.name for tool in everything] == ["echo", "shout"]
    assert [tool.name for tool in allowed] == ["shout"]
    assert registry.as_langchain_tools([]) == []
    assert await allowed[0].ainvoke({"text": "hey", "times": 3}) == "hey hey hey"
