import pytest
from pydantic_ai.models.test import TestModel

from realitypatch import system_prompt
from realitypatch.assistant.agent import create_assistant
from realitypatch.tests.utils import assignment


def test_system_prompt_is_templated():
    prompt = system_prompt.prompt()
    assert "{{currentDate}}" not in prompt
    assert "Your assignment:" in prompt


@pytest.mark.asyncio
async def test_assistant_returns_model_text():
    agent = create_assistant()
    reply = assignment("send the email you have been drafting")

    with agent.override(model=TestModel(custom_output_text=reply)):
        result = await agent.run("I keep rewriting the same email")

    assert result.output == reply
    assert agent.model_settings["max_tokens"] == 400
    assert agent.model_settings["temperature"] == 0.7
