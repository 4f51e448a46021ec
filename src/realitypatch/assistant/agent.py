from pydantic_ai import Agent
from pydantic_ai.settings import ModelSettings
from realitypatch.config import settings
from realitypatch import system_prompt


def create_assistant(model: str | None = None) -> Agent[None, str]:
    """Create the agent that writes analyses and assignments."""
    return Agent(
        model or settings.llm.model,
        output_type=str,
        system_prompt=system_prompt.prompt(),
        model_settings=ModelSettings(
            max_tokens=settings.llm.max_tokens,
            temperature=settings.llm.temperature,
        ),
        defer_model_check=True,
    )
