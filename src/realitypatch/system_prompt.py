import os
from datetime import datetime, timezone


def prompt() -> str:
    """Load and return the system prompt from system_prompt.md with templating."""
    prompt_path = os.path.join(os.path.dirname(__file__), "system_prompt.md")
    with open(prompt_path, "r", encoding="utf-8") as f:
        content = f.read().strip()

    current_date = datetime.now(timezone.utc).strftime("%A, %B %d, %Y")
    return content.replace("{{currentDate}}", current_date)
