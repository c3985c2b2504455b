"""Prompt assembly for IPV detection calls."""

from typing import Dict, List

from ..config import PromptConfig, TEXT_PLACEHOLDER


def substitute_template(template: str, narrative_text: str) -> str:
    """Insert the narrative into the user template at ``<<TEXT>>``."""
    if not isinstance(template, str):
        raise TypeError("template must be a string")
    return template.replace(TEXT_PLACEHOLDER, narrative_text or "")


def build_messages(system_prompt: str, user_prompt: str) -> List[Dict[str, str]]:
    """Chat messages for one call: a system turn followed by a user turn."""
    if not isinstance(system_prompt, str):
        raise TypeError("system_prompt must be a string")
    if not isinstance(user_prompt, str):
        raise TypeError("user_prompt must be a string")
    return [
        {"role": "system", "content": system_prompt},
        {"role": "user", "content": user_prompt},
    ]


def messages_for_narrative(prompt: PromptConfig, narrative_text: str) -> List[Dict[str, str]]:
    return build_messages(prompt.system_prompt, substitute_template(prompt.user_template, narrative_text))
