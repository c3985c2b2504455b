from .client import ChatClient, normalize_base_url
from .prompts import build_messages, messages_for_narrative, substitute_template

__all__ = [
    "ChatClient",
    "normalize_base_url",
    "build_messages",
    "messages_for_narrative",
    "substitute_template",
]
