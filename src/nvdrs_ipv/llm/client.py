"""
OpenAI-compatible chat-completions client.

Works against OpenAI itself and against local servers that speak the same API
(LM Studio, Ollama, vLLM) through ``model.api_url``. The SDK's own retries are
disabled; retrying is done by :mod:`nvdrs_ipv.pipeline.retry`.
"""

import logging
import time
from typing import Any, Dict, List, Optional

from openai import OpenAI

from ..config import ModelConfig

logger = logging.getLogger(__name__)

# local OpenAI-compatible servers ignore the key but the SDK requires one
LOCAL_API_KEY = "not-needed"


def normalize_base_url(api_url: Optional[str]) -> Optional[str]:
    """Accept either a base URL or a full ``.../chat/completions`` endpoint."""
    if not api_url:
        return None
    url = api_url.rstrip("/")
    suffix = "/chat/completions"
    if url.endswith(suffix):
        url = url[: -len(suffix)]
    return url


class ChatClient:
    """Thin wrapper returning plain-dict chat completions."""

    def __init__(self, model: ModelConfig, client: Optional[OpenAI] = None,
                 log: Optional[logging.Logger] = None):
        """
        Args:
            model: Model name, temperature, endpoint, key and timeout
            client: Preconfigured SDK client (tests inject a mock)
            log: Logger for per-call timing
        """
        self.model = model
        self.logger = log or logger
        self.client = client or OpenAI(
            base_url=normalize_base_url(model.api_url),
            api_key=model.api_key or LOCAL_API_KEY,
            timeout=model.timeout_seconds,
            max_retries=0,
        )

    def complete(self, messages: List[Dict[str, str]]) -> Dict[str, Any]:
        """
        Send one chat-completion request.

        Returns:
            The response as a plain dict (``ChatCompletion.model_dump()``)

        Raises:
            openai.APIError subclasses on transport or provider failures
        """
        started = time.monotonic()
        response = self.client.chat.completions.create(
            model=self.model.name,
            messages=messages,
            temperature=self.model.temperature,
        )
        elapsed = time.monotonic() - started
        self.logger.debug(f"Chat completion from {self.model.name} in {elapsed:.2f}s")
        return response.model_dump()
