from __future__ import annotations

import threading

from contentengine.core.config import get_settings
from contentengine.core.errors import ProviderConfigError
from contentengine.providers.llm.base import LLMProvider
from contentengine.providers.llm.fake import FakeLLMProvider
from contentengine.providers.llm.gemini_vertex import GeminiVertexProvider


def get_llm_provider(job_id: str | None = None, cancel_event: threading.Event | None = None) -> LLMProvider:
    settings = get_settings()
    provider = (settings.llm_provider or "vertex").lower()

    if provider == "fake":
        return FakeLLMProvider()
    if provider == "vertex":
        return GeminiVertexProvider(job_id=job_id, cancel_event=cancel_event)
    raise ProviderConfigError(f"Unknown LLM provider: {settings.llm_provider}")
