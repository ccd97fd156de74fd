from __future__ import annotations

import logging
import threading
import time
from typing import Iterable

from contentengine.core.config import get_settings
from contentengine.core.errors import ProviderConfigError, VertexAuthError, VertexTimeoutError

logger = logging.getLogger(__name__)


class GeminiVertexProvider:
    def __init__(self, job_id: str | None = None, cancel_event: threading.Event | None = None) -> None:
        self._settings = get_settings()
        self._job_id = job_id
        # Set by the caller when the surrounding job times out.
        self._cancel_event = cancel_event

    def _split_messages(self, messages: list[dict]) -> tuple[str | None, str]:
        # Gemini takes system guidance separately from the conversational prompt.
        system_parts: list[str] = []
        prompt_parts: list[str] = []
        for msg in messages:
            content = str(msg.get("content", ""))
            if msg.get("role") == "system":
                system_parts.append(content)
            else:
                prompt_parts.append(content)
        system = "\n\n".join(system_parts) or None
        return system, "\n\n".join(prompt_parts)

    def _validate_config(self) -> tuple[str, str, str]:
        # Fail fast to avoid confusing downstream SDK errors.
        project = self._settings.google_cloud_project
        location = self._settings.google_cloud_location
        model = self._settings.gemini_model
        missing = []
        if not project:
            missing.append("GOOGLE_CLOUD_PROJECT")
        if not location:
            missing.append("GOOGLE_CLOUD_LOCATION")
        if not model:
            missing.append("GEMINI_MODEL")
        if missing:
            raise ProviderConfigError(f"Vertex config missing: set {', '.join(missing)}.")
        return project, location, model

    def stream(self, messages: list[dict]) -> Iterable[str]:
        project, location, model_name = self._validate_config()
        timeout_s = max(1, int(self._settings.vertex_stream_timeout_s))

        try:
            from vertexai import init
            from vertexai.generative_models import GenerationConfig, GenerativeModel
            from google.auth.exceptions import DefaultCredentialsError, RefreshError
            from google.api_core.exceptions import PermissionDenied, Unauthenticated
        except Exception as exc:  # pragma: no cover - import errors are environment-specific
            raise ProviderConfigError(
                "Vertex AI SDK not available. Install google-cloud-aiplatform."
            ) from exc

        system, prompt = self._split_messages(messages)
        try:
            logger.info("vertex_generate_start job_id=%s model=%s", self._job_id, model_name)
            init(project=project, location=location)
            model = GenerativeModel(model_name, system_instruction=system)
            # Ask for JSON directly so hydrators rarely need fence stripping.
            responses = model.generate_content(
                prompt,
                generation_config=GenerationConfig(response_mime_type="application/json", temperature=0.4),
                stream=True,
            )
            deadline = time.monotonic() + timeout_s
            for response in responses:
                if self._cancel_event is not None and self._cancel_event.is_set():
                    raise VertexTimeoutError("Vertex generation cancelled by job timeout.")
                if time.monotonic() > deadline:
                    raise VertexTimeoutError("Vertex stream timed out.")
                delta = getattr(response, "text", None)
                if delta:
                    yield delta
        except (ProviderConfigError, VertexTimeoutError):
            logger.warning("vertex_generate_aborted job_id=%s", self._job_id)
            raise
        except (DefaultCredentialsError, RefreshError, PermissionDenied, Unauthenticated) as exc:
            logger.warning("vertex_generate_auth_error job_id=%s", self._job_id)
            raise VertexAuthError(
                "Vertex auth error: run `gcloud auth application-default login`."
            ) from exc
        except Exception as exc:
            logger.error("vertex_generate_error job_id=%s", self._job_id)
            raise ProviderConfigError("Vertex AI request failed. Check credentials and model access.") from exc
