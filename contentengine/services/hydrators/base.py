from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import json
import logging
import re
import threading
from typing import Any, Callable, Protocol

from contentengine.core.config import get_settings
from contentengine.core.errors import JobTimeoutError, SchemaInvalidError
from contentengine.domain.jobs import JobKind
from contentengine.domain.models import HydrationJob
from contentengine.providers.llm.base import LLMProvider
from contentengine.providers.llm.factory import get_llm_provider
from contentengine.services.hydrators.prompts import build_generation_messages


logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)


@dataclass(frozen=True)
class HydrationContext:
    job_id: str
    job_kind: JobKind
    target_type: str
    target_id: str
    language: str
    difficulty: str | None
    board_id: str | None = None
    grade_id: str | None = None
    subject_id: str | None = None
    chapter_id: str | None = None
    topic_id: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_job(cls, job: HydrationJob) -> "HydrationContext":
        return cls(
            job_id=job.id,
            job_kind=JobKind(job.job_kind),
            target_type=job.target_type,
            target_id=job.target_id,
            language=job.language,
            difficulty=None if job.difficulty == "any" else job.difficulty,
            board_id=job.board_id,
            grade_id=job.grade_id,
            subject_id=job.subject_id,
            chapter_id=job.chapter_id,
            topic_id=job.topic_id,
            payload=dict(job.payload_json or {}),
        )


@dataclass(frozen=True)
class HydrationResult:
    content: dict[str, Any]
    metadata: dict[str, Any] = field(default_factory=dict)


class ContentGenerator(Protocol):
    async def generate(self, context: HydrationContext) -> Any:
        ...


class Hydrator(Protocol):
    kind: JobKind

    async def hydrate(self, context: HydrationContext) -> HydrationResult:
        ...


def extract_json(text: str) -> Any:
    # Accept fenced or bare JSON; anything else is a schema failure, not a crash.
    candidate = text.strip()
    fenced = _FENCE_RE.search(candidate)
    if fenced:
        candidate = fenced.group(1).strip()
    try:
        return json.loads(candidate)
    except ValueError:
        pass
    start = candidate.find("{")
    end = candidate.rfind("}")
    if start != -1 and end > start:
        try:
            return json.loads(candidate[start:end + 1])
        except ValueError:
            pass
    raise SchemaInvalidError("unparseable_json", details={"snippet": text[:200]})


class LLMContentGenerator:
    def __init__(
        self,
        provider_factory: Callable[[str | None, threading.Event | None], LLMProvider] = get_llm_provider,
        *,
        timeout_s: float | None = None,
    ) -> None:
        self._provider_factory = provider_factory
        self._timeout_s = float(timeout_s or get_settings().content_job_timeout_s)

    async def generate(self, context: HydrationContext) -> Any:
        messages = build_generation_messages(context)
        cancel_event = threading.Event()
        provider = self._provider_factory(context.job_id, cancel_event)

        def run_stream() -> str:
            return "".join(provider.stream(messages))

        try:
            text = await asyncio.wait_for(asyncio.to_thread(run_stream), timeout=self._timeout_s)
        except asyncio.TimeoutError as exc:
            # Signal the provider thread so it stops consuming the stream.
            cancel_event.set()
            raise JobTimeoutError(f"Generation for job {context.job_id} exceeded {self._timeout_s:.0f}s") from exc
        logger.debug("content_generated job_id=%s chars=%s", context.job_id, len(text))
        return extract_json(text)
