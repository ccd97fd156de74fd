from __future__ import annotations

import asyncio
import json
import threading
from typing import Any, Callable, Protocol

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from contentengine.core.config import get_settings
from contentengine.core.errors import JobTimeoutError, UnsupportedTargetError, ValidationError
from contentengine.domain.jobs import RegenerationTarget
from contentengine.domain.models import RegenerationJob
from contentengine.providers.llm.base import LLMProvider
from contentengine.providers.llm.factory import get_llm_provider
from contentengine.services.hydrators.base import extract_json


class LessonInstruction(BaseModel):
    syllabusId: str
    moduleId: str
    moduleTitle: str
    learningObjectives: list[str] = Field(min_length=1)
    lessonCount: int = Field(ge=1)


class QuizLesson(BaseModel):
    lessonId: str
    title: str
    objectives: list[str]


class QuizInstruction(BaseModel):
    lesson: QuizLesson


class ProjectInstruction(BaseModel):
    syllabusId: str
    moduleId: str
    moduleTitle: str
    learningObjectives: list[str] = Field(min_length=1)


_INSTRUCTION_MODELS: dict[str, type[BaseModel]] = {
    RegenerationTarget.LESSON: LessonInstruction,
    RegenerationTarget.QUIZ: QuizInstruction,
    RegenerationTarget.PROJECT: ProjectInstruction,
}

_OUTPUT_SHAPES = {
    RegenerationTarget.LESSON: '{"lessons": [{"title": str, "objectives": [str], "content": str}]}',
    RegenerationTarget.QUIZ: '{"questions": [{"question": str, "options": [str], "answer": str, "explanation": str}]}',
    RegenerationTarget.PROJECT: '{"title": str, "brief": str, "milestones": [str], "rubric": [str]}',
}


class RegenerationGenerator(Protocol):
    async def generate(self, job: RegenerationJob) -> dict[str, Any]:
        ...


def parse_instruction(target_type: str, instruction: dict[str, Any] | None) -> BaseModel:
    # Required fields differ per target; MODULE has no generator.
    if target_type == RegenerationTarget.MODULE:
        raise UnsupportedTargetError("MODULE regeneration is not supported")
    model = _INSTRUCTION_MODELS.get(target_type)
    if model is None:
        raise UnsupportedTargetError(f"Unsupported regeneration target type: {target_type}")
    try:
        return model.model_validate(instruction or {})
    except PydanticValidationError as exc:
        raise ValidationError(f"instruction missing required fields for {target_type} generation") from exc


class LLMRegenerationGenerator:
    def __init__(
        self,
        provider_factory: Callable[[str | None, threading.Event | None], LLMProvider] = get_llm_provider,
        *,
        timeout_s: float | None = None,
    ) -> None:
        self._provider_factory = provider_factory
        self._timeout_s = float(timeout_s or get_settings().content_job_timeout_s)

    async def generate(self, job: RegenerationJob) -> dict[str, Any]:
        instruction = parse_instruction(job.target_type, job.instruction_json)
        messages = [
            {
                "role": "system",
                "content": (
                    "You regenerate published course material. Respond with one JSON object of shape "
                    f"{_OUTPUT_SHAPES[job.target_type]} and nothing else."
                ),
            },
            {
                "role": "user",
                "content": f"target_type={job.target_type}\ntarget_id={job.target_id}\n"
                + json.dumps(instruction.model_dump(), sort_keys=True),
            },
        ]
        cancel_event = threading.Event()
        provider = self._provider_factory(job.id, cancel_event)

        def run_stream() -> str:
            return "".join(provider.stream(messages))

        try:
            text = await asyncio.wait_for(asyncio.to_thread(run_stream), timeout=self._timeout_s)
        except asyncio.TimeoutError as exc:
            cancel_event.set()
            raise JobTimeoutError(f"Regeneration for job {job.id} exceeded {self._timeout_s:.0f}s") from exc
        parsed = extract_json(text)
        if not isinstance(parsed, dict):
            parsed = {"items": parsed}
        return parsed
