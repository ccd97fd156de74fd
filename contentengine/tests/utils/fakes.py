from __future__ import annotations

from typing import Any, Awaitable, Callable

from contentengine.core.errors import InfraError
from contentengine.domain.models import RegenerationJob
from contentengine.services.hydrators.base import HydrationContext


class InMemoryPublisher:
    def __init__(self) -> None:
        self.published: list[tuple[str, dict[str, Any], int]] = []

    async def publish(self, queue: str, payload: dict[str, Any], *, message_id: int) -> None:
        self.published.append((queue, payload, message_id))


class FlakyPublisher(InMemoryPublisher):
    """Fails the first ``failures`` pushes, then records like the in-memory publisher."""

    def __init__(self, failures: int = 1) -> None:
        super().__init__()
        self._failures = failures

    async def publish(self, queue: str, payload: dict[str, Any], *, message_id: int) -> None:
        if self._failures > 0:
            self._failures -= 1
            raise InfraError("redis unavailable")
        await super().publish(queue, payload, message_id=message_id)


class StaticGenerator:
    # Content generator returning a fixed value; the optional hook runs mid-generation.
    def __init__(
        self,
        output: Any = None,
        *,
        error: Exception | None = None,
        hook: Callable[[HydrationContext], Awaitable[None]] | None = None,
    ) -> None:
        self.output = output
        self.error = error
        self.hook = hook
        self.calls: list[HydrationContext] = []

    async def generate(self, context: HydrationContext) -> Any:
        self.calls.append(context)
        if self.hook is not None:
            await self.hook(context)
        if self.error is not None:
            raise self.error
        return self.output


class StaticRegenerationGenerator:
    def __init__(
        self,
        content: dict[str, Any] | None = None,
        *,
        error: Exception | None = None,
        hook: Callable[[RegenerationJob], Awaitable[None]] | None = None,
    ) -> None:
        self.content = content if content is not None else {"lessons": [{"title": "Intro", "content": "Body"}]}
        self.error = error
        self.hook = hook
        self.calls: list[str] = []

    async def generate(self, job: RegenerationJob) -> dict[str, Any]:
        self.calls.append(job.id)
        if self.hook is not None:
            await self.hook(job)
        if self.error is not None:
            raise self.error
        return self.content


NOTES_BODY = (
    "Photosynthesis converts light energy into chemical energy. Chlorophyll absorbs light, water is split, "
    "and carbon dioxide is fixed into glucose during the Calvin cycle."
)


def notes_output(**overrides: Any) -> dict[str, Any]:
    output = {"title": "Photosynthesis", "notes": NOTES_BODY, "summary": "Light to sugar.", "language": "en"}
    output.update(overrides)
    return output


def question_output(**overrides: Any) -> dict[str, Any]:
    output = {
        "questions": [
            {
                "question": "Where does the Calvin cycle take place?",
                "options": ["Stroma", "Thylakoid", "Nucleus", "Cytoplasm"],
                "answer": "Stroma",
                "explanation": "The Calvin cycle enzymes, including RuBisCO, sit in the chloroplast stroma.",
            }
        ],
        "language": "en",
    }
    output.update(overrides)
    return output


LESSON_INSTRUCTION = {
    "syllabusId": "S1",
    "moduleId": "M1",
    "moduleTitle": "Cell biology",
    "learningObjectives": ["Explain photosynthesis"],
    "lessonCount": 2,
}
