from __future__ import annotations

from dataclasses import dataclass
import re
from typing import Any, Iterator

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from contentengine.core.errors import (
    ContextMismatchError,
    PlaceholderContentError,
    SchemaInvalidError,
    SemanticWeaknessError,
)
from contentengine.domain.jobs import JobKind


# Only patterns that clearly mark stub output; ordinary teaching phrases must pass.
_PLACEHOLDER_PATTERNS = [
    re.compile(r"content coming soon", re.IGNORECASE),
    re.compile(r"to be added later", re.IGNORECASE),
    re.compile(r"placeholder", re.IGNORECASE),
    re.compile(r"lorem ipsum", re.IGNORECASE),
    re.compile(r"\[insert .+\]", re.IGNORECASE),
    re.compile(r"TBD"),
]

_MIN_NOTES_CHARS = 100
_MIN_EXPLANATION_CHARS = 20


class _Output(BaseModel):
    # Models add fields freely; only the contract fields are enforced.
    model_config = ConfigDict(extra="allow")

    language: str | None = None


class NotesOutput(_Output):
    title: str
    notes: str
    summary: str | None = None


class QuestionItem(BaseModel):
    model_config = ConfigDict(extra="allow")

    question: str
    answer: str
    options: list[str] | None = None
    explanation: str | None = None


class QuestionSetOutput(_Output):
    questions: list[QuestionItem]
    difficulty: str | None = None


class TopicItem(BaseModel):
    model_config = ConfigDict(extra="allow")

    title: str


class ChapterItem(BaseModel):
    model_config = ConfigDict(extra="allow")

    title: str
    topics: list[str | TopicItem] = Field(default_factory=list)


class SyllabusOutput(_Output):
    chapters: list[ChapterItem]


OUTPUT_SCHEMAS: dict[JobKind, type[_Output]] = {
    JobKind.SYLLABUS: SyllabusOutput,
    JobKind.NOTES: NotesOutput,
    JobKind.QUESTIONS: QuestionSetOutput,
    JobKind.TESTS: QuestionSetOutput,
    JobKind.ASSEMBLE: QuestionSetOutput,
}


@dataclass(frozen=True)
class ValidationContext:
    job_kind: JobKind
    language: str | None = None
    difficulty: str | None = None


def _iter_strings(value: Any, path: str = "$") -> Iterator[tuple[str, str]]:
    if isinstance(value, str):
        yield path, value
    elif isinstance(value, dict):
        for key, item in value.items():
            yield from _iter_strings(item, f"{path}.{key}")
    elif isinstance(value, list):
        for index, item in enumerate(value):
            yield from _iter_strings(item, f"{path}[{index}]")


def find_placeholder(parsed: Any) -> tuple[str, str] | None:
    # Return the first (path, snippet) carrying a stub phrase.
    for path, text in _iter_strings(parsed):
        for pattern in _PLACEHOLDER_PATTERNS:
            if pattern.search(text):
                return path, text[:200]
    return None


def _check_schema(parsed: Any, kind: JobKind) -> _Output:
    if not parsed:
        raise SchemaInvalidError("empty_response")
    schema = OUTPUT_SCHEMAS.get(kind)
    if schema is None:
        raise SchemaInvalidError("job_kind_unknown", details={"job_kind": str(kind)})
    try:
        return schema.model_validate(parsed)
    except PydanticValidationError as exc:
        raise SchemaInvalidError(
            f"{kind.value}_schema_invalid",
            details={"errors": exc.errors(include_url=False, include_context=False)},
        ) from exc


def _check_semantics(output: _Output) -> None:
    if isinstance(output, NotesOutput):
        if len(output.notes.strip()) < _MIN_NOTES_CHARS:
            raise SemanticWeaknessError("notes_too_short", details={"length": len(output.notes.strip())})
    elif isinstance(output, QuestionSetOutput):
        if not output.questions:
            raise SemanticWeaknessError("no_questions")
        for item in output.questions:
            if not item.explanation or len(item.explanation.strip()) < _MIN_EXPLANATION_CHARS:
                raise SemanticWeaknessError(
                    "missing_question_explanation",
                    details={"question": item.question[:200]},
                )
    elif isinstance(output, SyllabusOutput):
        if not any(chapter.topics for chapter in output.chapters):
            raise SemanticWeaknessError("syllabus_without_topics", details={"chapters": len(output.chapters)})


def _check_context(output: _Output, context: ValidationContext) -> None:
    declared_difficulty = getattr(output, "difficulty", None)
    if context.difficulty and declared_difficulty:
        if declared_difficulty.strip().lower() != context.difficulty.strip().lower():
            raise ContextMismatchError(
                "difficulty_mismatch",
                details={"expected": context.difficulty, "got": declared_difficulty},
            )
    declared_language = output.language or (output.model_extra or {}).get("lang")
    if context.language and declared_language:
        if str(declared_language).strip().lower() != context.language.strip().lower():
            raise ContextMismatchError(
                "language_mismatch",
                details={"expected": context.language, "got": declared_language},
            )


def validate_or_throw(parsed: Any, context: ValidationContext) -> bool:
    """Validate generated output before it is trusted.

    Runs schema, placeholder, semantic and context checks in that order and
    raises the first failing category. Each category is a distinct error type
    so operators can tell malformed output from output that ignored the request.
    """
    output = _check_schema(parsed, context.job_kind)
    hit = find_placeholder(parsed)
    if hit is not None:
        path, snippet = hit
        raise PlaceholderContentError("placeholder_content_detected", details={"path": path, "snippet": snippet})
    _check_semantics(output)
    _check_context(output, context)
    return True
