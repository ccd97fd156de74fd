from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from contentengine.services.hydrators.base import HydrationContext


_SHAPES = {
    "notes": '{"title": str, "notes": str, "summary": str, "language": str}',
    "questions": '{"questions": [{"question": str, "options": [str], "answer": str, "explanation": str}], '
    '"difficulty": str, "language": str}',
    "tests": '{"questions": [{"question": str, "options": [str], "answer": str, "explanation": str}], '
    '"difficulty": str, "language": str}',
    "assemble": '{"questions": [{"question": str, "options": [str], "answer": str, "explanation": str}], '
    '"difficulty": str, "language": str}',
    "syllabus": '{"chapters": [{"title": str, "topics": [str]}], "language": str}',
}


def build_generation_messages(context: "HydrationContext") -> list[dict[str, str]]:
    kind = context.job_kind.value
    system_prompt = (
        "You generate curriculum content for students. Respond with a single JSON object and nothing else. "
        f"The object must match this shape: {_SHAPES[kind]}. "
        "Write complete content; never use placeholders, stubs or 'coming soon' text. "
        "Every question needs an explanation of at least one full sentence."
    )
    # Key=value hints stay machine-readable for providers and offline fakes.
    hint_lines = [
        f"job_kind={kind}",
        f"language={context.language}",
        f"difficulty={context.difficulty or 'any'}",
        f"topic={context.payload.get('topic_name') or context.topic_id or context.target_id}",
    ]
    for label, value in (
        ("board", context.board_id),
        ("grade", context.grade_id),
        ("subject", context.subject_id),
        ("chapter", context.chapter_id),
    ):
        if value:
            hint_lines.append(f"{label}={value}")
    count = context.payload.get("count")
    if count:
        hint_lines.append(f"count={count}")
    return [
        {"role": "system", "content": system_prompt},
        {"role": "user", "content": "\n".join(hint_lines)},
    ]
