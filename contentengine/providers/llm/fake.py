from __future__ import annotations

import json
import re
from typing import Callable, Iterable


_HINT_RE = re.compile(r"^(job_kind|language|difficulty|topic)=(.*)$", re.MULTILINE)


def _canned_output(hints: dict[str, str]) -> dict:
    # Deterministic, validator-clean output per job kind for local runs and tests.
    kind = hints.get("job_kind", "notes")
    language = hints.get("language") or "en"
    topic = hints.get("topic") or "the topic"
    if kind == "notes":
        body = (
            f"These notes introduce {topic}. They define the key terms, walk through a worked example, "
            "and close with common mistakes students make and how to avoid them in exams."
        )
        return {"title": f"Notes on {topic}", "notes": body, "summary": f"Key ideas of {topic}.", "language": language}
    if kind == "syllabus":
        return {
            "chapters": [
                {"title": "Foundations", "topics": ["Core definitions", "Basic operations"]},
                {"title": "Applications", "topics": [{"title": "Worked problems"}]},
            ],
            "language": language,
        }
    question = {
        "question": f"Which statement about {topic} is correct?",
        "options": ["A", "B", "C", "D"],
        "answer": "A",
        "explanation": f"Option A restates the defining property of {topic} covered in the notes.",
    }
    output: dict = {"questions": [question], "language": language}
    if hints.get("difficulty") and hints["difficulty"] != "any":
        output["difficulty"] = hints["difficulty"]
    return output


class FakeLLMProvider:
    def __init__(self, response: str | Callable[[list[dict]], str] | None = None) -> None:
        # Deterministic response keeps tests stable without external calls.
        self._response = response

    def _render(self, messages: list[dict]) -> str:
        if callable(self._response):
            return self._response(messages)
        if self._response is not None:
            return self._response
        prompt = "\n".join(str(msg.get("content", "")) for msg in messages)
        hints = {key: value.strip() for key, value in _HINT_RE.findall(prompt)}
        return "```json\n" + json.dumps(_canned_output(hints)) + "\n```"

    def stream(self, messages: list[dict]) -> Iterable[str]:
        text = self._render(messages)
        # Chunk the text to mimic streaming deltas.
        for start in range(0, len(text), 64):
            yield text[start:start + 64]
