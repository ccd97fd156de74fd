from __future__ import annotations

import pytest

from contentengine.core.errors import SchemaInvalidError
from contentengine.services.hydrators.base import extract_json


def test_fenced_json_is_unwrapped() -> None:
    assert extract_json('```json\n{"title": "A"}\n```') == {"title": "A"}


def test_bare_json_is_parsed() -> None:
    assert extract_json('  [1, 2, 3]  ') == [1, 2, 3]


def test_object_embedded_in_prose_is_recovered() -> None:
    text = 'Sure, here is the content: {"title": "A", "notes": "B"} Let me know if you need more.'
    assert extract_json(text) == {"title": "A", "notes": "B"}


def test_unparseable_text_is_schema_invalid() -> None:
    with pytest.raises(SchemaInvalidError) as exc_info:
        extract_json("I cannot help with that.")
    assert str(exc_info.value) == "unparseable_json"
    assert exc_info.value.details["snippet"] == "I cannot help with that."
