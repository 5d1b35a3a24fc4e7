"""Unit tests for JSON extraction from completion text."""

import pytest

from ai_gateway.llm.errors import ExtractionError
from ai_gateway.llm.json_extractor import PREVIEW_CHARS, extract_json
from ai_gateway.llm.schemas import DocumentExtraction


class TestExtractJson:
    """Tests for extract_json without a schema."""

    def test_plain_object(self):
        assert extract_json('{"a": 1}') == {"a": 1}

    def test_fenced_block(self):
        text = 'Here you go:\n```json\n{"name": "Hemograma", "count": 2}\n```\nAnything else?'
        assert extract_json(text) == {"name": "Hemograma", "count": 2}

    def test_fence_without_language(self):
        assert extract_json('```\n{"ok": true}\n```') == {"ok": True}

    def test_prose_around_object(self):
        text = 'Sure! The result is {"value": "13.5", "unit": "g/dL"} as requested.'
        assert extract_json(text) == {"value": "13.5", "unit": "g/dL"}

    def test_nested_braces(self):
        text = 'prefix {"outer": {"inner": [1, 2]}} suffix'
        assert extract_json(text) == {"outer": {"inner": [1, 2]}}

    def test_top_level_array(self):
        assert extract_json("[1, 2, 3]") == [1, 2, 3]

    def test_empty_text(self):
        with pytest.raises(ExtractionError) as exc_info:
            extract_json("   ")
        assert exc_info.value.step == "input"

    def test_non_string_input(self):
        with pytest.raises(ExtractionError) as exc_info:
            extract_json(None)  # type: ignore[arg-type]
        assert exc_info.value.step == "input"

    def test_no_object(self):
        with pytest.raises(ExtractionError) as exc_info:
            extract_json("I could not find any values in this document.")
        assert exc_info.value.step == "locate"

    def test_invalid_json(self):
        with pytest.raises(ExtractionError) as exc_info:
            extract_json('{"a": 1,, "b": 2}')
        assert exc_info.value.step == "parse"
        assert "position" in exc_info.value.message

    def test_preview_is_bounded(self):
        text = "no json here " * 200
        with pytest.raises(ExtractionError) as exc_info:
            extract_json(text)
        assert len(exc_info.value.preview) == PREVIEW_CHARS


class TestExtractJsonWithSchema:
    """Tests for extract_json with pydantic validation."""

    def test_valid_schema(self):
        text = """```json
        {
          "document_name": "Hemograma Completo",
          "document_date": "2024-03-01",
          "issuer": "Lab Central",
          "category": "Blood",
          "parameters": [{"name": "Hemoglobina", "value": 13.5, "unit": "g/dL", "status": "normal"}]
        }
        ```"""
        result = extract_json(text, DocumentExtraction)
        assert isinstance(result, DocumentExtraction)
        assert result.document_name == "Hemograma Completo"
        # Numeric values are coerced to strings
        assert result.parameters[0].value == "13.5"

    def test_schema_violation(self):
        with pytest.raises(ExtractionError) as exc_info:
            extract_json('{"category": "Blood"}', DocumentExtraction)
        assert exc_info.value.step == "validate"
        assert "document_name" in exc_info.value.message

    def test_invalid_enum_value(self):
        text = '{"document_name": "X", "category": "Y", "parameters": [{"name": "a", "value": "1", "status": "weird"}]}'
        with pytest.raises(ExtractionError) as exc_info:
            extract_json(text, DocumentExtraction)
        assert exc_info.value.step == "validate"
        assert "parameters.0.status" in exc_info.value.message
