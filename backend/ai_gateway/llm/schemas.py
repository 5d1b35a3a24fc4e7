"""Structured output schemas for document extraction."""

from typing import Literal

from pydantic import BaseModel, Field, field_validator


class ExtractedParameter(BaseModel):
    """A single measured value read from a document."""

    name: str
    value: str
    unit: str | None = None
    reference_range: str | None = None
    status: Literal["normal", "high", "low", "critical"] | None = None

    @field_validator("value", mode="before")
    @classmethod
    def _coerce_value(cls, v: object) -> object:
        # Models frequently emit numbers for values
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return str(v)
        return v


class DocumentExtraction(BaseModel):
    """Structured result of a document extraction pipeline run."""

    document_name: str
    document_date: str | None = None
    issuer: str | None = None
    category: str
    parameters: list[ExtractedParameter] = Field(default_factory=list)


PLACEHOLDER_EXTRACTION = DocumentExtraction(
    document_name="Unidentified document",
    category="Other",
    parameters=[],
)


STRUCTURING_SYSTEM_PROMPT = """You extract structured data from documents such as lab reports.
Return ONLY a JSON object with this shape:
{
  "document_name": "string",
  "document_date": "YYYY-MM-DD or null",
  "issuer": "issuing laboratory or organisation, or null",
  "category": "string",
  "parameters": [
    {
      "name": "string",
      "value": "string",
      "unit": "string or null",
      "reference_range": "string or null",
      "status": "normal | high | low | critical or null"
    }
  ]
}
Copy values and units exactly as printed. Do not invent parameters."""


VISION_OCR_PROMPT = (
    "Extract ALL visible text from this image. Preserve the layout, including tables, "
    "values, units and reference ranges. Return only the extracted text."
)
