"""Data contracts passed between the extraction passes.

OCR output (``Page``/``OcrResult``) and pass bookkeeping are plain
dataclasses. Anything parsed out of model output (candidate clusters,
extraction records) is a pydantic model so malformed answers fail validation
in one place and are handled like any other failed call.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Iterable

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from dossier_ocr.errors import ExtractionError

NOT_STATED = "not stated"
PAGE_MARKER = "--- PAGE {number} ---"
SCALAR_FIELDS = ("what", "when", "where", "penalties", "points", "status")

_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


@dataclass(slots=True, frozen=True)
class Page:
    number: int
    text: str


@dataclass(slots=True, frozen=True)
class OcrResult:
    pages: tuple[Page, ...]
    output_uri: str | None = None

    @property
    def page_count(self) -> int:
        return len(self.pages)

    @property
    def combined_text(self) -> str:
        return join_pages(self.pages)


def join_pages(pages: Iterable[Page]) -> str:
    """Concatenate page texts with explicit page markers for citation."""
    parts = [f"{PAGE_MARKER.format(number=page.number)}\n{page.text.strip()}" for page in pages]
    return "\n\n".join(parts)


# Pass 1 --------------------------------------------------------------------


def _page_numbers(value: Any) -> list[int]:
    if value is None:
        return []
    if isinstance(value, (int, str)):
        value = [value]
    pages: list[int] = []
    for item in value:
        try:
            pages.append(int(item))
        except (TypeError, ValueError):
            continue
    return pages


class CandidateCluster(BaseModel):
    model_config = ConfigDict(frozen=True)

    title: str = ""
    pages: tuple[int, ...]
    reason: str = ""

    @field_validator("title", "reason", mode="before")
    @classmethod
    def _strip_text(cls, value: Any) -> str:
        return str(value or "").strip()

    @field_validator("pages", mode="before")
    @classmethod
    def _coerce_pages(cls, value: Any) -> tuple[int, ...]:
        return tuple(_page_numbers(value))


class IndexResponse(BaseModel):
    candidates: list[CandidateCluster] = Field(default_factory=list)


# Pass 2 --------------------------------------------------------------------


class Quote(BaseModel):
    text: str
    page: int | None = None

    @field_validator("text", mode="before")
    @classmethod
    def _text_as_str(cls, value: Any) -> str:
        return "" if value is None else str(value)

    @field_validator("page", mode="before")
    @classmethod
    def _coerce_page(cls, value: Any) -> int | None:
        pages = _page_numbers(value)
        return pages[0] if pages else None


class ExtractionRecord(BaseModel):
    """Structured facts for one incident ("delict") found in a cluster."""

    model_config = ConfigDict(extra="ignore")

    title: str = ""
    source_pages: list[int] = Field(default_factory=list)
    what: str | None = None
    when: str | None = None
    where: str | None = None
    case_numbers: list[str] = Field(default_factory=list)
    legal_references: list[str] = Field(default_factory=list)
    penalties: str | None = None
    points: str | None = None
    measurements: list[str] = Field(default_factory=list)
    status: str | None = None
    quotes: list[Quote] = Field(default_factory=list)

    @field_validator("case_numbers", "legal_references", "measurements", mode="before")
    @classmethod
    def _listify(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, (str, int, float)):
            return [str(value)]
        return [str(item) for item in value if item not in (None, "")]

    @field_validator("source_pages", mode="before")
    @classmethod
    def _coerce_source_pages(cls, value: Any) -> list[int]:
        return _page_numbers(value)

    @field_validator("title", mode="before")
    @classmethod
    def _title_as_text(cls, value: Any) -> str:
        return str(value or "").strip()

    @field_validator(*SCALAR_FIELDS, mode="before")
    @classmethod
    def _scalar_as_text(cls, value: Any) -> str | None:
        if value is None or value == "":
            return None
        if isinstance(value, (list, tuple)):
            return "; ".join(str(item) for item in value if item not in (None, "")) or None
        return str(value)

    def to_prompt_dict(self) -> dict[str, Any]:
        """Serialisable view with absent scalars spelled out as "not stated"."""
        payload = self.model_dump()
        for key in SCALAR_FIELDS:
            if not payload.get(key):
                payload[key] = NOT_STATED
        return payload


@dataclass(slots=True, frozen=True)
class ClusterFailure:
    index: int
    title: str
    error: str
    error_type: str


@dataclass(slots=True)
class ExtractionOutcome:
    records: list[ExtractionRecord] = field(default_factory=list)
    failures: list[ClusterFailure] = field(default_factory=list)
    total_clusters: int = 0


# Parsing -------------------------------------------------------------------


def load_json_payload(raw: str) -> Any:
    """Decode a model answer that should be JSON, tolerating code fences."""
    text = _FENCE.sub("", (raw or "").strip())
    if not text:
        raise ExtractionError("Model returned an empty answer")
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        start, end = text.find("{"), text.rfind("}")
        if start != -1 and end > start:
            try:
                return json.loads(text[start : end + 1])
            except json.JSONDecodeError:
                pass
        raise ExtractionError(f"Model answer is not valid JSON: {exc}") from exc


def parse_index_response(raw: str) -> IndexResponse:
    data = load_json_payload(raw)
    if isinstance(data, list):
        data = {"candidates": data}
    try:
        return IndexResponse.model_validate(data)
    except ValidationError as exc:
        raise ExtractionError(f"Index answer failed schema validation: {exc}") from exc


def parse_extraction_record(raw: str) -> ExtractionRecord:
    data = load_json_payload(raw)
    if isinstance(data, dict) and isinstance(data.get("record"), dict):
        data = data["record"]
    try:
        return ExtractionRecord.model_validate(data)
    except ValidationError as exc:
        raise ExtractionError(f"Extraction answer failed schema validation: {exc}") from exc


__all__ = [
    "NOT_STATED",
    "SCALAR_FIELDS",
    "CandidateCluster",
    "ClusterFailure",
    "ExtractionOutcome",
    "ExtractionRecord",
    "IndexResponse",
    "OcrResult",
    "Page",
    "Quote",
    "join_pages",
    "load_json_payload",
    "parse_extraction_record",
    "parse_index_response",
]
