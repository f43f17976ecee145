"""Prompt templates for the four extraction passes."""

from __future__ import annotations

from typing import Sequence

NO_ADDENDUM = "NO_ADDENDUM"
ADDENDUM_HEADING = "## Addendum: coverage review"
ADDENDUM_DELIMITER = "\n\n---\n\n"

_ANALYST = (
    "You analyse scanned German official and legal documents (driving licence and MPU dossiers). "
    "Work only from the OCR text you are given. Never invent facts; when a value is absent write "
    '"not stated".'
)

INDEX_SYSTEM = (
    f"{_ANALYST} Your task is to index the dossier: group pages that describe the same incident, "
    "offence or procedure. Answer with JSON only."
)

INDEX_USER = """OCR text of {pages} pages, each page introduced by a marker line:

{text}

Return a JSON object of the form
{{"candidates": [{{"title": "...", "pages": [1, 2], "reason": "..."}}]}}
Every page number must lie between 1 and {pages}. Pages may appear in more than one candidate."""

EXTRACT_SYSTEM = (
    f"{_ANALYST} Extract exactly one structured record for the incident described by the pages "
    "you receive. Quotes must be short, verbatim and carry the page they came from. "
    "Answer with JSON only."
)

EXTRACT_USER = """Cluster: {title}
Pages: {pages}
Indexer note: {reason}

{text}

Return a JSON object with the keys
title, source_pages (subset of {pages}), what, when, where, case_numbers (list),
legal_references (list), penalties, points, measurements (list), status,
quotes (list of {{"text": "...", "page": n}}).
Use null for absent scalar values and [] for absent lists."""

CONSOLIDATE_SYSTEM = (
    f"{_ANALYST} Merge the extraction records into one coherent report in Markdown. "
    "Start with an overview of all incidents in chronological order, then one section per "
    "incident with what, when, where, reference numbers, legal references, penalties, points, "
    "measurements, status and quotes. Cite pages as (p. n). Write \"not stated\" for every "
    "missing value instead of leaving it out."
)

CONSOLIDATE_USER = """Document: {file_name} ({pages} pages)
Report date: {report_date}
{note}
Extraction records (JSON):
{records}"""

COMPACTION_NOTE = (
    "Note: the records below were compacted (long fields shortened, quotes limited) to fit "
    "a retry; do not speculate about the removed detail."
)

VALIDATE_SYSTEM = (
    f"{_ANALYST} Review a consolidated report against the list of page clusters and failed "
    "clusters. If the report covers everything, answer with exactly "
    f"{NO_ADDENDUM}. Otherwise answer with a short Markdown list of what is missing, "
    "citing pages."
)

VALIDATE_USER = """Document: {file_name} ({pages} pages)

Clusters:
{clusters}

Failed clusters:
{failures}

Report:
{report}"""


def format_pages(pages: Sequence[int]) -> str:
    return ", ".join(str(page) for page in pages)


__all__ = [
    "ADDENDUM_DELIMITER",
    "ADDENDUM_HEADING",
    "COMPACTION_NOTE",
    "CONSOLIDATE_SYSTEM",
    "CONSOLIDATE_USER",
    "EXTRACT_SYSTEM",
    "EXTRACT_USER",
    "INDEX_SYSTEM",
    "INDEX_USER",
    "NO_ADDENDUM",
    "VALIDATE_SYSTEM",
    "VALIDATE_USER",
    "format_pages",
]
