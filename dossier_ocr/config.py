"""Runtime configuration for the dossier extraction pipeline.

Values come from environment variables (or a local ``.env``). The pipeline
needs three external services:

 - Google Cloud Storage (input bucket for uploads, output bucket for OCR output)
 - Document AI batch OCR (processor in ``DOC_AI_LOCATION``)
 - OpenAI chat completions for the four extraction passes

Timeouts, pool size and window size are operator supplied and clamped to
safe ranges through the accessor properties below, so callers never read the
raw fields directly.
"""
from __future__ import annotations

from functools import lru_cache
from typing import Any

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from dossier_ocr.errors import ConfigurationError
from dossier_ocr.utils.secrets import resolve_secret

LLM_TIMEOUT_FLOOR = 30.0
LLM_TIMEOUT_CEILING = 240.0
FALLBACK_TIMEOUT_FLOOR = 60.0
FALLBACK_TIMEOUT_CEILING = 480.0
WORKERS_FLOOR, WORKERS_CEILING = 1, 4
WINDOW_FLOOR, WINDOW_CEILING = 6, 12


def clamp(value: float, floor: float, ceiling: float) -> float:
    return max(floor, min(ceiling, value))


def sanitize_bucket(value: str | None) -> str:
    """Strip ``gs://`` and surrounding slashes from a bucket setting."""
    cleaned = (value or "").strip()
    if cleaned.startswith("gs://"):
        cleaned = cleaned[len("gs://") :]
    return cleaned.strip("/")


class AppConfig(BaseSettings):
    project_id: str = Field('', validation_alias=AliasChoices('GOOGLE_CLOUD_PROJECT_ID', 'PROJECT_ID'))
    client_email: str | None = Field(None, validation_alias='GOOGLE_CLOUD_CLIENT_EMAIL')
    private_key: str | None = Field(None, validation_alias='GOOGLE_CLOUD_PRIVATE_KEY')
    input_bucket: str = Field('', validation_alias='GCS_INPUT_BUCKET')
    output_bucket: str = Field('', validation_alias='GCS_OUTPUT_BUCKET')
    output_prefix: str = Field('ocr-out', validation_alias='GCS_OUTPUT_PREFIX')
    docai_location: str = Field('eu', validation_alias='DOC_AI_LOCATION')
    docai_processor_id: str = Field('', validation_alias='DOC_AI_PROCESSOR_ID')
    ocr_language_hints_raw: str = Field('', validation_alias=AliasChoices('OCR_LANGUAGE_HINTS', 'VISION_LANGUAGE_HINTS'))
    openai_api_key: str | None = Field(None, validation_alias='OPENAI_API_KEY')
    index_model: str = Field('gpt-4o-mini', validation_alias='INDEX_MODEL')
    extract_model: str = Field('gpt-4o-mini', validation_alias='EXTRACT_MODEL')
    consolidate_model: str = Field('gpt-4o', validation_alias='CONSOLIDATE_MODEL')
    consolidate_fallback_model: str = Field('gpt-4o-mini', validation_alias='CONSOLIDATE_FALLBACK_MODEL')
    validate_model: str = Field('gpt-4o-mini', validation_alias='VALIDATE_MODEL')
    llm_timeout_seconds: float = Field(120.0, validation_alias='LLM_TIMEOUT_SECONDS')
    consolidate_fallback_timeout_seconds: float = Field(300.0, validation_alias='CONSOLIDATE_FALLBACK_TIMEOUT_SECONDS')
    extract_concurrency: int = Field(2, validation_alias='EXTRACT_CONCURRENCY')
    index_window_size: int = Field(10, validation_alias='INDEX_WINDOW_SIZE')
    compact_field_chars: int = Field(400, validation_alias='COMPACT_FIELD_CHARS')
    compact_max_quotes: int = Field(3, validation_alias='COMPACT_MAX_QUOTES')
    cluster_max_chars: int = Field(60000, validation_alias='CLUSTER_MAX_CHARS')
    upload_timeout_seconds: float = Field(180.0, validation_alias='UPLOAD_TIMEOUT_SECONDS')
    signed_url_ttl_seconds: int = Field(300, validation_alias='SIGNED_URL_TTL_SECONDS')
    download_timeout_seconds: float = Field(120.0, validation_alias='DOWNLOAD_TIMEOUT_SECONDS')
    proxy_base_url: str | None = Field(
        None,
        validation_alias=AliasChoices('EXTERNAL_PUBLIC_BASE_URL', 'NEXT_PUBLIC_APP_URL'),
    )
    ocr_timeout_seconds: float = Field(1800.0, validation_alias='OCR_TIMEOUT_SECONDS')
    ocr_poll_interval_seconds: float = Field(5.0, validation_alias='OCR_POLL_INTERVAL_SECONDS')
    cleanup_timeout_seconds: float = Field(10.0, validation_alias='CLEANUP_TIMEOUT_SECONDS')
    progress_queue_size: int = Field(256, validation_alias='PROGRESS_QUEUE_SIZE')
    results_prefix: str | None = Field(None, validation_alias='RESULTS_PREFIX')

    # Hard (safe) defaults
    max_pdf_bytes: int = 50 * 1024 * 1024
    model_config = SettingsConfigDict(
        env_file='.env', extra='ignore', case_sensitive=False, populate_by_name=True
    )

    def model_post_init(self, __context: Any) -> None:  # pylint: disable=W0221
        """Resolve secret references and normalise bucket names."""
        for field_name in ("openai_api_key", "private_key", "client_email", "docai_processor_id"):
            value = getattr(self, field_name, None)
            resolved = resolve_secret(value, project_id=self.project_id or None)
            if resolved is not None:
                setattr(self, field_name, resolved)
        if self.private_key:
            # Keys pasted into env files usually carry literal "\n" sequences.
            self.private_key = self.private_key.replace("\\n", "\n")
        self.input_bucket = sanitize_bucket(self.input_bucket)
        self.output_bucket = sanitize_bucket(self.output_bucket)
        self.output_prefix = (self.output_prefix or "ocr-out").strip("/")

    @property
    def ocr_language_hints(self) -> list[str]:
        return [hint.strip() for hint in self.ocr_language_hints_raw.split(",") if hint.strip()]

    @property
    def llm_timeout(self) -> float:
        return clamp(float(self.llm_timeout_seconds), LLM_TIMEOUT_FLOOR, LLM_TIMEOUT_CEILING)

    @property
    def fallback_timeout(self) -> float:
        """Pass 3 fallback bound; allowed a longer ceiling and never shorter than the primary."""
        bounded = clamp(
            float(self.consolidate_fallback_timeout_seconds),
            FALLBACK_TIMEOUT_FLOOR,
            FALLBACK_TIMEOUT_CEILING,
        )
        return max(bounded, self.llm_timeout)

    @property
    def worker_count(self) -> int:
        return int(clamp(int(self.extract_concurrency), WORKERS_FLOOR, WORKERS_CEILING))

    @property
    def window_size(self) -> int:
        return int(clamp(int(self.index_window_size), WINDOW_FLOOR, WINDOW_CEILING))

    @property
    def docai_processor_name(self) -> str:
        return (
            f"projects/{self.project_id}/locations/{self.docai_location}"
            f"/processors/{self.docai_processor_id}"
        )

    def validate_required(self) -> None:
        required_pairs = [
            ("project_id", self.project_id, "GOOGLE_CLOUD_PROJECT_ID"),
            ("input_bucket", self.input_bucket, "GCS_INPUT_BUCKET"),
            ("output_bucket", self.output_bucket, "GCS_OUTPUT_BUCKET"),
            ("docai_processor_id", self.docai_processor_id, "DOC_AI_PROCESSOR_ID"),
            ("openai_api_key", self.openai_api_key, "OPENAI_API_KEY"),
        ]
        missing = [env_name for _name, value, env_name in required_pairs if not value]
        if missing:
            raise ConfigurationError(
                "Missing required configuration values: " + ", ".join(sorted(missing))
            )
        if bool(self.client_email) != bool(self.private_key):
            raise ConfigurationError(
                "GOOGLE_CLOUD_CLIENT_EMAIL and GOOGLE_CLOUD_PRIVATE_KEY must be set together"
            )


@lru_cache
def get_config() -> AppConfig:
    return AppConfig()  # type: ignore[call-arg]


__all__ = ["AppConfig", "clamp", "get_config", "sanitize_bucket"]
