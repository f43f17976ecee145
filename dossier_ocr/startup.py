"""Startup helpers for Google service account credentials."""

from __future__ import annotations

import logging
from typing import Any

from google.oauth2 import service_account

from dossier_ocr.config import AppConfig
from dossier_ocr.errors import ConfigurationError

_LOG = logging.getLogger(__name__)

GOOGLE_SCOPES = ("https://www.googleapis.com/auth/cloud-platform",)


def build_google_credentials(cfg: AppConfig) -> Any | None:
    """Service-account credentials from env values, or ``None`` to use ADC.

    ``GOOGLE_CLOUD_CLIENT_EMAIL`` and ``GOOGLE_CLOUD_PRIVATE_KEY`` are used as
    an inline key; anything else falls through to Application Default
    Credentials inside the google client libraries.
    """
    if not (cfg.client_email and cfg.private_key):
        _LOG.info("google_credentials", extra={"source": "adc"})
        return None
    info = {
        "type": "service_account",
        "project_id": cfg.project_id,
        "client_email": cfg.client_email,
        "private_key": cfg.private_key,
        "token_uri": "https://oauth2.googleapis.com/token",
    }
    try:
        credentials = service_account.Credentials.from_service_account_info(
            info, scopes=list(GOOGLE_SCOPES)
        )
    except (ValueError, KeyError) as exc:
        raise ConfigurationError(f"Invalid service account credentials: {exc}") from exc
    _LOG.info("google_credentials", extra={"source": "service_account"})
    return credentials


__all__ = ["GOOGLE_SCOPES", "build_google_credentials"]
