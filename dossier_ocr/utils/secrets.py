"""Resolve ``sm://`` Secret Manager references used in configuration values."""

from __future__ import annotations

import logging
from typing import Any

from google.cloud import secretmanager

from dossier_ocr.errors import ConfigurationError

_LOG = logging.getLogger("config.secrets")

SECRET_SCHEME = "sm://"
_RESOLVED: dict[str, str] = {}


class SecretReferenceError(ConfigurationError):
    """Raised when an ``sm://`` reference is malformed or cannot be read."""


def secret_version_path(reference: str, project_id: str | None) -> str:
    """Expand ``name[:version]`` or a full resource path into a version path."""
    body = reference.strip()
    if not body:
        raise SecretReferenceError("Empty secret reference")
    if body.startswith("projects/"):
        if "/versions/" in body:
            return body
        base, _, version = body.partition(":")
        return f"{base.rstrip('/')}/versions/{version.strip() or 'latest'}"
    if not project_id:
        raise SecretReferenceError("project_id is required for short sm:// references")
    name, _, version = body.partition(":")
    name = name.strip()
    if not name:
        raise SecretReferenceError("Secret name missing in sm:// reference")
    return f"projects/{project_id}/secrets/{name}/versions/{version.strip() or 'latest'}"


def resolve_secret(
    value: Any,
    *,
    project_id: str | None = None,
    client: Any | None = None,
) -> Any:
    """Return the secret payload for ``sm://`` values, anything else unchanged."""
    if not isinstance(value, str) or not value.strip().startswith(SECRET_SCHEME):
        return value
    reference = value.strip()
    if reference in _RESOLVED:
        return _RESOLVED[reference]

    path = secret_version_path(reference[len(SECRET_SCHEME) :], project_id)
    try:
        sm_client = client or secretmanager.SecretManagerServiceClient()
        response = sm_client.access_secret_version(name=path)
    except Exception as exc:  # noqa: BLE001 - normalised for config loading
        raise SecretReferenceError(f"Failed to access secret {path}: {exc}") from exc

    data = getattr(getattr(response, "payload", None), "data", None)
    if not data:
        raise SecretReferenceError(f"Secret {path} returned no payload")
    resolved = data.decode("utf-8")
    _RESOLVED[reference] = resolved
    _LOG.info("secret_resolved", extra={"secret_path": path})
    return resolved


def clear_secret_cache() -> None:
    _RESOLVED.clear()


__all__ = [
    "SecretReferenceError",
    "clear_secret_cache",
    "resolve_secret",
    "secret_version_path",
]
