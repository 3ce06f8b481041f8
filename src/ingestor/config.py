"""Configuration loading for the ingestor and its reconciliation engine."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import fields
from pathlib import Path
from typing import Any, Mapping

import keyring
from keyring.errors import KeyringError

from ingestor.models import IngestorConfig, ReconciliationConfig

logger = logging.getLogger(__name__)

SERVICE_NAME = "wallpaper-ingestor"
KEY_NAME = "s3_secret_access_key"
ENV_PREFIX = "INGESTOR_"
DEFAULT_CONFIG_PATH = Path("config/ingestor_config.json")


def get_s3_secret() -> str | None:
    """Get the S3 secret key: system keyring first, then INGESTOR_S3_SECRET_ACCESS_KEY.

    Returns ``None`` when neither is set, so that the SDK's own
    credential chain can take over.
    """
    try:
        secret = keyring.get_password(SERVICE_NAME, KEY_NAME)
    except KeyringError as exc:
        logger.debug("Keyring unavailable: %s", exc)
        secret = None
    if secret:
        return secret
    return os.environ.get(f"{ENV_PREFIX}S3_SECRET_ACCESS_KEY") or None


def _coerce(value: str, current: object) -> object:
    """Convert an environment string to the type of the field's default."""
    if isinstance(current, bool):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    if isinstance(current, int):
        return int(value)
    if isinstance(current, float):
        return float(value)
    return value


def _known(cls: type, data: Mapping[str, Any]) -> dict[str, Any]:
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in data.items() if k in names}


def _env_overrides(cls: type, defaults: object, prefix: str, environ: Mapping[str, str]) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    for f in fields(cls):
        if f.name == "reconciliation":
            continue
        raw = environ.get(f"{prefix}{f.name.upper()}")
        if raw is not None:
            overrides[f.name] = _coerce(raw, getattr(defaults, f.name))
    return overrides


def load_config(
    config_path: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> IngestorConfig:
    """Load ingestor configuration from JSON, the environment and keyring.

    Reads ``config/ingestor_config.json`` when *config_path* is ``None``.
    A missing file yields defaults.  Only recognised keys are used; a
    nested ``"reconciliation"`` object configures
    :class:`~ingestor.models.ReconciliationConfig`.

    Scalar fields can be overridden with ``INGESTOR_<FIELD>`` variables,
    and reconciliation fields with ``INGESTOR_RECONCILIATION_<FIELD>``.

    Raises:
        ValueError: If the resulting reconciliation settings are invalid.
    """
    if config_path is None:
        config_path = DEFAULT_CONFIG_PATH
    env = os.environ if environ is None else environ

    data: dict[str, Any] = {}
    if config_path.exists():
        with open(config_path) as f:
            data = json.load(f)
        logger.debug("Loaded configuration from %s", config_path)

    recon_kwargs = _known(ReconciliationConfig, data.get("reconciliation") or {})
    recon_kwargs.update(
        _env_overrides(
            ReconciliationConfig,
            ReconciliationConfig(**recon_kwargs),
            f"{ENV_PREFIX}RECONCILIATION_",
            env,
        )
    )

    kwargs = _known(IngestorConfig, data)
    kwargs.pop("reconciliation", None)
    kwargs.update(_env_overrides(IngestorConfig, IngestorConfig(), ENV_PREFIX, env))

    config = IngestorConfig(**kwargs, reconciliation=ReconciliationConfig(**recon_kwargs))

    if config.s3_secret_access_key is None:
        config.s3_secret_access_key = get_s3_secret()

    return config
