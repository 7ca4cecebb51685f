"""Loading settings and provider registrations from their sources."""

import json
import logging
import os
from pathlib import Path
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from fiscal_core.exceptions import ConfigurationError

from .schema import HOMOLOGACAO, PRODUCAO, FiscalSettings, ProviderConfig

log = logging.getLogger(__name__)


def load_settings(env_file: str | Path | None = None, **overrides: Any) -> FiscalSettings:
    """Build ``FiscalSettings`` from the environment.

    Args:
        env_file: Optional ``.env`` file read in addition to ``os.environ``.
            Nothing is read from disk unless this is given.
        **overrides: Explicit values, taking precedence over the environment.

    Raises:
        ConfigurationError: If a value fails validation.
    """
    try:
        if env_file is not None:
            return FiscalSettings(_env_file=env_file, **overrides)  # type: ignore[call-arg]
        return FiscalSettings(**overrides)
    except PydanticValidationError as e:
        raise ConfigurationError(
            f"Configuração inválida: {e.error_count()} erro(s)",
            context={"errors": [err["msg"] for err in e.errors()]},
        ) from e


def parse_provider_configs(raw: Any, *, source: str = "<memory>") -> dict[str, ProviderConfig]:
    """Validate a ``{key: config}`` mapping into ``ProviderConfig`` objects."""
    if not isinstance(raw, dict):
        raise ConfigurationError(
            f"Arquivo de providers deve conter um objeto JSON: {source}",
            context={"source": source},
        )
    configs: dict[str, ProviderConfig] = {}
    for key, entry in raw.items():
        if not isinstance(entry, dict):
            raise ConfigurationError(
                f"Configuração do provider '{key}' deve ser um objeto",
                context={"provider_key": key, "source": source},
            )
        try:
            configs[key] = ProviderConfig.model_validate(entry)
        except PydanticValidationError as e:
            raise ConfigurationError(
                f"Configuração do provider '{key}' inválida",
                context={
                    "provider_key": key,
                    "source": source,
                    "errors": [err["msg"] for err in e.errors()],
                },
            ) from e
    return configs


def load_providers_file(path: str | Path | None) -> dict[str, ProviderConfig]:
    """Read the provider registry file.

    A missing file yields an empty mapping.

    Raises:
        ConfigurationError: If the file is not valid JSON or an entry is invalid.
    """
    if path is None:
        return {}
    file_path = Path(path)
    try:
        text = file_path.read_text(encoding="utf-8")
    except FileNotFoundError:
        log.debug("Providers file %s not found; starting empty", file_path)
        return {}
    try:
        raw = json.loads(text)
    except json.JSONDecodeError as e:
        raise ConfigurationError(
            f"Arquivo de providers com JSON inválido: {file_path}",
            context={"source": str(file_path), "error": str(e)},
        ) from e
    return parse_provider_configs(raw, source=str(file_path))


def determinar_ambiente(ambiente: str | None = None) -> str:
    """Decide between ``producao`` and ``homologacao``.

    An explicit value wins; otherwise ``FISCAL_AMBIENTE`` then ``APP_ENV`` are
    consulted. Anything that is not a production alias means homologacao.
    """
    value = ambiente
    if value is None:
        value = os.getenv("FISCAL_AMBIENTE") or os.getenv("APP_ENV") or HOMOLOGACAO
    if value.strip().lower() in ("prod", "production", "producao", "produção"):
        return PRODUCAO
    return HOMOLOGACAO
