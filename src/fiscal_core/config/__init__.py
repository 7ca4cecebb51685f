"""Configuration: environment settings and provider registrations.

Example:
    >>> from fiscal_core.config import load_settings
    >>> settings = load_settings(cache_ttl=3600)
    >>> settings.cache_ttl
    3600
"""

from .loaders import (
    determinar_ambiente,
    load_providers_file,
    load_settings,
    parse_provider_configs,
)
from .schema import (
    HOMOLOGACAO,
    PRODUCAO,
    AuthConfig,
    FiscalSettings,
    ProviderConfig,
    normalizar_ambiente,
)

__all__ = [
    "HOMOLOGACAO",
    "PRODUCAO",
    "AuthConfig",
    "FiscalSettings",
    "ProviderConfig",
    "determinar_ambiente",
    "load_providers_file",
    "load_settings",
    "normalizar_ambiente",
    "parse_provider_configs",
]
