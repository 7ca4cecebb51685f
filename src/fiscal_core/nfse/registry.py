"""Provider registry: registry keys to lazily constructed provider instances.

Registrations come from the JSON providers file and from code. Each key
maps to one ``ProviderRegistration``; registering a key again replaces the
previous registration and drops any instance already built for it.
Instances are lazy singletons per key, built at most once even under
concurrent lookups.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass
import logging
from pathlib import Path
import threading
from typing import Any
from urllib.parse import urlparse

from fiscal_core.config.loaders import (
    determinar_ambiente,
    load_providers_file,
    load_settings,
    parse_provider_configs,
)
from fiscal_core.config.schema import ProviderConfig
from fiscal_core.exceptions import ConfigurationError, FiscalError
from fiscal_core.nfse.contracts import NFSeProvider
from fiscal_core.nfse.providers.nacional import NacionalProvider
from fiscal_core.nfse.resolver import NACIONAL_KEY, normalizar_municipio
from fiscal_core.response.envelope import FiscalResponse

log = logging.getLogger(__name__)

type ProviderFactory = Callable[[ProviderConfig], NFSeProvider]

SUPPORTED_SCHEMA_VERSIONS = frozenset({"1.0", "1.00", "1.01", "2.01", "2.02", "2.03", "2.04"})

_VALIDATION_OPERATION = "validacao_provider_config"
_MAX_ALIAS_DEPTH = 8


@dataclass(frozen=True, slots=True)
class ProviderRegistration:
    """One registry entry.

    Attributes:
        key: Registry lookup key (``nfse_nacional`` or a municipality slug).
        factory: Builds the provider from ``config``. When None the factory
            is looked up by ``config.provider`` in the registry's name table.
        config: Settings passed to the factory.
    """

    key: str
    factory: ProviderFactory | None
    config: ProviderConfig


class ProviderRegistry:
    """Registry of NFSe providers keyed by municipality or national key.

    Args:
        configs: Initial ``{key: config}`` registrations.
        default_key: Key used when a requested key is not registered.
        factories: Factory name table consulted for ``config.provider``.
        source: Providers file re-read by ``reload()``.
    """

    def __init__(
        self,
        configs: Mapping[str, ProviderConfig | dict[str, Any]] | None = None,
        *,
        default_key: str = NACIONAL_KEY,
        factories: Mapping[str, ProviderFactory] | None = None,
        source: str | Path | None = None,
    ) -> None:
        self.default_key = default_key
        self._factories: dict[str, ProviderFactory] = dict(factories or {})
        self._source = Path(source) if source is not None else None
        self._registrations: dict[str, ProviderRegistration] = {}
        self._instances: dict[str, NFSeProvider] = {}
        self._key_locks: dict[str, threading.Lock] = {}
        self._lock = threading.RLock()
        self._reload_hook: Callable[[ProviderRegistry], Any] | None = None
        if self._source is not None:
            self.load_file(self._source)
        for key, config in (configs or {}).items():
            self.register(key, config=config)

    # --- Registration ---

    def register(
        self,
        key: str,
        factory: ProviderFactory | None = None,
        config: ProviderConfig | dict[str, Any] | None = None,
    ) -> ProviderRegistration:
        """Register ``key``, replacing any previous registration.

        Raises:
            ValueError: If neither ``factory`` nor ``config`` is given.
            ConfigurationError: If ``config`` fails validation.
        """
        if not key or not key.strip():
            raise ValueError("Provider key must be a non-empty string")
        if factory is None and config is None:
            raise ValueError(f"Registration for '{key}' needs a factory or a config")
        if config is None:
            config = ProviderConfig()
        elif not isinstance(config, ProviderConfig):
            config = parse_provider_configs({key: config}, source="register")[key]

        registration = ProviderRegistration(key=key, factory=factory, config=config)
        with self._lock:
            self._registrations[key] = registration
            self._instances.pop(key, None)
        log.debug("Registered provider key %s", key)
        return registration

    def register_factory(self, name: str, factory: ProviderFactory) -> None:
        """Add ``name`` to the factory table used by ``config.provider``."""
        with self._lock:
            self._factories[name] = factory
            self._instances.clear()

    def has_factory(self, name: str) -> bool:
        return name in self._factories

    def on_reload(self, hook: Callable[[ProviderRegistry], Any]) -> None:
        """Run ``hook(registry)`` after every ``reload()``, replacing any previous hook."""
        self._reload_hook = hook

    def unregister(self, key: str) -> bool:
        with self._lock:
            self._instances.pop(key, None)
            return self._registrations.pop(key, None) is not None

    def load_file(self, path: str | Path) -> list[str]:
        """Register every entry of a providers file; returns the keys loaded.

        An entry without a ``provider`` name keeps the factory of an
        existing registration for the same key.
        """
        configs = load_providers_file(path)
        for key, config in configs.items():
            existing = self._registrations.get(key)
            self.register(key, existing.factory if existing else None, config)
        log.debug("Loaded %d provider(s) from %s", len(configs), path)
        return list(configs)

    def reload(self) -> None:
        """Drop everything and re-read the providers file, if any."""
        self.clear()
        if self._source is not None:
            self.load_file(self._source)
        if self._reload_hook is not None:
            self._reload_hook(self)

    def clear(self) -> None:
        """Remove all registrations and cached instances."""
        with self._lock:
            self._registrations.clear()
            self._instances.clear()
            self._key_locks.clear()

    # --- Lookup ---

    def has(self, key: str) -> bool:
        return key in self._registrations

    is_registered = has

    def list_keys(self) -> list[str]:
        return list(self._registrations)

    def resolve_key(self, key: str) -> str:
        """Canonical key for ``key``: follows ``alias_of``, then the default.

        Returns ``key`` unchanged when neither it nor the default is registered.
        """
        current = key
        seen: set[str] = set()
        while current in self._registrations and len(seen) < _MAX_ALIAS_DEPTH:
            seen.add(current)
            alias = self._registrations[current].config.alias_of
            if not alias or alias in seen:
                return current
            current = alias
        if current in self._registrations:
            return current
        if self.default_key in self._registrations:
            if current != self.default_key:
                log.debug("Key %r not registered; falling back to %s", key, self.default_key)
            return self.default_key
        return key

    def registration(self, key: str) -> ProviderRegistration:
        """Registration ``key`` resolves to.

        Raises:
            ConfigurationError: If neither ``key`` nor the default is registered.
        """
        resolved = self.resolve_key(key)
        try:
            return self._registrations[resolved]
        except KeyError:
            raise ConfigurationError.provider_not_configured(resolved) from None

    def get_config(self, key: str) -> ProviderConfig:
        return self.registration(key).config

    def get(self, key: str | None = None) -> NFSeProvider:
        """Provider instance for ``key`` (the default key when omitted).

        Unregistered keys fall back to the default key. Each key is built
        at most once; later calls return the same instance.

        Raises:
            ConfigurationError: If nothing applicable is registered, the
                registration names no usable factory, or the factory fails.
        """
        registration = self.registration(key or self.default_key)
        resolved = registration.key
        instance = self._instances.get(resolved)
        if instance is not None:
            return instance

        with self._lock:
            key_lock = self._key_locks.setdefault(resolved, threading.Lock())
        with key_lock:
            instance = self._instances.get(resolved)
            if instance is not None:
                return instance
            factory = self._factory_for(registration)
            try:
                instance = factory(registration.config)
            except FiscalError:
                raise
            except Exception as e:
                raise ConfigurationError.provider_construction_failed(resolved, e) from e
            with self._lock:
                # A concurrent register() may have replaced this key meanwhile
                if self._registrations.get(resolved) is registration:
                    self._instances[resolved] = instance
            log.debug("Constructed provider %s for key %s", type(instance).__name__, resolved)
            return instance

    def get_nacional(self) -> NFSeProvider:
        return self.get(NACIONAL_KEY)

    def _factory_for(self, registration: ProviderRegistration) -> ProviderFactory:
        if registration.factory is not None:
            return registration.factory
        name = registration.config.provider
        if not name:
            raise ConfigurationError(
                f"Provider class não especificado para chave '{registration.key}'",
                error_code="INVALID_CONFIG",
                context={"provider_key": registration.key},
            )
        factory = self._factories.get(name) or self._factories.get(name.rsplit(".", 1)[-1])
        if factory is None:
            raise ConfigurationError(
                f"Provider class não encontrado: {name}",
                error_code="INVALID_CONFIG",
                context={"provider_key": registration.key, "available": sorted(self._factories)},
            )
        return factory

    def _factory_name(self, registration: ProviderRegistration) -> str | None:
        if registration.config.provider:
            return registration.config.provider
        if registration.factory is not None:
            return getattr(registration.factory, "__name__", type(registration.factory).__name__)
        return None

    # --- Validation and per-municipality rules ---

    def validar_configuracao(self, municipio: str | None = None) -> FiscalResponse:
        """Structural check of the registration ``municipio`` resolves to."""
        requested = normalizar_municipio(municipio) or self.default_key
        provider_key = self.resolve_key(requested)
        if provider_key not in self._registrations:
            return FiscalResponse.error_response(
                f"Provider '{provider_key}' não configurado",
                "PROVIDER_NOT_FOUND",
                _VALIDATION_OPERATION,
            )

        registration = self._registrations[provider_key]
        provider_class = self._factory_name(registration)
        erros = self._config_errors(registration.config)
        if provider_class is None:
            erros.insert(0, "provider/provider_class não definido")
        if erros:
            return FiscalResponse.error_response(
                "Configuração inválida: " + ", ".join(erros),
                "INVALID_CONFIG",
                _VALIDATION_OPERATION,
                {"provider_key": provider_key, "erros": erros},
            )
        return FiscalResponse.success_response(
            {
                "municipio": requested,
                "provider_key": provider_key,
                "municipio_ignored": provider_key != requested,
                "config_valida": True,
                "provider_class": provider_class,
            },
            _VALIDATION_OPERATION,
        )

    @staticmethod
    def _config_errors(config: ProviderConfig) -> list[str]:
        erros: list[str] = []
        urls = [
            u
            for u in (
                config.api_base_url,
                config.wsdl,
                config.wsdl_producao,
                config.wsdl_homologacao,
                config.url_producao,
                config.url_homologacao,
                *(url for env in config.services.values() for url in env.values()),
            )
            if u
        ]
        if not urls:
            erros.append("api_base_url ou url_producao/url_homologacao não definida")
        for url in urls:
            parsed = urlparse(url)
            if parsed.scheme not in ("http", "https") or not parsed.netloc:
                erros.append(f"URL inválida: {url}")
        if config.versao_schema not in SUPPORTED_SCHEMA_VERSIONS:
            erros.append(f"versao_schema não suportada: {config.versao_schema}")
        return erros

    def determinar_ambiente(self, ambiente: str | None = None) -> str:
        return determinar_ambiente(ambiente)

    def obter_regras_especificas(self, municipio: str) -> dict[str, Any]:
        if not self._registrations:
            return {}
        return dict(self.get_config(municipio).regras_especificas)

    def buscar_fallback(self, municipio: str) -> str | None:
        if not self._registrations:
            return None
        return self.get_config(municipio).fallback_provider

    def obter_versao_schema(self, municipio: str) -> str:
        if not self._registrations:
            return "1.0"
        return self.get_config(municipio).versao_schema


DEFAULT_FACTORIES: Mapping[str, ProviderFactory] = {
    "NacionalProvider": NacionalProvider,
    "nacional": NacionalProvider,
}


def register_defaults(
    registry: ProviderRegistry, config: ProviderConfig | dict[str, Any] | None = None
) -> ProviderRegistry:
    """Register the built-in providers; idempotent.

    ``nfse_nacional`` is only added when not already registered, so a
    providers-file entry for it wins. ``reload()`` re-applies the defaults.
    """
    for name, factory in DEFAULT_FACTORIES.items():
        if not registry.has_factory(name):
            registry.register_factory(name, factory)
    if not registry.has(NACIONAL_KEY):
        if config is None:
            config = {"provider": "NacionalProvider"}
        registry.register(NACIONAL_KEY, config=config)
    registry.on_reload(lambda reg: register_defaults(reg, config))
    return registry


# Process-wide registry, built on first use
_default_registry: ProviderRegistry | None = None
_default_lock = threading.Lock()


def get_default_registry() -> ProviderRegistry:
    """Registry built from ``FiscalSettings`` plus the built-in providers."""
    global _default_registry
    with _default_lock:
        if _default_registry is None:
            settings = load_settings()
            nacional = {
                "provider": "NacionalProvider",
                "ambiente": settings.ambiente,
                "api_base_url": settings.api_base_url,
                "timeout": int(settings.timeout),
                "cache_ttl": settings.cache_ttl,
                "cache_dir": str(settings.cache_dir) if settings.cache_dir else None,
            }
            _default_registry = register_defaults(
                ProviderRegistry(source=settings.providers_file), nacional
            )
        return _default_registry


def reset_default_registry() -> None:
    """Forget the process-wide registry. Primarily useful for testing."""
    global _default_registry
    with _default_lock:
        _default_registry = None
