"""Capability interfaces every NFSe provider is checked against.

``NFSeProvider`` is the base contract. ``NacionalCapabilities`` is an
optional extension; a provider opts in by inheriting it. Callers never
inspect attributes: they ask ``nacional_capabilities(provider)`` for a
``Result`` and get a ``CapabilityNotSupportedError`` when the provider
does not implement the extension.
"""

from __future__ import annotations

import abc
from typing import Any, TypedDict

from fiscal_core.core.types import Failure, Result, Success
from fiscal_core.exceptions import CapabilityNotSupportedError


class CatalogPayload(TypedDict):
    """Reference data plus its provenance (``source``, ``stale``, ...)."""

    data: Any
    metadata: dict[str, Any]


class NFSeProvider(abc.ABC):
    """Base contract of a fiscal-service issuer."""

    @abc.abstractmethod
    def emitir(self, dados: dict[str, Any]) -> str:
        """Issue a document and return the raw response."""

    @abc.abstractmethod
    def consultar(self, chave: str) -> str:
        """Return the raw document identified by ``chave``."""

    @abc.abstractmethod
    def cancelar(self, chave: str, motivo: str, protocolo: str | None = None) -> bool:
        """Cancel a document; True when the issuer accepted the request."""

    @abc.abstractmethod
    def substituir(self, chave: str, dados: dict[str, Any]) -> str:
        """Replace a document with a new one built from ``dados``."""


class ConfiguredProvider(abc.ABC):
    """Read-only view of the configuration a provider was built with."""

    @abc.abstractmethod
    def get_wsdl_url(self) -> str: ...

    @abc.abstractmethod
    def get_versao(self) -> str: ...

    @abc.abstractmethod
    def get_aliquota_format(self) -> str: ...

    @abc.abstractmethod
    def get_codigo_municipio(self) -> str: ...

    @abc.abstractmethod
    def get_ambiente(self) -> str: ...

    @abc.abstractmethod
    def get_timeout(self) -> int: ...

    @abc.abstractmethod
    def get_auth_config(self) -> dict[str, str]: ...

    @abc.abstractmethod
    def get_national_api_base_url(self) -> str: ...

    @abc.abstractmethod
    def validar_dados(self, dados: dict[str, Any]) -> bool: ...


class NacionalCapabilities(abc.ABC):
    """Extended operations offered by the national NFSe provider."""

    @abc.abstractmethod
    def consultar_por_rps(self, identificacao_rps: dict[str, Any]) -> str: ...

    @abc.abstractmethod
    def consultar_lote(self, protocolo: str) -> str: ...

    @abc.abstractmethod
    def baixar_xml(self, chave: str) -> bytes: ...

    @abc.abstractmethod
    def baixar_danfse(self, chave: str) -> bytes: ...

    @abc.abstractmethod
    def listar_municipios_nacionais(self, force_refresh: bool = False) -> CatalogPayload: ...

    @abc.abstractmethod
    def consultar_aliquotas_municipio(
        self,
        codigo_municipio: str,
        codigo_servico: str | None = None,
        competencia: str | None = None,
        force_refresh: bool = False,
    ) -> CatalogPayload: ...

    @abc.abstractmethod
    def consultar_historico_aliquotas(
        self,
        codigo_municipio: str,
        codigo_servico: str,
        force_refresh: bool = False,
    ) -> CatalogPayload: ...

    @abc.abstractmethod
    def consultar_convenio_municipio(
        self, codigo_municipio: str, force_refresh: bool = False
    ) -> CatalogPayload: ...


def nacional_capabilities(
    provider: NFSeProvider, capability: str = "nacional"
) -> Result[NacionalCapabilities, CapabilityNotSupportedError]:
    """Downcast ``provider`` to ``NacionalCapabilities`` when it implements it."""
    if isinstance(provider, NacionalCapabilities):
        return Success(provider)
    return Failure(CapabilityNotSupportedError.for_provider(provider, capability))


def has_config(provider: NFSeProvider) -> bool:
    return isinstance(provider, ConfiguredProvider)
