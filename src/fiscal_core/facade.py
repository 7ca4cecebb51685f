"""Single call surface for NFSe operations.

``NFSeFacade`` composes the resolver, the registry, the provider and the
response handler. Every public method returns a ``FiscalResponse``; no
exception escapes. Each response carries the compatibility metadata
(``provider_key``, ``municipio_ignored``, ``warnings``) so callers still
passing a municipality learn that it no longer routes anything.

Example:
    >>> from fiscal_core import NFSeFacade
    >>> facade = NFSeFacade.nacional()
    >>> response = facade.consultar_aliquotas_municipio("4106902")
    >>> response.get_metadata("source")
    'remote'
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import date
import logging
from typing import Any
from xml.etree import ElementTree

from fiscal_core.certificates import CertificateState, certificate_state
from fiscal_core.config.schema import ProviderConfig
from fiscal_core.core.types import Failure, Result, Success, unwrap
from fiscal_core.exceptions import ConfigurationError, FiscalError, ValidationError
from fiscal_core.nfse.contracts import (
    CatalogPayload,
    NacionalCapabilities,
    NFSeProvider,
    has_config,
    nacional_capabilities,
)
from fiscal_core.nfse.providers.base import ConfiguredNFSeProvider, only_digits
from fiscal_core.nfse.registry import ProviderRegistry, get_default_registry
from fiscal_core.nfse.resolver import NACIONAL_KEY, ProviderResolver, normalizar_municipio
from fiscal_core.response.envelope import FiscalResponse
from fiscal_core.response.handler import ResponseHandler

log = logging.getLogger(__name__)

NFSE_DOCUMENT_TAGS = ("CompNfse", "Nfse", "InfNfse", "GerarNfseEnvio")

READINESS_REQUIREMENTS = ("provider", "api_base_url", "timeout", "endpoints")


def resolve(
    selector: Any = None,
    registry: ProviderRegistry | None = None,
    resolver: ProviderResolver | None = None,
) -> Result[NFSeProvider, FiscalError]:
    """Provider for ``selector`` under the current resolution policy."""
    resolver = resolver or ProviderResolver()
    try:
        registry = registry if registry is not None else get_default_registry()
        return Success(registry.get(resolver.resolve_key(selector)))
    except FiscalError as e:
        return Failure(e)


class NFSeFacade:
    """NFSe operations returning ``FiscalResponse`` envelopes.

    Args:
        municipio: Legacy selector; accepted and reported as ignored.
        provider: Provider to use instead of a registry lookup.
        registry: Registry to resolve from; the process-wide one by default.
        handler: Response handler; a fresh ``ResponseHandler`` by default.
        certificates: Certificate holder inspected by readiness checks.
    """

    def __init__(
        self,
        municipio: str | None = None,
        provider: NFSeProvider | None = None,
        registry: ProviderRegistry | None = None,
        handler: ResponseHandler | None = None,
        *,
        resolver: ProviderResolver | None = None,
        certificates: CertificateState | None = None,
    ):
        self.municipio = normalizar_municipio(municipio)
        self._handler = handler or ResponseHandler()
        self._resolver = resolver or ProviderResolver()
        self._certificates = certificates if certificates is not None else certificate_state
        self._registry = registry
        self._init_error: FiscalResponse | None = None

        resolution = self._resolver.resolve(municipio)
        self.provider_key = resolution.provider_key
        self.municipio_ignored = resolution.municipio_ignored
        self.warnings = list(resolution.warnings)

        self._provider = provider
        if provider is None:
            self._provider = self._provider_from_registry()

    @classmethod
    def nacional(cls, provider: NFSeProvider | None = None, **kwargs: Any) -> NFSeFacade:
        return cls(NACIONAL_KEY, provider, **kwargs)

    @property
    def registry(self) -> ProviderRegistry:
        if self._registry is None:
            self._registry = get_default_registry()
        return self._registry

    @property
    def provider(self) -> NFSeProvider | None:
        return self._provider

    def _provider_from_registry(self) -> NFSeProvider | None:
        try:
            registry = self.registry
            if not registry.has(self.provider_key):
                self._init_error = FiscalResponse.error_response(
                    f"Provider NFSe nacional '{self.provider_key}' não encontrado",
                    "PROVIDER_NOT_FOUND",
                    "nfse_initialization",
                    {
                        "available_municipios": registry.list_keys(),
                        "municipio_input": self.municipio,
                        **self.compatibility_metadata(),
                        "suggestions": [
                            f"Configure '{self.provider_key}' no arquivo de providers",
                            "O parâmetro 'municipio' foi deprecado para NFSe "
                            "e não define roteamento",
                        ],
                    },
                )
                return None
            return registry.get(self.provider_key)
        except Exception as e:
            failure = self._handler.failure_from(e, "nfse_initialization")
            self._init_error = failure.merge_metadata(self.compatibility_metadata())
            return None

    def compatibility_metadata(self) -> dict[str, Any]:
        return {
            "municipio": self.municipio,
            "provider_key": self.provider_key,
            "municipio_ignored": self.municipio_ignored,
            "warnings": list(self.warnings),
        }

    def _run(
        self, operation: str, work: Callable[[NFSeProvider], Any], **metadata: Any
    ) -> FiscalResponse:
        if self._init_error is not None:
            return self._init_error
        provider = self._provider
        if provider is None:
            return self._handler.failure_from(
                ConfigurationError.provider_not_configured(self.provider_key), operation
            )
        response = self._handler.execute(lambda: work(provider), operation)
        return response.merge_metadata({**metadata, **self.compatibility_metadata()})

    def _run_nacional(
        self,
        operation: str,
        capability: str,
        work: Callable[[NacionalCapabilities], Any],
        **metadata: Any,
    ) -> FiscalResponse:
        def call(provider: NFSeProvider) -> Any:
            return work(unwrap(nacional_capabilities(provider, capability)))

        return self._run(operation, call, **metadata)

    def _run_catalog(
        self,
        operation: str,
        capability: str,
        fetch: Callable[[NacionalCapabilities], CatalogPayload],
        **metadata: Any,
    ) -> FiscalResponse:
        def call(nacional: NacionalCapabilities) -> FiscalResponse:
            payload = fetch(nacional)
            data = payload.get("data")
            return FiscalResponse.success_response(
                data if data is not None else [], operation, payload.get("metadata") or {}
            )

        return self._run_nacional(operation, capability, call, **metadata)

    # --- Base operations ---

    def emitir(self, dados: dict[str, Any]) -> FiscalResponse:
        return self._run(
            "nfse_emission",
            lambda p: {
                "resultado": p.emitir(dados),
                "type": "nfse_xml",
                "municipio": self.municipio,
            },
            provider_info=self._provider_summary(),
        )

    def consultar(self, chave: str) -> FiscalResponse:
        return self._run(
            "nfse_query",
            lambda p: {
                "resultado": p.consultar(chave),
                "type": "nfse_consulta",
                "chave": chave,
                "municipio": self.municipio,
            },
            chave=chave,
        )

    def cancelar(self, chave: str, motivo: str, protocolo: str | None = None) -> FiscalResponse:
        return self._run(
            "nfse_cancellation",
            lambda p: {
                "canceled": p.cancelar(chave, motivo, protocolo),
                "type": "nfse_cancelamento",
                "chave": chave,
                "motivo": motivo,
                "municipio": self.municipio,
            },
            chave=chave,
            motivo=motivo,
        )

    def substituir(self, chave: str, dados: dict[str, Any]) -> FiscalResponse:
        return self._run(
            "nfse_substitution",
            lambda p: {
                "resultado": p.substituir(chave, dados),
                "type": "nfse_substituicao",
                "chave": chave,
                "municipio": self.municipio,
            },
            chave=chave,
        )

    # --- National capabilities ---

    def consultar_por_rps(self, identificacao_rps: dict[str, Any]) -> FiscalResponse:
        return self._run_nacional(
            "nfse_query_by_rps",
            "consultar_por_rps",
            lambda n: {
                "resultado": n.consultar_por_rps(identificacao_rps),
                "type": "nfse_consulta_rps",
                "municipio": self.municipio,
            },
        )

    def consultar_lote(self, protocolo: str) -> FiscalResponse:
        return self._run_nacional(
            "nfse_query_lote",
            "consultar_lote",
            lambda n: {
                "resultado": n.consultar_lote(protocolo),
                "type": "nfse_consulta_lote",
                "protocolo": protocolo,
                "municipio": self.municipio,
            },
        )

    def baixar_xml(self, chave: str) -> FiscalResponse:
        return self._run_nacional(
            "nfse_download_xml",
            "baixar_xml",
            lambda n: {
                "resultado": n.baixar_xml(chave),
                "type": "nfse_xml_download",
                "chave": chave,
                "municipio": self.municipio,
            },
        )

    def baixar_danfse(self, chave: str) -> FiscalResponse:
        return self._run_nacional(
            "nfse_download_danfse",
            "baixar_danfse",
            lambda n: {
                "resultado": n.baixar_danfse(chave),
                "type": "nfse_danfse_download",
                "chave": chave,
                "municipio": self.municipio,
            },
        )

    def listar_municipios_nacionais(self, force_refresh: bool = False) -> FiscalResponse:
        """Municipalities participating in the national system."""
        return self._run_catalog(
            "nfse_nacional_municipios",
            "listar_municipios_nacionais",
            lambda n: n.listar_municipios_nacionais(force_refresh),
            force_refresh=force_refresh,
        )

    listar_municipios = listar_municipios_nacionais

    def consultar_aliquotas_municipio(
        self,
        codigo_municipio: str,
        codigo_servico: str | None = None,
        competencia: str | date | None = None,
        force_refresh: bool = False,
    ) -> FiscalResponse:
        return self._run_catalog(
            "nfse_nacional_aliquotas",
            "consultar_aliquotas_municipio",
            lambda n: n.consultar_aliquotas_municipio(
                codigo_municipio, codigo_servico, competencia, force_refresh
            ),
            force_refresh=force_refresh,
            codigo_municipio=codigo_municipio,
        )

    def consultar_historico_aliquotas(
        self, codigo_municipio: str, codigo_servico: str, force_refresh: bool = False
    ) -> FiscalResponse:
        return self._run_catalog(
            "nfse_nacional_historico_aliquotas",
            "consultar_historico_aliquotas",
            lambda n: n.consultar_historico_aliquotas(
                codigo_municipio, codigo_servico, force_refresh
            ),
            force_refresh=force_refresh,
            codigo_municipio=codigo_municipio,
        )

    def consultar_convenio_municipio(
        self, codigo_municipio: str, force_refresh: bool = False
    ) -> FiscalResponse:
        return self._run_catalog(
            "nfse_nacional_convenio",
            "consultar_convenio_municipio",
            lambda n: n.consultar_convenio_municipio(codigo_municipio, force_refresh),
            force_refresh=force_refresh,
            codigo_municipio=codigo_municipio,
        )

    # --- Introspection and validation ---

    def _provider_summary(self) -> dict[str, Any]:
        provider = self._provider
        info: dict[str, Any] = {
            "municipio": self.municipio,
            "provider_key": self.provider_key,
            "provider_class": type(provider).__name__,
            "has_config": provider is not None and has_config(provider),
            "supports_nacional": isinstance(provider, NacionalCapabilities),
            "municipio_ignored": self.municipio_ignored,
            "warnings": list(self.warnings),
        }
        if isinstance(provider, ConfiguredNFSeProvider):
            info.update(
                codigo_municipio=provider.get_codigo_municipio(),
                versao=provider.get_versao(),
                versao_schema=provider.config.versao_schema,
                ambiente=provider.get_ambiente(),
                wsdl_url=provider.get_wsdl_url(),
                api_base_url=provider.get_national_api_base_url(),
                timeout=provider.get_timeout(),
            )
        return info

    def get_provider_info(self) -> FiscalResponse:
        if self._init_error is not None:
            return self._init_error
        return self._handler.execute(self._provider_summary, "nfse_provider_info")

    def validar_xml(self, xml: str) -> FiscalResponse:
        """Check that ``xml`` is well formed and looks like an NFSe document."""

        def work() -> dict[str, Any]:
            if not xml or not xml.strip():
                raise ValueError("XML não pode estar vazio")
            try:
                root = ElementTree.fromstring(xml)
            except ElementTree.ParseError as e:
                raise ValueError(f"XML inválido: {e}") from e
            names = {
                node.tag.rsplit("}", 1)[-1] for node in root.iter() if isinstance(node.tag, str)
            }
            tipo = next((t for t in NFSE_DOCUMENT_TAGS if t in names), None)
            if tipo is None:
                raise ValueError("XML não é uma NFSe válida")
            return {
                "xml_valido": True,
                "tipo_nfse": tipo,
                "municipio_esperado": self.municipio,
                "tamanho_xml": len(xml.encode("utf-8")),
            }

        return self._handler.execute(work, "validacao_xml_nfse")

    def validar_prestador(self, prestador: dict[str, Any]) -> FiscalResponse:
        def work() -> dict[str, Any]:
            erros: dict[str, str] = {}
            cnpj = only_digits(prestador.get("cnpj"))
            if not prestador.get("cnpj"):
                erros["cnpj"] = "CNPJ do prestador é obrigatório"
            elif len(cnpj) != 14:
                erros["cnpj"] = "CNPJ deve ter 14 dígitos"
            if not prestador.get("inscricaoMunicipal"):
                erros["inscricaoMunicipal"] = "Inscrição Municipal é obrigatória"
            if not prestador.get("razaoSocial"):
                erros["razaoSocial"] = "Razão Social é obrigatória"
            if erros:
                raise ValidationError.multiple_errors(erros, "prestador")
            return {
                "prestador_valido": True,
                "cnpj_formatado": cnpj,
                "validacoes": {
                    "cnpj": True,
                    "inscricao_municipal": True,
                    "razao_social": True,
                },
            }

        return self._handler.execute(work, "validacao_prestador_nfse")

    def validar_municipio(self, municipio: str | None = None) -> FiscalResponse:
        municipio = normalizar_municipio(municipio) or self.municipio
        operation = "nfse_municipality_validation"
        try:
            registry = self.registry
            if not registry.has(self.provider_key):
                return FiscalResponse.error_response(
                    f"Provider NFSe nacional '{self.provider_key}' não está configurado",
                    "MUNICIPALITY_NOT_CONFIGURED",
                    operation,
                    {
                        "available_municipios": registry.list_keys(),
                        "provider_key": self.provider_key,
                        "municipio_input": municipio,
                        "municipio_ignored": True,
                        "warnings": list(self.warnings),
                        "suggestions": [
                            f"Configure '{self.provider_key}' no arquivo de providers",
                            "Não é mais necessário configurar provider por município",
                        ],
                    },
                )
            config = registry.get_config(self.provider_key)
            return FiscalResponse.success_response(
                {
                    "municipio": municipio,
                    "provider_key": self.provider_key,
                    "municipio_ignored": True,
                    "configured": True,
                    "config_keys": sorted(config.model_dump(exclude_defaults=True)),
                },
                operation,
                {"warnings": list(self.warnings)},
            )
        except FiscalError as e:
            return self._handler.failure_from(e, operation)

    def validar_configuracao(self, municipio: str | None = None) -> FiscalResponse:
        """Structural check of the provider configuration ``municipio`` resolves to."""
        try:
            response = self.registry.validar_configuracao(municipio or self.provider_key)
        except FiscalError as e:
            return self._handler.failure_from(e, "validacao_provider_config")
        return response.merge_metadata({"warnings": list(self.warnings)})

    def listar_provedores(self) -> FiscalResponse:
        """Registry keys currently configured."""
        operation = "nfse_list_municipios"
        try:
            keys = self.registry.list_keys()
        except FiscalError as e:
            return self._handler.failure_from(e, operation)
        return FiscalResponse.success_response(
            {"municipios": keys},
            operation,
            {
                "total": len(keys),
                "current_municipio": self.municipio,
                **self.compatibility_metadata(),
            },
        )

    def verificar_prontidao_homologacao(self) -> FiscalResponse:
        """Report what is missing before running against the homologation environment."""
        operation = "nfse_homologation_readiness"
        try:
            config = self._readiness_config()
            missing = [
                name for name in READINESS_REQUIREMENTS if not getattr(config, name, None)
            ]
            bundle = self._certificates.current()
            loaded = bundle is not None
            valid = bundle is not None and bundle.is_valid()
            if config.signature_mode == "required" and not (loaded and valid):
                missing.append("certificado_digital_valido")
            return FiscalResponse.success_response(
                {
                    "ready": not missing,
                    "provider_key": self.provider_key,
                    "signature_mode": config.signature_mode,
                    "certificado_carregado": loaded,
                    "certificado_valido": valid,
                    "missing_requirements": missing,
                },
                operation,
                self.compatibility_metadata(),
            )
        except FiscalError as e:
            return self._handler.failure_from(e, operation)

    def _readiness_config(self) -> ProviderConfig:
        if isinstance(self._provider, ConfiguredNFSeProvider):
            return self._provider.config
        return self.registry.get_config(self.provider_key)
