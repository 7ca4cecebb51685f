"""Provider for the national NFSe API (Sistema Nacional NFS-e).

Operations post XML envelopes to configurable paths and return the raw
response body. Catalog lookups are delegated to ``NacionalCatalogService``
and share this provider's transport.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from datetime import date
import logging
from typing import Any
from xml.etree import ElementTree

from fiscal_core.cache.store import CacheStore, FileCacheStore
from fiscal_core.certificates import CertificateBundle, CertificateState, certificate_state
from fiscal_core.config.schema import ProviderConfig
from fiscal_core.exceptions import (
    CertificateError,
    ConfigurationError,
    TransportError,
    ValidationError,
    XmlError,
)
from fiscal_core.nfse.catalog import NacionalCatalogService
from fiscal_core.nfse.contracts import CatalogPayload, NacionalCapabilities
from fiscal_core.nfse.providers.base import ConfiguredNFSeProvider, only_digits
from fiscal_core.transport import HttpTransport, HttpxTransport, route_service

log = logging.getLogger(__name__)

type Signer = Callable[[str, CertificateBundle], str]

OPERATION_PATHS: Mapping[str, str] = {
    "emitir": "/nfse/emitir",
    "consultar": "/nfse/consultar",
    "cancelar": "/nfse/cancelar",
    "substituir": "/nfse/substituir",
    "consultar_rps": "/nfse/consultar-rps",
    "consultar_lote": "/nfse/consultar-lote",
    "baixar_xml": "/nfse/download/xml",
    "baixar_danfse": "/nfse/download/danfse",
}

SUCCESS_STATUSES = frozenset({"1", "100", "150", "true", "sucesso", "ok"})

_XML_HEADERS = {"Content-Type": "application/xml", "Accept": "application/xml"}


def _local(tag: Any) -> str:
    return tag.rsplit("}", 1)[-1] if isinstance(tag, str) else ""


def _decimal(value: Any, places: int = 5) -> str:
    return f"{float(value or 0):.{places}f}"


class NacionalProvider(ConfiguredNFSeProvider, NacionalCapabilities):
    """National NFSe issuer.

    Args:
        config: Provider registration settings.
        http_client: Transport ``(method, path, body, headers) -> str``. When
            omitted an ``HttpxTransport`` on the national base URL is used.
        cache: Catalog cache; defaults to a ``FileCacheStore`` at
            ``config.cache_dir``.
        certificates: Certificate holder for signing and mTLS.
        signer: ``(xml, bundle) -> signed_xml``. XML-Signature itself is an
            external collaborator.
    """

    def __init__(
        self,
        config: ProviderConfig | dict[str, Any],
        *,
        http_client: HttpTransport | None = None,
        cache: CacheStore | None = None,
        certificates: CertificateState | None = None,
        signer: Signer | None = None,
    ):
        super().__init__(config)
        self._certificates = certificates if certificates is not None else certificate_state
        self._signer = signer
        self._http: HttpTransport = http_client or HttpxTransport(
            self.get_national_api_base_url(),
            timeout=self.get_timeout(),
            mtls=self.config.mtls,
            certificates=self._certificates,
        )
        self.catalog = NacionalCatalogService(
            self.get_national_api_base_url(),
            timeout=self.get_timeout(),
            cache=cache if cache is not None else FileCacheStore(self.config.cache_dir),
            ttl=self.config.cache_ttl,
            transport=self._http,
            endpoints=self.config.catalog_endpoints,
            legacy_endpoints=self.config.legacy_catalog_endpoints,
            headers=self.config.auth.headers(),
            services=self.service_urls(),
        )

    # --- Base operations ---

    def emitir(self, dados: dict[str, Any]) -> str:
        self.validar_dados(dados)
        xml = self._assinar_se_necessario(self.montar_xml_rps(dados))
        return self._enviar("emitir", xml)

    def consultar(self, chave: str) -> str:
        chave = self._require_text(chave, "chave")
        return self._enviar(
            "consultar",
            self._envelope("ConsultarNfseExternoEnvio", {"ChaveNfse": chave}),
            identifier=chave,
        )

    def cancelar(self, chave: str, motivo: str, protocolo: str | None = None) -> bool:
        chave = self._require_text(chave, "chave")
        motivo = self._require_text(motivo, "motivo")
        payload = {"ChaveNfse": chave, "Motivo": motivo}
        if protocolo:
            payload["Protocolo"] = protocolo
        response = self._enviar(
            "cancelar", self._envelope("CancelarNfseEnvio", payload), identifier=chave
        )
        return bool(self.processar_resposta(response)["sucesso"])

    def substituir(self, chave: str, dados: dict[str, Any]) -> str:
        chave = self._require_text(chave, "chave")
        self.validar_dados(dados)
        xml = self._envelope(
            "SubstituirNfseEnvio",
            {"NfseOriginal": chave, "NfseSubstituta": self.montar_xml_rps(dados)},
        )
        return self._enviar("substituir", xml, identifier=chave)

    # --- Extended operations ---

    def consultar_por_rps(self, identificacao_rps: dict[str, Any]) -> str:
        missing = [c for c in ("numero", "serie", "tipo") if identificacao_rps.get(c) is None]
        if missing:
            raise ValidationError.required_field(missing[0], "identificação do RPS")
        payload = {
            "Numero": str(identificacao_rps["numero"]),
            "Serie": str(identificacao_rps["serie"]),
            "Tipo": str(identificacao_rps["tipo"]),
        }
        return self._enviar("consultar_rps", self._envelope("ConsultarNfsePorRpsEnvio", payload))

    def consultar_lote(self, protocolo: str) -> str:
        protocolo = self._require_text(protocolo, "protocolo")
        return self._enviar(
            "consultar_lote",
            self._envelope("ConsultarLoteRpsEnvio", {"Protocolo": protocolo}),
            identifier=protocolo,
        )

    def baixar_xml(self, chave: str) -> bytes:
        return self._download("xml", chave)

    def baixar_danfse(self, chave: str) -> bytes:
        return self._download("danfse", chave)

    def listar_municipios_nacionais(self, force_refresh: bool = False) -> CatalogPayload:
        return self.catalog.listar_municipios(force_refresh)

    def consultar_aliquotas_municipio(
        self,
        codigo_municipio: str,
        codigo_servico: str | None = None,
        competencia: str | date | None = None,
        force_refresh: bool = False,
    ) -> CatalogPayload:
        return self.catalog.consultar_aliquotas_municipio(
            codigo_municipio, codigo_servico, competencia, force_refresh
        )

    def consultar_historico_aliquotas(
        self, codigo_municipio: str, codigo_servico: str, force_refresh: bool = False
    ) -> CatalogPayload:
        return self.catalog.consultar_historico_aliquotas(
            codigo_municipio, codigo_servico, force_refresh
        )

    def consultar_convenio_municipio(
        self, codigo_municipio: str, force_refresh: bool = False
    ) -> CatalogPayload:
        return self.catalog.consultar_convenio_municipio(codigo_municipio, force_refresh)

    # --- Validation ---

    def validar_dados(self, dados: dict[str, Any]) -> bool:
        super().validar_dados(dados)
        prestador = dados.get("prestador") or {}
        servico = dados.get("servico") or {}
        tomador = dados.get("tomador") or {}

        if len(only_digits(prestador.get("cnpj"))) != 14:
            raise ValidationError.invalid_cnpj(str(prestador.get("cnpj") or ""))
        if not servico.get("codigo"):
            raise ValidationError.required_field("servico.codigo")
        try:
            valor = float(dados["valor_servicos"])
        except (TypeError, ValueError):
            valor = 0.0
        if valor <= 0:
            raise ValidationError.invalid_value(
                "valor_servicos", dados.get("valor_servicos"), "valor maior que zero"
            )
        documento = only_digits(tomador.get("documento"))
        if not documento:
            raise ValidationError.required_field("tomador.documento")
        if len(documento) not in (11, 14):
            raise ValidationError.invalid_value(
                "tomador.documento", tomador.get("documento"), "CPF (11) ou CNPJ (14)"
            )
        if not tomador.get("razaoSocial"):
            raise ValidationError.required_field("tomador.razaoSocial")
        return True

    # --- XML ---

    def montar_xml_rps(self, dados: dict[str, Any]) -> str:
        servico = dados.get("servico") or {}
        prestador_dados = dados.get("prestador") or {}
        tomador_dados = dados.get("tomador") or {}
        valor_servicos = float(dados["valor_servicos"])
        today = date.today()

        root = self._root("GerarNfseEnvio")
        rps = ElementTree.SubElement(root, "Rps")
        inf = ElementTree.SubElement(
            rps,
            "InfDeclaracaoPrestacaoServico",
            {"Id": str(dados.get("id") or f"RPS{dados.get('rps_numero', '1')}")},
        )
        rps_interno = ElementTree.SubElement(inf, "Rps")
        ident = ElementTree.SubElement(rps_interno, "IdentificacaoRps")
        self._add(ident, "Numero", dados.get("rps_numero", "1"))
        self._add(ident, "Serie", dados.get("rps_serie", "A1"))
        self._add(ident, "Tipo", dados.get("rps_tipo", "1"))
        self._add(rps_interno, "DataEmissao", dados.get("data_emissao_rps", today.isoformat()))
        self._add(rps_interno, "Status", dados.get("status_rps", "1"))

        self._add(inf, "Competencia", dados.get("competencia", today.strftime("%Y-%m")))
        self._add(inf, "NaturezaOperacao", dados.get("natureza_operacao", "1"))
        self._add(inf, "OptanteSimplesNacional", dados.get("optante_simples_nacional", "1"))
        self._add(inf, "IncentivadorCultural", dados.get("incentivador_cultural", "2"))

        servico_el = ElementTree.SubElement(inf, "Servico")
        valores = ElementTree.SubElement(servico_el, "Valores")
        self._add(valores, "ValorServicos", _decimal(valor_servicos))
        for tag, key in (
            ("ValorDeducoes", "valor_deducoes"),
            ("ValorPis", "valor_pis"),
            ("ValorCofins", "valor_cofins"),
            ("ValorInss", "valor_inss"),
            ("ValorIr", "valor_ir"),
            ("ValorCsll", "valor_csll"),
        ):
            self._add(valores, tag, _decimal(servico.get(key)))
        self._add(valores, "IssRetido", servico.get("iss_retido", "2"))
        self._add(valores, "BaseCalculo", _decimal(servico.get("base_calculo", valor_servicos)))
        aliquota = self.formatar_aliquota(float(servico.get("aliquota") or 0))
        self._add(valores, "Aliquota", _decimal(aliquota))
        self._add(
            valores,
            "ValorLiquidoNfse",
            _decimal(servico.get("valor_liquido_nfse", valor_servicos)),
        )
        for tag, key in (
            ("DescontoIncondicionado", "desconto_incondicionado"),
            ("DescontoCondicionado", "desconto_condicionado"),
        ):
            self._add(valores, tag, _decimal(servico.get(key)))
        self._add(
            servico_el,
            "ItemListaServico",
            servico.get("item_lista_servico") or servico.get("codigo"),
        )
        self._add(servico_el, "Discriminacao", servico.get("discriminacao", ""))
        self._add(
            servico_el,
            "InformacoesComplementares",
            servico.get("informacoes_complementares", ""),
        )
        self._add(
            servico_el,
            "CodigoMunicipio",
            servico.get("codigo_municipio") or self.get_codigo_municipio(),
        )

        prestador = ElementTree.SubElement(inf, "Prestador")
        self._add(prestador, "Cnpj", only_digits(prestador_dados.get("cnpj")))
        self._add(prestador, "InscricaoMunicipal", prestador_dados.get("inscricaoMunicipal", ""))

        tomador = ElementTree.SubElement(inf, "Tomador")
        ident_tomador = ElementTree.SubElement(tomador, "IdentificacaoTomador")
        cpf_cnpj = ElementTree.SubElement(ident_tomador, "CpfCnpj")
        documento = only_digits(tomador_dados.get("documento"))
        self._add(cpf_cnpj, "Cnpj" if len(documento) == 14 else "Cpf", documento)
        self._add(tomador, "RazaoSocial", tomador_dados.get("razaoSocial", ""))
        if tomador_dados.get("email") or tomador_dados.get("telefone"):
            contato = ElementTree.SubElement(tomador, "Contato")
            if tomador_dados.get("telefone"):
                self._add(contato, "Telefone", only_digits(tomador_dados["telefone"]))
            if tomador_dados.get("email"):
                self._add(contato, "Email", tomador_dados["email"])

        return self._serialize(root)

    def processar_resposta(self, xml_resposta: str) -> dict[str, Any]:
        if not xml_resposta:
            return {"sucesso": False, "mensagem": "Resposta vazia", "dados": {}}
        try:
            root = ElementTree.fromstring(xml_resposta)
        except ElementTree.ParseError as e:
            return {"sucesso": False, "mensagem": str(e), "dados": {}}

        def first(*names: str) -> str | None:
            for name in names:
                for node in root.iter():
                    if _local(node.tag) == name and node.text is not None:
                        return node.text.strip()
            return None

        def child_of(parent: str, child: str) -> str | None:
            for node in root.iter():
                if _local(node.tag) != parent:
                    continue
                for sub in node:
                    if _local(sub.tag) == child and (sub.text or "").strip():
                        return sub.text.strip()
            return None

        status = first("Sucesso", "sucesso", "Status", "cStat")
        mensagem = first("Mensagem", "mensagem", "xMotivo")
        numero = child_of("InfNfse", "Numero") or first("NumeroNfse", "numeroNfse")
        codigo_verificacao = child_of("InfNfse", "CodigoVerificacao") or first(
            "CodigoVerificacao"
        )
        has_return_messages = any(
            _local(node.tag) == "MensagemRetorno"
            and any(_local(sub.tag) == "Mensagem" for sub in node)
            for node in root.iter()
        )
        sucesso = (status is not None and status.lower() in SUCCESS_STATUSES) or (
            not has_return_messages and bool(numero)
        )
        return {
            "sucesso": sucesso,
            "mensagem": mensagem
            or ("Processado com sucesso" if sucesso else "Retorno sem status explícito"),
            "dados": {
                "numero_nfse": numero,
                "codigo_verificacao": codigo_verificacao,
                "protocolo": first("Protocolo", "nProt") or None,
                "link_visualizacao": first("LinkVisualizacaoNfse") or None,
                "cstat": first("cStat"),
                "xmotivo": first("xMotivo"),
            },
        }

    # --- Internals ---

    def resolve_operation_path(self, operacao: str, identifier: str | None = None) -> str:
        """Path or absolute URL for ``operacao``.

        ``endpoints`` entries may name a configured service, as in
        ``"adn:/nfse"``; ``{id}`` is replaced by ``identifier``.
        """
        path = self.config.endpoints.get(operacao) or OPERATION_PATHS.get(operacao, "")
        if not path:
            raise ConfigurationError(
                f"Endpoint da operação {operacao} não configurado",
                context={"operacao": operacao},
            )
        if "{id}" in path:
            if identifier is None:
                raise ConfigurationError.missing_field("id")
            path = path.replace("{id}", identifier)

        path = route_service(path, self.service_urls())
        return path if path.startswith(("/", "http://", "https://")) else f"/{path}"

    def service_urls(self) -> dict[str, str]:
        """Named service base URLs for the current ambiente."""
        return {name: self.config.resolve_service_url(name) for name in self.config.services}

    def _enviar(self, operacao: str, xml: str, *, identifier: str | None = None) -> str:
        path = self.resolve_operation_path(operacao, identifier)
        method = self.config.operation_methods.get(operacao, "POST").upper()
        headers = {**_XML_HEADERS, **self.config.auth.headers()}
        response = self._http(method, path, None if method == "GET" else xml, headers)
        if isinstance(response, bytes):
            response = response.decode("utf-8")
        if not isinstance(response, str):
            raise TransportError.invalid_response(repr(response))
        if response == "":
            raise TransportError(
                f"Resposta vazia na operação {operacao}",
                error_code="EMPTY_RESPONSE",
                context={"operacao": operacao},
            )
        return response

    def _download(self, tipo: str, chave: str) -> bytes:
        chave = self._require_text(chave, "chave")
        xml = self._envelope("DownloadNfseEnvio", {"Tipo": tipo, "ChaveNfse": chave})
        return self._enviar(f"baixar_{tipo}", xml, identifier=chave).encode("utf-8")

    def _assinar_se_necessario(self, xml: str) -> str:
        mode = self.config.signature_mode
        if mode == "none":
            return xml
        bundle = self._certificates.current()
        if bundle is None:
            if mode == "required":
                raise CertificateError.not_loaded()
            return xml
        if self._signer is None:
            if mode == "required":
                raise ConfigurationError.missing_field("signer")
            log.debug("Certificate loaded but no signer configured; sending unsigned XML")
            return xml
        try:
            return self._signer(xml, bundle)
        except (ValueError, XmlError) as e:
            if mode == "required":
                raise XmlError(
                    f"Falha ao assinar XML NFSe: {e}",
                    context={"suggestions": ["Verifique o certificado e o signatário"]},
                ) from e
            log.warning("XML signing failed, sending unsigned: %s", e)
            return xml

    def _root(self, name: str) -> ElementTree.Element:
        return ElementTree.Element(
            name, {"xmlns": self.config.xml_namespace, "versao": self.get_versao()}
        )

    def _envelope(self, root_name: str, payload: Mapping[str, str]) -> str:
        root = self._root(root_name)
        for tag, value in payload.items():
            self._add(root, tag, value)
        return self._serialize(root)

    @staticmethod
    def _add(parent: ElementTree.Element, tag: str, value: Any) -> ElementTree.Element:
        node = ElementTree.SubElement(parent, tag)
        node.text = "" if value is None else str(value)
        return node

    @staticmethod
    def _serialize(root: ElementTree.Element) -> str:
        body = ElementTree.tostring(root, encoding="unicode")
        return f'<?xml version="1.0" encoding="UTF-8"?>{body}'

    @staticmethod
    def _require_text(value: Any, field: str) -> str:
        text = str(value).strip() if value is not None else ""
        if not text:
            raise ValidationError.required_field(field)
        return text
