"""Issue, query and cancel through the facade with a REST-style national API."""

import pytest

from fiscal_core import CertificateState, NFSeFacade, ProviderRegistry, ResponseHandler
from fiscal_core.exceptions import TransportError
from fiscal_core.nfse.providers.nacional import NacionalProvider
from fiscal_core.nfse.registry import register_defaults
from fiscal_core.nfse.resolver import NACIONAL_KEY

EMITIDA = (
    "<GerarNfseResposta><ListaNfse><CompNfse><Nfse><InfNfse>"
    "<Numero>2026000042</Numero><CodigoVerificacao>AB12CD34</CodigoVerificacao>"
    "</InfNfse></Nfse></CompNfse></ListaNfse></GerarNfseResposta>"
)


@pytest.fixture
def api(fake_transport):
    """Fake national API keyed by method and path."""
    state = {"emitir_failures": 0}

    def answer(method, path):
        if method == "POST" and path.endswith("/nfse"):
            if state["emitir_failures"]:
                state["emitir_failures"] -= 1
                return TransportError.http_status(503, path)
            return EMITIDA
        if method == "GET" and "/nfse/" in path:
            return EMITIDA
        if path.endswith("/eventos"):
            return "<CancelarResposta><Sucesso>true</Sucesso></CancelarResposta>"
        return TransportError.http_status(404, path)

    transport = fake_transport(answer)
    transport.state = state
    return transport


@pytest.fixture
def facade(nacional_config, api):
    config = {
        **nacional_config,
        "services": {
            "adn": {
                "homologacao": "https://adn.producaorestrita.nfse.gov.br/api/v1",
                "producao": "https://adn.nfse.gov.br/api/v1",
            }
        },
        "endpoints": {
            "emitir": "adn:/nfse",
            "consultar": "adn:/nfse/{id}",
            "cancelar": "adn:/nfse/{id}/eventos",
        },
        "operation_methods": {"consultar": "GET"},
    }
    registry = register_defaults(ProviderRegistry())
    registry.register(
        NACIONAL_KEY,
        lambda c: NacionalProvider(c, http_client=api, certificates=CertificateState()),
        config,
    )
    return NFSeFacade(
        "3550308", registry=registry, handler=ResponseHandler(sleep=lambda _s: None)
    )


@pytest.mark.integration
class TestEmissionFlow:
    """Full document lifecycle"""

    def test_issue_query_cancel(self, facade, api, nfse_dados):
        emitida = facade.emitir(nfse_dados)
        consulta = facade.consultar("NFSE2026000042")
        cancelada = facade.cancelar("NFSE2026000042", "Erro na discriminação do serviço")

        assert emitida.is_success() and consulta.is_success() and cancelada.is_success()
        assert cancelada.get_data("canceled") is True
        assert api.paths == [
            "https://adn.producaorestrita.nfse.gov.br/api/v1/nfse",
            "https://adn.producaorestrita.nfse.gov.br/api/v1/nfse/NFSE2026000042",
            "https://adn.producaorestrita.nfse.gov.br/api/v1/nfse/NFSE2026000042/eventos",
        ]
        assert [c["method"] for c in api.calls] == ["POST", "GET", "POST"]
        for resp in (emitida, consulta, cancelada):
            assert resp.get_metadata("municipio_ignored") is True
            assert resp.get_metadata("provider_key") == NACIONAL_KEY

    def test_issued_document_is_parsed(self, facade, nfse_dados):
        provider = facade.provider
        xml = facade.emitir(nfse_dados).get_data("resultado")

        parsed = provider.processar_resposta(xml)

        assert parsed["sucesso"] is True
        assert parsed["dados"]["numero_nfse"] == "2026000042"
        assert facade.validar_xml(xml).get_data("tipo_nfse") == "CompNfse"

    def test_retry_through_handler(self, facade, api, nfse_dados):
        api.state["emitir_failures"] = 2
        handler = ResponseHandler(sleep=lambda _s: None)

        resp = handler.execute_with_retry(
            lambda: facade.provider.emitir(nfse_dados), 3, 0.1, "nfse_emission"
        )

        assert resp.is_success()
        assert resp.get_metadata("retry_attempts") == 3
        assert len(api.calls) == 3

    def test_unknown_route_is_a_failure_envelope(self, facade):
        resp = facade.consultar_lote("PROT-1")

        assert resp.is_error()
        assert resp.get_error_code() == "HTTP_ERROR"
        assert resp.get_operation() == "nfse_query_lote"

    def test_configuration_checks(self, facade):
        assert facade.validar_configuracao().is_success()
        assert facade.verificar_prontidao_homologacao().get_data("ready") is True
