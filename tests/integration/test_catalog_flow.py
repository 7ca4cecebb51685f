"""End-to-end catalog reads through the facade, the registry and a file cache."""

import json
import os
from unittest.mock import patch

import pytest

from fiscal_core import FileCacheStore, NFSeFacade, get_default_registry
from fiscal_core.nfse.providers.nacional import NacionalProvider
from fiscal_core.nfse.resolver import NACIONAL_KEY

CURITIBA = '{"data": [{"codigo_municipio": "4106902", "nome": "Curitiba"}]}'


@pytest.fixture
def providers_file(tmp_path):
    path = tmp_path / "providers.json"
    path.write_text(
        json.dumps(
            {
                NACIONAL_KEY: {
                    "provider": "NacionalProvider",
                    "codigo_municipio": "4106902",
                    "versao": "1.00",
                    "api_base_url": "https://adn.example/api",
                    "cache_dir": str(tmp_path / "cache"),
                    "cache_ttl": 3600,
                    "endpoints": {"emitir": "/nfse"},
                },
                "curitiba": {"alias_of": NACIONAL_KEY},
            }
        ),
        encoding="utf-8",
    )
    return path


@pytest.fixture
def transport(fake_transport):
    return fake_transport({"/catalogos/municipios": CURITIBA})


@pytest.fixture
def registry(providers_file, transport, clock, tmp_path):
    """Default registry loaded from the providers file, with a fake HTTP layer."""
    with patch.dict(os.environ, {"FISCAL_PROVIDERS_FILE": str(providers_file)}):
        reg = get_default_registry()
    cache = FileCacheStore(tmp_path / "cache", clock=clock)
    reg.register_factory(
        "NacionalProvider",
        lambda config: NacionalProvider(config, http_client=transport, cache=cache),
    )
    return reg


@pytest.mark.integration
class TestCatalogFlow:
    """Curitiba catalog scenario"""

    def test_remote_then_cache(self, registry, transport):
        facade = NFSeFacade("4106902", registry=registry)

        first = facade.listar_municipios_nacionais()
        second = facade.listar_municipios_nacionais()

        assert first.is_success() and second.is_success()
        assert first.get_metadata("source") == "remote"
        assert second.get_metadata("source") == "cache"
        assert second.get_metadata("stale") is False
        assert second.get_data()[0] == {"codigo_municipio": "4106902", "nome": "Curitiba"}
        assert second.get_metadata("municipio_ignored") is True
        assert len(transport.calls) == 1

    def test_cache_survives_new_provider_instances(self, registry, transport):
        NFSeFacade(registry=registry).listar_municipios_nacionais()
        registry.reload()

        again = NFSeFacade(registry=registry).listar_municipios_nacionais()

        assert again.get_metadata("source") == "cache"
        assert len(transport.calls) == 1

    def test_stale_fallback_after_outage(self, registry, transport, clock):
        facade = NFSeFacade(registry=registry)
        facade.listar_municipios_nacionais()

        clock.advance(3601)
        transport.responses = {"/": ConnectionError("rede indisponível")}
        degraded = facade.listar_municipios_nacionais()

        assert degraded.is_success()
        assert degraded.get_metadata("source") == "cache"
        assert degraded.get_metadata("stale") is True
        assert "rede indisponível" in degraded.get_metadata("fallback_error")

    def test_outage_without_cache_is_a_failure_envelope(self, registry, transport):
        transport.responses = {"/": ConnectionError("rede indisponível")}

        resp = NFSeFacade(registry=registry).listar_municipios_nacionais()

        assert resp.is_error()
        assert resp.get_operation() == "nfse_nacional_municipios"
        assert "Falha ao obter catálogo nacional" in resp.get_error()

    def test_alias_key_and_selector_resolve_to_same_provider(self, registry):
        assert registry.resolve_key("curitiba") == NACIONAL_KEY
        assert NFSeFacade("curitiba", registry=registry).provider is registry.get(NACIONAL_KEY)
