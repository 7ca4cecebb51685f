import logging

import pytest

from fiscal_core.nfse.resolver import (
    IGNORED_WARNING,
    NACIONAL_KEY,
    ProviderResolver,
    normalizar_municipio,
)


@pytest.mark.unit
class TestNormalizarMunicipio:
    """Selector normalization"""

    @pytest.mark.parametrize(
        ("selector", "expected"),
        [
            (None, ""),
            ("", ""),
            ("  curitiba ", "curitiba"),
            ("4106902", "4106902"),
            (4106902, "4106902"),
            ("123", "0000123"),
        ],
    )
    def test_values(self, selector, expected):
        assert normalizar_municipio(selector) == expected


@pytest.mark.unit
class TestProviderResolver:
    """Always-national resolution policy"""

    @pytest.mark.parametrize("selector", [None, "", "4106902", "curitiba", NACIONAL_KEY])
    def test_every_selector_resolves_to_national_key(self, selector):
        assert ProviderResolver().resolve_key(selector) == NACIONAL_KEY

    def test_no_selector_is_not_ignored(self):
        resolution = ProviderResolver().resolve(None)

        assert resolution.municipio_ignored is False
        assert resolution.warnings == ()

    def test_national_key_is_not_ignored(self):
        assert ProviderResolver().resolve(NACIONAL_KEY).municipio_ignored is False

    def test_municipality_selector_is_ignored_with_warning(self, caplog):
        with caplog.at_level(logging.WARNING, logger="fiscal_core.nfse.resolver"):
            resolution = ProviderResolver().resolve("4106902")

        assert resolution.municipio_ignored is True
        assert resolution.municipio_input == "4106902"
        assert resolution.warnings == (IGNORED_WARNING,)
        assert "4106902" in caplog.text

    def test_warning_is_logged_once_per_selector(self, caplog):
        with caplog.at_level(logging.WARNING, logger="fiscal_core.nfse.resolver"):
            first = ProviderResolver().resolve("4106902")
            again = ProviderResolver().resolve("4106902")
            other = ProviderResolver().resolve("curitiba")

        assert first.warnings == again.warnings == other.warnings == (IGNORED_WARNING,)
        assert [r.getMessage().count("4106902") for r in caplog.records] == [1, 0]
        assert len(caplog.records) == 2

    def test_build_metadata(self):
        meta = ProviderResolver(extra={"policy": "nacional"}).build_metadata("curitiba")

        assert meta == {
            "provider_key": NACIONAL_KEY,
            "municipio_input": "curitiba",
            "municipio_ignored": True,
            "warnings": [IGNORED_WARNING],
            "policy": "nacional",
        }

    def test_custom_default_key_appears_in_warning(self):
        resolution = ProviderResolver(default_key="nfse_teste").resolve("curitiba")

        assert resolution.provider_key == "nfse_teste"
        assert "'nfse_teste'" in resolution.warnings[0]

    def test_rejects_blank_default_key(self):
        with pytest.raises(ValueError, match="default_key"):
            ProviderResolver(default_key=" ")

    def test_extra_is_read_only(self):
        resolver = ProviderResolver(extra={"a": 1})
        with pytest.raises(TypeError):
            resolver.extra["b"] = 2  # type: ignore[index]
