"""Shared behavior of configuration-driven NFSe providers."""

from __future__ import annotations

import abc
import re
from typing import Any

from fiscal_core.config.schema import ProviderConfig
from fiscal_core.exceptions import ValidationError
from fiscal_core.nfse.contracts import ConfiguredProvider, NFSeProvider

_NON_DIGITS = re.compile(r"\D")

REQUIRED_FIELDS = ("prestador", "tomador", "servico", "valor_servicos")


def only_digits(value: Any) -> str:
    return _NON_DIGITS.sub("", str(value or ""))


class ConfiguredNFSeProvider(NFSeProvider, ConfiguredProvider):
    """Base class for providers built from a ``ProviderConfig``.

    Subclasses implement the four base operations plus ``montar_xml_rps``
    and ``processar_resposta``; configuration accessors and the common
    validation live here.
    """

    def __init__(self, config: ProviderConfig | dict[str, Any]):
        if not isinstance(config, ProviderConfig):
            config = ProviderConfig.model_validate(config)
        self.config = config

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(ambiente={self.get_ambiente()!r}, "
            f"codigo_municipio={self.get_codigo_municipio()!r})"
        )

    @abc.abstractmethod
    def montar_xml_rps(self, dados: dict[str, Any]) -> str:
        """Build the RPS document for ``dados``."""

    @abc.abstractmethod
    def processar_resposta(self, xml_resposta: str) -> dict[str, Any]:
        """Normalize an issuer response into ``{sucesso, mensagem, dados}``."""

    # --- ConfiguredProvider ---

    def get_wsdl_url(self) -> str:
        return self.config.get_wsdl_url()

    def get_versao(self) -> str:
        return self.config.get_versao()

    def get_aliquota_format(self) -> str:
        return self.config.get_aliquota_format()

    def get_codigo_municipio(self) -> str:
        return self.config.get_codigo_municipio()

    def get_ambiente(self) -> str:
        return self.config.get_ambiente()

    def get_timeout(self) -> int:
        return self.config.get_timeout()

    def get_auth_config(self) -> dict[str, str]:
        return self.config.get_auth_config()

    def get_national_api_base_url(self) -> str:
        return self.config.get_national_api_base_url()

    def validar_dados(self, dados: dict[str, Any]) -> bool:
        """Check the fields every issuer needs.

        Raises:
            ValidationError: Listing every missing field.
        """
        missing = {f: "Campo obrigatório" for f in REQUIRED_FIELDS if dados.get(f) is None}
        if len(missing) == 1:
            raise ValidationError.required_field(next(iter(missing)))
        if missing:
            raise ValidationError.multiple_errors(missing, "dados da NFSe")
        return True

    def formatar_aliquota(self, aliquota: float) -> float:
        """Express a decimal rate (0.02) the way the municipality expects."""
        if self.get_aliquota_format() == "percentual":
            return aliquota * 100
        return aliquota
