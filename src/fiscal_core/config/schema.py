"""Configuration schemas validated with Pydantic.

``FiscalSettings`` holds process-wide settings read from ``FISCAL_*``
environment variables. ``ProviderConfig`` is one entry of the provider
registry file and is handed by value to provider factories.
"""

from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

PRODUCAO = "producao"
HOMOLOGACAO = "homologacao"

_AMBIENTE_ALIASES = {
    "producao": PRODUCAO,
    "produção": PRODUCAO,
    "prod": PRODUCAO,
    "production": PRODUCAO,
    "homologacao": HOMOLOGACAO,
    "homologação": HOMOLOGACAO,
    "homolog": HOMOLOGACAO,
    "teste": HOMOLOGACAO,
    "test": HOMOLOGACAO,
    "sandbox": HOMOLOGACAO,
}

DEFAULT_TIMEOUT = 180


def normalizar_ambiente(value: Any) -> str:
    """Map an environment name or alias to ``producao``/``homologacao``.

    Raises:
        ValueError: If the value is not a known alias.
    """
    if isinstance(value, str):
        normalized = _AMBIENTE_ALIASES.get(value.strip().lower())
        if normalized:
            return normalized
    raise ValueError(
        f"Invalid ambiente: {value!r}. Must be one of: producao, homologacao"
    )


class FiscalSettings(BaseSettings):
    """Process-wide settings, read from ``FISCAL_*`` environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="FISCAL_",
        env_file=None,  # Only used when explicitly requested
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    ambiente: str = Field(default=HOMOLOGACAO, description="producao or homologacao")
    cache_dir: Path | None = Field(
        default=None, description="Root directory of the catalog cache"
    )
    cache_ttl: int = Field(
        default=86400, description="Freshness window of catalog entries, seconds", ge=1
    )
    timeout: float = Field(default=30.0, description="HTTP timeout, seconds", gt=0)
    api_base_url: str = Field(default="", description="National NFSe API base URL")
    providers_file: Path | None = Field(
        default=None, description="JSON file with provider registrations"
    )
    telemetry: bool = Field(default=False, description="Enable telemetry scopes")

    @field_validator("ambiente", mode="before")
    @classmethod
    def parse_ambiente(cls, v: Any) -> str:
        return normalizar_ambiente(v)


class AuthConfig(BaseModel):
    """Credentials for the national API. Values are redacted in reprs."""

    model_config = ConfigDict(frozen=True, extra="allow")

    token: SecretStr | None = None
    api_key: SecretStr | None = None

    def headers(self) -> dict[str, str]:
        out = {}
        if self.token and self.token.get_secret_value():
            out["Authorization"] = f"Bearer {self.token.get_secret_value()}"
        if self.api_key and self.api_key.get_secret_value():
            out["X-API-Key"] = self.api_key.get_secret_value()
        return out


class ProviderConfig(BaseModel):
    """Settings of one provider registration.

    Unknown keys are kept so municipal files can carry their own extras;
    read them with ``extra(name)``.
    """

    model_config = ConfigDict(frozen=True, extra="allow")

    provider: str | None = Field(default=None, description="Factory name")
    codigo_municipio: str = ""
    versao: str = "2.02"
    versao_schema: str = "1.0"
    aliquota_format: Literal["decimal", "percentual"] = "decimal"
    ambiente: str = HOMOLOGACAO
    timeout: int = DEFAULT_TIMEOUT
    auth: AuthConfig = Field(default_factory=AuthConfig)
    api_base_url: str = ""
    wsdl: str | None = None
    wsdl_homologacao: str | None = None
    wsdl_producao: str | None = None
    url_homologacao: str | None = None
    url_producao: str | None = None
    endpoints: dict[str, str] = Field(default_factory=dict)
    operation_methods: dict[str, str] = Field(default_factory=dict)
    catalog_endpoints: dict[str, str] = Field(default_factory=dict)
    legacy_catalog_endpoints: dict[str, str | None] = Field(default_factory=dict)
    services: dict[str, dict[str, str]] = Field(default_factory=dict)
    signature_mode: Literal["none", "optional", "required"] = "optional"
    xml_namespace: str = "http://www.publica.inf.br/integracao_nfse"
    cache_dir: str | None = None
    cache_ttl: int = Field(default=86400, ge=1)
    mtls: bool = False
    alias_of: str | None = None
    fallback_provider: str | None = None
    regras_especificas: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def accept_provider_class(cls, data: Any) -> Any:
        """Older files name the factory under ``provider_class``."""
        if isinstance(data, dict) and not data.get("provider") and data.get("provider_class"):
            data = {**data, "provider": data["provider_class"]}
        return data

    @field_validator("ambiente", mode="before")
    @classmethod
    def parse_ambiente(cls, v: Any) -> str:
        return normalizar_ambiente(v)

    @field_validator("timeout", mode="before")
    @classmethod
    def coerce_timeout(cls, v: Any) -> int:
        try:
            return int(v)
        except (TypeError, ValueError):
            return DEFAULT_TIMEOUT

    def extra(self, name: str, default: Any = None) -> Any:
        return (self.model_extra or {}).get(name, default)

    def with_overrides(self, **overrides: Any) -> "ProviderConfig":
        """Return a validated copy with ``overrides`` applied."""
        return type(self).model_validate({**self.model_dump(), **overrides})

    # --- Accessors ---

    def get_wsdl_url(self) -> str:
        if self.ambiente == PRODUCAO:
            return self.wsdl_producao or self.url_producao or self.wsdl or ""
        return self.wsdl_homologacao or self.url_homologacao or self.wsdl or ""

    def get_versao(self) -> str:
        return self.versao

    def get_aliquota_format(self) -> str:
        return self.aliquota_format

    def get_codigo_municipio(self) -> str:
        return self.codigo_municipio

    def get_ambiente(self) -> str:
        return self.ambiente

    def get_timeout(self) -> int:
        return self.timeout if self.timeout > 0 else DEFAULT_TIMEOUT

    def get_auth_config(self) -> dict[str, str]:
        """Plain credential values. Never log the result."""
        return {
            k: v.get_secret_value()
            for k, v in (("token", self.auth.token), ("api_key", self.auth.api_key))
            if v is not None
        }

    def get_national_api_base_url(self) -> str:
        return (self.api_base_url or self.wsdl or "").rstrip("/")

    def resolve_service_url(self, service: str) -> str:
        """Base URL of a named service (e.g. ``adn``, ``sefin``) for the current ambiente."""
        return self.services.get(service, {}).get(self.ambiente, "").rstrip("/")
