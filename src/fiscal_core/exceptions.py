"""Exception taxonomy for fiscal operations.

Every fault raised inside the library derives from ``FiscalError``. Each
kind carries a stable ``error_code``, a ``context`` mapping (which may hold
remediation ``suggestions``) and a ``retryable`` flag. The response handler
is the single boundary where these are converted into ``FiscalResponse``
envelopes; callers of the facade never see them.
"""

from __future__ import annotations

from typing import Any


class FiscalError(Exception):
    """Base exception for fiscal operations."""

    error_code: str = "FISCAL_ERROR"
    retryable: bool = False

    def __init__(
        self,
        message: str = "",
        *,
        code: int = 0,
        context: dict[str, Any] | None = None,
        error_code: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.context: dict[str, Any] = dict(context) if context else {}
        if error_code is not None:
            self.error_code = error_code

    @property
    def suggestions(self) -> list[str]:
        return list(self.context.get("suggestions", []))

    def with_context(self, **context: Any) -> FiscalError:
        """Merge extra context into this error and return it for chaining."""
        self.context.update(context)
        return self


class ConfigurationError(FiscalError):
    """Provider key unconfigured, malformed municipality code, missing field."""

    error_code = "CONFIG_ERROR"

    @classmethod
    def provider_not_configured(cls, key: str) -> ConfigurationError:
        return cls(
            f"Provider '{key}' não configurado",
            error_code="PROVIDER_NOT_FOUND",
            context={
                "provider_key": key,
                "suggestions": [
                    f"Registre '{key}' no arquivo de providers",
                    "Verifique a variável FISCAL_PROVIDERS_FILE",
                ],
            },
        )

    @classmethod
    def invalid_municipio(cls, codigo: str) -> ConfigurationError:
        return cls(
            "Código do município deve conter 7 dígitos",
            error_code="INVALID_MUNICIPIO",
            context={
                "codigo_municipio": codigo,
                "suggestions": ["Use o código IBGE de 7 dígitos do município"],
            },
        )

    @classmethod
    def provider_construction_failed(cls, key: str, exc: BaseException) -> ConfigurationError:
        error = cls(
            f"Falha ao construir provider '{key}': {exc}",
            error_code="PROVIDER_INIT_FAILED",
            context={
                "provider_key": key,
                "exception_type": type(exc).__name__,
                "suggestions": [
                    "Verifique cache_dir e demais caminhos da configuração do provider",
                    "Confira as dependências exigidas pela factory registrada",
                ],
            },
        )
        error.__cause__ = exc
        return error

    @classmethod
    def missing_field(cls, field: str) -> ConfigurationError:
        return cls(
            f"Campo obrigatório não informado: {field}",
            error_code="MISSING_FIELD",
            context={"field": field, "suggestions": [f"Informe o valor para {field}"]},
        )


class CertificateError(FiscalError):
    """Digital certificate problems. Each factory carries suggestions."""

    error_code = "CERTIFICATE_ERROR"

    @classmethod
    def not_loaded(cls) -> CertificateError:
        return cls(
            "Certificado digital não carregado",
            context={
                "suggestions": [
                    "Carregue o certificado antes de usar operações fiscais",
                    "Verifique se o arquivo .pfx existe",
                    "Confirme se a senha está correta",
                ]
            },
        )

    @classmethod
    def expired(cls) -> CertificateError:
        return cls(
            "Certificado digital expirou",
            context={
                "suggestions": [
                    "Renove seu certificado digital",
                    "Entre em contato com a Autoridade Certificadora",
                    "Verifique a data de validade",
                ]
            },
        )

    @classmethod
    def invalid_password(cls) -> CertificateError:
        return cls(
            "Senha do certificado digital inválida",
            context={
                "suggestions": [
                    "Verifique a senha do certificado",
                    "Confirme se não há caracteres especiais",
                    "Tente digitar a senha novamente",
                ]
            },
        )

    @classmethod
    def file_not_found(cls, path: str) -> CertificateError:
        return cls(
            f"Arquivo de certificado não encontrado: {path}",
            context={
                "path": path,
                "suggestions": [
                    "Verifique se o caminho está correto",
                    "Confirme se o arquivo existe",
                    "Verifique as permissões de leitura",
                ],
            },
        )


class TransportError(FiscalError):
    """Remote endpoint unreachable, non-2xx status or malformed payload."""

    error_code = "TRANSPORT_ERROR"
    retryable = True

    @classmethod
    def connection_failed(cls, url: str, reason: str = "") -> TransportError:
        message = f"Falha de conexão com {url}"
        if reason:
            message += f": {reason}"
        return cls(
            message,
            context={
                "url": url,
                "suggestions": [
                    "Verifique sua conexão com internet",
                    "Tente novamente em alguns minutos",
                ],
            },
        )

    @classmethod
    def http_status(cls, status: int, url: str) -> TransportError:
        return cls(
            f"HTTP {status} ao consultar {url}",
            code=status,
            error_code="HTTP_ERROR",
            context={"status": status, "url": url},
        )

    @classmethod
    def invalid_response(cls, content: str = "") -> TransportError:
        return cls(
            "Resposta inválida do serviço remoto",
            error_code="INVALID_RESPONSE",
            context={
                "response_preview": content[:200],
                "suggestions": [
                    "Confirme se o ambiente (produção/homologação) está certo",
                    "Verifique se a URL base aponta para a API correta",
                ],
            },
        )


class FiscalTimeoutError(TransportError):
    """Operation exceeded its deadline."""

    error_code = "TIMEOUT_ERROR"

    @classmethod
    def after(cls, seconds: float, operation: str = "") -> FiscalTimeoutError:
        label = f" '{operation}'" if operation else ""
        return cls(
            f"Operação{label} excedeu o tempo limite (timeout) de {seconds:g} segundos",
            context={
                "timeout_seconds": seconds,
                "suggestions": [
                    "Sua conexão pode estar lenta",
                    "O serviço pode estar com alta demanda",
                    "Considere aumentar o timeout",
                ],
            },
        )


class SefazError(TransportError):
    """State tax authority communication failures."""

    error_code = "SEFAZ_ERROR"

    @classmethod
    def connection_failed(cls, uf: str = "", reason: str = "") -> SefazError:
        message = "Falha na conexão com SEFAZ" + (f" - UF: {uf}" if uf else "")
        return cls(
            message,
            context={
                "uf": uf,
                "reason": reason,
                "suggestions": [
                    "Verifique sua conexão com internet",
                    "Confirme se SEFAZ não está em manutenção",
                    "Tente novamente em alguns minutos",
                    "Verifique se URLs de webservice estão corretas",
                ],
            },
        )

    @classmethod
    def service_unavailable(cls, cstat: str = "", xmotivo: str = "") -> SefazError:
        message = "Serviço SEFAZ indisponível"
        if cstat and xmotivo:
            message += f" - {cstat}: {xmotivo}"
        return cls(
            message,
            code=int(cstat) if cstat.isdigit() else 0,
            context={
                "cStat": cstat,
                "xMotivo": xmotivo,
                "suggestions": [
                    "SEFAZ pode estar em manutenção",
                    "Aguarde e tente novamente",
                    "Use modo de contingência se disponível",
                ],
            },
        )


class ValidationError(FiscalError):
    """Caller-supplied data failed structural checks."""

    error_code = "VALIDATION_ERROR"

    def __init__(
        self,
        message: str = "",
        *,
        code: int = 0,
        context: dict[str, Any] | None = None,
        error_code: str | None = None,
        validation_errors: dict[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=code, context=context, error_code=error_code)
        self.validation_errors: dict[str, str] = dict(validation_errors or {})

    @classmethod
    def invalid_chave_acesso(cls, chave: str) -> ValidationError:
        return cls(
            f"Chave de acesso inválida: {chave}",
            context={
                "chave_fornecida": chave,
                "chave_length": len(chave),
                "suggestions": [
                    "Chave deve ter exatamente 44 dígitos",
                    "Remova espaços e caracteres especiais",
                ],
            },
            validation_errors={"chave_acesso": "Deve ter 44 dígitos numéricos"},
        )

    @classmethod
    def invalid_cnpj(cls, cnpj: str) -> ValidationError:
        return cls(
            f"CNPJ inválido: {cnpj}",
            context={
                "cnpj_fornecido": cnpj,
                "suggestions": [
                    "CNPJ deve ter 14 dígitos",
                    "Verifique o dígito verificador",
                    "Use apenas números",
                ],
            },
            validation_errors={"cnpj": "Formato inválido ou dígito verificador incorreto"},
        )

    @classmethod
    def invalid_cpf(cls, cpf: str) -> ValidationError:
        return cls(
            f"CPF inválido: {cpf}",
            context={
                "cpf_fornecido": cpf,
                "suggestions": ["CPF deve ter 11 dígitos", "Use apenas números"],
            },
            validation_errors={"cpf": "Formato inválido ou dígito verificador incorreto"},
        )

    @classmethod
    def required_field(cls, field: str, where: str = "") -> ValidationError:
        message = f"Campo obrigatório não informado: {field}"
        if where:
            message += f" em {where}"
        return cls(
            message,
            context={
                "field": field,
                "suggestions": [
                    f"Informe o valor para {field}",
                    "Verifique a documentação dos campos obrigatórios",
                ],
            },
            validation_errors={field: "Campo obrigatório"},
        )

    @classmethod
    def invalid_value(cls, field: str, value: Any, expected: str = "") -> ValidationError:
        message = f"Valor inválido para {field}: {value!r}"
        if expected:
            message += f". Esperado: {expected}"
        return cls(
            message,
            context={
                "field": field,
                "value": value,
                "expected": expected,
                "suggestions": [f"Corrija o valor do campo {field}"],
            },
            validation_errors={field: f"Valor inválido. Esperado: {expected}"},
        )

    @classmethod
    def multiple_errors(cls, errors: dict[str, str], where: str = "") -> ValidationError:
        message = f"{len(errors)} erro(s) de validação encontrado(s)"
        if where:
            message += f" em {where}"
        return cls(
            message,
            context={
                "error_count": len(errors),
                "suggestions": ["Corrija todos os erros listados"],
            },
            validation_errors=errors,
        )


class XmlError(FiscalError):
    """XML payloads that cannot be built or parsed."""

    error_code = "XML_ERROR"

    @classmethod
    def malformed(cls, details: str = "") -> XmlError:
        message = "XML malformado" + (f": {details}" if details else "")
        return cls(
            message,
            context={
                "details": details,
                "suggestions": [
                    "Verifique a estrutura do XML",
                    "Confirme se todas as tags estão fechadas",
                    "Valide caracteres especiais (encode)",
                ],
            },
        )

    @classmethod
    def parsing_failed(cls, error: str) -> XmlError:
        return cls(
            f"Erro ao processar XML: {error}",
            context={
                "parse_error": error,
                "suggestions": [
                    "XML pode estar corrompido",
                    "Verifique encoding (UTF-8)",
                    "Confirme estrutura do documento",
                ],
            },
        )


class CapabilityNotSupportedError(FiscalError):
    """An extended operation was invoked on a provider lacking it."""

    error_code = "CAPABILITY_NOT_SUPPORTED"

    @classmethod
    def for_provider(cls, provider: object, capability: str) -> CapabilityNotSupportedError:
        return cls(
            f"provider does not support advanced capabilities: {capability}",
            context={
                "provider_class": type(provider).__name__,
                "capability": capability,
                "suggestions": ["Use o provider 'nfse_nacional' para esta operação"],
            },
        )
