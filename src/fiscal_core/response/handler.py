"""Boundary that turns units of work into ``FiscalResponse`` envelopes.

Every public operation of the library runs its work through a
``ResponseHandler``. Exceptions raised inside the work never escape: they
are classified (severity, category, suggestions) and returned as failure
envelopes. The timeout, retry and cache variants compose on top of
``execute``.
"""

from __future__ import annotations

from collections.abc import Callable
import contextvars
import logging
import threading
import time
from typing import Any
from warnings import deprecated
from xml.etree import ElementTree

from fiscal_core.cache.store import CacheStore, MemoryCacheStore
from fiscal_core.core.types import _require, _require_zero_arg_callable
from fiscal_core.exceptions import (
    CertificateError,
    ConfigurationError,
    FiscalError,
    FiscalTimeoutError,
    SefazError,
    ValidationError,
    XmlError,
)
from fiscal_core.response.envelope import FiscalResponse, _thaw
from fiscal_core.telemetry import TelemetryContext, TelemetryContextProtocol

log = logging.getLogger(__name__)

type Work = Callable[[], Any]

# (category, severity) per fault kind; first match wins, so subclasses first
_FAULT_CATEGORIES: tuple[tuple[type[FiscalError], str, str], ...] = (
    (CertificateError, "certificate", "critical"),
    (ValidationError, "validation", "warning"),
    (ConfigurationError, "configuration", "warning"),
    (SefazError, "sefaz", "error"),
    (FiscalTimeoutError, "timeout", "error"),
    (XmlError, "xml", "error"),
)

_INPUT_ERRORS = (ValueError, TypeError, KeyError)

_RUNTIME_HINTS: tuple[tuple[str, str, list[str]], ...] = (
    (
        "certificado",
        "CERTIFICATE_ERROR",
        [
            "Verifique se o certificado está carregado",
            "Confirme se o certificado não expirou",
            "Valide a senha do certificado",
        ],
    ),
    (
        "SEFAZ",
        "SEFAZ_ERROR",
        [
            "Verifique conexão com internet",
            "Confirme se SEFAZ está operacional",
            "Tente novamente em alguns minutos",
        ],
    ),
    (
        "XML",
        "XML_ERROR",
        [
            "Verifique estrutura dos dados",
            "Confirme campos obrigatórios",
            "Valide formato dos valores",
        ],
    ),
)


def validation_suggestions(message: str) -> list[str]:
    """Derive remediation hints from a plain input-error message."""
    suggestions = []
    if "chave" in message:
        suggestions.append("Chave de acesso deve ter exatamente 44 dígitos")
    if "CNPJ" in message:
        suggestions.append("CNPJ deve ter 14 dígitos")
    if "motivo" in message or "justificativa" in message:
        suggestions.append("Motivo deve ter pelo menos 15 caracteres")
    if "valor" in message:
        suggestions.append("Verifique formato numérico dos valores")
    return suggestions or ["Verifique os dados informados"]


def classify_fault(exc: BaseException) -> dict[str, Any]:
    """Return the severity/category metadata for ``exc``.

    Library faults keep their context (including ``suggestions``); plain
    input errors get generated suggestions.
    """
    if isinstance(exc, FiscalError):
        category, severity = "fiscal", "error"
        for kind, kind_category, kind_severity in _FAULT_CATEGORIES:
            if isinstance(exc, kind):
                category, severity = kind_category, kind_severity
                break
        meta: dict[str, Any] = {
            "severity": severity,
            "category": category,
            "recoverable": True,
            "retryable": exc.retryable,
        }
        meta.update(exc.context)
        if isinstance(exc, ValidationError) and exc.validation_errors:
            meta["validation_errors"] = dict(exc.validation_errors)
        return meta

    if isinstance(exc, _INPUT_ERRORS):
        return {
            "severity": "warning",
            "category": "validation",
            "recoverable": True,
            "suggestions": validation_suggestions(str(exc)),
        }

    meta = {"severity": "error", "category": "runtime", "recoverable": False}
    text = str(exc)
    for needle, _code, suggestions in _RUNTIME_HINTS:
        if needle in text:
            meta["suggestions"] = list(suggestions)
            break
    return meta


class ResponseHandler:
    """Runs work and normalizes its outcome into envelopes.

    Args:
        cache: Backend for ``execute_with_cache``. Defaults to an in-memory store.
        sleep: Called between retry attempts; injectable for tests.
        telemetry: Context receiving a ``handler.<operation>`` scope per call.
    """

    def __init__(
        self,
        *,
        cache: CacheStore | None = None,
        sleep: Callable[[float], None] = time.sleep,
        telemetry: TelemetryContextProtocol | None = None,
    ):
        self.cache: CacheStore = cache if cache is not None else MemoryCacheStore()
        self._sleep = sleep
        self._tele = telemetry if telemetry is not None else TelemetryContext()

    # --- Core ---

    def execute(self, work: Work, operation: str = "") -> FiscalResponse:
        """Run ``work`` and wrap its return value or its exception.

        A ``FiscalResponse`` returned by ``work`` is passed through as-is.
        """
        _require_zero_arg_callable(work, "work")
        operation = operation or "unknown"
        with self._tele(f"handler.{operation}"):
            try:
                result = work()
            except Exception as e:
                return self.failure_from(e, operation)
        if isinstance(result, FiscalResponse):
            return result
        return FiscalResponse.success_response(result, operation)

    def failure_from(self, exc: BaseException, operation: str) -> FiscalResponse:
        """Convert ``exc`` into a classified failure envelope."""
        meta = classify_fault(exc)
        log.debug("Operation %s failed with %s: %s", operation, type(exc).__name__, exc)

        if isinstance(exc, FiscalError):
            return FiscalResponse.from_exception(exc, operation, meta)
        if isinstance(exc, _INPUT_ERRORS):
            detail = exc.args[0] if isinstance(exc, KeyError) and exc.args else exc
            return FiscalResponse.from_exception(
                exc,
                operation,
                meta,
                message=f"Dados inválidos: {detail}",
                code="VALIDATION_ERROR",
            )

        code = "GENERAL_ERROR"
        text = str(exc)
        for needle, hint_code, _suggestions in _RUNTIME_HINTS:
            if needle in text:
                code = hint_code
                break
        return FiscalResponse.from_exception(
            exc,
            operation,
            meta,
            message=f"Erro na operação: {text or type(exc).__name__}",
            code=code,
        )

    @deprecated("Use execute(work, operation) instead")
    def handle(self, work: Work, operation: str = "unknown") -> FiscalResponse:
        return self.execute(work, operation)

    # --- Decorators ---

    def execute_with_timeout(
        self, work: Work, timeout_seconds: float, operation: str = ""
    ) -> FiscalResponse:
        """Like ``execute``, but give up after ``timeout_seconds``.

        The work runs on a daemon thread. When the deadline passes the caller
        gets a ``TIMEOUT_ERROR`` envelope immediately; the thread is abandoned,
        not stopped, so its side effects may still happen later. Blocking I/O
        should carry its own deadline (the HTTP transport does).
        """
        _require(
            condition=timeout_seconds > 0,
            message="must be > 0",
            field_name="timeout_seconds",
        )
        _require_zero_arg_callable(work, "work")
        operation = operation or "unknown"
        outcome: list[FiscalResponse] = []
        done = threading.Event()

        def runner() -> None:
            try:
                outcome.append(self.execute(work, operation))
            finally:
                done.set()

        ctx = contextvars.copy_context()
        worker = threading.Thread(
            target=ctx.run, args=(runner,), name=f"fiscal-{operation}", daemon=True
        )
        worker.start()
        if not done.wait(timeout_seconds) or not outcome:
            log.warning(
                "Operation %s abandoned after %.3gs timeout", operation, timeout_seconds
            )
            return self.failure_from(
                FiscalTimeoutError.after(timeout_seconds, operation), operation
            ).merge_metadata({"timeout_seconds": timeout_seconds, "abandoned": True})
        return outcome[0]

    def execute_with_retry(
        self,
        work: Work,
        max_attempts: int = 3,
        delay_seconds: float = 1.0,
        operation: str = "",
        *,
        backoff: float = 1.0,
    ) -> FiscalResponse:
        """Run ``work`` until it succeeds or ``max_attempts`` is reached.

        ``work`` must be idempotent; side effects of failed attempts are not
        undone. The delay between attempts is multiplied by ``backoff``
        after each failure.

        Returns:
            The first success, or the last failure, with
            ``metadata["retry_attempts"]`` set to the attempts used.
        """
        _require(
            condition=isinstance(max_attempts, int) and max_attempts >= 1,
            message="must be an int >= 1",
            field_name="max_attempts",
        )
        _require(
            condition=delay_seconds >= 0 and backoff >= 1.0,
            message="delay must be >= 0 and backoff >= 1",
            field_name="delay_seconds",
        )
        delay = delay_seconds
        attempt = 1
        response = self.execute(work, operation)
        while response.is_error():
            log.warning(
                "Attempt %d/%d of %s failed: %s",
                attempt,
                max_attempts,
                operation or "unknown",
                response.get_error(),
            )
            if attempt == max_attempts:
                break
            if delay > 0:
                self._sleep(delay)
                delay *= backoff
            attempt += 1
            response = self.execute(work, operation)
        return response.with_metadata("retry_attempts", attempt)

    def execute_with_cache(
        self, key: str, work: Work, ttl_seconds: float, operation: str = ""
    ) -> FiscalResponse:
        """Return a fresh cached payload for ``key`` or run ``work`` and cache it.

        Only successful payloads are stored. A stale entry is ignored here;
        stale degradation is the catalog service's business.
        """
        _require(
            condition=isinstance(key, str) and key.strip() != "",
            message="must be a non-empty str",
            field_name="key",
        )
        lookup = self.cache.get(key, ttl_seconds)
        if lookup is not None and not lookup.stale:
            log.debug("Serving %s from cache key %r", operation or "unknown", key)
            return FiscalResponse.success_response(
                lookup.value,
                operation or "unknown",
                {"from_cache": True, "cached_at": lookup.created_at},
            )

        response = self.execute(work, operation)
        if response.is_success() and not self._store(key, response):
            log.warning("Result of %s not cached under %r", operation or "unknown", key)
        return response.with_metadata("from_cache", False)

    def _store(self, key: str, response: FiscalResponse) -> bool:
        # Caching is an optimization; a failing backend never fails the call
        try:
            return self.cache.put(key, _thaw(response.data))
        except Exception as e:
            log.debug("Cache backend rejected %r: %s", key, e)
            return False

    # --- Remote payload checks ---

    def validate_api_response(self, xml_response: str, operation: str = "") -> FiscalResponse:
        """Check that a remote XML payload is present, well-formed and error-free."""
        operation = operation or "unknown"
        if not xml_response or not xml_response.strip():
            return FiscalResponse.error_response(
                "Resposta vazia da API", "EMPTY_RESPONSE", operation
            )
        try:
            root = ElementTree.fromstring(xml_response)
        except ElementTree.ParseError:
            return FiscalResponse.error_response(
                "Resposta inválida da API (XML malformado)",
                "INVALID_XML_RESPONSE",
                operation,
            )
        for node in root.iter():
            tag = node.tag.rsplit("}", 1)[-1] if isinstance(node.tag, str) else ""
            if tag in ("erro", "error", "fault"):
                text = "".join(node.itertext()).strip()
                return FiscalResponse.error_response(
                    f"Erro retornado pela API: {text}", "API_ERROR", operation
                )
        return FiscalResponse.success_response(
            {"xml": xml_response, "validated": True}, operation
        )
