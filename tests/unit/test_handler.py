from decimal import Decimal
import threading

import pytest

from fiscal_core.cache.store import FileCacheStore, MemoryCacheStore
from fiscal_core.exceptions import (
    CertificateError,
    ConfigurationError,
    TransportError,
    ValidationError,
)
from fiscal_core.response.envelope import FiscalResponse
from fiscal_core.response.handler import ResponseHandler, classify_fault


@pytest.fixture
def handler(clock):
    sleeps: list[float] = []
    h = ResponseHandler(cache=MemoryCacheStore(clock=clock), sleep=sleeps.append)
    h.sleeps = sleeps  # type: ignore[attr-defined]
    return h


@pytest.mark.unit
class TestExecute:
    """Core execute behavior"""

    def test_wraps_return_value(self, handler):
        resp = handler.execute(lambda: {"ok": True}, "op")
        assert resp.is_success()
        assert resp.get_data("ok") is True
        assert resp.get_operation() == "op"

    def test_passes_through_returned_envelope(self, handler):
        inner = FiscalResponse.success_response({"x": 1}, "inner")
        assert handler.execute(lambda: inner, "outer") is inner

    def test_never_raises_for_fiscal_errors(self, handler):
        def work():
            raise CertificateError.not_loaded()

        resp = handler.execute(work, "nfse_emission")

        assert resp.is_error()
        assert resp.get_error_code() == "CERTIFICATE_ERROR"
        assert resp.get_metadata("severity") == "critical"
        assert resp.get_metadata("category") == "certificate"
        assert resp.get_metadata("suggestions")

    def test_validation_error_details_are_exposed(self, handler):
        def work():
            raise ValidationError.multiple_errors({"cnpj": "x", "im": "y"}, "prestador")

        resp = handler.execute(work, "op")

        assert resp.get_metadata("severity") == "warning"
        assert resp.get_metadata("validation_errors") == {"cnpj": "x", "im": "y"}

    def test_input_errors_become_validation_failures(self, handler):
        def work():
            raise ValueError("CNPJ inválido")

        resp = handler.execute(work, "op")

        assert resp.get_error_code() == "VALIDATION_ERROR"
        assert resp.get_error() == "Dados inválidos: CNPJ inválido"
        assert "CNPJ deve ter 14 dígitos" in resp.get_metadata("suggestions")

    def test_key_error_message_uses_missing_key(self, handler):
        def work():
            return {}["cnpj"]

        resp = handler.execute(work, "op")
        assert resp.get_error() == "Dados inválidos: cnpj"

    def test_runtime_error_hints(self, handler):
        def work():
            raise RuntimeError("SEFAZ fora do ar")

        resp = handler.execute(work, "op")

        assert resp.get_error_code() == "SEFAZ_ERROR"
        assert resp.get_error().startswith("Erro na operação:")
        assert resp.get_metadata("recoverable") is False

    def test_generic_runtime_error(self, handler):
        def work():
            raise RuntimeError("algo")

        resp = handler.execute(work, "op")
        assert resp.get_error_code() == "GENERAL_ERROR"

    def test_rejects_work_with_required_args(self, handler):
        with pytest.raises(TypeError, match="zero-argument"):
            handler.execute(lambda x: x, "op")

    def test_empty_operation_is_unknown(self, handler):
        assert handler.execute(lambda: 1).get_operation() == "unknown"

    def test_handle_is_deprecated_alias(self, handler):
        with pytest.deprecated_call():
            resp = handler.handle(lambda: 1, "op")
        assert resp.get_data("result") == 1


@pytest.mark.unit
class TestClassifyFault:
    """Severity and category mapping"""

    @pytest.mark.parametrize(
        ("exc", "category", "severity"),
        [
            (ConfigurationError.missing_field("x"), "configuration", "warning"),
            (TransportError.connection_failed("u"), "fiscal", "error"),
            (CertificateError.expired(), "certificate", "critical"),
        ],
    )
    def test_categories(self, exc, category, severity):
        meta = classify_fault(exc)
        assert meta["category"] == category
        assert meta["severity"] == severity

    def test_transport_errors_are_retryable(self):
        assert classify_fault(TransportError("x"))["retryable"] is True
        assert classify_fault(ConfigurationError("x"))["retryable"] is False


@pytest.mark.unit
class TestTimeout:
    """execute_with_timeout"""

    def test_returns_result_within_deadline(self, handler):
        resp = handler.execute_with_timeout(lambda: "fast", 2.0, "op")
        assert resp.is_success() and resp.get_data("result") == "fast"

    def test_abandons_slow_work(self, handler):
        release = threading.Event()

        def slow():
            release.wait(5)
            return "late"

        try:
            resp = handler.execute_with_timeout(slow, 0.05, "nfse_query")
        finally:
            release.set()

        assert resp.is_error()
        assert resp.get_error_code() == "TIMEOUT_ERROR"
        assert "timeout" in resp.get_error()
        assert resp.get_metadata("timeout_seconds") == 0.05
        assert resp.get_metadata("abandoned") is True

    def test_work_errors_are_still_classified(self, handler):
        def work():
            raise ValidationError.required_field("chave")

        resp = handler.execute_with_timeout(work, 1.0, "op")
        assert resp.get_error_code() == "VALIDATION_ERROR"

    def test_rejects_non_positive_timeout(self, handler):
        with pytest.raises(ValueError, match="timeout_seconds"):
            handler.execute_with_timeout(lambda: 1, 0, "op")


@pytest.mark.unit
class TestRetry:
    """execute_with_retry"""

    def test_stops_at_first_success(self, handler):
        calls = []

        def flaky():
            calls.append(1)
            if len(calls) < 2:
                raise TransportError("instável")
            return {"ok": True}

        resp = handler.execute_with_retry(flaky, 3, 0.5, "op")

        assert resp.is_success()
        assert resp.get_metadata("retry_attempts") == 2
        assert handler.sleeps == [0.5]

    @pytest.mark.parametrize("max_attempts", [1, 3, 5])
    def test_success_on_last_attempt_counts_every_attempt(self, handler, max_attempts):
        calls = []

        def succeeds_last():
            calls.append(1)
            if len(calls) < max_attempts:
                raise TransportError(f"falha {len(calls)}")
            return {"ok": True}

        resp = handler.execute_with_retry(succeeds_last, max_attempts, 0.1, "op")

        assert resp.is_success()
        assert resp.get_metadata("retry_attempts") == max_attempts
        assert len(calls) == max_attempts
        assert len(handler.sleeps) == max_attempts - 1

    def test_returns_last_failure_after_max_attempts(self, handler):
        def failing():
            raise TransportError("sempre falha")

        resp = handler.execute_with_retry(failing, 3, 1.0, "op", backoff=2.0)

        assert resp.is_error()
        assert resp.get_metadata("retry_attempts") == 3
        assert "sempre falha" in resp.get_error()
        assert resp.get_error_code() == "TRANSPORT_ERROR"
        assert handler.sleeps == [1.0, 2.0]

    def test_zero_delay_never_sleeps(self, handler):
        def failing():
            raise TransportError("x")

        handler.execute_with_retry(failing, 2, 0, "op")
        assert handler.sleeps == []

    def test_rejects_invalid_attempts(self, handler):
        with pytest.raises(ValueError, match="max_attempts"):
            handler.execute_with_retry(lambda: 1, 0)


@pytest.mark.unit
class TestCache:
    """execute_with_cache"""

    def test_second_call_is_served_from_cache(self, handler):
        calls = []

        def work():
            calls.append(1)
            return {"aliquota": 2.0}

        first = handler.execute_with_cache("k", work, 60, "op")
        second = handler.execute_with_cache("k", work, 60, "op")

        assert first.get_metadata("from_cache") is False
        assert second.get_metadata("from_cache") is True
        assert second.get_metadata("cached_at") is not None
        assert second.get_data("aliquota") == 2.0
        assert len(calls) == 1

    def test_stale_entry_triggers_recompute(self, handler, clock):
        calls = []

        def work():
            calls.append(1)
            return {"n": len(calls)}

        handler.execute_with_cache("k", work, 10, "op")
        clock.advance(11)
        resp = handler.execute_with_cache("k", work, 10, "op")

        assert resp.get_metadata("from_cache") is False
        assert resp.get_data("n") == 2

    def test_failures_are_not_cached(self, handler):
        def failing():
            raise TransportError("x")

        handler.execute_with_cache("k", failing, 60, "op")
        assert handler.cache.get("k", 60) is None

    def test_unencodable_payload_still_succeeds(self, tmp_path, clock):
        handler = ResponseHandler(cache=FileCacheStore(tmp_path, clock=clock))

        resp = handler.execute_with_cache("k", lambda: {"valor": Decimal("1.5")}, 60, "op")

        assert resp.is_success()
        assert resp.get_data("valor") == Decimal("1.5")
        assert resp.get_metadata("from_cache") is False
        assert handler.cache.get("k", 60) is None

    def test_failing_backend_does_not_fail_the_call(self, handler, monkeypatch):
        def broken_put(_key, _value):
            raise RuntimeError("backend fora do ar")

        monkeypatch.setattr(handler.cache, "put", broken_put)

        resp = handler.execute_with_cache("k", lambda: {"ok": True}, 60, "op")

        assert resp.is_success()
        assert resp.get_data("ok") is True

    def test_rejects_blank_key(self, handler):
        with pytest.raises(ValueError, match="key"):
            handler.execute_with_cache("  ", lambda: 1, 60)


@pytest.mark.unit
class TestValidateApiResponse:
    """Remote XML checks"""

    def test_empty(self, handler):
        assert handler.validate_api_response("  ").get_error_code() == "EMPTY_RESPONSE"

    def test_malformed(self, handler):
        resp = handler.validate_api_response("<a><b></a>")
        assert resp.get_error_code() == "INVALID_XML_RESPONSE"

    def test_error_node(self, handler):
        resp = handler.validate_api_response("<r><erro>Falha X</erro></r>")
        assert resp.get_error_code() == "API_ERROR"
        assert "Falha X" in resp.get_error()

    def test_valid(self, handler):
        resp = handler.validate_api_response("<r><ok/></r>", "op")
        assert resp.get_data("validated") is True
