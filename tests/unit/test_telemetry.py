import logging
import os
from unittest.mock import patch

import pytest

from fiscal_core.response.handler import ResponseHandler
from fiscal_core.telemetry import SimpleReporter, TelemetryContext, telemetry_enabled


@pytest.mark.unit
class TestTelemetryContext:
    """Enablement and scope recording"""

    def test_disabled_by_default(self):
        reporter = SimpleReporter()
        ctx = TelemetryContext(reporter)

        with ctx("scope"):
            ctx.count("hits")

        assert not telemetry_enabled()
        assert reporter.timings == {} and reporter.metrics == {}

    def test_enabled_without_reporters_is_no_op(self):
        with patch.dict(os.environ, {"FISCAL_TELEMETRY": "1"}):
            assert TelemetryContext() is TelemetryContext()

    def test_nested_scopes_and_metrics(self):
        reporter = SimpleReporter()
        with patch.dict(os.environ, {"FISCAL_TELEMETRY": "1"}):
            ctx = TelemetryContext(reporter)

        with ctx("outer"):
            with ctx("inner", cache_key="k"):
                ctx.count("catalog.source", source="cache")

        assert set(reporter.timings) == {"outer", "outer.inner"}
        _, meta = reporter.timings["outer.inner"][0]
        assert meta["parent_scope"] == "outer"
        assert meta["cache_key"] == "k"
        value, meta = reporter.metrics["outer.inner.catalog.source"][0]
        assert value == 1
        assert meta["metric_type"] == "counter"
        assert "outer.inner" in reporter.get_report()

    def test_debug_enables_telemetry(self):
        with patch.dict(os.environ, {"DEBUG": "1"}):
            assert telemetry_enabled()

    def test_failing_reporter_does_not_break_scope(self, caplog):
        class Broken:
            def record_timing(self, *_args, **_kwargs):
                raise RuntimeError("reporter down")

            def record_metric(self, *_args, **_kwargs):
                raise RuntimeError("reporter down")

        with patch.dict(os.environ, {"FISCAL_TELEMETRY": "1"}):
            ctx = TelemetryContext(Broken())

        with caplog.at_level(logging.WARNING, logger="fiscal_core.telemetry"):
            with ctx("scope"):
                ctx.count("m")

        assert caplog.text.count("Telemetry reporter Broken failed") == 2

    def test_blank_scope_name_rejected(self):
        with patch.dict(os.environ, {"FISCAL_TELEMETRY": "1"}):
            ctx = TelemetryContext(SimpleReporter())

        with pytest.raises(ValueError, match="Scope name"):
            with ctx(""):
                pass

    def test_handler_scopes_operations(self):
        reporter = SimpleReporter()
        with patch.dict(os.environ, {"FISCAL_TELEMETRY": "1"}):
            handler = ResponseHandler(telemetry=TelemetryContext(reporter))

        handler.execute(lambda: 1, "nfse_query")

        assert "handler.nfse_query" in reporter.timings
