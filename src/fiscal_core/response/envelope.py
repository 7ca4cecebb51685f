"""Immutable success/failure envelope returned by every public operation.

A ``FiscalResponse`` is either a success carrying ``data`` or a failure
carrying a non-empty ``error``. Failures always expose an empty mapping as
``data`` so callers never have to distinguish missing from ``None``.

Example:
    >>> resp = FiscalResponse.success_response({"numero": "1"}, operation="nfse_emission")
    >>> resp.is_success(), resp.get_data("numero")
    (True, '1')
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
import dataclasses
from datetime import UTC, datetime
import json
from types import MappingProxyType
import typing
import uuid

from fiscal_core.core.types import Failure, Success, _require

RESPONSE_VERSION = "1.0"

type ResponseData = Mapping[str, typing.Any] | tuple[typing.Any, ...]


def _now_iso() -> str:
    return datetime.now(UTC).isoformat(timespec="seconds")


def _freeze_data(data: typing.Any) -> ResponseData:
    if data is None:
        return MappingProxyType({})
    if isinstance(data, Mapping):
        return MappingProxyType(dict(data))
    if isinstance(data, Sequence) and not isinstance(data, str | bytes):
        return tuple(data)
    return MappingProxyType({"result": data})


def _thaw(value: typing.Any) -> typing.Any:
    """Convert frozen containers back into JSON-friendly ones."""
    if isinstance(value, Mapping):
        return {k: _thaw(v) for k, v in value.items()}
    if isinstance(value, tuple | list):
        return [_thaw(v) for v in value]
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


@dataclasses.dataclass(frozen=True, slots=True)
class FiscalResponse:
    """Uniform result of a fiscal operation.

    Use the factories (``success_response``, ``error_response``,
    ``from_exception``, ``from_result``) rather than the constructor; they fill the generated
    ``timestamp`` and ``version`` metadata.
    """

    success: bool
    data: ResponseData = dataclasses.field(
        default_factory=lambda: MappingProxyType({})
    )
    error: str | None = None
    error_code: str | None = None
    operation: str = "unknown"
    metadata: Mapping[str, typing.Any] = dataclasses.field(
        default_factory=lambda: MappingProxyType({})
    )

    def __post_init__(self) -> None:
        _require(
            condition=isinstance(self.success, bool),
            message="must be bool",
            field_name="success",
            exc=TypeError,
        )
        if not self.success:
            _require(
                condition=bool(self.error),
                message="failure responses need a non-empty error",
                field_name="error",
            )
            object.__setattr__(self, "data", MappingProxyType({}))
        else:
            object.__setattr__(self, "data", _freeze_data(self.data))
        object.__setattr__(self, "metadata", MappingProxyType(dict(self.metadata)))

    # --- Factories ---

    @classmethod
    def _build(
        cls,
        *,
        success: bool,
        data: typing.Any = None,
        error: str | None = None,
        error_code: str | None = None,
        operation: str = "unknown",
        metadata: Mapping[str, typing.Any] | None = None,
    ) -> FiscalResponse:
        merged: dict[str, typing.Any] = {
            "timestamp": _now_iso(),
            "version": RESPONSE_VERSION,
        }
        merged.update(metadata or {})
        return cls(
            success=success,
            data=data,
            error=error,
            error_code=error_code,
            operation=operation or "unknown",
            metadata=merged,
        )

    @classmethod
    def success_response(
        cls,
        data: typing.Any = None,
        operation: str = "unknown",
        metadata: Mapping[str, typing.Any] | None = None,
    ) -> FiscalResponse:
        """Build a success envelope.

        Mappings and sequences are stored as read-only views; any other
        value is wrapped as ``{"result": value}``.
        """
        return cls._build(
            success=True, data=data, operation=operation, metadata=metadata
        )

    @classmethod
    def error_response(
        cls,
        message: str,
        code: str | None = None,
        operation: str = "unknown",
        metadata: Mapping[str, typing.Any] | None = None,
    ) -> FiscalResponse:
        """Build a failure envelope with empty ``data``."""
        return cls._build(
            success=False,
            error=message or "Erro desconhecido",
            error_code=code,
            operation=operation,
            metadata=metadata,
        )

    @classmethod
    def from_exception(
        cls,
        exc: BaseException,
        operation: str = "unknown",
        metadata: Mapping[str, typing.Any] | None = None,
        *,
        message: str | None = None,
        code: str | None = None,
    ) -> FiscalResponse:
        """Build a failure envelope describing ``exc``.

        The exception kind goes under ``metadata["exception_type"]``; a
        numeric code carried by the exception (``FiscalError.code`` or
        ``OSError.errno``) goes under ``metadata["error_code"]``.
        """
        message = (
            message or getattr(exc, "message", None) or str(exc) or type(exc).__name__
        )
        code = code or getattr(exc, "error_code", None) or type(exc).__name__
        extra: dict[str, typing.Any] = {
            "exception_type": type(exc).__name__,
            "trace_id": uuid.uuid4().hex[:12],
        }
        numeric = getattr(exc, "code", None)
        if numeric is None and isinstance(exc, OSError):
            numeric = exc.errno
        if isinstance(numeric, int) and not isinstance(numeric, bool) and numeric:
            extra["error_code"] = numeric
        extra.update(metadata or {})
        return cls.error_response(message, code, operation, extra)

    @classmethod
    def from_result(
        cls,
        result: Success[typing.Any] | Failure[Exception],
        operation: str = "unknown",
        metadata: Mapping[str, typing.Any] | None = None,
    ) -> FiscalResponse:
        """Convert an internal ``Result`` into an envelope."""
        if isinstance(result, Success):
            return cls.success_response(result.value, operation, metadata)
        return cls.from_exception(result.error, operation, metadata)

    # --- Accessors ---

    def is_success(self) -> bool:
        return self.success

    def is_error(self) -> bool:
        return not self.success

    def get_data(self, key: str | None = None) -> typing.Any:
        if key is None:
            return self.data
        if isinstance(self.data, Mapping):
            return self.data.get(key)
        return None

    def has_data(self, key: str) -> bool:
        return isinstance(self.data, Mapping) and self.data.get(key) is not None

    def get_error(self) -> str:
        return self.error or ""

    def get_error_code(self) -> str | None:
        return self.error_code

    def get_operation(self) -> str:
        return self.operation

    def get_metadata(self, key: str | None = None) -> typing.Any:
        if key is None:
            return self.metadata
        return self.metadata.get(key)

    # --- Copy-on-write helpers ---

    def with_metadata(self, key: str, value: typing.Any) -> FiscalResponse:
        merged = dict(self.metadata)
        merged[key] = value
        return dataclasses.replace(self, metadata=merged)

    def merge_metadata(self, extra: Mapping[str, typing.Any]) -> FiscalResponse:
        """Return a copy whose metadata includes every key of ``extra``."""
        merged = dict(self.metadata)
        merged.update(extra)
        return dataclasses.replace(self, metadata=merged)

    def with_data(self, key: str, value: typing.Any) -> FiscalResponse:
        """Return a copy with ``data[key] = value``; failures are returned unchanged."""
        if not self.success or not isinstance(self.data, Mapping):
            return self
        data = dict(self.data)
        data[key] = value
        return dataclasses.replace(self, data=data)

    # --- Serialization ---

    def to_dict(self) -> dict[str, typing.Any]:
        return {
            "success": self.success,
            "data": _thaw(self.data),
            "error": self.error,
            "error_code": self.error_code,
            "operation": self.operation,
            "metadata": _thaw(self.metadata),
        }

    def to_json(self) -> str:
        """Render a deterministic JSON document of this response."""
        return json.dumps(self.to_dict(), ensure_ascii=False, default=str)
