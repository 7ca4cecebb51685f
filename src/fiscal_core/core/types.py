"""Core data types shared across the library.

Holds the small validation helpers used by frozen dataclasses and the
``Success``/``Failure`` result union. Internal seams (capability probing,
catalog fetches) return a ``Result`` instead of raising, and the response
layer turns it into a ``FiscalResponse`` at the public boundary.
"""

from __future__ import annotations

import dataclasses
import inspect
from types import MappingProxyType
import typing

# --- Minimal guard helpers ---

T = typing.TypeVar("T")


def _freeze_mapping(
    m: dict[str, T] | typing.Mapping[str, T] | None,
) -> typing.Mapping[str, T] | None:
    """Return an immutable mapping view or None."""
    if m is None or isinstance(m, MappingProxyType):
        return m
    return MappingProxyType(dict(m))


def _require(
    *,
    condition: bool,
    message: str,
    exc: type[Exception] = ValueError,
    field_name: str | None = None,
) -> None:
    """Centralized validation with optional field context for clearer errors."""
    if not condition:
        if field_name:
            raise exc(f"{field_name}: {message}")
        raise exc(message)


def _require_zero_arg_callable(func: typing.Any, field_name: str) -> None:
    """Validate that ``func`` can be invoked without arguments."""
    _require(
        condition=callable(func),
        message="must be callable",
        field_name=field_name,
        exc=TypeError,
    )

    try:
        sig = inspect.signature(func)
    except (ValueError, RuntimeError):
        # Builtins without introspectable signatures are accepted as-is
        return
    has_required_params = any(
        p.default is p.empty
        and p.kind in (p.POSITIONAL_ONLY, p.POSITIONAL_OR_KEYWORD, p.KEYWORD_ONLY)
        for p in sig.parameters.values()
    )
    _require(
        condition=not has_required_params,
        message="must be a zero-argument callable",
        field_name=field_name,
        exc=TypeError,
    )


# --- Result Monad ---
# Explicit success/failure values for internal seams, so that raising is
# reserved for conditions that the response handler converts at the boundary.

TSuccess = typing.TypeVar("TSuccess")
TFailure = typing.TypeVar("TFailure", bound=Exception)


@dataclasses.dataclass(frozen=True, slots=True)
class Success[TSuccess]:
    """A successful result."""

    value: TSuccess


@dataclasses.dataclass(frozen=True, slots=True)
class Failure[TFailure]:
    """A failed result, containing the error."""

    error: TFailure


Result = Success[TSuccess] | Failure[TFailure]


def unwrap[V](result: Success[V] | Failure[Exception]) -> V:
    """Return the success value or raise the carried error.

    Used inside units of work run by the response handler, where raising is
    the conversion path into a failure envelope.
    """
    if isinstance(result, Failure):
        raise result.error
    return result.value
