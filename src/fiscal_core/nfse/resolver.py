"""Selector-to-registry-key resolution.

The current deployment collapses every selector to the national provider.
Legacy municipality selectors are still accepted so existing callers keep
working, but they are reported as ignored.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
import threading
from typing import Any

from fiscal_core.core.types import _freeze_mapping, _require

log = logging.getLogger(__name__)

NACIONAL_KEY = "nfse_nacional"

IGNORED_WARNING = f"Parâmetro 'municipio' foi ignorado e resolvido para '{NACIONAL_KEY}'."

_reported_selectors: set[str] = set()
_reported_lock = threading.Lock()


def _first_report(selector: str) -> bool:
    with _reported_lock:
        if selector in _reported_selectors:
            return False
        _reported_selectors.add(selector)
        return True


def reset_reported_selectors() -> None:
    """Forget which legacy selectors were already logged."""
    with _reported_lock:
        _reported_selectors.clear()


def normalizar_municipio(selector: Any) -> str:
    """Trim a selector; digit-only selectors are zero-padded to 7 digits."""
    if selector is None:
        return ""
    text = str(selector).strip()
    if text.isdigit():
        return text.zfill(7)
    return text


@dataclass(frozen=True, slots=True)
class Resolution:
    """Outcome of resolving one selector."""

    provider_key: str
    municipio_input: str
    municipio_ignored: bool
    warnings: tuple[str, ...] = ()

    def metadata(self) -> dict[str, Any]:
        return {
            "provider_key": self.provider_key,
            "municipio_input": self.municipio_input,
            "municipio_ignored": self.municipio_ignored,
            "warnings": list(self.warnings),
        }


@dataclass(frozen=True, slots=True)
class ProviderResolver:
    """Maps caller selectors to canonical registry keys.

    Attributes:
        default_key: Key every selector resolves to.
        extra: Free-form metadata merged into ``build_metadata`` output.
    """

    default_key: str = NACIONAL_KEY
    extra: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        _require(
            condition=bool(self.default_key and self.default_key.strip()),
            message="must be a non-empty string",
            field_name="default_key",
        )
        object.__setattr__(self, "extra", _freeze_mapping(self.extra))

    def resolve_key(self, selector: Any = None) -> str:
        return self.resolve(selector).provider_key

    def resolve(self, selector: Any = None) -> Resolution:
        municipio = normalizar_municipio(selector)
        ignored = bool(municipio) and municipio != self.default_key
        warnings: tuple[str, ...] = ()
        if ignored:
            warning = IGNORED_WARNING.replace(NACIONAL_KEY, self.default_key)
            # Logged once per selector; every Resolution still carries the warning
            if _first_report(municipio):
                log.warning(
                    "Municipality selector %r ignored; using %s", municipio, self.default_key
                )
            warnings = (warning,)
        else:
            log.debug("Resolved selector %r to %s", municipio, self.default_key)
        return Resolution(
            provider_key=self.default_key,
            municipio_input=municipio,
            municipio_ignored=ignored,
            warnings=warnings,
        )

    def build_metadata(self, selector: Any = None) -> dict[str, Any]:
        """Compatibility metadata attached to every facade response."""
        return {**self.resolve(selector).metadata(), **self.extra}
