"""Certificate source consumed by the mutual-TLS path and XML signing.

Loading and decoding PFX files is left to the caller; this module only
holds PEM material. ``CertificateState`` is the one process-scoped holder:
initialize it at startup with ``init``, read it with ``current``, and
``clear`` it on reload or between tests. Components accept a state object
in their constructors and fall back to the module-level ``certificate_state``.
"""

from __future__ import annotations

import dataclasses
from datetime import UTC, datetime
import logging
from pathlib import Path
import threading

from fiscal_core.core.types import _require
from fiscal_core.exceptions import CertificateError

log = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True, slots=True)
class CertificateBundle:
    """PEM-encoded public certificate and private key.

    Attributes:
        cert_pem: Public certificate, PEM text.
        key_pem: Private key, PEM text (unencrypted).
        valid_to: Expiration instant, when known.
        subject: Free-form holder name, used only for display.
    """

    cert_pem: str
    key_pem: str
    valid_to: datetime | None = None
    subject: str = ""

    def __post_init__(self) -> None:
        _require(
            condition="BEGIN CERTIFICATE" in self.cert_pem,
            message="must be a PEM certificate",
            field_name="cert_pem",
        )
        _require(
            condition="PRIVATE KEY" in self.key_pem,
            message="must be a PEM private key",
            field_name="key_pem",
        )

    def __repr__(self) -> str:
        return f"CertificateBundle(subject={self.subject!r}, valid_to={self.valid_to!r})"

    @classmethod
    def from_pem_files(
        cls,
        cert_path: str | Path,
        key_path: str | Path,
        *,
        valid_to: datetime | None = None,
        subject: str = "",
    ) -> CertificateBundle:
        """Read a certificate and key from PEM files.

        Raises:
            CertificateError: If either file is missing.
        """
        texts = []
        for path in (Path(cert_path), Path(key_path)):
            try:
                texts.append(path.read_text(encoding="utf-8"))
            except FileNotFoundError as e:
                raise CertificateError.file_not_found(str(path)) from e
        return cls(texts[0], texts[1], valid_to=valid_to, subject=subject)

    def is_valid(self, now: datetime | None = None) -> bool:
        if self.valid_to is None:
            return True
        return (now or datetime.now(UTC)) < self.valid_to

    def days_until_expiration(self, now: datetime | None = None) -> int | None:
        if self.valid_to is None:
            return None
        return (self.valid_to - (now or datetime.now(UTC))).days


class CertificateState:
    """Explicitly managed holder of the currently loaded certificate."""

    def __init__(self) -> None:
        self._bundle: CertificateBundle | None = None
        self._lock = threading.Lock()

    def init(self, bundle: CertificateBundle) -> None:
        with self._lock:
            self._bundle = bundle
        log.debug("Certificate loaded: %r", bundle)

    def current(self) -> CertificateBundle | None:
        with self._lock:
            return self._bundle

    def require(self) -> CertificateBundle:
        """Return the loaded certificate or raise if it is missing or expired."""
        bundle = self.current()
        if bundle is None:
            raise CertificateError.not_loaded()
        if not bundle.is_valid():
            raise CertificateError.expired()
        return bundle

    def clear(self) -> None:
        with self._lock:
            self._bundle = None

    def is_loaded(self) -> bool:
        return self.current() is not None


certificate_state = CertificateState()
