"""Pluggable HTTP transport.

A transport is any callable ``(method, path, body, headers) -> str`` that
returns the raw response body. Tests and embedders pass plain functions;
``HttpxTransport`` is the default, built on ``httpx`` with a per-request
deadline and optional mutual TLS from the loaded certificate.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
import logging
import os
from pathlib import Path
import ssl
import tempfile

import httpx

from fiscal_core.certificates import CertificateBundle, CertificateState, certificate_state
from fiscal_core.exceptions import ConfigurationError, FiscalTimeoutError, TransportError

log = logging.getLogger(__name__)

type HttpTransport = Callable[[str, str, str | None, Mapping[str, str] | None], str]


def build_url(base_url: str, path: str) -> str:
    """Join ``path`` onto ``base_url`` unless it is already absolute."""
    if path.lower().startswith(("http://", "https://")):
        return path
    normalized = path if path.startswith("/") else f"/{path}"
    return base_url.rstrip("/") + normalized


def route_service(path: str, services: Mapping[str, str]) -> str:
    """Expand a ``"service:/rest"`` route into ``services[service] + "/rest"``.

    Paths whose prefix is not a known service are returned unchanged.

    Raises:
        ConfigurationError: If the service is known but has no base URL.
    """
    service, sep, rest = path.partition(":")
    if not sep or service not in services or path.lower().startswith(("http:", "https:")):
        return path
    base = services[service].rstrip("/")
    if not base:
        raise ConfigurationError(
            f"Serviço '{service}' sem URL configurada para o ambiente atual",
            context={"service": service},
        )
    return base + (rest if rest.startswith("/") else f"/{rest}")


@contextmanager
def mtls_files(bundle: CertificateBundle) -> Iterator[tuple[str, str]]:
    """Write ``bundle`` to private temporary files for one request.

    Both files get unique names and mode 0600, and are removed when the
    block exits, whatever the outcome.
    """
    paths: list[str] = []
    try:
        for suffix, pem in (("-cert.pem", bundle.cert_pem), ("-key.pem", bundle.key_pem)):
            fd, name = tempfile.mkstemp(prefix="fiscal-mtls-", suffix=suffix)
            paths.append(name)
            os.chmod(name, 0o600)
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(pem)
        yield paths[0], paths[1]
    finally:
        for name in paths:
            Path(name).unlink(missing_ok=True)


class HttpxTransport:
    """Default transport using ``httpx.Client``.

    Args:
        base_url: Prefix for relative paths.
        timeout: Seconds for connect/read/write; the request is aborted by
            httpx once exceeded.
        mtls: Present the loaded certificate as a client certificate.
        certificates: Certificate holder; defaults to the process-scoped one.
        default_headers: Headers sent with every request (auth, accept).
    """

    def __init__(
        self,
        base_url: str = "",
        *,
        timeout: float = 30.0,
        mtls: bool = False,
        certificates: CertificateState | None = None,
        default_headers: Mapping[str, str] | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.mtls = mtls
        self._certificates = certificates if certificates is not None else certificate_state
        self._default_headers = dict(default_headers or {})

    def __call__(
        self,
        method: str,
        path: str,
        body: str | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> str:
        url = build_url(self.base_url, path)
        merged = {**self._default_headers, **(headers or {})}
        bundle = self._certificates.current() if self.mtls else None
        if bundle is None:
            return self._send(method, url, body, merged, verify=True)
        with mtls_files(bundle) as (cert_path, key_path):
            context = ssl.create_default_context()
            context.load_cert_chain(certfile=cert_path, keyfile=key_path)
            return self._send(method, url, body, merged, verify=context)

    def _send(
        self,
        method: str,
        url: str,
        body: str | None,
        headers: Mapping[str, str],
        *,
        verify: bool | ssl.SSLContext,
    ) -> str:
        log.debug("%s %s", method.upper(), url)
        try:
            with httpx.Client(timeout=httpx.Timeout(self.timeout), verify=verify) as client:
                response = client.request(
                    method.upper(),
                    url,
                    content=body.encode("utf-8") if body is not None else None,
                    headers=dict(headers),
                    follow_redirects=True,
                )
                response.raise_for_status()
                return response.text
        except httpx.TimeoutException as e:
            raise FiscalTimeoutError.after(self.timeout, url) from e
        except httpx.HTTPStatusError as e:
            raise TransportError.http_status(e.response.status_code, url) from e
        except httpx.HTTPError as e:
            raise TransportError.connection_failed(url, str(e)) from e
