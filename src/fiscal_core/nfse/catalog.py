"""Reference data from the national NFSe API, served cache-first.

Lookup order for every catalog call:

1. A fresh cache entry (unless ``force_refresh``).
2. The primary endpoint.
3. The legacy endpoint for the same request shape, when one is mapped.
4. A stale cache entry, flagged ``stale=True`` with the last error.

Only when all four are exhausted does the call raise a ``TransportError``.

Example:
    >>> service = NacionalCatalogService(
    ...     "https://adn.example/api", cache=FileCacheStore(tmp), transport=fake
    ... )
    >>> service.listar_municipios()["metadata"]["source"]
    'remote'
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from datetime import UTC, date, datetime, time
import json
import logging
import re
from typing import Any

import httpx

from fiscal_core.cache.store import CacheStore, FileCacheStore
from fiscal_core.certificates import CertificateState
from fiscal_core.core.types import Failure, Result, Success
from fiscal_core.exceptions import ConfigurationError, FiscalError, TransportError, ValidationError
from fiscal_core.nfse.contracts import CatalogPayload
from fiscal_core.telemetry import TelemetryContext, TelemetryContextProtocol
from fiscal_core.transport import HttpTransport, HttpxTransport, route_service

log = logging.getLogger(__name__)

MUNICIPIO_PATTERN = re.compile(r"^\d{7}$")
_PLACEHOLDER = re.compile(r"\{(\w+)\}")

DEFAULT_ENDPOINTS: Mapping[str, str] = {
    "municipios": "/catalogos/municipios",
    "aliquotas_municipio": "/catalogos/municipios/{codigo_municipio}/aliquotas",
    "historico_aliquotas": (
        "/catalogos/municipios/{codigo_municipio}/servicos/{codigo_servico}/historico"
    ),
    "convenio_municipio": "/catalogos/municipios/{codigo_municipio}/convenio",
}

# Older national API layout; None means there is no alternate path
LEGACY_ENDPOINTS: Mapping[str, str | None] = {
    "municipios": None,
    "aliquotas_municipio": (
        "/parametros_municipais/{codigo_municipio}/{codigo_servico}/{competencia}/aliquota"
    ),
    "historico_aliquotas": (
        "/parametros_municipais/{codigo_municipio}/{codigo_servico}/historicoaliquotas"
    ),
    "convenio_municipio": "/parametros_municipais/{codigo_municipio}/convenio",
}


def validar_codigo_municipio(codigo: Any) -> str:
    """Return the 7-digit IBGE code or raise ``ConfigurationError``."""
    text = str(codigo).strip() if codigo is not None else ""
    if not MUNICIPIO_PATTERN.match(text):
        raise ConfigurationError.invalid_municipio(text)
    return text


def normalizar_codigo_servico(codigo: str | None, *, required: bool = False) -> str | None:
    """Collapse whitespace; blank counts as absent."""
    normalized = " ".join(str(codigo).split()) if codigo is not None else ""
    if not normalized:
        if required:
            raise ConfigurationError.missing_field("codigo_servico")
        return None
    return normalized


def normalizar_competencia(
    competencia: str | date | None, *, now: Callable[[], datetime] | None = None
) -> str:
    """Render the reference period as an ISO-8601 UTC timestamp.

    ``None`` means now; a bare date (or ``YYYY-MM``) becomes midnight UTC
    of that day (or of the month's first day).

    Raises:
        ValidationError: If the value is not a recognizable date.
    """
    if competencia is None:
        moment = (now or (lambda: datetime.now(UTC)))()
    elif isinstance(competencia, datetime):
        moment = competencia
    elif isinstance(competencia, date):
        moment = datetime.combine(competencia, time.min)
    else:
        text = competencia.strip()
        if re.fullmatch(r"\d{4}-\d{2}", text):
            text = f"{text}-01"
        try:
            moment = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError as e:
            raise ValidationError.invalid_value(
                "competencia", competencia, "data ISO-8601 (AAAA-MM-DD)"
            ) from e
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


def fill_endpoint(template: str, values: Mapping[str, str | None]) -> str | None:
    """Substitute ``{name}`` placeholders; None if any stays unresolved."""
    missing = False

    def sub(match: re.Match[str]) -> str:
        nonlocal missing
        value = values.get(match.group(1))
        if value is None:
            missing = True
            return match.group(0)
        return str(value)

    path = _PLACEHOLDER.sub(sub, template)
    if missing:
        return None
    return path if path.startswith(("/", "http://", "https://")) else f"/{path}"


class NacionalCatalogService:
    """Cache-first client of the national catalog endpoints.

    Args:
        api_base_url: Base URL of the national API.
        timeout: HTTP timeout of the default transport, seconds.
        cache: Store shared by all services pointing at the same root.
        ttl: Freshness window of cached entries, seconds.
        transport: ``(method, path, body, headers) -> str``; defaults to
            ``HttpxTransport``.
        endpoints: Overrides of ``DEFAULT_ENDPOINTS``.
        legacy_endpoints: Overrides of ``LEGACY_ENDPOINTS``.
        mtls: Present the loaded certificate on the default transport.
        certificates: Certificate holder used for mTLS.
        headers: Extra headers for every request (authentication).
        services: Named base URLs usable as ``"service:/path"`` endpoint prefixes.
        now: Current-instant provider used for the default competência.
    """

    def __init__(
        self,
        api_base_url: str = "",
        *,
        timeout: float = 30.0,
        cache: CacheStore | None = None,
        ttl: int = 86400,
        transport: HttpTransport | None = None,
        endpoints: Mapping[str, str] | None = None,
        legacy_endpoints: Mapping[str, str | None] | None = None,
        mtls: bool = False,
        certificates: CertificateState | None = None,
        headers: Mapping[str, str] | None = None,
        services: Mapping[str, str] | None = None,
        telemetry: TelemetryContextProtocol | None = None,
        now: Callable[[], datetime] | None = None,
    ):
        self.api_base_url = api_base_url.rstrip("/")
        self.ttl = ttl
        self.cache: CacheStore = cache if cache is not None else FileCacheStore()
        self.endpoints = {**DEFAULT_ENDPOINTS, **(endpoints or {})}
        self.legacy_endpoints = {**LEGACY_ENDPOINTS, **(legacy_endpoints or {})}
        self._headers = {"Accept": "application/json", **(headers or {})}
        self.services = dict(services or {})
        self._transport: HttpTransport = transport or HttpxTransport(
            self.api_base_url, timeout=timeout, mtls=mtls, certificates=certificates
        )
        self._tele = telemetry if telemetry is not None else TelemetryContext()
        self._now = now

    # --- Catalog operations ---

    def listar_municipios(self, force_refresh: bool = False) -> CatalogPayload:
        return self.fetch_with_cache(
            "municipios",
            self.resolve_endpoint("municipios", {}),
            force_refresh,
            legacy_path=self.resolve_legacy_endpoint("municipios", {}),
        )

    def consultar_aliquotas_municipio(
        self,
        codigo_municipio: str,
        codigo_servico: str | None = None,
        competencia: str | date | None = None,
        force_refresh: bool = False,
    ) -> CatalogPayload:
        """Tax rates of a municipality, optionally narrowed to a service and period.

        Raises:
            ConfigurationError: If ``codigo_municipio`` is not 7 digits. No
                request is attempted in that case.
        """
        municipio = validar_codigo_municipio(codigo_municipio)
        servico = normalizar_codigo_servico(codigo_servico)
        periodo = normalizar_competencia(competencia, now=self._now)
        values = {
            "codigo_municipio": municipio,
            "ibge": municipio,
            "codigo_servico": servico,
            "competencia": periodo,
        }
        query = {k: v for k, v in (("codigo_servico", servico), ("competencia", periodo)) if v}
        path = self.resolve_endpoint("aliquotas_municipio", values)
        path = f"{path}?{httpx.QueryParams(query)}"
        # Period granularity in the key is the day of the competência
        cache_key = f"aliquotas:{municipio}:{servico or '*'}:{periodo[:10]}"
        return self.fetch_with_cache(
            cache_key,
            path,
            force_refresh,
            legacy_path=self.resolve_legacy_endpoint("aliquotas_municipio", values),
        )

    def consultar_historico_aliquotas(
        self, codigo_municipio: str, codigo_servico: str, force_refresh: bool = False
    ) -> CatalogPayload:
        municipio = validar_codigo_municipio(codigo_municipio)
        servico = normalizar_codigo_servico(codigo_servico, required=True)
        values = {"codigo_municipio": municipio, "ibge": municipio, "codigo_servico": servico}
        return self.fetch_with_cache(
            f"historico:{municipio}:{servico}",
            self.resolve_endpoint("historico_aliquotas", values),
            force_refresh,
            legacy_path=self.resolve_legacy_endpoint("historico_aliquotas", values),
        )

    def consultar_convenio_municipio(
        self, codigo_municipio: str, force_refresh: bool = False
    ) -> CatalogPayload:
        municipio = validar_codigo_municipio(codigo_municipio)
        values = {"codigo_municipio": municipio, "ibge": municipio}
        return self.fetch_with_cache(
            f"convenio:{municipio}",
            self.resolve_endpoint("convenio_municipio", values),
            force_refresh,
            legacy_path=self.resolve_legacy_endpoint("convenio_municipio", values),
        )

    # --- Read-through core ---

    def fetch_with_cache(
        self,
        cache_key: str,
        path: str,
        force_refresh: bool = False,
        *,
        legacy_path: str | None = None,
    ) -> CatalogPayload:
        """Serve ``cache_key`` from cache, ``path``, ``legacy_path`` or stale cache.

        Raises:
            TransportError: When every source failed and nothing is cached.
        """
        with self._tele("catalog.fetch", cache_key=cache_key):
            cached = self.cache.get(cache_key, self.ttl)
            if not force_refresh and cached is not None and not cached.stale:
                self._tele.count("catalog.source", source="cache")
                return self._payload(cached.value, "cache", cache_key)

            attempt = self._attempt(path)
            if isinstance(attempt, Success):
                self._tele.count("catalog.source", source="remote")
                return self._store(cache_key, attempt.value)
            last_error = attempt.error

            if legacy_path and legacy_path != path:
                log.warning(
                    "Catalog path %s failed (%s); trying legacy path %s",
                    path,
                    last_error,
                    legacy_path,
                )
                legacy = self._attempt(legacy_path)
                if isinstance(legacy, Success):
                    self._tele.count("catalog.source", source="legacy")
                    return self._store(
                        cache_key, legacy.value, fallback_legacy_path=legacy_path
                    )
                last_error = legacy.error

            if cached is not None:
                log.warning(
                    "Serving stale catalog entry %r after failure: %s", cache_key, last_error
                )
                self._tele.count("catalog.source", source="stale")
                return self._payload(
                    cached.value,
                    "cache",
                    cache_key,
                    stale=True,
                    fallback_error=str(last_error),
                )

        raise TransportError(
            f"Falha ao obter catálogo nacional: {last_error}",
            error_code=last_error.error_code,
            context={
                "cache_key": cache_key,
                "path": path,
                "legacy_path": legacy_path,
                "suggestions": last_error.suggestions
                or ["Tente novamente em alguns minutos"],
            },
        ) from last_error

    def resolve_endpoint(self, key: str, values: Mapping[str, str | None]) -> str:
        template = self.endpoints.get(key) or ""
        if not template:
            raise ConfigurationError(
                f"Endpoint de catálogo '{key}' não configurado",
                context={"endpoint": key},
            )
        path = fill_endpoint(route_service(template, self.services), values)
        if path is None:
            raise ConfigurationError(
                f"Endpoint de catálogo '{key}' exige parâmetros não informados",
                context={"endpoint": key, "template": template},
            )
        return path

    def resolve_legacy_endpoint(
        self, key: str, values: Mapping[str, str | None]
    ) -> str | None:
        template = self.legacy_endpoints.get(key)
        if not template:
            return None
        return fill_endpoint(route_service(template, self.services), values)

    # --- Internals ---

    def _attempt(self, path: str) -> Result[Any, FiscalError]:
        try:
            raw = self._transport("GET", path, None, self._headers)
        except FiscalError as e:
            return Failure(e)
        except Exception as e:
            # Pluggable transports may raise anything; treat it as a transport fault
            return Failure(TransportError.connection_failed(path, str(e) or type(e).__name__))
        if not isinstance(raw, str | bytes):
            return Failure(TransportError.invalid_response(repr(raw)))
        try:
            decoded = json.loads(raw)
        except json.JSONDecodeError:
            text = raw.decode("utf-8", "replace") if isinstance(raw, bytes) else raw
            return Failure(TransportError.invalid_response(text))
        if not isinstance(decoded, dict | list):
            return Failure(TransportError.invalid_response(str(decoded)))
        data = decoded.get("data", decoded) if isinstance(decoded, dict) else decoded
        return Success(data if isinstance(data, dict | list) else [])

    def _store(self, cache_key: str, data: Any, **extra: Any) -> CatalogPayload:
        self.cache.put(cache_key, data)
        return self._payload(data, "remote", cache_key, **extra)

    @staticmethod
    def _payload(
        data: Any, source: str, cache_key: str, *, stale: bool = False, **extra: Any
    ) -> CatalogPayload:
        metadata = {"source": source, "stale": stale, "cache_key": cache_key, **extra}
        return {"data": data if isinstance(data, dict | list) else [], "metadata": metadata}
