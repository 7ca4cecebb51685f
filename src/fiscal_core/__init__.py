"""Brazilian NFSe core: provider resolution, national catalog and result envelopes."""

import importlib.metadata
import logging

from fiscal_core.cache import FileCacheStore, MemoryCacheStore
from fiscal_core.certificates import CertificateBundle, CertificateState, certificate_state
from fiscal_core.config import FiscalSettings, ProviderConfig, load_settings
from fiscal_core.core.types import Failure, Result, Success
from fiscal_core.exceptions import (
    CapabilityNotSupportedError,
    CertificateError,
    ConfigurationError,
    FiscalError,
    FiscalTimeoutError,
    SefazError,
    TransportError,
    ValidationError,
    XmlError,
)
from fiscal_core.facade import NFSeFacade, resolve
from fiscal_core.nfse import (
    NacionalCatalogService,
    NacionalProvider,
    ProviderRegistry,
    ProviderResolver,
    get_default_registry,
)
from fiscal_core.response import FiscalResponse, ResponseHandler
from fiscal_core.telemetry import TelemetryContext, TelemetryReporter

try:
    __version__ = importlib.metadata.version("fiscal-core")
except importlib.metadata.PackageNotFoundError:
    __version__ = "development"

# Library code never configures handlers; the application decides
logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = [  # noqa: RUF022
    # Entry points
    "NFSeFacade",
    "resolve",
    # Envelopes
    "FiscalResponse",
    "ResponseHandler",
    "Result",
    "Success",
    "Failure",
    # Providers and catalog
    "NacionalProvider",
    "NacionalCatalogService",
    "ProviderRegistry",
    "ProviderResolver",
    "get_default_registry",
    # Infrastructure
    "FileCacheStore",
    "MemoryCacheStore",
    "CertificateBundle",
    "CertificateState",
    "certificate_state",
    "FiscalSettings",
    "ProviderConfig",
    "load_settings",
    "TelemetryContext",
    "TelemetryReporter",
    # Exceptions
    "FiscalError",
    "ConfigurationError",
    "CertificateError",
    "TransportError",
    "FiscalTimeoutError",
    "SefazError",
    "ValidationError",
    "XmlError",
    "CapabilityNotSupportedError",
]
