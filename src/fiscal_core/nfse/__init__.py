"""NFSe provider contracts, resolution, registry and the national catalog."""

from .catalog import NacionalCatalogService
from .contracts import (
    CatalogPayload,
    ConfiguredProvider,
    NacionalCapabilities,
    NFSeProvider,
    nacional_capabilities,
)
from .providers import ConfiguredNFSeProvider, NacionalProvider
from .registry import (
    ProviderRegistration,
    ProviderRegistry,
    get_default_registry,
    register_defaults,
    reset_default_registry,
)
from .resolver import NACIONAL_KEY, ProviderResolver, Resolution

__all__ = [
    "NACIONAL_KEY",
    "CatalogPayload",
    "ConfiguredNFSeProvider",
    "ConfiguredProvider",
    "NFSeProvider",
    "NacionalCapabilities",
    "NacionalCatalogService",
    "NacionalProvider",
    "ProviderRegistration",
    "ProviderRegistry",
    "ProviderResolver",
    "Resolution",
    "get_default_registry",
    "nacional_capabilities",
    "register_defaults",
    "reset_default_registry",
]
