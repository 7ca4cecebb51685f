"""Concrete NFSe providers."""

from .base import ConfiguredNFSeProvider
from .nacional import NacionalProvider

__all__ = ["ConfiguredNFSeProvider", "NacionalProvider"]
