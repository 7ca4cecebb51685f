"""Result envelopes and the handler that produces them."""

from .envelope import FiscalResponse
from .handler import ResponseHandler, classify_fault

__all__ = ["FiscalResponse", "ResponseHandler", "classify_fault"]
