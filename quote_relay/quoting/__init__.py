"""Quote webhook internals: extraction, request building, pricing and reply."""

from .builder import build_quote_request
from .extractor import ExtractionError, QuoteExtractor
from .pricing import PricingError, PrintIQClient, extract_price_info
from .responder import QuoteResponder

__all__ = [
    "ExtractionError",
    "PricingError",
    "PrintIQClient",
    "QuoteExtractor",
    "QuoteResponder",
    "build_quote_request",
    "extract_price_info",
]
