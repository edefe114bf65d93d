"""Heuristics that tell genuine product pages from junk and challenge pages."""

import logging
import re
from urllib.parse import urlparse

from .models import Product, RawSnapshot

logger = logging.getLogger(__name__)

JUNK_PHRASES = (
    "page not found",
    "not found",
    "404",
    "error",
    "sorry",
    "oops",
    "something went wrong",
    "access denied",
    "just a moment",
    "unknown product",
    "can't be found",
    "cannot be found",
    "no longer available",
    "doesn't exist",
    "does not exist",
    "unavailable",
    "we couldn't find",
    "we could not find",
    "attention required",
    "please verify",
    "checking your browser",
)

FILLER_WORDS = frozenset(
    {"the", "you", "your", "this", "that", "for", "are", "was", "were", "our", "please"}
)

MIN_NAME_LENGTH = 3
MIN_IMAGE_URL_LENGTH = 10
SENTENCE_WORD_COUNT = 6
SENTENCE_FILLER_COUNT = 3

UNKNOWN_PRODUCT = "Unknown Product"


class ValidityClassifier:
    """Decides whether fetched data describes a real product page.

    Rules are evaluated in order and the first match rejects:

    1. missing name or a name shorter than three characters
    2. the name contains a junk, error or challenge phrase
    3. neither a positive price nor a usable image reference
    4. the name reads like a sentence (six or more words, three or more fillers)
    """

    def __init__(self, site_titles: tuple[str, ...] = ()):
        """Initialize classifier.

        Args:
            site_titles: Generic site-name-only titles (e.g. "acme store") that
                a product page never uses as its product name
        """
        self.junk_phrases = JUNK_PHRASES + tuple(t.lower().strip() for t in site_titles)

    def rejection_reason(self, name: str | None, price: float | None, image_url: str | None) -> str | None:
        """Return why the data is rejected, or ``None`` if it looks valid."""
        if not name or len(name.strip()) < MIN_NAME_LENGTH:
            return "missing or too short name"

        folded = name.strip().casefold()
        for phrase in self.junk_phrases:
            if phrase in folded:
                return f"name contains junk phrase '{phrase}'"

        has_price = isinstance(price, (int, float)) and price > 0
        has_image = isinstance(image_url, str) and len(image_url) > MIN_IMAGE_URL_LENGTH
        if not has_price and not has_image:
            return "no price and no image"

        words = folded.split()
        filler_count = sum(1 for word in words if word in FILLER_WORDS)
        if len(words) >= SENTENCE_WORD_COUNT and filler_count >= SENTENCE_FILLER_COUNT:
            return "name reads like a sentence"

        return None

    def is_valid(self, snapshot: RawSnapshot | None) -> bool:
        if snapshot is None:
            return False
        reason = self.rejection_reason(snapshot.name, snapshot.price, snapshot.image_url)
        if reason:
            logger.debug(f"Rejected snapshot '{snapshot.name}': {reason}")
        return reason is None

    def is_valid_record(self, product: Product) -> bool:
        """Self-check a stored product against the same rules."""
        return self.rejection_reason(product.name, product.current_price, product.image_url) is None


def is_valid_product_url(url: str) -> bool:
    """Check that ``url`` is an absolute http(s) URL with a path."""
    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.netloc) and parsed.path not in ("", "/")


def name_from_url(url: str) -> str:
    """Derive a readable product name from the URL slug.

    Args:
        url: Product URL, e.g. ``https://shop.example/product/lego-city-truck-43718702/``

    Returns:
        Title-cased name, e.g. ``Lego City Truck``
    """
    try:
        path = urlparse(url).path
    except ValueError:
        return UNKNOWN_PRODUCT

    parts = [p for p in path.strip("/").split("/") if p]
    slug = ""
    for marker in ("product", "products", "p"):
        if marker in parts:
            idx = parts.index(marker)
            if idx + 1 < len(parts):
                slug = parts[idx + 1]
                break
    if not slug and parts:
        slug = parts[-1]
    if not slug:
        return UNKNOWN_PRODUCT

    # Trailing numeric SKU
    slug = re.sub(r"-\d{6,}$", "", slug)
    name = re.sub(r"\s+", " ", slug.replace("-", " ").replace("_", " ")).strip()
    name = re.sub(r":\s*", ": ", name)
    if not name:
        return UNKNOWN_PRODUCT
    return " ".join(word[:1].upper() + word[1:] for word in name.split(" "))
