"""HTML parser for product pages."""

import html
import json
import logging
import re
from urllib.parse import urljoin, urlparse

from bs4 import BeautifulSoup, Tag

from .models import RawSnapshot, StockStatus, Variant

logger = logging.getLogger(__name__)

NAME_SELECTORS = (
    '[data-testid="product-title"]',
    ".product-title h1",
    "h1",
)

PRICE_SELECTORS = (
    '[data-testid="product-price"]',
    ".product-price .price",
    ".product-price__current",
    'span[class*="price"]',
)

IMAGE_SELECTORS = (
    '[data-testid="product-image"] img',
    ".product-image img",
    ".product-gallery img",
    "picture img",
)

ADD_BUTTON_SELECTORS = (
    '[data-testid="add-to-cart-button"]',
    '[data-testid="add-to-bag-button"]',
    'button[class*="addToCart"]',
    'button[class*="addToBag"]',
    'button[aria-label*="Add to"]',
    ".add-to-cart-button",
    ".add-to-bag-button",
)

IN_STORE_ONLY_PHRASES = (
    "in store only",
    "in-store only",
    "available for in-store purchase only",
    "not available for delivery",
)

IN_STORE_ONLY_SELECTOR = '[data-testid="in-store-only"], [class*="inStoreOnly"], [class*="in-store-only"]'
OUT_OF_STOCK_SELECTOR = '[data-testid="out-of-stock"], .out-of-stock-message, .oos-message'
LOW_STOCK_SELECTOR = '[class*="low-stock"], [class*="limited"]'

SIZE_SELECTOR = '[data-testid="size-selector"] button, .size-selector button, [class*="sizeOption"]'
COLOUR_SELECTOR = '[data-testid="colour-selector"] button, .colour-selector button, [class*="colourOption"]'

QTY_INPUT_SELECTOR = (
    '[data-testid="quantity-input"] input, input[name="quantity"], '
    '.quantity-input input, input[type="number"][max]'
)
QTY_SELECT_SELECTOR = 'select[name="quantity"], [data-testid="quantity-select"], .quantity-selector select'

LIMIT_PATTERNS = (
    re.compile(r"limit\s+(\d+)\s+per\s+(?:customer|order|person|transaction)", re.IGNORECASE),
    re.compile(r"maximum\s+(\d+)\s+per\s+(?:customer|order|person|transaction)", re.IGNORECASE),
    re.compile(r"max(?:imum)?\s+(?:qty|quantity)[\s:]+(\d+)", re.IGNORECASE),
    re.compile(r"(\d+)\s+per\s+customer", re.IGNORECASE),
    re.compile(r"purchase\s+limit[\s:]+(\d+)", re.IGNORECASE),
)

PRICE_PATTERN = re.compile(r"\$?\s*([\d,]+(?:\.\d+)?)")


class ProductPageParser:
    """Turns product page HTML into a RawSnapshot."""

    def __init__(self, base_url: str = ""):
        """Initialize parser.

        Args:
            base_url: Base URL for resolving relative image URLs
        """
        self.base_url = base_url

    def parse(self, html_content: str, url: str) -> RawSnapshot:
        """Parse product information from HTML.

        Args:
            html_content: HTML content
            url: Product page URL

        Returns:
            RawSnapshot (unvalidated)
        """
        soup = BeautifulSoup(html_content, "html.parser")
        json_ld = self._extract_json_ld(soup)

        return RawSnapshot(
            name=self._extract_name(soup, html_content),
            price=self._extract_price(soup, json_ld),
            stock_status=self._extract_stock_status(soup),
            image_url=self._extract_image_url(soup, html_content, url),
            variants=self._extract_variants(soup),
            product_id=self._extract_product_id(json_ld, url),
            breadcrumb=self._extract_breadcrumb(soup),
            max_purchase_qty=self.extract_max_purchase_qty(soup),
        )

    def _extract_json_ld(self, soup: BeautifulSoup) -> list[dict]:
        """Collect JSON-LD objects, flattening lists and ``@graph`` blocks."""
        objects: list[dict] = []
        for script in soup.find_all("script", attrs={"type": "application/ld+json"}):
            try:
                data = json.loads(script.string or "")
            except (json.JSONDecodeError, TypeError):
                continue
            items = data if isinstance(data, list) else [data]
            for item in items:
                if isinstance(item, dict):
                    objects.append(item)
                    objects.extend(g for g in item.get("@graph", []) if isinstance(g, dict))
        return objects

    @staticmethod
    def _offers(json_ld: list[dict]) -> list[dict]:
        offers: list[dict] = []
        for item in json_ld:
            offer = item.get("offers")
            if isinstance(offer, dict):
                offers.append(offer)
            elif isinstance(offer, list):
                offers.extend(o for o in offer if isinstance(o, dict))
        return offers

    def _extract_name(self, soup: BeautifulSoup, html_content: str) -> str:
        """Extract product name.

        Tries the product title element and h1 first, then og:title and the
        title tag with the site suffix removed.
        """
        for selector in NAME_SELECTORS:
            element = soup.select_one(selector)
            if element:
                text = element.get_text(" ", strip=True)
                if text:
                    return text

        og_title_match = re.search(
            r'<meta[^>]*property=["\']og:title["\'][^>]*content=["\']([^"\']+)["\']',
            html_content,
            re.IGNORECASE,
        )
        if og_title_match:
            return html.unescape(og_title_match.group(1).strip())

        if soup.title and soup.title.string:
            title = soup.title.string.strip()
            for separator in ("|", "–", " - "):
                if separator in title:
                    title = title.split(separator)[0].strip()
            return title

        return ""

    def _extract_price(self, soup: BeautifulSoup, json_ld: list[dict]) -> float:
        for offer in self._offers(json_ld):
            price = offer.get("price") or offer.get("lowPrice")
            try:
                if price is not None and float(price) > 0:
                    return float(price)
            except (TypeError, ValueError):
                continue

        for selector in PRICE_SELECTORS:
            element = soup.select_one(selector)
            if element:
                match = PRICE_PATTERN.search(element.get_text(" ", strip=True))
                if match:
                    try:
                        return float(match.group(1).replace(",", ""))
                    except ValueError:
                        continue
        return 0.0

    def find_add_button(self, soup: BeautifulSoup) -> Tag | None:
        """Find the add-to-cart / add-to-bag button, falling back to button text."""
        for selector in ADD_BUTTON_SELECTORS:
            element = soup.select_one(selector)
            if element:
                return element
        for button in soup.find_all("button"):
            text = button.get_text(" ", strip=True).lower()
            if "add to cart" in text or "add to bag" in text:
                return button
        return None

    def _extract_stock_status(self, soup: BeautifulSoup) -> StockStatus:
        """Read online availability.

        In-store-only pages and pages without an add button count as out of
        stock; explicit out-of-stock markers override an enabled button.
        """
        page_text = soup.get_text(" ", strip=True).lower()
        if any(phrase in page_text for phrase in IN_STORE_ONLY_PHRASES) or soup.select_one(
            IN_STORE_ONLY_SELECTOR
        ):
            return StockStatus.OUT_OF_STOCK

        add_button = self.find_add_button(soup)
        if add_button is None:
            return StockStatus.OUT_OF_STOCK

        if add_button.has_attr("disabled"):
            return StockStatus.OUT_OF_STOCK
        text = add_button.get_text(" ", strip=True).lower()
        if "out of stock" in text or "unavailable" in text:
            return StockStatus.OUT_OF_STOCK

        if soup.select_one(OUT_OF_STOCK_SELECTOR):
            return StockStatus.OUT_OF_STOCK
        if soup.select_one(LOW_STOCK_SELECTOR):
            return StockStatus.LIMITED
        if "add to" in text or add_button.get("aria-label", "").lower().startswith("add to"):
            return StockStatus.IN_STOCK
        return StockStatus.UNKNOWN

    def _extract_image_url(self, soup: BeautifulSoup, html_content: str, url: str) -> str:
        for selector in IMAGE_SELECTORS:
            element = soup.select_one(selector)
            if element:
                src = element.get("src") or element.get("data-src")
                if src:
                    return self._normalize_url(src, url)

        og_image_match = re.search(
            r'<meta[^>]*property=["\']og:image["\'][^>]*content=["\']([^"\']+)["\']',
            html_content,
            re.IGNORECASE,
        )
        if og_image_match:
            return self._normalize_url(og_image_match.group(1), url)
        return ""

    def _extract_variants(self, soup: BeautifulSoup) -> list[Variant]:
        variants: list[Variant] = []
        for button in soup.select(SIZE_SELECTOR):
            variants.append(
                Variant(
                    type="size",
                    value=button.get_text(" ", strip=True),
                    available=self._is_enabled(button),
                )
            )
        for button in soup.select(COLOUR_SELECTOR):
            label = button.get("aria-label") or button.get("title") or button.get_text(" ", strip=True)
            variants.append(Variant(type="colour", value=label, available=self._is_enabled(button)))
        return variants

    @staticmethod
    def _is_enabled(element: Tag) -> bool:
        return not element.has_attr("disabled") and "unavailable" not in element.get("class", [])

    def _extract_product_id(self, json_ld: list[dict], url: str) -> str:
        for item in json_ld:
            for key in ("sku", "productID"):
                if item.get(key):
                    return str(item[key])

        # URL format: /product/<slug>-<sku>
        match = re.search(r"/products?/[^/]+-(\d{6,})/?", url, re.IGNORECASE)
        if match:
            return match.group(1)
        path = urlparse(url).path
        parts = path.strip("/").split("/")
        for marker in ("products", "product"):
            if marker in parts:
                idx = parts.index(marker)
                if idx + 1 < len(parts):
                    return parts[idx + 1]
        return path.strip("/").replace("/", "-")

    def _extract_breadcrumb(self, soup: BeautifulSoup) -> list[str]:
        crumbs = soup.select('[data-testid="breadcrumb"] a, .breadcrumb a, nav[aria-label="breadcrumb"] a')
        return [c.get_text(" ", strip=True) for c in crumbs]

    def extract_max_purchase_qty(self, soup: BeautifulSoup) -> int | None:
        """Detect the per-customer quantity limit shown on the page."""
        qty_input = soup.select_one(QTY_INPUT_SELECTOR)
        if qty_input and qty_input.get("max"):
            try:
                value = int(qty_input["max"])
                if value > 0:
                    return value
            except ValueError:
                pass

        qty_select = soup.select_one(QTY_SELECT_SELECTOR)
        if qty_select:
            values = []
            for option in qty_select.find_all("option"):
                try:
                    values.append(int(option.get("value", "")))
                except ValueError:
                    continue
            values = [v for v in values if v > 0]
            if values:
                return max(values)

        body_text = soup.get_text(" ", strip=True)
        for pattern in LIMIT_PATTERNS:
            match = pattern.search(body_text)
            if match:
                value = int(match.group(1))
                if 0 < value <= 999:
                    return value
        return None

    def _normalize_url(self, url: str, page_url: str) -> str:
        """Resolve an image URL against the page URL.

        Args:
            url: Original image URL (possibly relative or protocol-relative)
            page_url: URL of the page the image was found on

        Returns:
            Absolute https URL
        """
        url = html.unescape(url.strip())
        if url.startswith("//"):
            return "https:" + url
        if not url.startswith("http"):
            return urljoin(self.base_url or page_url, url)
        return url
