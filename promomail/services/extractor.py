"""Heuristic product extraction from raw HTML.

Each field is pulled by an ordered cascade of small extractor functions
(``BeautifulSoup -> str | None``) combined with ``first_success``. Images are
ranked in three tiers:

1. hero / main-image selectors, JSON-LD images and platform product JSON
2. generic product-image selectors
3. any ``<img>``, only when nothing above produced a candidate

and sorted by (priority, position in the source HTML).
"""

import json
import logging
import re
from dataclasses import dataclass
from typing import Callable, Iterator, Optional
from urllib.parse import urljoin

from bs4 import BeautifulSoup, Tag

from promomail.exceptions import ExtractionError, FetchError
from promomail.schemas.product import (
    ImageCandidate,
    PlatformProductData,
    ProductRecord,
    StructuredProductData,
)
from promomail.services.fetcher import HtmlFetcher

logger = logging.getLogger(__name__)

DENYLIST_TERMS: tuple[str, ...] = (
    "logo", "icon", "avatar", "thumbnail", "badge",
    "flag", "pixel", "tracking", "spacer",
)

DESCRIPTION_MIN_CHARS = 20
DESCRIPTION_MAX_CHARS = 500
EARLY_PAGE_FRACTION = 0.3
PLATFORM_IMAGE_LIMIT = 5

IMAGE_SOURCE_ATTRS = ("src", "data-src", "data-lazy-src", "data-original")

HERO_ANCESTORS = ".hero, .product-hero, .banner, .hero-section"
PRODUCT_ANCESTORS = ".product, .product-details, .product-info, [data-product]"

# (selector, priority, context)
HERO_IMAGE_SELECTORS: list[tuple[str, int, str]] = [
    (".hero img", 1, "hero-section"),
    (".product-hero img", 1, "product-hero"),
    (".main-image", 1, "main-image"),
    ("img[data-main-image]", 1, "data-main-image"),
    ('img[data-product-image="main"]', 1, "main-product-image"),
    (".product__media img:first-child", 1, "shopify-main"),
    (".product-single__media img:first-child", 1, "shopify-main"),
    (".woocommerce-product-gallery img:first-child", 1, "woocommerce-main"),
]

PRODUCT_IMAGE_SELECTORS: list[tuple[str, int, str]] = [
    ("img.product-image", 2, "product-image-class"),
    ("img[data-product-image]", 2, "data-product-image"),
    (".product-images img", 2, "product-images"),
    (".product-gallery img", 2, "product-gallery"),
    ('img[src*="product"]', 2, "product-url"),
    ('img[alt*="product" i]', 2, "product-alt"),
    ("img.main-image", 2, "main-image-class"),
    ("img.primary-image", 2, "primary-image"),
    (".product__media img", 2, "shopify-media"),
    (".product-single__media img", 2, "shopify-single"),
]


@dataclass(frozen=True)
class ExtractorProfile:
    name: str
    image_cap: int
    denylist: tuple[str, ...] = DENYLIST_TERMS
    use_structured_data: bool = True
    use_platform_json: bool = True


# Manual extraction keeps a wide net for the refinement model to rank.
MANUAL_PROFILE = ExtractorProfile(name="manual", image_cap=15)
# Smart fetch hands the record straight to the generator.
SMART_PROFILE = ExtractorProfile(name="smart", image_cap=5)


# ---------------------------------------------------------------
# Field extractor combinators
# ---------------------------------------------------------------

FieldExtractor = Callable[[BeautifulSoup], Optional[str]]


def first_success(*extractors: FieldExtractor) -> FieldExtractor:
    """Run extractors in order and return the first non-empty value."""
    def run(soup: BeautifulSoup) -> str | None:
        for extract in extractors:
            value = extract(soup)
            if value:
                return value
        return None
    return run


def accept_if(extractor: FieldExtractor, predicate: Callable[[str], bool]) -> FieldExtractor:
    def run(soup: BeautifulSoup) -> str | None:
        value = extractor(soup)
        return value if value and predicate(value) else None
    return run


def select_text(selector: str) -> FieldExtractor:
    def run(soup: BeautifulSoup) -> str | None:
        el = soup.select_one(selector)
        if el is None:
            return None
        return el.get_text(" ", strip=True) or None
    return run


def select_attr(selector: str, *attrs: str) -> FieldExtractor:
    def run(soup: BeautifulSoup) -> str | None:
        el = soup.select_one(selector)
        if el is None:
            return None
        for attr in attrs:
            value = el.get(attr)
            if isinstance(value, str) and value.strip():
                return value.strip()
        return None
    return run


def select_price(selector: str) -> FieldExtractor:
    """Element text first, then data-price/content; cleaned to digits, comma and period."""
    def run(soup: BeautifulSoup) -> str | None:
        el = soup.select_one(selector)
        if el is None:
            return None
        for raw in (el.get_text(" ", strip=True), el.get("data-price"), el.get("content")):
            if isinstance(raw, str):
                cleaned = clean_price(raw)
                if cleaned:
                    return cleaned
        return None
    return run


def select_image_src(selector: str) -> FieldExtractor:
    def run(soup: BeautifulSoup) -> str | None:
        for el in soup.select(selector):
            src = image_source(el)
            if src:
                return src
        return None
    return run


def clean_price(raw: str) -> str:
    return re.sub(r"[^\d.,]", "", raw).strip(".,")


def _long_enough(text: str) -> bool:
    return len(text) > DESCRIPTION_MIN_CHARS


extract_title = first_success(
    select_text("h1.product-title"),
    select_text("h1[data-product-title]"),
    select_text(".product-title h1"),
    select_text("h1"),
    select_attr('meta[property="og:title"]', "content"),
    select_attr('meta[name="twitter:title"]', "content"),
    select_text("title"),
)

extract_price = first_success(*(
    select_price(sel) for sel in (
        ".price",
        ".product-price",
        "[data-price]",
        ".price-current",
        ".sale-price",
        '[itemprop="price"]',
        ".cost",
        ".amount",
    )
))

extract_description = first_success(*(
    accept_if(extractor, _long_enough) for extractor in (
        select_text(".product-description"),
        select_text(".description"),
        select_text("[data-product-description]"),
        select_text(".product-details"),
        select_text(".product-info"),
        select_attr('meta[property="og:description"]', "content"),
        select_attr('meta[name="description"]', "content"),
        select_text('[itemprop="description"]'),
    )
))

extract_logo_src = first_success(
    select_image_src('header img[src*="logo" i]'),
    select_image_src('header img[alt*="logo" i]'),
    select_image_src('header img[class*="logo" i]'),
    select_image_src('nav img[src*="logo" i]'),
    select_image_src('nav img[alt*="logo" i]'),
    select_image_src(".logo img"),
    select_image_src("img.logo"),
    select_image_src('[class*="logo"] img'),
    select_image_src('img[src*="logo" i]'),
    select_image_src('img[alt*="logo" i]'),
    select_attr('link[rel~="icon"]', "href"),
    select_attr('link[rel="apple-touch-icon"]', "href"),
)


def truncate_description(text: str) -> str:
    if len(text) > DESCRIPTION_MAX_CHARS:
        return text[:DESCRIPTION_MAX_CHARS] + "..."
    return text


# ---------------------------------------------------------------
# URL and attribute helpers
# ---------------------------------------------------------------

def resolve_url(src: str, base_url: str) -> str:
    """Absolute form of src; handles relative and protocol-relative URLs."""
    return urljoin(base_url, src.strip())


def image_source(el: Tag) -> str:
    if el.name != "img":
        el = el.find("img")
        if el is None:
            return ""
    for attr in IMAGE_SOURCE_ATTRS:
        value = el.get(attr)
        if isinstance(value, str) and value.strip() and not value.strip().startswith("data:"):
            return value.strip()
    return ""


def _attr_text(el: Tag, name: str) -> str:
    value = el.get(name, "")
    if isinstance(value, list):
        value = " ".join(value)
    return value.lower()


def _dimension(el: Tag, *names: str) -> int | None:
    for name in names:
        match = re.match(r"\s*(\d+)", str(el.get(name, "")))
        if match and int(match.group(1)) > 0:
            return int(match.group(1))
    return None


def _source_offset(html: str, src: str) -> int:
    pos = html.find(src)
    if pos < 0:
        pos = html.find(src.replace("&", "&amp;"))
    if pos < 0:
        # JSON-LD and platform JSON escape slashes
        pos = html.find(src.replace("/", "\\/"))
    return pos if pos >= 0 else len(html)


def is_denylisted(denylist: tuple[str, ...], *texts: str) -> bool:
    return any(term in text.lower() for text in texts for term in denylist)


# ---------------------------------------------------------------
# Embedded JSON (best effort: None on any parse failure)
# ---------------------------------------------------------------

_DECODER = json.JSONDecoder()
_META_ASSIGNMENT = re.compile(r"var\s+meta\s*=\s*\{")
_PRODUCT_KEY = re.compile(r'"product"\s*:\s*\{')


def load_json(text: str | None) -> object | None:
    if not text or not text.strip():
        return None
    try:
        return json.loads(text.strip())
    except json.JSONDecodeError:
        return None


def decode_object_at(text: str, index: int) -> dict | None:
    """Decode the JSON object that starts at text[index]."""
    try:
        obj, _ = _DECODER.raw_decode(text, index)
    except json.JSONDecodeError:
        return None
    return obj if isinstance(obj, dict) else None


def _iter_json_ld_nodes(data: object) -> Iterator[dict]:
    if isinstance(data, list):
        for item in data:
            yield from _iter_json_ld_nodes(item)
    elif isinstance(data, dict):
        yield data
        if "@graph" in data:
            yield from _iter_json_ld_nodes(data["@graph"])


def _is_product_node(node: dict) -> bool:
    types = node.get("@type")
    if isinstance(types, str):
        types = [types]
    if not isinstance(types, list):
        return False
    return any(isinstance(t, str) and "Product" in t for t in types)


def _json_ld_images(value: object) -> list[str]:
    if isinstance(value, str):
        return [value]
    if isinstance(value, dict):
        url = value.get("url") or value.get("contentUrl")
        return [url] if isinstance(url, str) else []
    if isinstance(value, list):
        urls = []
        for item in value:
            urls.extend(_json_ld_images(item))
        return urls
    return []


def _json_ld_offer(offers: object) -> tuple[str | None, str | None]:
    if isinstance(offers, list):
        offers = offers[0] if offers else None
    if not isinstance(offers, dict):
        return None, None
    price = offers.get("price") or offers.get("lowPrice")
    spec = offers.get("priceSpecification")
    if price is None and isinstance(spec, dict):
        price = spec.get("price")
    currency = offers.get("priceCurrency")
    return (str(price) if price is not None else None), currency


def _json_ld_brand(brand: object) -> str | None:
    if isinstance(brand, dict):
        brand = brand.get("name")
    return brand if isinstance(brand, str) and brand.strip() else None


def parse_json_ld(soup: BeautifulSoup) -> StructuredProductData | None:
    """First schema.org Product found in the page's JSON-LD blocks."""
    for script in soup.find_all("script", attrs={"type": re.compile(r"ld\+json", re.I)}):
        data = load_json(script.string or script.get_text())
        if data is None:
            continue
        for node in _iter_json_ld_nodes(data):
            if not _is_product_node(node):
                continue
            price, currency = _json_ld_offer(node.get("offers"))
            if price is None and node.get("price") is not None:
                price = str(node["price"])
            return StructuredProductData(
                name=node.get("name") if isinstance(node.get("name"), str) else None,
                description=node.get("description") if isinstance(node.get("description"), str) else None,
                price=price,
                currency=currency,
                brand=_json_ld_brand(node.get("brand")),
                images=_json_ld_images(node.get("image")),
            )
    return None


def _platform_image(value: object) -> str | None:
    if isinstance(value, dict):
        value = value.get("src") or value.get("url")
    return value if isinstance(value, str) and value.strip() else None


def _platform_nodes(soup: BeautifulSoup) -> Iterator[dict]:
    flagged = soup.select(
        'script[data-product-json], script[id^="ProductJson"], script[type="application/json"][data-product]'
    )
    for script in flagged:
        data = load_json(script.string or script.get_text())
        if isinstance(data, dict):
            yield data["product"] if isinstance(data.get("product"), dict) else data

    for script in soup.find_all("script"):
        if script.get("src") or "ld+json" in str(script.get("type", "")).lower():
            continue
        body = script.string or script.get_text()
        if not body:
            continue
        for match in _META_ASSIGNMENT.finditer(body):
            obj = decode_object_at(body, match.end() - 1)
            if obj is not None:
                yield obj["product"] if isinstance(obj.get("product"), dict) else obj
        for match in _PRODUCT_KEY.finditer(body):
            obj = decode_object_at(body, match.end() - 1)
            if obj is not None and "variants" in obj:
                yield obj


def parse_platform_product(soup: BeautifulSoup) -> PlatformProductData | None:
    """featured_image and up to 5 images from inline platform product JSON."""
    for node in _platform_nodes(soup):
        featured = _platform_image(node.get("featured_image"))
        raw_images = node.get("images")
        images = []
        if isinstance(raw_images, list):
            images = [url for url in map(_platform_image, raw_images) if url][:PLATFORM_IMAGE_LIMIT]
        if featured or images:
            return PlatformProductData(featured_image=featured, images=images)
    return None


# ---------------------------------------------------------------
# Extractor
# ---------------------------------------------------------------

class ProductExtractor:
    """Turn raw product-page HTML into a ProductRecord. Never raises on bad markup."""

    def __init__(self, profile: ExtractorProfile = MANUAL_PROFILE):
        self.profile = profile

    async def fetch_and_extract(self, url: str, fetcher: HtmlFetcher | None = None) -> ProductRecord:
        fetcher = fetcher or HtmlFetcher()
        try:
            html = await fetcher.fetch_html(url)
        except FetchError as e:
            logger.error("Manual extraction fetch failed for %s: %s", url, e)
            raise ExtractionError(f"Manual extraction failed: {e}") from e
        return self.extract(html, url)

    def extract(self, html: str, url: str) -> ProductRecord:
        soup = BeautifulSoup(html, "html.parser")

        structured = parse_json_ld(soup) if self.profile.use_structured_data else None
        platform = parse_platform_product(soup) if self.profile.use_platform_json else None

        title = extract_title(soup)
        price = extract_price(soup)
        description = extract_description(soup)
        logo_src = extract_logo_src(soup)

        if structured:
            title = title or structured.name
            price = price or structured.price
            if not description and structured.description and _long_enough(structured.description):
                description = structured.description

        record = ProductRecord(
            url=url,
            title=title,
            price=price,
            description=truncate_description(description) if description else None,
            logo=resolve_url(logo_src, url) if logo_src else None,
            images=self.collect_images(soup, html, url, structured, platform),
            structured_data=structured,
        )

        logger.info(
            "Extraction complete (%s): title=%r price=%r images=%d hero=%d structured=%s",
            self.profile.name, record.title, record.price, len(record.images),
            record.hero_count(), structured is not None,
        )
        return record

    def collect_images(
        self,
        soup: BeautifulSoup,
        html: str,
        url: str,
        structured: StructuredProductData | None = None,
        platform: PlatformProductData | None = None,
    ) -> list[ImageCandidate]:
        seen: set[str] = set()
        candidates: list[ImageCandidate] = []

        def add(candidate: ImageCandidate | None) -> None:
            if candidate is not None and candidate.url not in seen:
                seen.add(candidate.url)
                candidates.append(candidate)

        for selector, priority, context in HERO_IMAGE_SELECTORS:
            for el in soup.select(selector):
                add(self._dom_candidate(el, html, url, priority, context))

        if structured:
            for src in structured.images:
                add(self._url_candidate(src, html, url, "json-ld"))
        if platform:
            if platform.featured_image:
                add(self._url_candidate(platform.featured_image, html, url, "platform-featured"))
            for src in platform.images:
                add(self._url_candidate(src, html, url, "platform-gallery"))

        for selector, priority, context in PRODUCT_IMAGE_SELECTORS:
            for el in soup.select(selector):
                add(self._dom_candidate(el, html, url, priority, context))

        if not candidates:
            for el in soup.find_all("img"):
                add(self._dom_candidate(el, html, url, 3, "general-fallback"))

        candidates.sort(key=ImageCandidate.sort_key)
        return candidates[: self.profile.image_cap]

    def _dom_candidate(
        self, el: Tag, html: str, base_url: str, priority: int, context: str
    ) -> ImageCandidate | None:
        if el.name != "img":
            el = el.find("img")
            if el is None:
                return None
        src = image_source(el)
        if not src:
            return None
        if is_denylisted(self.profile.denylist, src, _attr_text(el, "alt"), _attr_text(el, "class")):
            return None
        absolute = resolve_url(src, base_url)
        if not absolute.startswith("http"):
            return None

        position = _source_offset(html, src)
        return ImageCandidate(
            url=absolute,
            priority=priority,
            context=context,
            width=_dimension(el, "width", "data-width"),
            height=_dimension(el, "height", "data-height"),
            is_in_hero=el.css.closest(HERO_ANCESTORS) is not None,
            is_in_product_section=el.css.closest(PRODUCT_ANCESTORS) is not None,
            is_early_in_page=position < len(html) * EARLY_PAGE_FRACTION,
            position=position,
        )

    def _url_candidate(self, src: str, html: str, base_url: str, context: str) -> ImageCandidate | None:
        if not src or is_denylisted(self.profile.denylist, src):
            return None
        absolute = resolve_url(src, base_url)
        if not absolute.startswith("http"):
            return None
        position = _source_offset(html, src)
        return ImageCandidate(
            url=absolute,
            priority=1,
            context=context,
            is_early_in_page=position < len(html) * EARLY_PAGE_FRACTION,
            position=position,
        )
