from typing import Literal

from pydantic import BaseModel


class ImageCandidate(BaseModel):
    url: str
    priority: Literal[1, 2, 3]
    context: str  # which selector / source found it, e.g. "shopify-main", "json-ld"
    width: int | None = None
    height: int | None = None
    is_in_hero: bool = False
    is_in_product_section: bool = False
    is_early_in_page: bool = False
    position: int = 0  # offset of the raw src in the source HTML

    def sort_key(self) -> tuple[int, int]:
        return (self.priority, self.position)


class StructuredProductData(BaseModel):
    name: str | None = None
    description: str | None = None
    price: str | None = None
    currency: str | None = None
    brand: str | None = None
    images: list[str] = []


class PlatformProductData(BaseModel):
    featured_image: str | None = None
    images: list[str] = []


class ProductRecord(BaseModel):
    url: str
    title: str | None = None
    price: str | None = None
    description: str | None = None
    logo: str | None = None
    images: list[ImageCandidate] = []
    structured_data: StructuredProductData | None = None

    def image_urls(self) -> list[str]:
        return [img.url for img in self.images]

    def hero_count(self) -> int:
        return sum(1 for img in self.images if img.priority == 1 or img.is_in_hero)

    def to_prompt_payload(self) -> dict:
        """Compact, JSON-able view of the record for LLM prompts."""
        payload = {
            "title": self.title or "Product",
            "price": self.price or "",
            "description": self.description or "",
            "logo": self.logo,
            "images": self.image_urls(),
            "url": self.url,
        }
        if self.structured_data:
            payload["brand"] = self.structured_data.brand
            payload["currency"] = self.structured_data.currency
        return payload
