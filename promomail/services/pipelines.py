"""Hybrid generation pipelines: extract -> (refine) -> generate.

Each stage reports its own usage; the pipeline composes them into one
UsageRecord that keeps the per-stage breakdown. A failing stage aborts the
whole run with a PipelineStageError naming the stage.
"""

import json
import logging
import re
from dataclasses import dataclass
from typing import Awaitable, Protocol, TypeVar

import anthropic
import httpx
import openai

from promomail.exceptions import ExtractionError, PipelineStageError, PromoMailError
from promomail.schemas.generation import TemplateEmailRequest
from promomail.schemas.product import ProductRecord
from promomail.schemas.usage import Completion, UsageRecord
from promomail.services.extractor import (
    DESCRIPTION_MAX_CHARS,
    MANUAL_PROFILE,
    ProductExtractor,
    decode_object_at,
    resolve_url,
    truncate_description,
)
from promomail.services.fetcher import COMPACT_LIMIT, HtmlFetcher
from promomail.services.model_registry import ModelConfiguration, Provider
from promomail.services.orchestrator import FetchUrlTool, ToolCallOrchestrator
from promomail.services.pricing import format_cost
from promomail.services.providers import (
    TOOLS,
    AnthropicMessagesAdapter,
    ChatCompletionsAdapter,
    ConversationAdapter,
    get_anthropic_client,
    get_openai_client,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

EXTRACTION_MAX_TOKENS = 4000
REFINEMENT_MAX_TOKENS = 2000
GENERATION_MAX_TOKENS = 16000
EXTRACTION_RESULT_CAP = 30_000
REFINED_IMAGE_LIMIT = 5
THUMBNAIL_MAX_WIDTH = 300
JSON_OBJECT_FORMAT = {"type": "json_object"}

STAGE_ERRORS = (PromoMailError, anthropic.APIError, openai.APIError, httpx.HTTPError, httpx.InvalidURL)


# ---------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------

def build_extraction_prompt(product_url: str) -> str:
    return f"""Extract product information from this URL: {product_url}

Please fetch the page and extract the following information in JSON format:
{{
  "title": "Product title",
  "price": "Product price",
  "description": "Product description",
  "images": ["image_url_1", "image_url_2", ...],
  "features": ["feature1", "feature2", ...],
  "url": "{product_url}"
}}

IMPORTANT:
- Convert all image URLs to absolute URLs (full https:// URLs)
- Extract the main product image first
- Include all relevant product images
- Return ONLY valid JSON, no markdown, no code blocks"""


def describe_image_context(record: ProductRecord) -> str:
    entries = []
    for index, img in enumerate(record.images):
        hints = []
        if img.priority == 1:
            hints.append("HIGH PRIORITY (hero/main selector)")
        if img.is_in_hero:
            hints.append("in hero section")
        if img.is_in_product_section:
            hints.append("in product section")
        if img.is_early_in_page:
            hints.append("appears early in page")
        if img.width and img.width > 500:
            hints.append(f"large ({img.width}px wide)")
        if img.context:
            hints.append(f"found via: {img.context}")
        entries.append(f"[{index}] {img.url}\n     Context: {', '.join(hints) or 'general image'}")
    return "\n\n".join(entries)


def build_refinement_prompt(record: ProductRecord) -> str:
    url = record.url
    description = record.description or ""
    short_description = description[:200] + ("..." if len(description) > 200 else "")
    return f"""Review and refine this extracted product data from {url}:

Product Data:
- Title: {record.title}
- Price: {record.price}
- Description: {short_description}

Images Found ({len(record.images)} total):
{describe_image_context(record)}

CRITICAL INSTRUCTIONS FOR IMAGE PRIORITIZATION:
1. The MAIN HERO/PRODUCT IMAGE should be FIRST in the images array
2. Prioritize images with:
   - HIGH PRIORITY (priority 1) - these were found using hero/main selectors
   - "in hero section" - these are in the hero area
   - "appears early in page" - main images appear before description
   - Large width (>500px) - main product images are typically large
   - Context containing "hero", "main", "primary", "shopify-main", "woocommerce-main"
3. EXCLUDE images that are:
   - Thumbnails (small width, <300px)
   - Logos or icons
   - Not product-related
4. Keep only the TOP 5 images (main hero + 4 best product images)
5. Convert any remaining relative URLs to absolute URLs (base: {url})

Please:
1. Validate all fields are present and reasonable
2. Prioritize main product hero image FIRST (use context clues above)
3. Clean price formatting (ensure it's a valid price format like "$XX.XX")
4. Improve description if it's too short or unclear (keep under 500 chars)
5. Ensure title is clean and readable

Return ONLY valid JSON in this exact format:
{{
  "title": "Product title",
  "price": "Product price",
  "description": "Product description",
  "images": ["main_hero_image_url", "product_image_2", "product_image_3", "product_image_4", "product_image_5"],
  "url": "{url}"
}}

No markdown, no code blocks, no explanations."""


def build_generation_prompt(template: str, product: dict, custom_prompt: str) -> str:
    instructions = f"Additional Instructions: {custom_prompt}" if custom_prompt else ""
    return f"""Create an ecommerce promotional email using the following email template structure and the provided product data.

Email Template:
{template}

Product Data:
{json.dumps(product, indent=2)}

{instructions}

Return ONLY the complete HTML starting with <!DOCTYPE html> and ending with </html>.
- Use the product data to fill in the template
- Replace product titles, prices, images, and descriptions with the extracted data
- Preserve the template's structure and styling
- No markdown, no code blocks, no explanations"""


# ---------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------

_JSON_SPAN = re.compile(r"\{[\s\S]*\}")
_PRICE_NUMBER = re.compile(r"\d[\d,]*(?:\.\d+)?")
_FOREIGN_CURRENCY = re.compile(r"[€£¥₹]|\b(?:EUR|GBP|JPY|INR)\b")
_DOLLAR_MARK = re.compile(r"\$|\bUSD\b")
_DECIMAL_COMMA = re.compile(r",\d{2}\s*$")


def parse_json_object(text: str) -> dict | None:
    """The outermost {...} span of a model reply, decoded. None if there is none."""
    match = _JSON_SPAN.search(text or "")
    if not match:
        return None
    try:
        data = json.loads(match.group(0))
    except json.JSONDecodeError:
        # trailing prose with braces; fall back to the first complete object
        data = decode_object_at(text, match.start())
    return data if isinstance(data, dict) else None


def normalize_price(price: str | None) -> str | None:
    """Render a price as $XX.XX when it is a plain dollar amount."""
    if not price:
        return price
    if _FOREIGN_CURRENCY.search(price):
        return price.strip()
    if not _DOLLAR_MARK.search(price) and _DECIMAL_COMMA.search(price):
        # 19,99 style: a comma decimal, currency unknown
        return price.strip()
    match = _PRICE_NUMBER.search(price)
    if not match:
        return price.strip()
    try:
        value = float(match.group(0).replace(",", ""))
    except ValueError:
        return price.strip()
    return f"${value:,.2f}"


def enforce_refinement_rules(refined: dict, record: ProductRecord) -> dict:
    """Apply the refinement rules to a model reply, filling gaps from the raw record."""
    widths = {img.url: img.width for img in record.images}

    images = []
    for src in refined.get("images") or []:
        if not isinstance(src, str) or not src.strip():
            continue
        url = resolve_url(src.strip(), record.url)
        width = widths.get(url)
        if width is not None and width < THUMBNAIL_MAX_WIDTH:
            continue
        if url not in images:
            images.append(url)
    if not images:
        images = [
            img.url for img in record.images
            if img.width is None or img.width >= THUMBNAIL_MAX_WIDTH
        ]

    description = refined.get("description") if isinstance(refined.get("description"), str) else None
    description = description or record.description or ""
    if len(description) > DESCRIPTION_MAX_CHARS:
        description = truncate_description(description)

    title = refined.get("title") if isinstance(refined.get("title"), str) else None
    price = refined.get("price") if isinstance(refined.get("price"), str) else None

    return {
        "title": (title or record.title or "Product").strip(),
        "price": normalize_price(price or record.price) or "",
        "description": description,
        "images": images[:REFINED_IMAGE_LIMIT],
        "url": record.url,
    }


async def run_stage(name: str, step: Awaitable[T]) -> T:
    try:
        return await step
    except PipelineStageError:
        raise
    except STAGE_ERRORS as e:
        logger.error("%s stage failed: %s", name.capitalize(), e)
        raise PipelineStageError(name, e) from e


# ---------------------------------------------------------------
# Stages
# ---------------------------------------------------------------

@dataclass(frozen=True)
class ExtractionOutput:
    product: dict
    usage: UsageRecord
    record: ProductRecord | None = None  # set when the heuristic extractor produced the data


class ExtractionStage(Protocol):
    async def extract(self, product_url: str) -> ExtractionOutput: ...


class LlmExtractionStage:
    """A model fetches the page through the tool loop and answers with product JSON."""

    def __init__(self, adapter: ConversationAdapter, fetcher: HtmlFetcher | None = None, max_iterations: int = 3):
        self.adapter = adapter
        self.tool = FetchUrlTool(fetcher, fetch_limit=COMPACT_LIMIT, result_cap=EXTRACTION_RESULT_CAP)
        self.max_iterations = max_iterations

    async def extract(self, product_url: str) -> ExtractionOutput:
        orchestrator = ToolCallOrchestrator(self.adapter, self.tool, max_iterations=self.max_iterations)
        result = await orchestrator.run([{"role": "user", "content": build_extraction_prompt(product_url)}])

        product = parse_json_object(result.text)
        if product is None:
            logger.error("No JSON object in extraction reply from %s", self.adapter.model_id)
            raise ExtractionError("Failed to extract product data in valid JSON format")

        logger.info(
            "LLM extraction complete: model=%s tokens=%d cost=%s",
            self.adapter.model_id, result.usage.total_tokens, format_cost(result.usage.estimated_cost_usd),
        )
        return ExtractionOutput(product=product, usage=result.usage)


class HeuristicExtractionStage:
    """Selector-based extraction; costs no tokens."""

    def __init__(self, extractor: ProductExtractor | None = None, fetcher: HtmlFetcher | None = None):
        self.extractor = extractor or ProductExtractor(MANUAL_PROFILE)
        self.fetcher = fetcher

    async def extract(self, product_url: str) -> ExtractionOutput:
        record = await self.extractor.fetch_and_extract(product_url, self.fetcher)
        return ExtractionOutput(product=record.to_prompt_payload(), usage=UsageRecord(), record=record)


class CombinedExtractionStage:
    """Heuristic extraction first; a model extraction when the heuristic comes back thin."""

    def __init__(self, heuristic: HeuristicExtractionStage, fallback: ExtractionStage):
        self.heuristic = heuristic
        self.fallback = fallback

    async def extract(self, product_url: str) -> ExtractionOutput:
        try:
            output = await self.heuristic.extract(product_url)
        except ExtractionError as e:
            logger.warning("Heuristic extraction failed for %s, using model fallback: %s", product_url, e)
            return await self.fallback.extract(product_url)

        record = output.record
        if record is not None and record.title and record.images:
            return output

        logger.info("Heuristic extraction incomplete for %s (title or images missing), using model fallback", product_url)
        fallback = await self.fallback.extract(product_url)
        return ExtractionOutput(product=fallback.product, usage=output.usage + fallback.usage)


class RefinementStage:
    def __init__(self, adapter: ChatCompletionsAdapter):
        self.adapter = adapter

    async def refine(self, record: ProductRecord) -> ExtractionOutput:
        turn = await self.adapter.send([{"role": "user", "content": build_refinement_prompt(record)}])

        refined = parse_json_object(turn.text)
        if refined is None:
            logger.warning("Refinement reply was not JSON, keeping the extracted data")
            refined = {}
        product = enforce_refinement_rules(refined, record)

        logger.info(
            "Refinement complete: tokens=%d cost=%s images=%d",
            turn.usage.total_tokens, format_cost(turn.usage.estimated_cost_usd), len(product["images"]),
        )
        return ExtractionOutput(product=product, usage=turn.usage, record=record)


class GenerationStage:
    def __init__(self, adapter: ChatCompletionsAdapter):
        self.adapter = adapter

    async def generate(self, template: str, product: dict, custom_prompt: str) -> Completion:
        prompt = build_generation_prompt(template, product, custom_prompt)
        return await self.adapter.complete([{"role": "user", "content": prompt}])


# ---------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------

class HybridPipeline:
    def __init__(
        self,
        name: str,
        extract: ExtractionStage,
        generate: GenerationStage,
        refine: RefinementStage | None = None,
    ):
        self.name = name
        self.extract = extract
        self.generate = generate
        self.refine = refine

    async def run(self, request: TemplateEmailRequest) -> Completion:
        logger.info("Starting hybrid pipeline %s for %s", self.name, request.product_url)
        stages: dict[str, UsageRecord] = {}

        extraction = await run_stage("extraction", self.extract.extract(request.product_url))
        stages["extraction"] = extraction.usage
        product = extraction.product

        if self.refine is not None and extraction.record is not None:
            refined = await run_stage("refinement", self.refine.refine(extraction.record))
            stages["refinement"] = refined.usage
            product = refined.product

        completion = await run_stage(
            "generation",
            self.generate.generate(request.email_template, product, request.custom_prompt),
        )
        stages["generation"] = completion.usage

        usage = UsageRecord.compose(stages)
        logger.info(
            "Hybrid pipeline %s complete: total=%s %s",
            self.name, format_cost(usage.estimated_cost_usd),
            " ".join(f"{stage}={format_cost(u.estimated_cost_usd)}" for stage, u in stages.items()),
        )
        return Completion(content=completion.content, usage=usage)


def build_pipeline(
    config: ModelConfiguration,
    fetcher: HtmlFetcher | None = None,
    extraction_max_iterations: int = 3,
) -> HybridPipeline:
    """Wire the stages for a hybrid registry entry. Clients are created here, so keys must be set."""
    openai_client = get_openai_client()
    generate = GenerationStage(
        ChatCompletionsAdapter(openai_client, config.generate_model_id, GENERATION_MAX_TOKENS)
    )

    def claude_extraction() -> LlmExtractionStage:
        adapter = AnthropicMessagesAdapter(
            get_anthropic_client(), config.extract_model_id, EXTRACTION_MAX_TOKENS, tools=TOOLS
        )
        return LlmExtractionStage(adapter, fetcher, extraction_max_iterations)

    if config.provider == Provider.OPENAI_HYBRID:
        adapter = ChatCompletionsAdapter(
            openai_client, config.extract_model_id, EXTRACTION_MAX_TOKENS,
            tools=TOOLS, response_format=JSON_OBJECT_FORMAT,
        )
        return HybridPipeline(config.key, LlmExtractionStage(adapter, fetcher, extraction_max_iterations), generate)

    if config.provider == Provider.CLAUDE_HYBRID:
        return HybridPipeline(config.key, claude_extraction(), generate)

    if config.provider == Provider.MANUAL_HYBRID:
        refine = RefinementStage(ChatCompletionsAdapter(
            openai_client, config.refine_model_id, REFINEMENT_MAX_TOKENS, response_format=JSON_OBJECT_FORMAT,
        ))
        return HybridPipeline(config.key, HeuristicExtractionStage(fetcher=fetcher), generate, refine)

    if config.provider == Provider.COMBINED_HYBRID:
        extract = CombinedExtractionStage(HeuristicExtractionStage(fetcher=fetcher), claude_extraction())
        return HybridPipeline(config.key, extract, generate)

    raise ValueError(f"{config.key} is not a hybrid pipeline")
