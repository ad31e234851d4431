import logging

import anthropic
import httpx
import openai

from promomail.config import settings
from promomail.exceptions import ConfigurationError, EmptyResponseError, GenerationError, PromoMailError
from promomail.schemas.email import EmailVariant
from promomail.schemas.generation import (
    GenerationResult,
    ProductEmailRequest,
    TemplateEmailRequest,
    TextEmailRequest,
)
from promomail.services.diagnostics import GenerationLog
from promomail.services.fetcher import COMPACT_LIMIT, HtmlFetcher
from promomail.services.model_registry import (
    TEMPLATE_MODELS,
    TEXT_EMAIL_MODELS,
    ApiConvention,
    ModelConfiguration,
    Provider,
    get_model_config,
)
from promomail.services.orchestrator import FetchUrlTool, OrchestrationResult, SmartFetchTool, ToolCallOrchestrator
from promomail.services.pipelines import build_pipeline
from promomail.services.pricing import format_cost
from promomail.services.providers import (
    TOOLS,
    AnthropicMessagesAdapter,
    ChatCompletionsAdapter,
    ConversationAdapter,
    ResponsesAdapter,
    ensure_content,
    get_anthropic_client,
    get_openai_client,
    get_xai_client,
    require_credentials,
)
from promomail.services.sanitizer import extract_html, looks_like_html, split_emails

logger = logging.getLogger(__name__)

MIN_TEMPLATE_EMAIL_CHARS = 100
MIN_TEXT_EMAIL_CHARS = 10
DIRECT_RESULT_CAP = 50_000

OUTPUT_INSTRUCTIONS = (
    "Return ONLY the complete HTML starting with <!DOCTYPE html> and ending with </html>. "
    "No markdown, no code blocks, no explanations."
)

TEXT_OUTPUT_INSTRUCTIONS = """Generate a complete plain text email including the Subject line at the top.
Format the output exactly like this:
Subject: [Your subject line here]

[Email body here]

The email should be ready to copy and paste directly into an email client."""

# Errors from the SDKs and the network that end a flow
UPSTREAM_ERRORS = (anthropic.APIError, openai.APIError, httpx.HTTPError, httpx.InvalidURL)


# ---------------------------------------------------------------
# Prompt builders
# ---------------------------------------------------------------

def build_product_prompt(request: ProductEmailRequest) -> str:
    if request.email_count == 1:
        prompt = f"Create a beautiful promotional ecommerce email for this product: {request.product_url}"
    else:
        prompt = (
            f"Create {request.email_count} beautiful promotional ecommerce emails for this product: "
            f"{request.product_url}\n\nEach email must use a distinctly different visual style."
        )

    if request.fetch_method == "smart":
        prompt += (
            "\n\nUse the fetch_url tool to get the product page. It returns the extracted product "
            "data (title, price, description, logo and ranked image URLs) as JSON; the first image "
            "is the main product image."
        )
    if request.promotion.strip():
        prompt += f"\n\nPromotion to feature: {request.promotion.strip()}"
    if request.custom_prompt.strip():
        prompt += f"\n\nAdditional instructions: {request.custom_prompt.strip()}"

    if request.email_count == 1:
        prompt += f"\n\n{OUTPUT_INSTRUCTIONS}"
    else:
        prompt += (
            "\n\nReturn each email as complete HTML starting with <!DOCTYPE html> and ending with </html>. "
            "Put an HTML comment naming the style directly before each email, for example "
            "<!-- Minimal Modern -->, and separate the emails with <!-- EMAIL_SEPARATOR -->. "
            "No markdown, no code blocks, no explanations."
        )
    return prompt


def build_template_prompt(request: TemplateEmailRequest) -> str:
    prompt = (
        f"Create an ecommerce promotional email for this product: {request.product_url.strip()} "
        f"using the following email template as inspiration and structure:\n\n{request.email_template.strip()}"
    )
    if request.custom_prompt.strip():
        prompt += f"\n\nAdditional instructions: {request.custom_prompt.strip()}"
    return prompt + f"\n\n{OUTPUT_INSTRUCTIONS}"


def build_text_email_input(request: TextEmailRequest) -> str:
    """Single flattened input for the responses convention."""
    parts = []
    if request.system_prompt.strip():
        parts.append(f"## Instructions\n{request.system_prompt.strip()}\n\n")
    parts.append(f"## Business Context (RAG Data)\n{request.business_info.strip()}\n\n")
    parts.append(f"## Email Guidelines & Templates\n{request.email_guidelines.strip()}\n\n")
    parts.append(f"## Your Task\n{request.user_prompt.strip()}\n\n")
    parts.append(TEXT_OUTPUT_INSTRUCTIONS)
    return "".join(parts)


def build_text_email_messages(request: TextEmailRequest) -> list[dict]:
    extra = ""
    if request.system_prompt.strip():
        extra = f"## Additional Instructions\n{request.system_prompt.strip()}\n\n"
    system = (
        "You are an expert email copywriter. Your task is to generate high-quality, personalized emails.\n\n"
        f"{extra}"
        f"## Business Context (RAG Data)\n{request.business_info.strip()}\n\n"
        f"## Email Guidelines & Templates\n{request.email_guidelines.strip()}\n\n"
        f"{TEXT_OUTPUT_INSTRUCTIONS}"
    )
    return [
        {"role": "system", "content": system},
        {"role": "user", "content": request.user_prompt.strip()},
    ]


def conversation_adapter(config: ModelConfiguration, max_tokens: int | None = None) -> ConversationAdapter:
    """Tool-capable adapter for a direct (non-hybrid) model."""
    if config.is_hybrid or not config.model_id:
        raise ConfigurationError(f"{config.key} cannot be used for direct generation")
    max_tokens = max_tokens or config.max_output_tokens
    if config.api_convention == ApiConvention.MESSAGES:
        return AnthropicMessagesAdapter(get_anthropic_client(), config.model_id, max_tokens, tools=TOOLS)
    if config.api_convention == ApiConvention.CHAT:
        return ChatCompletionsAdapter(get_openai_client(), config.model_id, max_tokens, tools=TOOLS)
    raise ConfigurationError(f"{config.key} cannot run a tool loop")


# ---------------------------------------------------------------
# Service
# ---------------------------------------------------------------

class EmailGenerationService:
    def __init__(self, fetcher: HtmlFetcher | None = None):
        self.fetcher = fetcher or HtmlFetcher()

    async def generate_product_emails(self, request: ProductEmailRequest) -> GenerationResult:
        """Product URL -> one or more styled HTML emails, with a diagnostic log."""
        config = get_model_config(settings.product_email_model, TEMPLATE_MODELS)
        smart = request.fetch_method == "smart"
        tool = SmartFetchTool(self.fetcher) if smart else FetchUrlTool(self.fetcher)

        log = GenerationLog(
            product_url=request.product_url,
            custom_prompt=request.custom_prompt.strip() or "(none)",
            fetch_method=request.fetch_method,
            fetch_limit=tool.fetch_limit,
            model_id=config.model_id or "",
            prompt_sent=build_product_prompt(request),
        )

        try:
            require_credentials(config)
            adapter = conversation_adapter(config)
            orchestrator = ToolCallOrchestrator(
                adapter,
                tool,
                max_iterations=settings.product_email_max_iterations,
            )
            result = await orchestrator.run([{"role": "user", "content": log.prompt_sent}])
            log.record_loop(result)
            text = ensure_content(result.text, adapter.label)

            emails = split_emails(text)
            if len(emails) > 1:
                content = text.strip()
            else:
                content = extract_html(text)
                if not emails and looks_like_html(content):
                    emails = [EmailVariant(id=1, description="Style 1", html=content)]
            log.record_output(content, len(emails))
        except PromoMailError as e:
            logger.exception("Product email generation failed for %s", request.product_url)
            log.errors.append(str(e))
            e.diagnostic_log = log.format()
            raise
        except UPSTREAM_ERRORS as e:
            logger.exception("Product email generation failed for %s", request.product_url)
            log.errors.append(str(e) or e.__class__.__name__)
            error = GenerationError(str(e) or "Failed to generate email")
            error.diagnostic_log = log.format()
            raise error from e

        logger.info(
            "Product emails generated for %s: emails=%d tokens=%d cost=%s",
            request.product_url, len(emails), result.usage.total_tokens,
            format_cost(result.usage.estimated_cost_usd),
        )
        record = tool.last_record if smart else None
        return GenerationResult(
            content=content,
            emails=emails,
            usage=result.usage,
            product_data=record.model_dump() if record else None,
            diagnostic_log=log.format(),
        )

    async def generate_template_email(self, request: TemplateEmailRequest) -> GenerationResult:
        """Product URL + HTML template -> one HTML email, directly or through a hybrid pipeline."""
        config = get_model_config(request.model, TEMPLATE_MODELS)
        require_credentials(config)

        try:
            if config.is_hybrid:
                completion = await build_pipeline(
                    config, self.fetcher, settings.extraction_max_iterations
                ).run(request)
                content, usage = completion.content, completion.usage
            else:
                result = await self._run_direct(config, build_template_prompt(request))
                content, usage = result.text, result.usage
        except UPSTREAM_ERRORS as e:
            logger.exception("Template email generation failed (%s)", config.key)
            raise GenerationError(str(e) or "Failed to generate email") from e

        html = extract_html(content)
        if len(html) < MIN_TEMPLATE_EMAIL_CHARS:
            raise GenerationError("Failed to generate valid email HTML. The response was too short or invalid.")

        logger.info(
            "Template email generated with %s: tokens=%d cost=%s",
            config.key, usage.total_tokens, format_cost(usage.estimated_cost_usd),
        )
        return GenerationResult(content=html, usage=usage)

    async def _run_direct(self, config: ModelConfiguration, prompt: str) -> OrchestrationResult:
        adapter = conversation_adapter(config)
        tool = FetchUrlTool(self.fetcher, fetch_limit=COMPACT_LIMIT, result_cap=DIRECT_RESULT_CAP)
        orchestrator = ToolCallOrchestrator(adapter, tool, max_iterations=settings.product_email_max_iterations)
        result = await orchestrator.run([{"role": "user", "content": prompt}])
        ensure_content(result.text, adapter.label)
        return result

    async def generate_text_email(self, request: TextEmailRequest) -> GenerationResult:
        """Business docs + guidelines + task -> a plain-text email with a Subject line."""
        config = get_model_config(request.model, TEXT_EMAIL_MODELS)
        require_credentials(config)

        try:
            if config.api_convention == ApiConvention.RESPONSES:
                adapter = ResponsesAdapter(get_openai_client(), config.model_id, config.max_output_tokens)
                completion = await adapter.complete(build_text_email_input(request))
            else:
                xai = config.provider == Provider.XAI
                client = get_xai_client() if xai else get_openai_client()
                label = "xAI" if xai else "OpenAI"
                adapter = ChatCompletionsAdapter(client, config.model_id, config.max_output_tokens, label=label)
                completion = await adapter.complete(build_text_email_messages(request))
        except EmptyResponseError as e:
            raise GenerationError("Failed to generate email. The response was empty or too short.") from e
        except (openai.AuthenticationError, openai.PermissionDeniedError) as e:
            logger.error("Text email provider rejected the API key: %s", e)
            raise ConfigurationError("API key error. Please check your API key configuration.") from e
        except openai.NotFoundError as e:
            raise GenerationError(f"Model error: {e}. The selected model may not be available.") from e
        except UPSTREAM_ERRORS as e:
            logger.exception("Text email generation failed (%s)", config.key)
            raise GenerationError(str(e) or "Failed to generate email") from e

        if len(completion.content.strip()) < MIN_TEXT_EMAIL_CHARS:
            raise GenerationError("Failed to generate email. The response was empty or too short.")

        return GenerationResult(content=completion.content, usage=completion.usage)
