from fastapi import APIRouter, Depends

from promomail.schemas.generation import (
    GenerationResult,
    ProductEmailRequest,
    TemplateEmailRequest,
    TextEmailRequest,
)
from promomail.services.email_generator import EmailGenerationService
from promomail.services.model_registry import (
    DEFAULT_TEMPLATE_MODEL,
    DEFAULT_TEXT_MODEL,
    TEMPLATE_MODELS,
    TEXT_EMAIL_MODELS,
)

router = APIRouter(prefix="/api")


def get_email_service() -> EmailGenerationService:
    return EmailGenerationService()


@router.post("/generate", response_model=GenerationResult, response_model_exclude_none=True)
async def generate_product_email(
    body: ProductEmailRequest,
    service: EmailGenerationService = Depends(get_email_service),
):
    return await service.generate_product_emails(body)


@router.post("/generate-template", response_model=GenerationResult, response_model_exclude_none=True)
async def generate_template_email(
    body: TemplateEmailRequest,
    service: EmailGenerationService = Depends(get_email_service),
):
    return await service.generate_template_email(body)


@router.post("/generate-text-email", response_model=GenerationResult, response_model_exclude_none=True)
async def generate_text_email(
    body: TextEmailRequest,
    service: EmailGenerationService = Depends(get_email_service),
):
    return await service.generate_text_email(body)


@router.get("/models")
async def list_models():
    """Model choices for the template and text-email forms."""

    def describe(registry):
        return [
            {"key": c.key, "label": c.label, "provider": c.provider.value, "hybrid": c.is_hybrid}
            for c in registry.values()
        ]

    return {
        "template": {"default": DEFAULT_TEMPLATE_MODEL, "models": describe(TEMPLATE_MODELS)},
        "text": {"default": DEFAULT_TEXT_MODEL, "models": describe(TEXT_EMAIL_MODELS)},
    }
