from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from promomail.schemas.email import EmailVariant
from promomail.schemas.usage import UsageRecord
from promomail.services.fetcher import is_valid_url
from promomail.services.model_registry import TEMPLATE_MODELS, TEXT_EMAIL_MODELS
from promomail.services.sanitizer import is_valid_html

# The browser client posts camelCase keys; snake_case is accepted too.
_REQUEST_CONFIG = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def _required_text(value: str, message: str) -> str:
    if not value or not value.strip():
        raise ValueError(message)
    return value


def _check_product_url(value: str) -> str:
    value = _required_text(value, "Product URL is required and must be a non-empty string").strip()
    if not is_valid_url(value):
        raise ValueError("Product URL must be a valid HTTP or HTTPS URL")
    return value


class ProductEmailRequest(BaseModel):
    model_config = _REQUEST_CONFIG

    product_url: str
    email_count: int = Field(default=2, ge=1, le=4)
    promotion: str = ""
    custom_prompt: str = ""
    fetch_method: Literal["standard", "smart"] = "standard"

    @field_validator("product_url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        return _check_product_url(v)


class TemplateEmailRequest(BaseModel):
    model_config = _REQUEST_CONFIG

    product_url: str
    email_template: str
    custom_prompt: str  # required, may be empty
    model: str = "claude-opus-4-5"

    @field_validator("product_url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        return _check_product_url(v)

    @field_validator("email_template")
    @classmethod
    def validate_template(cls, v: str) -> str:
        v = _required_text(v, "Email template is required and must be a non-empty HTML string")
        if not is_valid_html(v.strip()):
            raise ValueError(
                "Email template must be valid HTML. It should contain HTML tags and "
                "either a DOCTYPE declaration or html tag structure."
            )
        return v

    @field_validator("model")
    @classmethod
    def validate_model(cls, v: str) -> str:
        if v not in TEMPLATE_MODELS:
            raise ValueError(f"Invalid model. Must be one of: {', '.join(TEMPLATE_MODELS)}")
        return v


class TextEmailRequest(BaseModel):
    model_config = _REQUEST_CONFIG

    business_info: str
    email_guidelines: str
    system_prompt: str = ""
    user_prompt: str
    model: str = "gpt-5.2"

    @field_validator("business_info")
    @classmethod
    def validate_business_info(cls, v: str) -> str:
        return _required_text(v, "Business Info RAG data is required. Please upload a markdown file.")

    @field_validator("email_guidelines")
    @classmethod
    def validate_guidelines(cls, v: str) -> str:
        return _required_text(v, "Email Guidelines are required. Please upload a markdown file.")

    @field_validator("user_prompt")
    @classmethod
    def validate_user_prompt(cls, v: str) -> str:
        return _required_text(v, "User prompt is required. Please enter what email you want to generate.")

    @field_validator("model")
    @classmethod
    def validate_model(cls, v: str) -> str:
        if v not in TEXT_EMAIL_MODELS:
            raise ValueError(f"Invalid model. Must be one of: {', '.join(TEXT_EMAIL_MODELS)}")
        return v


class GenerationResult(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    success: bool = True
    content: str
    usage: UsageRecord | None = None
    emails: list[EmailVariant] | None = None
    product_data: dict | None = None
    diagnostic_log: str | None = None


class ErrorResponse(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    error: str
    diagnostic_log: str | None = None
