import os
from pathlib import Path

from dotenv import dotenv_values
from pydantic_settings import BaseSettings

_ENV_FILE = Path(".env.local")
_env_vars = dotenv_values(str(_ENV_FILE)) if _ENV_FILE.exists() else {}


def _provider_key(name: str) -> str:
    return os.environ.get(name) or _env_vars.get(name) or ""


class Settings(BaseSettings):
    app_name: str = "PromoMail"
    debug: bool = False
    anthropic_api_key: str = ""
    openai_api_key: str = ""
    xai_api_key: str = ""
    xai_base_url: str = "https://api.x.ai/v1"
    fetch_timeout: float = 20.0
    user_agent: str = (
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) "
        "AppleWebKit/537.36 (KHTML, like Gecko) "
        "Chrome/120.0.0.0 Safari/537.36"
    )
    accept_header: str = "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"
    product_email_model: str = "claude-opus-4-5"
    product_email_max_iterations: int = 5
    extraction_max_iterations: int = 3
    max_tool_calls_per_turn: int = 5

    model_config = {
        "env_prefix": "PROMOMAIL_",
        "env_file": ".env",
        "extra": "ignore",
    }

    def model_post_init(self, __context):
        if not self.anthropic_api_key:
            self.anthropic_api_key = _provider_key("ANTHROPIC_API_KEY")
        if not self.openai_api_key:
            self.openai_api_key = _provider_key("OPENAI_API_KEY")
        if not self.xai_api_key:
            self.xai_api_key = _provider_key("XAI_API_KEY")


settings = Settings()
