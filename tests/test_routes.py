"""HTTP surface tests: request validation, error bodies and response shape."""

import pytest
from fastapi.testclient import TestClient

from promomail.exceptions import GenerationError
from promomail.main import app
from promomail.routers.generate import get_email_service
from promomail.schemas.email import EmailVariant
from promomail.schemas.generation import GenerationResult
from tests.fakes import usage

URL = "https://shop.example/p/1"
TEMPLATE = "<!DOCTYPE html><html><body><h1>{{title}}</h1></body></html>"


class FakeService:
    def __init__(self, error: Exception | None = None):
        self.error = error
        self.requests = []

    async def _answer(self, request, result):
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return result

    async def generate_product_emails(self, request):
        return await self._answer(request, GenerationResult(
            content="<!DOCTYPE html><html></html>",
            emails=[EmailVariant(id=1, description="Style 1", html="<!DOCTYPE html><html></html>")],
            usage=usage(100, 50, 0.002),
            diagnostic_log="log text",
        ))

    async def generate_template_email(self, request):
        return await self._answer(request, GenerationResult(content="<!DOCTYPE html><html></html>"))

    async def generate_text_email(self, request):
        return await self._answer(request, GenerationResult(content="Subject: Hi\n\nBody", usage=usage()))


@pytest.fixture
def fake_service():
    service = FakeService()
    app.dependency_overrides[get_email_service] = lambda: service
    yield service
    app.dependency_overrides.clear()


@pytest.fixture
def client():
    return TestClient(app)


class TestValidation:
    def test_bad_url(self, client, fake_service):
        resp = client.post("/api/generate", json={"productUrl": "ftp://shop.example/p/1"})
        assert resp.status_code == 400
        assert resp.json() == {"error": "Product URL must be a valid HTTP or HTTPS URL"}
        assert fake_service.requests == []

    def test_empty_url(self, client, fake_service):
        resp = client.post("/api/generate", json={"productUrl": "  "})
        assert resp.status_code == 400
        assert resp.json()["error"] == "Product URL is required and must be a non-empty string"

    def test_template_must_be_html(self, client, fake_service):
        resp = client.post("/api/generate-template", json={
            "productUrl": URL, "emailTemplate": "just words", "customPrompt": "",
        })
        assert resp.status_code == 400
        assert resp.json()["error"].startswith("Email template must be valid HTML")

    def test_unknown_model(self, client, fake_service):
        resp = client.post("/api/generate-template", json={
            "productUrl": URL, "emailTemplate": TEMPLATE, "customPrompt": "", "model": "gpt-9",
        })
        assert resp.status_code == 400
        assert resp.json()["error"].startswith("Invalid model. Must be one of: claude-opus-4-6")

    def test_missing_field(self, client, fake_service):
        resp = client.post("/api/generate-template", json={"productUrl": URL, "emailTemplate": TEMPLATE})
        assert resp.status_code == 400
        assert "customPrompt" in resp.json()["error"]

    def test_text_email_requires_business_info(self, client, fake_service):
        resp = client.post("/api/generate-text-email", json={
            "businessInfo": "", "emailGuidelines": "Be brief", "userPrompt": "Announce the sale",
        })
        assert resp.status_code == 400
        assert resp.json()["error"] == "Business Info RAG data is required. Please upload a markdown file."

    def test_email_count_bounds(self, client, fake_service):
        resp = client.post("/api/generate", json={"productUrl": URL, "emailCount": 5})
        assert resp.status_code == 400


class TestGenerate:
    def test_camel_case_request_and_response(self, client, fake_service):
        resp = client.post("/api/generate", json={
            "productUrl": URL, "emailCount": 3, "customPrompt": "Mention free shipping", "fetchMethod": "smart",
        })

        assert resp.status_code == 200
        body = resp.json()
        assert body["success"] is True
        assert body["diagnosticLog"] == "log text"
        assert body["usage"]["total_tokens"] == 150
        assert "productData" not in body
        request = fake_service.requests[0]
        assert (request.email_count, request.fetch_method) == (3, "smart")

    def test_template_defaults_model(self, client, fake_service):
        resp = client.post("/api/generate-template", json={
            "productUrl": URL, "emailTemplate": TEMPLATE, "customPrompt": "",
        })
        assert resp.status_code == 200
        assert fake_service.requests[0].model == "claude-opus-4-5"

    def test_text_email(self, client, fake_service):
        resp = client.post("/api/generate-text-email", json={
            "businessInfo": "# Acme", "emailGuidelines": "Be brief", "userPrompt": "Announce the sale",
            "model": "grok-4-1-fast",
        })
        assert resp.status_code == 200
        assert resp.json()["content"].startswith("Subject:")

    def test_generation_failure_carries_log(self, client):
        error = GenerationError("Failed to generate email")
        error.diagnostic_log = "=== trace ==="
        app.dependency_overrides[get_email_service] = lambda: FakeService(error)
        try:
            resp = client.post("/api/generate", json={"productUrl": URL})
        finally:
            app.dependency_overrides.clear()

        assert resp.status_code == 500
        assert resp.json() == {"error": "Failed to generate email", "diagnosticLog": "=== trace ==="}


class TestModels:
    def test_lists_both_registries(self, client):
        body = client.get("/api/models").json()
        assert body["template"]["default"] == "claude-opus-4-5"
        assert body["text"]["default"] == "gpt-5.2"
        manual = next(m for m in body["template"]["models"] if m["key"] == "manual-extract-mini-refine-generate")
        assert manual["hybrid"] is True
        assert {m["provider"] for m in body["text"]["models"]} == {"openai", "xai"}
