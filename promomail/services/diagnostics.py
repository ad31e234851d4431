import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

from promomail.schemas.usage import UsageRecord
from promomail.services.fetcher import PREVIEW_CHARS, STANDARD_LIMIT
from promomail.services.orchestrator import OrchestrationResult, ToolCallRecord
from promomail.services.pricing import format_cost
from promomail.services.sanitizer import looks_like_html

logger = logging.getLogger(__name__)

RULE = "=" * 40


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass
class GenerationLog:
    """Human-readable trace of one product-email generation."""

    product_url: str = ""
    custom_prompt: str = "(none)"
    fetch_method: str = "standard"
    fetch_limit: int = STANDARD_LIMIT
    model_id: str = ""
    prompt_sent: str = ""
    tool_calls: list[ToolCallRecord] = field(default_factory=list)
    text_blocks: list[str] = field(default_factory=list)
    html_length: int = 0
    parse_success: bool = False
    email_count: int = 0
    usage: UsageRecord | None = None
    errors: list[str] = field(default_factory=list)
    timestamp: str = field(default_factory=_utc_now)

    def record_loop(self, result: OrchestrationResult) -> None:
        self.tool_calls = list(result.tool_calls)
        self.text_blocks = list(result.text_blocks)
        self.usage = result.usage

    def record_output(self, html: str, email_count: int) -> None:
        self.html_length = len(html)
        self.parse_success = looks_like_html(html)
        self.email_count = email_count

    def format(self) -> str:
        return format_log(self)


def _format_tool_call(call: ToolCallRecord, fetch_limit: int) -> list[str]:
    lines = [
        f"--- TOOL CALL #{call.number} ---",
        f"Tool: {call.tool_name}",
        f"URL Fetched: {call.arguments.get('url') or '(none)'}",
    ]
    if call.skipped:
        lines.append("Skipped: per-turn tool call limit reached")
    diag = call.diagnostics
    if diag is not None:
        if diag.http_status is not None:
            lines.append(f"HTTP Status: {diag.http_status}")
        if diag.size_chars:
            lines.append(f"HTML Size: {diag.size_chars:,} characters")
            limit_kb = fetch_limit // 1000
            lines.append(f"Truncated: {f'Yes (over {limit_kb}KB limit)' if diag.was_truncated else 'No'}")
        if diag.preview:
            lines.append(f"HTML Preview (first {PREVIEW_CHARS} chars):\n{diag.preview}")
        if diag.error:
            lines.append(f"Error: {diag.error}")
    lines.append("")
    return lines


def format_log(log: GenerationLog) -> str:
    lines = [
        RULE,
        "EMAIL GENERATOR - DIAGNOSTIC LOG",
        RULE,
        f"Timestamp: {log.timestamp}",
        f"Product URL: {log.product_url}",
        f"Custom Prompt: {log.custom_prompt}",
        f"Fetch Method: {log.fetch_method}",
        f"Model: {log.model_id or 'N/A'}",
        "",
        "--- PROMPT SENT TO CLAUDE ---",
        log.prompt_sent,
        "",
    ]

    if log.tool_calls:
        for call in log.tool_calls:
            lines.extend(_format_tool_call(call, log.fetch_limit))
    else:
        lines.extend(["--- TOOL CALLS ---", "None - Claude did not call any tools", ""])

    if log.text_blocks:
        lines.append("--- CLAUDE ANALYSIS (text between tool calls) ---")
        for i, block in enumerate(log.text_blocks, start=1):
            lines.extend([f"[Block {i}]: {block}", ""])

    lines.extend([
        "--- FINAL OUTPUT ---",
        f"Generated HTML Length: {log.html_length:,} characters",
        f"HTML Parse Success: {'Yes' if log.parse_success else 'No'}",
        f"Emails Parsed: {log.email_count}",
        "",
    ])

    if log.usage is not None:
        lines.extend([
            "--- TOKEN USAGE ---",
            f"Input Tokens: {log.usage.input_tokens:,}",
            f"Output Tokens: {log.usage.output_tokens:,}",
            f"Total: {log.usage.total_tokens:,}",
            f"Estimated Cost: {format_cost(log.usage.estimated_cost_usd)}",
            "",
        ])

    lines.append("--- ERRORS ---")
    if log.errors:
        lines.extend(f"- {err}" for err in log.errors)
    else:
        lines.append("None")
    lines.extend(["", RULE])

    return "\n".join(lines) + "\n"
