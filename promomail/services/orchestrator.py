"""Bounded tool-use loop.

The model may ask for ``fetch_url`` any number of times; each round is
answered and fed back until the model stops asking or the iteration ceiling
is reached. Loop progress is an immutable ``LoopState`` replaced on every
step, so the conversation is only ever appended to.
"""

import json
import logging
from dataclasses import dataclass, field, replace
from enum import StrEnum
from typing import Protocol, Sequence

from promomail.config import settings
from promomail.schemas.product import ProductRecord
from promomail.schemas.usage import UsageRecord
from promomail.services.extractor import SMART_PROFILE, ProductExtractor
from promomail.services.fetcher import EXTENDED_LIMIT, STANDARD_LIMIT, FetchDiagnostics, HtmlFetcher
from promomail.services.providers import ConversationAdapter, ModelTurn, ToolRequest

logger = logging.getLogger(__name__)

TRUNCATION_MARKER = "\n\n[Content truncated]"
TEXT_BLOCK_CHARS = 1000


def cap_result(text: str, limit: int | None) -> str:
    if limit is None or len(text) <= limit:
        return text
    return text[:limit] + TRUNCATION_MARKER


# ---------------------------------------------------------------
# Tools
# ---------------------------------------------------------------

@dataclass(frozen=True)
class ToolOutcome:
    content: str
    diagnostics: FetchDiagnostics | None = None


class ToolExecutor(Protocol):
    async def execute(self, request: ToolRequest) -> ToolOutcome: ...


class FetchUrlTool:
    """Answers ``fetch_url`` with the raw page HTML."""

    name = "fetch_url"

    def __init__(
        self,
        fetcher: HtmlFetcher | None = None,
        fetch_limit: int = STANDARD_LIMIT,
        result_cap: int | None = None,
    ):
        self.fetcher = fetcher or HtmlFetcher()
        self.fetch_limit = fetch_limit
        self.result_cap = result_cap

    async def execute(self, request: ToolRequest) -> ToolOutcome:
        if request.name != self.name:
            logger.warning("Model requested unknown tool %r", request.name)
            return ToolOutcome(f"Unknown tool: {request.name}")
        if request.argument_error:
            return ToolOutcome(f"Error executing tool: {request.argument_error}")

        url = request.arguments.get("url")
        if not isinstance(url, str) or not url.strip():
            return ToolOutcome("Error executing tool: missing 'url' argument")

        outcome = await self._fetch(url.strip())
        return replace(outcome, content=cap_result(outcome.content, self.result_cap))

    async def _fetch(self, url: str) -> ToolOutcome:
        result = await self.fetcher.fetch(url, self.fetch_limit)
        return ToolOutcome(result.content, result.diagnostics)


class SmartFetchTool(FetchUrlTool):
    """Answers ``fetch_url`` with heuristically extracted product data as JSON."""

    def __init__(self, fetcher: HtmlFetcher | None = None, extractor: ProductExtractor | None = None):
        super().__init__(fetcher, fetch_limit=EXTENDED_LIMIT)
        self.extractor = extractor or ProductExtractor(SMART_PROFILE)
        self.records: list[ProductRecord] = []

    @property
    def last_record(self) -> ProductRecord | None:
        return self.records[-1] if self.records else None

    async def _fetch(self, url: str) -> ToolOutcome:
        result = await self.fetcher.fetch(url, self.fetch_limit)
        if not result.ok:
            return ToolOutcome(result.content, result.diagnostics)

        record = self.extractor.extract(result.content, url)
        self.records.append(record)
        payload = record.to_prompt_payload()
        payload["image_details"] = [
            {"url": img.url, "context": img.context, "width": img.width, "in_hero": img.is_in_hero}
            for img in record.images
        ]
        return ToolOutcome(json.dumps(payload, indent=2), result.diagnostics)


# ---------------------------------------------------------------
# Loop
# ---------------------------------------------------------------

class StopReason(StrEnum):
    COMPLETED = "completed"
    ITERATION_LIMIT = "iteration_limit"
    MISSING_TOOL_CALL = "missing_tool_call"


@dataclass(frozen=True)
class ToolCallRecord:
    number: int  # 1-based across the whole run
    iteration: int
    tool_name: str
    arguments: dict
    diagnostics: FetchDiagnostics | None = None
    skipped: bool = False


@dataclass(frozen=True)
class LoopState:
    messages: tuple[dict, ...]
    usage: UsageRecord = field(default_factory=UsageRecord)
    iterations: int = 0
    text: str = ""
    tool_calls: tuple[ToolCallRecord, ...] = ()
    text_blocks: tuple[str, ...] = ()  # model text emitted alongside tool requests

    def with_turn(self, turn: ModelTurn) -> "LoopState":
        blocks = self.text_blocks
        if turn.wants_tool and turn.text.strip():
            blocks = blocks + (turn.text[:TEXT_BLOCK_CHARS],)
        return replace(
            self,
            messages=self.messages + (turn.assistant_message,),
            usage=self.usage + turn.usage,
            text=turn.text,
            text_blocks=blocks,
        )

    def with_tool_results(self, result_messages: Sequence[dict], records: Sequence[ToolCallRecord]) -> "LoopState":
        return replace(
            self,
            messages=self.messages + tuple(result_messages),
            iterations=self.iterations + 1,
            tool_calls=self.tool_calls + tuple(records),
        )


@dataclass(frozen=True)
class OrchestrationResult:
    text: str
    messages: tuple[dict, ...]
    usage: UsageRecord
    iterations: int
    tool_calls: tuple[ToolCallRecord, ...]
    stop_reason: StopReason
    text_blocks: tuple[str, ...] = ()


class ToolCallOrchestrator:
    def __init__(
        self,
        adapter: ConversationAdapter,
        tool_executor: ToolExecutor,
        max_iterations: int = 5,
        max_tool_calls_per_turn: int | None = None,
    ):
        self.adapter = adapter
        self.tool_executor = tool_executor
        self.max_iterations = max_iterations
        self.max_tool_calls_per_turn = max_tool_calls_per_turn or settings.max_tool_calls_per_turn

    async def run(self, messages: Sequence[dict]) -> OrchestrationResult:
        state = LoopState(messages=tuple(messages))
        turn = await self.adapter.send(state.messages)
        state = state.with_turn(turn)

        while turn.wants_tool:
            if not turn.tool_requests:
                logger.warning("Model %s signalled tool use without a tool call", self.adapter.model_id)
                return self._finish(state, StopReason.MISSING_TOOL_CALL)
            if state.iterations >= self.max_iterations:
                logger.warning(
                    "Tool loop for %s hit the iteration ceiling (%d)",
                    self.adapter.model_id, self.max_iterations,
                )
                return self._finish(state, StopReason.ITERATION_LIMIT)

            state = await self._run_tools(state, turn.tool_requests)
            turn = await self.adapter.send(state.messages)
            state = state.with_turn(turn)

        return self._finish(state, StopReason.COMPLETED)

    async def _run_tools(self, state: LoopState, requests: Sequence[ToolRequest]) -> LoopState:
        iteration = state.iterations + 1
        number = len(state.tool_calls)
        results: list[tuple[ToolRequest, str]] = []
        records: list[ToolCallRecord] = []

        for index, request in enumerate(requests):
            number += 1
            if index >= self.max_tool_calls_per_turn:
                results.append((request, f"Tool call skipped: at most {self.max_tool_calls_per_turn} calls per turn"))
                records.append(ToolCallRecord(number, iteration, request.name, request.arguments, skipped=True))
                continue

            logger.info("Tool call #%d (iteration %d): %s %s", number, iteration, request.name, request.arguments)
            outcome = await self.tool_executor.execute(request)
            results.append((request, outcome.content))
            records.append(ToolCallRecord(number, iteration, request.name, request.arguments, outcome.diagnostics))

        return state.with_tool_results(self.adapter.tool_result_messages(results), records)

    def _finish(self, state: LoopState, reason: StopReason) -> OrchestrationResult:
        logger.info(
            "Tool loop finished: model=%s reason=%s iterations=%d tool_calls=%d tokens=%d",
            self.adapter.model_id, reason.value, state.iterations, len(state.tool_calls), state.usage.total_tokens,
        )
        return OrchestrationResult(
            text=state.text,
            messages=state.messages,
            usage=state.usage,
            iterations=state.iterations,
            tool_calls=state.tool_calls,
            stop_reason=reason,
            text_blocks=state.text_blocks,
        )
