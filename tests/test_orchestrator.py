"""Tests for the bounded tool-use loop and its fetch tools."""

import json

import httpx
import pytest

from promomail.services.orchestrator import (
    FetchUrlTool,
    SmartFetchTool,
    StopReason,
    ToolCallOrchestrator,
    cap_result,
)
from promomail.services.providers import ModelTurn, ToolRequest
from tests.fakes import RecordingExecutor, ScriptedAdapter, html_fetcher, mock_fetcher, text_turn, tool_turn, usage

URL = "https://shop.example/p/1"
PROMPT = [{"role": "user", "content": "make an email"}]


class TestLoop:
    @pytest.mark.asyncio
    async def test_no_tool_needed(self):
        adapter = ScriptedAdapter([text_turn("<html>done</html>")])

        result = await ToolCallOrchestrator(adapter, RecordingExecutor()).run(PROMPT)

        assert result.stop_reason == StopReason.COMPLETED
        assert result.text == "<html>done</html>"
        assert result.iterations == 0
        assert len(adapter.sent) == 1

    @pytest.mark.asyncio
    async def test_tool_round_trip(self):
        adapter = ScriptedAdapter([tool_turn(URL, text="Fetching."), text_turn("<html>email</html>")])
        executor = RecordingExecutor("<html>product page</html>")

        result = await ToolCallOrchestrator(adapter, executor).run(PROMPT)

        assert result.stop_reason == StopReason.COMPLETED
        assert result.iterations == 1
        assert executor.requests[0].arguments == {"url": URL}
        second_call = adapter.sent[1]
        assert second_call[-1] == {"role": "tool", "tool_call_id": "call_1", "content": "<html>product page</html>"}
        assert result.text_blocks == ("Fetching.",)
        assert [call.number for call in result.tool_calls] == [1]

    @pytest.mark.asyncio
    async def test_always_tool_model_terminates(self):
        adapter = ScriptedAdapter([tool_turn(URL)])

        result = await ToolCallOrchestrator(adapter, RecordingExecutor(), max_iterations=3).run(PROMPT)

        assert result.stop_reason == StopReason.ITERATION_LIMIT
        assert result.iterations == 3
        assert len(adapter.sent) == 4

    @pytest.mark.asyncio
    async def test_usage_folded_across_turns(self):
        adapter = ScriptedAdapter([
            tool_turn(URL, turn_usage=usage(100, 10, 0.01)),
            text_turn("<html></html>", turn_usage=usage(200, 20, 0.02)),
        ])

        result = await ToolCallOrchestrator(adapter, RecordingExecutor()).run(PROMPT)

        assert (result.usage.input_tokens, result.usage.output_tokens) == (300, 30)
        assert result.usage.estimated_cost_usd == pytest.approx(0.03)

    @pytest.mark.asyncio
    async def test_messages_only_appended(self):
        adapter = ScriptedAdapter([tool_turn(URL), tool_turn(URL), text_turn("<html></html>")])

        result = await ToolCallOrchestrator(adapter, RecordingExecutor()).run(PROMPT)

        for earlier, later in zip(adapter.sent, adapter.sent[1:]):
            assert later[: len(earlier)] == earlier
        assert result.messages[: len(adapter.sent[-1])] == adapter.sent[-1]
        assert result.messages[0] == PROMPT[0]

    @pytest.mark.asyncio
    async def test_signal_without_tool_block(self):
        broken = ModelTurn(
            text="partial", wants_tool=True, tool_requests=(), usage=usage(),
            assistant_message={"role": "assistant", "content": "partial"},
        )
        result = await ToolCallOrchestrator(ScriptedAdapter([broken]), RecordingExecutor()).run(PROMPT)

        assert result.stop_reason == StopReason.MISSING_TOOL_CALL
        assert result.text == "partial"

    @pytest.mark.asyncio
    async def test_surplus_calls_skipped(self):
        adapter = ScriptedAdapter([tool_turn(*[f"{URL}?v={i}" for i in range(4)]), text_turn("<html></html>")])
        executor = RecordingExecutor()

        result = await ToolCallOrchestrator(adapter, executor, max_tool_calls_per_turn=2).run(PROMPT)

        assert len(executor.requests) == 2
        assert [call.skipped for call in result.tool_calls] == [False, False, True, True]
        tool_messages = adapter.sent[1][-4:]
        assert [m["tool_call_id"] for m in tool_messages] == ["call_1", "call_2", "call_3", "call_4"]
        assert "skipped" in tool_messages[3]["content"]


class TestFetchUrlTool:
    @pytest.mark.asyncio
    async def test_unknown_tool(self):
        outcome = await FetchUrlTool(html_fetcher({})).execute(ToolRequest("1", "search_web", {"q": "x"}))
        assert outcome.content == "Unknown tool: search_web"

    @pytest.mark.asyncio
    async def test_result_cap(self):
        fetcher = mock_fetcher(lambda request: httpx.Response(200, text="z" * 40_000))
        tool = FetchUrlTool(fetcher, fetch_limit=50_000, result_cap=30_000)

        outcome = await tool.execute(ToolRequest("1", "fetch_url", {"url": URL}))

        assert outcome.content == "z" * 30_000 + "\n\n[Content truncated]"
        assert outcome.diagnostics.size_chars == 40_000

    @pytest.mark.asyncio
    async def test_bad_arguments(self):
        tool = FetchUrlTool(html_fetcher({}))
        outcome = await tool.execute(ToolRequest("1", "fetch_url", {}, argument_error="Expecting value"))
        assert outcome.content == "Error executing tool: Expecting value"
        missing = await tool.execute(ToolRequest("2", "fetch_url", {"href": URL}))
        assert missing.content.startswith("Error executing tool")

    @pytest.mark.asyncio
    async def test_fetch_failure_is_tool_text(self):
        outcome = await FetchUrlTool(html_fetcher({})).execute(ToolRequest("1", "fetch_url", {"url": URL}))
        assert outcome.content.startswith("Error fetching URL: HTTP 404")

    def test_cap_result_noop(self):
        assert cap_result("short", 10) == "short"
        assert cap_result("anything", None) == "anything"


class TestSmartFetchTool:
    @pytest.mark.asyncio
    async def test_returns_extracted_json(self):
        page = (
            "<html><body><h1>Widget</h1><span class='price'>$19.99</span>"
            + "".join(f"<img class='product-image' src='/p{i}.jpg'>" for i in range(8))
            + "</body></html>"
        )
        tool = SmartFetchTool(html_fetcher({URL: page}))

        outcome = await tool.execute(ToolRequest("1", "fetch_url", {"url": URL}))
        payload = json.loads(outcome.content)

        assert payload["title"] == "Widget"
        assert payload["price"] == "19.99"
        assert len(payload["images"]) == 5
        assert payload["images"][0] == "https://shop.example/p0.jpg"
        assert tool.last_record.title == "Widget"
        assert outcome.diagnostics.http_status == 200

    @pytest.mark.asyncio
    async def test_fetch_error_passed_through(self):
        tool = SmartFetchTool(html_fetcher({}))
        outcome = await tool.execute(ToolRequest("1", "fetch_url", {"url": URL}))
        assert outcome.content.startswith("Error fetching URL")
        assert tool.last_record is None
