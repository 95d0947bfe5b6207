"""
Tests for llm.py module.

Tests:
- LLMStats
- clean_code_response function
- truncate_to_tokens
- LLMClient (with the OpenAI client mocked)
"""

import asyncio
import os
import sys
import pytest
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import openai

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config import LLMConfig
from llm import (
    LLMClient,
    LLMError,
    LLMStats,
    clean_code_response,
    truncate_to_tokens,
)


class WordEncoding:
    """Stand-in for a tiktoken encoding: one token per space-separated word."""

    def encode(self, text):
        return text.split(" ")

    def decode(self, tokens):
        return " ".join(tokens)


def make_completion(content, prompt_tokens=12, completion_tokens=34):
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=content))],
        usage=SimpleNamespace(prompt_tokens=prompt_tokens, completion_tokens=completion_tokens),
    )


@pytest.fixture
def llm_config():
    return LLMConfig(base_url="http://localhost:9999/v1", model="test-model", temperature=0.1)


@pytest.fixture
def openai_create():
    """Patch AsyncOpenAI and yield the mocked chat.completions.create."""
    with patch("llm.AsyncOpenAI") as client_cls:
        create = AsyncMock()
        client_cls.return_value.chat.completions.create = create
        yield create


# =============================================================================
# Test LLMStats
# =============================================================================

class TestLLMStats:
    """Tests for LLMStats dataclass."""

    def test_record_accumulates(self):
        stats = LLMStats()
        stats.record(10, 5)
        stats.record(20, 7)

        assert stats.calls == 2
        assert stats.prompt_tokens == 30
        assert stats.completion_tokens == 12

    def test_record_failure(self):
        stats = LLMStats()
        stats.record_failure()
        assert stats.failures == 1
        assert stats.calls == 0


# =============================================================================
# Test clean_code_response
# =============================================================================

class TestCleanCodeResponse:
    """Tests for clean_code_response function."""

    def test_plain_code_unchanged(self):
        code = "module m(input a, output y);\n  assign y = a;\nendmodule"
        assert clean_code_response(code) == code

    def test_strips_verilog_fence(self):
        response = "```verilog\nmodule m;\nendmodule\n```"
        assert clean_code_response(response) == "module m;\nendmodule"

    def test_strips_prose_around_fence(self):
        response = (
            "Here is your multiplexer:\n\n"
            "```systemverilog\nmodule mux2;\nendmodule\n```\n\n"
            "Let me know if you need a testbench."
        )
        assert clean_code_response(response) == "module mux2;\nendmodule"

    def test_only_fences_gives_empty(self):
        assert clean_code_response("```\n```") == ""

    def test_strips_surrounding_whitespace(self):
        assert clean_code_response("\n\n  module m; endmodule  \n") == "module m; endmodule"

    def test_fence_after_prose_on_same_line(self):
        response = "Here is the module: ```verilog\nmodule m;\nendmodule\n```"
        assert clean_code_response(response) == "module m;\nendmodule"

    def test_single_line_fenced_reply(self):
        assert clean_code_response("```module m; endmodule```") == "module m; endmodule"

    def test_backticks_inside_code_line_are_kept(self):
        code = "module m; // see ``` note\nendmodule"
        assert clean_code_response(code) == code

    def test_unclosed_fence_runs_to_end(self):
        response = "```verilog\nmodule m;\nendmodule"
        assert clean_code_response(response) == "module m;\nendmodule"

    def test_first_block_wins(self):
        response = "```verilog\nmodule a;\nendmodule\n```\nand a testbench:\n```verilog\nmodule tb;\nendmodule\n```"
        assert clean_code_response(response) == "module a;\nendmodule"


# =============================================================================
# Test token helpers
# =============================================================================

class TestTokenHelpers:
    """Tests for truncate_to_tokens."""

    def test_short_text_untouched(self):
        with patch("llm._get_encoding", return_value=WordEncoding()):
            assert truncate_to_tokens("a b c", 5) == "a b c"

    def test_keeps_tail(self):
        with patch("llm._get_encoding", return_value=WordEncoding()):
            result = truncate_to_tokens("start noise noise ERROR: syntax", 2)

        assert result.startswith("[... log truncated ...]")
        assert result.endswith("ERROR: syntax")
        assert "start" not in result


# =============================================================================
# Test LLMClient
# =============================================================================

class TestLLMClientAsk:
    """Tests for LLMClient.ask."""

    def test_returns_content_and_records_usage(self, llm_config, openai_create):
        openai_create.return_value = make_completion("hello", 12, 34)
        client = LLMClient(llm_config)

        response = asyncio.run(client.ask("hi", system_prompt="be brief"))

        assert response.content == "hello"
        assert client.stats.calls == 1
        assert client.stats.prompt_tokens == 12
        assert client.stats.completion_tokens == 34

    def test_sends_config_and_messages(self, llm_config, openai_create):
        openai_create.return_value = make_completion("ok")
        client = LLMClient(llm_config)

        asyncio.run(client.ask("question", system_prompt="system"))

        kwargs = openai_create.await_args.kwargs
        assert kwargs["model"] == "test-model"
        assert kwargs["temperature"] == 0.1
        assert kwargs["messages"] == [
            {"role": "system", "content": "system"},
            {"role": "user", "content": "question"},
        ]

    def test_no_system_prompt(self, llm_config, openai_create):
        openai_create.return_value = make_completion("ok")
        client = LLMClient(llm_config)

        asyncio.run(client.ask("question"))

        assert openai_create.await_args.kwargs["messages"] == [
            {"role": "user", "content": "question"},
        ]

    def test_api_error_becomes_llm_error(self, llm_config, openai_create):
        openai_create.side_effect = openai.OpenAIError("connection refused")
        client = LLMClient(llm_config)

        with pytest.raises(LLMError, match="connection refused"):
            asyncio.run(client.ask("hi"))
        assert client.stats.failures == 1

    def test_no_retry_on_failure(self, llm_config, openai_create):
        openai_create.side_effect = openai.OpenAIError("boom")
        client = LLMClient(llm_config)

        with pytest.raises(LLMError):
            asyncio.run(client.ask("hi"))
        assert openai_create.await_count == 1

    def test_empty_reply_is_error(self, llm_config, openai_create):
        openai_create.return_value = make_completion("")
        client = LLMClient(llm_config)

        with pytest.raises(LLMError, match="empty"):
            asyncio.run(client.ask("hi"))

    def test_missing_usage_counts_zero(self, llm_config, openai_create):
        completion = make_completion("ok")
        completion.usage = None
        openai_create.return_value = completion
        client = LLMClient(llm_config)

        response = asyncio.run(client.ask("hi"))

        assert response.prompt_tokens == 0
        assert client.stats.calls == 1


class TestGenerateCode:
    """Tests for LLMClient.generate_code."""

    def test_returns_clean_code(self, llm_config, openai_create):
        openai_create.return_value = make_completion(
            "Sure!\n```verilog\nmodule mux2(input a, b, s, output y);\n"
            "  assign y = s ? b : a;\nendmodule\n```"
        )
        client = LLMClient(llm_config)

        code = asyncio.run(client.generate_code("a 2-to-1 multiplexer"))

        assert code.startswith("module mux2")
        assert code.endswith("endmodule")
        assert "```" not in code

    def test_inline_fence_reply_is_usable(self, llm_config, openai_create):
        openai_create.return_value = make_completion(
            "Here is the module: ```verilog\nmodule m;\nendmodule\n```"
        )
        client = LLMClient(llm_config)

        assert asyncio.run(client.generate_code("anything")) == "module m;\nendmodule"

    def test_prompt_included_in_request(self, llm_config, openai_create):
        openai_create.return_value = make_completion("module m; endmodule")
        client = LLMClient(llm_config)

        asyncio.run(client.generate_code("a 4-bit counter"))

        messages = openai_create.await_args.kwargs["messages"]
        assert messages[0]["role"] == "system"
        assert "a 4-bit counter" in messages[-1]["content"]

    def test_reply_without_code_is_error(self, llm_config, openai_create):
        openai_create.return_value = make_completion("```verilog\n```")
        client = LLMClient(llm_config)

        with pytest.raises(LLMError):
            asyncio.run(client.generate_code("nothing"))


class TestExplainLog:
    """Tests for LLMClient.explain_log."""

    @pytest.fixture(autouse=True)
    def word_encoding(self):
        with patch("llm._get_encoding", return_value=WordEncoding()):
            yield

    def test_success_outcome_in_prompt(self, llm_config, openai_create):
        openai_create.return_value = make_completion("  Your design used 3 cells.  ")
        client = LLMClient(llm_config)

        explanation = asyncio.run(client.explain_log("Number of cells: 3", exit_code=0))

        assert explanation == "Your design used 3 cells."
        question = openai_create.await_args.kwargs["messages"][-1]["content"]
        assert "succeeded" in question
        assert "Number of cells: 3" in question

    def test_failure_outcome_in_prompt(self, llm_config, openai_create):
        openai_create.return_value = make_completion("Missing semicolon.")
        client = LLMClient(llm_config)

        asyncio.run(client.explain_log("ERROR: syntax error", exit_code=1))

        question = openai_create.await_args.kwargs["messages"][-1]["content"]
        assert "failed" in question
        assert "1" in question

    def test_long_log_truncated(self, llm_config, openai_create):
        openai_create.return_value = make_completion("ok")
        client = LLMClient(llm_config, max_log_tokens=3)

        asyncio.run(client.explain_log("early lines here then ERROR: boom", exit_code=1))

        question = openai_create.await_args.kwargs["messages"][-1]["content"]
        assert "[... log truncated ...]" in question
        assert "early" not in question


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
