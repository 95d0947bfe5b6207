"""
LLM Client: Clean interface for language model interactions.

This module provides a dependency-injectable LLM client that doesn't rely on globals.
All configuration is passed explicitly.

Design principles:
- No global state
- Configuration passed via constructor
- Async client so a slow model never blocks the event loop
- No automatic retries: a failed call surfaces once as LLMError and the
  user resubmits
"""

import functools
import re
from dataclasses import dataclass

import openai
import tiktoken
from openai import AsyncOpenAI

from config import LLMConfig
from logging_utils import get_logger
from prompts import CODEGEN_PROMPT, CODEGEN_SYSTEM_PROMPT, EXPLAIN_LOG_PROMPT

logger = get_logger(__name__)


class LLMError(Exception):
    """Raised when the hosted model call fails or returns nothing usable."""
    pass


@dataclass
class LLMResponse:
    """Structured response from LLM call."""
    content: str
    prompt_tokens: int = 0
    completion_tokens: int = 0


@dataclass
class LLMStats:
    """Statistics for LLM usage tracking."""
    calls: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    failures: int = 0

    def record(self, prompt_tokens: int, completion_tokens: int) -> None:
        self.calls += 1
        self.prompt_tokens += prompt_tokens
        self.completion_tokens += completion_tokens

    def record_failure(self) -> None:
        self.failures += 1


@functools.lru_cache(maxsize=1)
def _get_encoding():
    return tiktoken.get_encoding("cl100k_base")


def truncate_to_tokens(text: str, max_tokens: int) -> str:
    """
    Keep at most max_tokens tokens of text, dropping from the front.

    Synthesis logs put errors and statistics at the end, so the tail is
    the part worth keeping.
    """
    encoding = _get_encoding()
    tokens = encoding.encode(text)
    if len(tokens) <= max_tokens:
        return text
    return "[... log truncated ...]\n" + encoding.decode(tokens[-max_tokens:])


FENCE = "```"

# Info string after an opening fence, e.g. "verilog" in ```verilog
_LANGUAGE_TAG = re.compile(r"[\w+#.-]*")


def clean_code_response(response: str) -> str:
    """
    Extract the code from an LLM code response.

    The first fenced block wins, wherever its opening fence sits:
    - "```verilog\\n...\\n```" on lines of their own
    - "Here is the module: ```verilog\\n...```" after prose on the same line
    - "```module m; endmodule```" on a single line
    An opening fence at the start of a line with no closing fence runs to
    the end of the reply. A reply without a block is returned as-is, since
    backticks inside a line of code (e.g. in a comment) are not a fence.
    """
    content = response.strip()

    start = content.find(FENCE)
    if start == -1:
        return content
    end = content.find(FENCE, start + len(FENCE))
    if end == -1:
        if start > 0 and content[start - 1] != "\n":
            return content
        end = len(content)

    body = content[start + len(FENCE):end]
    tag, newline, rest = body.partition("\n")
    if newline and _LANGUAGE_TAG.fullmatch(tag.strip()):
        body = rest
    return body.strip()


class LLMClient:
    """
    Usage:
        config = LLMConfig.from_env()
        client = LLMClient(config)

        code = await client.generate_code("a 2-to-1 multiplexer")
        explanation = await client.explain_log(yosys_output, exit_code=0)
    """

    def __init__(self, config: LLMConfig, max_log_tokens: int = 6000):
        """
        Initialize LLM client.

        Args:
            config: LLM configuration (model, temperature, endpoint).
            max_log_tokens: Upper bound on log text sent for explanation.
        """
        self.config = config
        self.max_log_tokens = max_log_tokens
        self.stats = LLMStats()
        self._client = AsyncOpenAI(base_url=config.base_url)

    async def ask(self, question: str, system_prompt: str | None = None) -> LLMResponse:
        """
        Ask a single question (stateless).

        Raises:
            LLMError: If the API call fails or the reply is empty.
        """
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": question})

        try:
            completion = await self._client.chat.completions.create(
                messages=messages,
                model=self.config.model,
                temperature=self.config.temperature,
                stream=False,
            )
        except openai.OpenAIError as e:
            self.stats.record_failure()
            raise LLMError(f"{e.__class__.__name__}: {e}") from e

        if not completion.choices or not completion.choices[0].message.content:
            self.stats.record_failure()
            raise LLMError("Model returned an empty response")

        response = LLMResponse(
            content=completion.choices[0].message.content,
            prompt_tokens=completion.usage.prompt_tokens if completion.usage else 0,
            completion_tokens=completion.usage.completion_tokens if completion.usage else 0,
        )
        self.stats.record(response.prompt_tokens, response.completion_tokens)
        logger.debug(
            "LLM call: %d prompt tokens, %d completion tokens",
            response.prompt_tokens, response.completion_tokens,
        )
        return response

    async def generate_code(self, prompt: str) -> str:
        """Generate a Verilog module for a natural-language request."""
        response = await self.ask(
            CODEGEN_PROMPT.format(prompt=prompt),
            system_prompt=CODEGEN_SYSTEM_PROMPT,
        )
        code = clean_code_response(response.content)
        if not code:
            raise LLMError("Model response contained no code")
        return code

    async def explain_log(self, log: str, exit_code: int) -> str:
        """Explain a synthesis log in beginner-friendly terms."""
        question = EXPLAIN_LOG_PROMPT.format(
            outcome="succeeded" if exit_code == 0 else "failed",
            exit_code=exit_code,
            log=truncate_to_tokens(log, self.max_log_tokens),
        )
        response = await self.ask(question)
        return response.content.strip()
