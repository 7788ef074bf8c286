"""Structured episode summaries through a LangChain chat model.

The chain is `ChatPromptTemplate | chat model`, parsed with `PydanticOutputParser`
into `StructuredSummary`. The raw message is kept so token usage can be read from
`usage_metadata`. Provider exceptions are mapped onto `SummarizeError` kinds.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from langchain_core.exceptions import OutputParserException
from langchain_core.output_parsers import PydanticOutputParser
from langchain_core.prompts import ChatPromptTemplate

from podsum.errors import SummarizeError
from podsum.models import StructuredSummary
from podsum.pipeline.audio.prompts import (
    DEFAULT_SYSTEM_PROMPT,
    FORMAT_SUFFIX,
    FULL_USER_PROMPT,
    REDUCE_USER_PROMPT,
    WINDOW_USER_PROMPT,
)
from podsum.pipeline.chunk_reduce import PromptKind, SummaryPrompt, SummaryResponse

logger = logging.getLogger(__name__)

_USER_PROMPTS = {
    PromptKind.FULL: FULL_USER_PROMPT,
    PromptKind.WINDOW: WINDOW_USER_PROMPT,
    PromptKind.REDUCE: REDUCE_USER_PROMPT,
}

_AUTH_MARKERS = [
    "401",
    "403",
    "unauthorized",
    "invalid api key",
    "invalid x-api-key",
    "api key not valid",
    "incorrect api key",
    "permission denied",
    "missing api key",
]
_RATE_LIMIT_MARKERS = [
    "429",
    "rate limit",
    "rate_limit",
    "too many requests",
    "resource exhausted",
    "resource_exhausted",
    "quota",
]
_CONTEXT_MARKERS = [
    "context length",
    "context_length_exceeded",
    "maximum context",
    "prompt is too long",
    "too many tokens",
    "input token count",
    "request too large",
]


def classify_exception(e: BaseException) -> SummarizeError:
    """Map a provider / LangChain exception onto a `SummarizeError` kind."""
    if isinstance(e, SummarizeError):
        return e
    msg = f"{type(e).__name__}: {e}"
    low = msg.lower()
    if any(m in low for m in _CONTEXT_MARKERS):
        return SummarizeError("context_too_large", msg)
    if any(m in low for m in _RATE_LIMIT_MARKERS):
        return SummarizeError("rate_limited", msg)
    if any(m in low for m in _AUTH_MARKERS):
        return SummarizeError("auth", msg)
    return SummarizeError("upstream", msg)


def _message_text(message: Any) -> str:
    content = getattr(message, "content", message)
    if isinstance(content, str):
        return content
    # Some providers return a list of content blocks.
    parts: list[str] = []
    for block in content or []:
        if isinstance(block, str):
            parts.append(block)
        elif isinstance(block, dict) and block.get("type") == "text":
            parts.append(str(block.get("text", "")))
    return "".join(parts)


def _usage(message: Any) -> tuple[Optional[int], Optional[int]]:
    usage = getattr(message, "usage_metadata", None) or {}
    return usage.get("input_tokens"), usage.get("output_tokens")


class LangChainSummaryBackend:
    """`SummaryBackend` over any LangChain chat runnable (with or without fallbacks)."""

    def __init__(self, llm: Any, *, model: str, system_prompt: str | None = None) -> None:
        self.llm = llm
        self.model = model
        self.system_prompt = system_prompt or DEFAULT_SYSTEM_PROMPT
        self.parser = PydanticOutputParser(pydantic_object=StructuredSummary)

    def _build_prompt(self, kind: PromptKind) -> ChatPromptTemplate:
        system = self.system_prompt.replace("{", "{{").replace("}", "}}") + FORMAT_SUFFIX
        return ChatPromptTemplate.from_messages([("system", system), ("user", _USER_PROMPTS[kind])])

    async def summarize(self, text: str, prompt: SummaryPrompt) -> SummaryResponse:
        chain = self._build_prompt(prompt.kind) | self.llm
        inputs = {
            "title": prompt.title or "(untitled)",
            "part": prompt.part or 1,
            "parts": prompt.parts or 1,
            "text": text,
            "format_instructions": self.parser.get_format_instructions(),
        }
        try:
            message = await chain.ainvoke(inputs)
        except Exception as e:  # noqa: BLE001
            raise classify_exception(e) from e

        try:
            summary = self.parser.parse(_message_text(message))
        except OutputParserException as e:
            raise SummarizeError("upstream", f"Unparseable summary output: {e}") from e

        metadata = getattr(message, "response_metadata", None) or {}
        model = metadata.get("model_name") or metadata.get("model") or self.model
        prompt_tokens, output_tokens = _usage(message)
        return SummaryResponse(
            summary=summary,
            model=model,
            prompt_tokens=prompt_tokens,
            output_tokens=output_tokens,
        )
