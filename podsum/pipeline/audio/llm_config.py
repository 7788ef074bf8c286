"""Summarization LLM wiring.

Model order, timeout and token limits come from `SummarizationConfig` (see
`podsum.config` for the PODSUM_SUMMARY_* variables). The first model is primary;
the rest are LangChain fallbacks tried in order when a call fails.
"""

from __future__ import annotations

from typing import Any

from podsum.config import SummarizationConfig
from podsum.llm.factory import build_chat_runnable
from podsum.pipeline.audio.summarize import LangChainSummaryBackend


def get_summary_llm(cfg: SummarizationConfig) -> Any:
    """LLM runnable for episode summaries (primary + fallbacks)."""
    return build_chat_runnable(
        model_names=list(cfg.models),
        temperature=cfg.temperature,
        max_tokens=cfg.max_tokens,
        timeout=cfg.timeout_seconds,
        base_url=cfg.api_base_url,
        api_key_env=cfg.api_key_env,
    )


def build_summary_backend(cfg: SummarizationConfig) -> LangChainSummaryBackend:
    return LangChainSummaryBackend(
        get_summary_llm(cfg),
        model=cfg.models[0],
        system_prompt=cfg.system_prompt,
    )
