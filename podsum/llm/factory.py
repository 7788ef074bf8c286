"""Chat model factory (multi-provider + fallbacks).

Centralizes:
- mapping model names -> provider + required API key env var
- instantiating provider-specific LangChain chat models
- parsing ordered model lists (primary + fallbacks)

Retries are not handled here: models are built with `max_retries=0` and the
summarizer retries each call through `podsum.pipeline.runner.retry_call`, so
attempts are counted in one place.

When `base_url` is given, every model is served through an OpenAI-compatible
endpoint (ChatOpenAI with `base_url`), whatever its name. The API key then comes from
the env var named by `api_key_env` (default GEMINI_API_KEY).
"""

from __future__ import annotations

import os
from typing import Any, Mapping, MutableMapping, Optional, Sequence, TypeAlias

from langchain_anthropic import ChatAnthropic
from langchain_fireworks import ChatFireworks
from langchain_google_genai import ChatGoogleGenerativeAI
from langchain_openai import ChatOpenAI

ModelRegistry: TypeAlias = Mapping[str, Mapping[str, str]]

SUPPORTED_PROVIDERS = ("openai", "anthropic", "google_genai", "fireworks")

DEFAULT_MODEL_REGISTRY: dict[str, dict[str, str]] = {
    # Google Gemini
    "gemini-2.0-flash": {"provider": "google_genai", "env_var": "GOOGLE_API_KEY"},
    "gemini-2.5-flash": {"provider": "google_genai", "env_var": "GOOGLE_API_KEY"},
    "gemini-3-flash-preview": {"provider": "google_genai", "env_var": "GOOGLE_API_KEY"},
    "gemini-3-pro-preview": {"provider": "google_genai", "env_var": "GOOGLE_API_KEY"},
    # OpenAI
    "gpt-5.1": {"provider": "openai", "env_var": "OPENAI_API_KEY"},
    "gpt-5.1-mini": {"provider": "openai", "env_var": "OPENAI_API_KEY"},
    # Anthropic
    "claude-haiku-4-5": {"provider": "anthropic", "env_var": "ANTHROPIC_API_KEY"},
    "claude-sonnet-4-5": {"provider": "anthropic", "env_var": "ANTHROPIC_API_KEY"},
    # Fireworks
    "accounts/fireworks/models/deepseek-v3p2": {"provider": "fireworks", "env_var": "FIREWORKS_API_KEY"},
    "accounts/fireworks/models/gpt-oss-120b": {"provider": "fireworks", "env_var": "FIREWORKS_API_KEY"},
}

MODEL_ALIASES: dict[str, str] = {
    "gemini-flash-latest": "gemini-3-flash-preview",
    "gpt-5-mini": "gpt-5.1-mini",
    "claude-haiku-4-5-20251001": "claude-haiku-4-5",
    "claude-sonnet-4-5-20250929": "claude-sonnet-4-5",
}

DEFAULT_COMPAT_KEY_ENV = "GEMINI_API_KEY"


def parse_model_list(raw: str | None, *, default: Sequence[str]) -> list[str]:
    """Parse a comma-separated model list into a de-duplicated ordered list."""
    if not raw:
        models = list(default)
    else:
        parts = [p.strip() for p in raw.split(",")]
        models = [p for p in parts if p] or list(default)

    seen: set[str] = set()
    out: list[str] = []
    for m in models:
        if m in seen:
            continue
        seen.add(m)
        out.append(m)
    return out


def canonical_model_name(model_name: str) -> str:
    return MODEL_ALIASES.get(model_name, model_name)


def infer_provider(model_name: str) -> str | None:
    name = (model_name or "").lower()
    if "gemini" in name:
        return "google_genai"
    if "claude" in name:
        return "anthropic"
    if name.startswith("accounts/fireworks/models/"):
        return "fireworks"
    if name.startswith(("gpt", "o1", "o3", "o4")):
        return "openai"
    return None


def _resolve_registry_entry(model_name: str, *, registry: ModelRegistry | None = None) -> Mapping[str, str]:
    reg = registry or DEFAULT_MODEL_REGISTRY
    return reg.get(canonical_model_name(model_name), {})


def _require_api_key(env_var: str, model_name: str) -> str:
    value = os.getenv(env_var)
    if not value:
        raise ValueError(f"Missing API key for model '{model_name}'. Set {env_var}.")
    return value


def _common_kwargs(
    provider: str,
    *,
    temperature: float | None,
    max_tokens: int | None,
    timeout: int | None,
) -> dict[str, Any]:
    # `retry_call` is the only retry layer.
    kwargs: dict[str, Any] = {"max_retries": 0}
    if temperature is not None:
        kwargs["temperature"] = temperature
    if max_tokens is not None:
        kwargs["max_output_tokens" if provider == "google_genai" else "max_tokens"] = max_tokens
    if timeout is not None:
        kwargs["timeout"] = timeout
    return kwargs


def create_chat_model(
    *,
    model_name: str,
    registry: ModelRegistry | None = None,
    temperature: float | None = None,
    max_tokens: int | None = None,
    timeout: int | None = None,
    base_url: str | None = None,
    api_key_env: str | None = None,
    extra_kwargs: Optional[MutableMapping[str, Any]] = None,
) -> Any:
    """Create a provider-specific LangChain chat model instance."""
    canonical_name = canonical_model_name(model_name)

    if base_url:
        key_env = api_key_env or DEFAULT_COMPAT_KEY_ENV
        kwargs = _common_kwargs("openai", temperature=temperature, max_tokens=max_tokens, timeout=timeout)
        kwargs.update(extra_kwargs or {})
        return ChatOpenAI(  # type: ignore[call-arg]
            model=model_name,
            base_url=base_url,
            api_key=_require_api_key(key_env, model_name),
            **kwargs,
        )

    entry = _resolve_registry_entry(canonical_name, registry=registry)
    provider = entry.get("provider") or infer_provider(canonical_name)
    if provider is None:
        raise ValueError(
            f"Unknown provider for model '{model_name}'. "
            f"Supported providers: {', '.join(SUPPORTED_PROVIDERS)}"
        )

    env_var = entry.get("env_var")
    api_key = _require_api_key(env_var, canonical_name) if env_var else None

    kwargs = _common_kwargs(provider, temperature=temperature, max_tokens=max_tokens, timeout=timeout)
    kwargs.update(extra_kwargs or {})

    if provider == "openai":
        return ChatOpenAI(model=canonical_name, **kwargs)  # type: ignore[call-arg]
    if provider == "google_genai":
        if api_key is not None:
            kwargs["google_api_key"] = api_key
        return ChatGoogleGenerativeAI(model=canonical_name, **kwargs)
    if provider == "anthropic":
        return ChatAnthropic(model_name=canonical_name, **kwargs)  # type: ignore[call-arg]
    if provider == "fireworks":
        return ChatFireworks(model=canonical_name, **kwargs)

    raise ValueError(f"Unsupported provider '{provider}' for model '{model_name}'.")


def create_chat_models(
    model_names: Sequence[str],
    *,
    registry: ModelRegistry | None = None,
    temperature: float | None = None,
    max_tokens: int | None = None,
    timeout: int | None = None,
    base_url: str | None = None,
    api_key_env: str | None = None,
    extra_kwargs: Optional[MutableMapping[str, Any]] = None,
) -> list[Any]:
    """Create multiple chat models (ordered) for primary + fallbacks."""
    if not model_names:
        raise ValueError("model_names must be non-empty.")
    return [
        create_chat_model(
            model_name=m,
            registry=registry,
            temperature=temperature,
            max_tokens=max_tokens,
            timeout=timeout,
            base_url=base_url,
            api_key_env=api_key_env,
            extra_kwargs=extra_kwargs,
        )
        for m in model_names
    ]


def with_fallbacks(primary: Any, fallbacks: Sequence[Any]) -> Any:
    """Attach fallbacks using LangChain's `with_fallbacks` when available."""
    if not fallbacks:
        return primary
    method = getattr(primary, "with_fallbacks", None)
    if callable(method):
        return method(list(fallbacks))
    return primary


def build_chat_runnable(
    *,
    model_names: Sequence[str],
    registry: ModelRegistry | None = None,
    temperature: float | None = None,
    max_tokens: int | None = None,
    timeout: int | None = None,
    base_url: str | None = None,
    api_key_env: str | None = None,
) -> Any:
    """Create a chat runnable: the primary model with the rest as fallbacks."""
    models = create_chat_models(
        model_names,
        registry=registry,
        temperature=temperature,
        max_tokens=max_tokens,
        timeout=timeout,
        base_url=base_url,
        api_key_env=api_key_env,
    )
    return with_fallbacks(models[0], models[1:])
