"""Runtime configuration.

All settings are read once into immutable dataclasses by `load_config()` and passed
explicitly to the orchestrator; nothing below mutates process-wide state.

Environment variables (all optional):
- PODSUM_DATA_DIR (default: ~/.podsum)
- PODSUM_ACQUIRE_CONCURRENCY / PODSUM_DERIVE_CONCURRENCY / PODSUM_SUMMARIZE_CONCURRENCY
- PODSUM_RETRY_MAX_ATTEMPTS / PODSUM_RETRY_BASE_DELAY_SECONDS /
  PODSUM_RETRY_MAX_DELAY_SECONDS / PODSUM_RETRY_JITTER_RATIO
- PODSUM_CAPACITY_UNITS / PODSUM_WINDOW_UNITS / PODSUM_OVERLAP_UNITS
- PODSUM_SUMMARY_MODELS (comma-separated; primary + fallbacks)
- PODSUM_SUMMARY_API_BASE_URL, PODSUM_SUMMARY_API_KEY_ENV (used with the base URL),
  PODSUM_SUMMARY_TEMPERATURE, PODSUM_SUMMARY_MAX_TOKENS,
  PODSUM_SUMMARY_TIMEOUT_SECONDS, PODSUM_SUMMARY_SYSTEM_PROMPT
- PODSUM_TRANSCRIBE_BACKEND (assemblyai|openai|local), PODSUM_TRANSCRIBE_LANGUAGE,
  PODSUM_TRANSCRIBE_MIN_UNITS, PODSUM_TRANSCRIBE_MAX_REPEAT_RATIO
- local engine only: PODSUM_WHISPER_MODEL (default: base),
  PODSUM_TRANSCRIBE_INITIAL_PROMPT, PODSUM_TRANSCRIBE_CPU_PERCENT (default: 80)
- PODSUM_CLEANUP_AUDIO, PODSUM_MARK_UNPUBLISHED, PODSUM_LOCK_TTL_SECONDS
"""

from __future__ import annotations

import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional

from podsum.llm.factory import parse_model_list
from podsum.pipeline.runner import RetryPolicy

DEFAULT_SUMMARY_MODELS = [
    "gemini-2.0-flash",
    "gemini-3-flash-preview",
    "claude-haiku-4-5",
    "gpt-5.1-mini",
]

TRANSCRIBE_BACKENDS = ("assemblyai", "openai", "local")

# Remote transcription can run a few uploads side by side; local engines get 1.
DEFAULT_REMOTE_DERIVE_CONCURRENCY = 2


@dataclass(frozen=True)
class StageLimits:
    """Per-stage concurrency ceilings.

    `derive=None` means "decide from the transcription engine": 1 for compute-bound
    engines, DEFAULT_REMOTE_DERIVE_CONCURRENCY otherwise.
    """

    acquire: int = 3
    derive: Optional[int] = None
    summarize: int = 2

    def derive_for(self, compute_bound: bool) -> int:
        if self.derive is not None:
            return self.derive
        return 1 if compute_bound else DEFAULT_REMOTE_DERIVE_CONCURRENCY


@dataclass(frozen=True)
class ChunkingConfig:
    """Sizes in approximate units (see `podsum.pipeline.chunking.estimate_units`)."""

    capacity_units: int = 24000
    window_units: int = 6000
    overlap_units: int = 300


@dataclass(frozen=True)
class SummarizationConfig:
    models: tuple[str, ...] = tuple(DEFAULT_SUMMARY_MODELS)
    api_base_url: Optional[str] = None
    api_key_env: str = "GEMINI_API_KEY"
    temperature: float = 0.1
    max_tokens: Optional[int] = 4096
    timeout_seconds: int = 120
    system_prompt: Optional[str] = None


@dataclass(frozen=True)
class DerivationConfig:
    backend: str = "assemblyai"
    language: Optional[str] = None
    min_units: int = 50
    max_repeat_ratio: float = 0.5
    whisper_model: str = "base"
    initial_prompt: Optional[str] = None
    cpu_percent: int = 80


@dataclass(frozen=True)
class PipelineConfig:
    data_dir: Path = field(default_factory=lambda: Path("~/.podsum").expanduser())
    limits: StageLimits = field(default_factory=StageLimits)
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    chunking: ChunkingConfig = field(default_factory=ChunkingConfig)
    summarization: SummarizationConfig = field(default_factory=SummarizationConfig)
    derivation: DerivationConfig = field(default_factory=DerivationConfig)
    cleanup_acquired: bool = True
    mark_unpublished: bool = True
    lock_ttl_seconds: int = 6 * 3600

    def __post_init__(self) -> None:
        validate_config(self)

    @property
    def db_path(self) -> Path:
        return self.data_dir / "db.sqlite3"

    @property
    def audio_dir(self) -> Path:
        return self.data_dir / "audio"

    @property
    def transcript_dir(self) -> Path:
        return self.data_dir / "transcripts"

    @property
    def model_dir(self) -> Path:
        return self.data_dir / "models"

    def as_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["data_dir"] = str(self.data_dir)
        return d


def validate_config(cfg: PipelineConfig) -> None:
    """Raise ValueError for settings the pipeline cannot run with."""
    limits = cfg.limits
    for name, value in (("acquire", limits.acquire), ("summarize", limits.summarize), ("derive", limits.derive)):
        if value is not None and value < 1:
            raise ValueError(f"Concurrency ceiling for {name} must be >= 1 (got {value}).")

    ch = cfg.chunking
    if ch.window_units < 1 or ch.capacity_units < 1:
        raise ValueError("capacity_units and window_units must be >= 1.")
    if not 0 <= ch.overlap_units < ch.window_units:
        raise ValueError(
            f"overlap_units must be >= 0 and smaller than window_units "
            f"(got overlap={ch.overlap_units}, window={ch.window_units})."
        )

    if cfg.retry.max_attempts < 1:
        raise ValueError("retry.max_attempts must be >= 1.")
    if cfg.derivation.backend not in TRANSCRIBE_BACKENDS:
        raise ValueError(
            f"Unknown transcription backend '{cfg.derivation.backend}'. "
            f"Supported: {', '.join(TRANSCRIBE_BACKENDS)}"
        )
    if not 1 <= cfg.derivation.cpu_percent <= 100:
        raise ValueError(f"cpu_percent must be between 1 and 100 (got {cfg.derivation.cpu_percent}).")
    if not cfg.summarization.models:
        raise ValueError("At least one summarization model is required.")


def ensure_data_dirs(cfg: PipelineConfig) -> None:
    """Create expected data directories.

    Called explicitly by entrypoints, not as a side-effect of importing this module.
    """
    for directory in (cfg.data_dir, cfg.audio_dir, cfg.transcript_dir):
        directory.mkdir(parents=True, exist_ok=True)


def _get(env: Mapping[str, str], name: str) -> str | None:
    raw = env.get(name)
    if raw is None:
        return None
    raw = raw.strip()
    return raw or None


def _int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = _get(env, name)
    return int(raw) if raw else default


def _opt_int(env: Mapping[str, str], name: str, default: int | None) -> int | None:
    raw = _get(env, name)
    return int(raw) if raw else default


def _float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = _get(env, name)
    return float(raw) if raw else default


def _bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = _get(env, name)
    if raw is None:
        return default
    return raw.lower() in {"1", "true", "yes", "on"}


def load_config(env: Mapping[str, str] | None = None) -> PipelineConfig:
    """Build a `PipelineConfig` from environment variables (see module docstring)."""
    env = os.environ if env is None else env

    data_dir = Path(_get(env, "PODSUM_DATA_DIR") or "~/.podsum").expanduser()

    limits = StageLimits(
        acquire=_int(env, "PODSUM_ACQUIRE_CONCURRENCY", StageLimits.acquire),
        derive=_opt_int(env, "PODSUM_DERIVE_CONCURRENCY", None),
        summarize=_int(env, "PODSUM_SUMMARIZE_CONCURRENCY", StageLimits.summarize),
    )
    retry = RetryPolicy(
        max_attempts=_int(env, "PODSUM_RETRY_MAX_ATTEMPTS", RetryPolicy.max_attempts),
        base_delay_seconds=_float(env, "PODSUM_RETRY_BASE_DELAY_SECONDS", RetryPolicy.base_delay_seconds),
        max_delay_seconds=_float(env, "PODSUM_RETRY_MAX_DELAY_SECONDS", RetryPolicy.max_delay_seconds),
        jitter_ratio=_float(env, "PODSUM_RETRY_JITTER_RATIO", RetryPolicy.jitter_ratio),
    )
    chunking = ChunkingConfig(
        capacity_units=_int(env, "PODSUM_CAPACITY_UNITS", ChunkingConfig.capacity_units),
        window_units=_int(env, "PODSUM_WINDOW_UNITS", ChunkingConfig.window_units),
        overlap_units=_int(env, "PODSUM_OVERLAP_UNITS", ChunkingConfig.overlap_units),
    )
    summarization = SummarizationConfig(
        models=tuple(parse_model_list(_get(env, "PODSUM_SUMMARY_MODELS"), default=DEFAULT_SUMMARY_MODELS)),
        api_base_url=_get(env, "PODSUM_SUMMARY_API_BASE_URL"),
        api_key_env=_get(env, "PODSUM_SUMMARY_API_KEY_ENV") or SummarizationConfig.api_key_env,
        temperature=_float(env, "PODSUM_SUMMARY_TEMPERATURE", SummarizationConfig.temperature),
        max_tokens=_opt_int(env, "PODSUM_SUMMARY_MAX_TOKENS", SummarizationConfig.max_tokens),
        timeout_seconds=_int(env, "PODSUM_SUMMARY_TIMEOUT_SECONDS", SummarizationConfig.timeout_seconds),
        system_prompt=_get(env, "PODSUM_SUMMARY_SYSTEM_PROMPT"),
    )
    derivation = DerivationConfig(
        backend=(_get(env, "PODSUM_TRANSCRIBE_BACKEND") or DerivationConfig.backend).lower(),
        language=_get(env, "PODSUM_TRANSCRIBE_LANGUAGE"),
        min_units=_int(env, "PODSUM_TRANSCRIBE_MIN_UNITS", DerivationConfig.min_units),
        max_repeat_ratio=_float(env, "PODSUM_TRANSCRIBE_MAX_REPEAT_RATIO", DerivationConfig.max_repeat_ratio),
        whisper_model=_get(env, "PODSUM_WHISPER_MODEL") or DerivationConfig.whisper_model,
        initial_prompt=_get(env, "PODSUM_TRANSCRIBE_INITIAL_PROMPT"),
        cpu_percent=_int(env, "PODSUM_TRANSCRIBE_CPU_PERCENT", DerivationConfig.cpu_percent),
    )

    return PipelineConfig(
        data_dir=data_dir,
        limits=limits,
        retry=retry,
        chunking=chunking,
        summarization=summarization,
        derivation=derivation,
        cleanup_acquired=_bool(env, "PODSUM_CLEANUP_AUDIO", True),
        mark_unpublished=_bool(env, "PODSUM_MARK_UNPUBLISHED", True),
        lock_ttl_seconds=_int(env, "PODSUM_LOCK_TTL_SECONDS", 6 * 3600),
    )
