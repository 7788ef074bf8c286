"""Audio transcription engines.

Three engines are available:
- AssemblyAI (ASSEMBLYAI_API_KEY), with speaker labels
- OpenAI Whisper API (OPENAI_API_KEY)
- local Whisper via faster-whisper (`pip install 'podsum[local]'`). It is CPU-bound,
  so the derive stage runs it one file at a time on its own thread pool by default.

All are wrapped in `QualityCheckedDeriver`, which rejects transcripts that look like
garbage (too short, or the same sentence repeated over and over) as `bad_input`.

Optional knobs:
- PODSUM_ASSEMBLYAI_HTTP_TIMEOUT_SECONDS (default: 120). Large uploads can exceed the
  SDK's default HTTP timeout.
"""

from __future__ import annotations

import logging
import os
import re
import threading
from collections import Counter
from pathlib import Path
from typing import Any, Callable, Optional, Protocol

import assemblyai as aai  # type: ignore
from openai import APIConnectionError, APIStatusError, AuthenticationError, BadRequestError, OpenAI

from podsum.config import DerivationConfig
from podsum.errors import DeriveError
from podsum.pipeline.chunking import estimate_units

logger = logging.getLogger(__name__)

# The Whisper API rejects uploads above 25 MB.
WHISPER_MAX_BYTES = 25 * 1024 * 1024

TranscriptCheck = Callable[[str], Optional[str]]


class Deriver(Protocol):
    compute_bound: bool

    def derive(self, path: Path) -> str:
        ...


def _require_file(path: Path) -> Path:
    path = Path(path)
    if not path.exists() or path.stat().st_size == 0:
        raise DeriveError("bad_input", f"Audio file missing or empty: {path}")
    return path


class AssemblyAIDeriver:
    compute_bound = False

    def __init__(
        self,
        *,
        api_key: str | None = None,
        language: str | None = None,
        speaker_labels: bool = True,
    ) -> None:
        self.api_key = api_key or os.getenv("ASSEMBLYAI_API_KEY")
        self.language = language
        self.speaker_labels = speaker_labels

    def _configure(self) -> None:
        if not self.api_key:
            raise DeriveError("engine_unavailable", "ASSEMBLYAI_API_KEY is not set")
        aai.settings.api_key = self.api_key
        http_timeout = float(os.getenv("PODSUM_ASSEMBLYAI_HTTP_TIMEOUT_SECONDS", "120"))
        if hasattr(aai.settings, "http_timeout"):
            aai.settings.http_timeout = http_timeout  # type: ignore[attr-defined]

    def derive(self, path: Path) -> str:
        path = _require_file(path)
        self._configure()
        logger.info(f"Transcribing with AssemblyAI: {path.name}")

        config_kwargs: dict = {"speaker_labels": self.speaker_labels}
        if self.language:
            config_kwargs["language_code"] = self.language
        else:
            config_kwargs["language_detection"] = True
        config = aai.TranscriptionConfig(**config_kwargs)

        try:
            transcript = aai.Transcriber().transcribe(str(path), config=config)
        except Exception as e:  # noqa: BLE001
            raise DeriveError("engine_unavailable", f"AssemblyAI request failed: {e}") from e

        if transcript.status == aai.TranscriptStatus.error:
            raise DeriveError("bad_input", f"AssemblyAI could not transcribe {path.name}: {transcript.error}")

        if transcript.utterances:
            return "\n\n".join(f"Speaker {u.speaker}: {u.text.strip()}" for u in transcript.utterances)
        return (transcript.text or "").strip()


class OpenAIWhisperDeriver:
    compute_bound = False

    def __init__(
        self,
        *,
        api_key: str | None = None,
        model: str = "whisper-1",
        language: str | None = None,
    ) -> None:
        self.api_key = api_key or os.getenv("OPENAI_API_KEY")
        self.model = model
        self.language = language

    def derive(self, path: Path) -> str:
        path = _require_file(path)
        if not self.api_key:
            raise DeriveError("engine_unavailable", "OPENAI_API_KEY is not set")
        if path.stat().st_size > WHISPER_MAX_BYTES:
            raise DeriveError("bad_input", f"{path.name} exceeds the 25 MB Whisper upload limit")

        # Derivation is never retried, not even inside the SDK.
        client = OpenAI(api_key=self.api_key, max_retries=0)
        kwargs: dict = {"model": self.model}
        if self.language:
            kwargs["language"] = self.language
        logger.info(f"Transcribing with OpenAI {self.model}: {path.name}")
        try:
            with open(path, "rb") as audio_file:
                result = client.audio.transcriptions.create(file=audio_file, **kwargs)
        except BadRequestError as e:
            raise DeriveError("bad_input", f"Whisper rejected {path.name}: {e}") from e
        except (AuthenticationError, APIConnectionError, APIStatusError) as e:
            raise DeriveError("engine_unavailable", f"Whisper request failed: {e}") from e
        return (getattr(result, "text", None) or "").strip()


def cpu_threads_for(percent: int) -> int:
    """Worker threads for local transcription: `percent` of the available cores, at least 1."""
    cores = os.cpu_count()
    if not cores:
        return 4
    return max(1, cores * max(1, min(percent, 100)) // 100)


def load_faster_whisper(name: str, *, cpu_threads: int, download_root: str | None) -> Any:
    """Load a faster-whisper model; the weights are downloaded on first use."""
    try:
        from faster_whisper import WhisperModel  # type: ignore
    except ImportError as e:
        raise DeriveError(
            "engine_unavailable", "Local transcription needs faster-whisper: pip install 'podsum[local]'"
        ) from e
    return WhisperModel(
        name,
        device="cpu",
        compute_type="int8",
        cpu_threads=cpu_threads,
        download_root=download_root,
    )


class LocalWhisperDeriver:
    """Whisper on the local CPU (faster-whisper).

    The model is loaded once per deriver and shared by every call. `model_factory`
    has the signature of `load_faster_whisper`.
    """

    compute_bound = True

    def __init__(
        self,
        *,
        model: str = "base",
        model_dir: Path | None = None,
        language: str | None = None,
        initial_prompt: str | None = None,
        cpu_percent: int = 80,
        model_factory: Callable[..., Any] = load_faster_whisper,
    ) -> None:
        self.model = model
        self.model_dir = model_dir
        self.language = language
        self.initial_prompt = initial_prompt
        self.cpu_threads = cpu_threads_for(cpu_percent)
        self.model_factory = model_factory
        self._loaded: Any = None
        self._lock = threading.Lock()

    def _load(self) -> Any:
        with self._lock:
            if self._loaded is None:
                if self.model_dir is not None:
                    Path(self.model_dir).mkdir(parents=True, exist_ok=True)
                logger.info(f"Loading Whisper model '{self.model}' ({self.cpu_threads} CPU threads)")
                try:
                    self._loaded = self.model_factory(
                        self.model,
                        cpu_threads=self.cpu_threads,
                        download_root=str(self.model_dir) if self.model_dir is not None else None,
                    )
                except DeriveError:
                    raise
                except Exception as e:  # noqa: BLE001
                    raise DeriveError("engine_unavailable", f"Cannot load Whisper model '{self.model}': {e}") from e
            return self._loaded

    def derive(self, path: Path) -> str:
        path = _require_file(path)
        model = self._load()

        kwargs: dict = {"beam_size": 1}
        if self.language:
            kwargs["language"] = self.language
        if self.initial_prompt:
            kwargs["initial_prompt"] = self.initial_prompt
        logger.info(f"Transcribing locally with Whisper {self.model}: {path.name}")
        try:
            segments, _ = model.transcribe(str(path), **kwargs)
            # Segments are produced lazily; decoding errors surface while iterating.
            text = "".join(segment.text for segment in segments)
        except Exception as e:  # noqa: BLE001
            raise DeriveError("bad_input", f"Whisper could not transcribe {path.name}: {e}") from e
        return text.strip()


_SENTENCE_SPLIT = re.compile(r"(?<=[.!?。！？])\s+|\n+")


class TranscriptQualityCheck:
    """Default transcript check: minimum size plus a repeated-sentence ratio.

    Returns a problem description, or None when the transcript looks usable.
    """

    def __init__(self, *, min_units: int = 50, max_repeat_ratio: float = 0.5) -> None:
        self.min_units = min_units
        self.max_repeat_ratio = max_repeat_ratio

    def __call__(self, text: str) -> Optional[str]:
        units = estimate_units(text)
        if units < self.min_units:
            return f"transcript too short ({units} units, minimum {self.min_units})"

        sentences = [s.strip().lower() for s in _SENTENCE_SPLIT.split(text) if s.strip()]
        if len(sentences) >= 4:
            _, top = Counter(sentences).most_common(1)[0]
            ratio = top / len(sentences)
            if ratio > self.max_repeat_ratio:
                return f"transcript is repetitive ({ratio:.0%} of sentences are identical)"
        return None


default_transcript_check = TranscriptQualityCheck()


class QualityCheckedDeriver:
    """Wrap a deriver and reject unusable transcripts as `bad_input`."""

    def __init__(self, inner: Deriver, check: TranscriptCheck = default_transcript_check) -> None:
        self.inner = inner
        self.check = check

    @property
    def compute_bound(self) -> bool:
        return bool(getattr(self.inner, "compute_bound", False))

    def derive(self, path: Path) -> str:
        text = self.inner.derive(path)
        problem = self.check(text)
        if problem:
            raise DeriveError("bad_input", f"{Path(path).name}: {problem}")
        return text


def build_deriver(cfg: DerivationConfig, model_dir: Path | None = None) -> QualityCheckedDeriver:
    """The configured transcription engine behind the default quality check.

    `model_dir` is where the local engine keeps downloaded Whisper models.
    """
    if cfg.backend == "assemblyai":
        inner: Deriver = AssemblyAIDeriver(language=cfg.language)
    elif cfg.backend == "openai":
        inner = OpenAIWhisperDeriver(language=cfg.language)
    elif cfg.backend == "local":
        inner = LocalWhisperDeriver(
            model=cfg.whisper_model,
            model_dir=model_dir,
            language=cfg.language,
            initial_prompt=cfg.initial_prompt,
            cpu_percent=cfg.cpu_percent,
        )
    else:
        raise ValueError(f"Unknown transcription backend '{cfg.backend}'")
    check = TranscriptQualityCheck(min_units=cfg.min_units, max_repeat_ratio=cfg.max_repeat_ratio)
    return QualityCheckedDeriver(inner, check)
