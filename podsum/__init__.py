"""podsum: podcast feed tracker with a transcribe + summarize pipeline."""

__version__ = "0.1.0"
