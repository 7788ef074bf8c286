"""Shared LLM utilities (providers, model registry, factories).

Summarization code imports from here instead of initializing provider clients
itself.
"""

from .factory import (  # noqa: F401
    ModelRegistry,
    build_chat_runnable,
    create_chat_model,
    create_chat_models,
    parse_model_list,
)
