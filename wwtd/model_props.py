# wwtd/model_props.py
from __future__ import annotations

OPENAI_PREFIXES = ("gpt-", "gpt4", "o1", "o3", "o4")


def is_openai_model(model_name) -> bool:
    """True when the name routes to OpenAI Chat Completions, False for Vertex."""
    return any((model_name or "").startswith(p) for p in OPENAI_PREFIXES)
