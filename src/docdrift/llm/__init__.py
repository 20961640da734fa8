"""LLM client for agent tasks."""
from .client import (
    LLMResponse,
    call_llm,
    get_llm_config,
    parse_json_response,
    set_llm_config,
)

__all__ = [
    "LLMResponse",
    "call_llm",
    "get_llm_config",
    "parse_json_response",
    "set_llm_config",
]
