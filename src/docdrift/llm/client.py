"""Unified LLM client with dual model support.

Provides access to a deep model (verification, path-2 exploration) and a
small model (classification, feedback interpretation).

Usage:
    from docdrift.llm import call_llm, parse_json_response

    response = await call_llm(prompt, task_type="deep", system=SYSTEM_PROMPT)
    data = parse_json_response(response.text) if response else None
"""
from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass
from typing import Any, Literal

import httpx

logger = logging.getLogger(__name__)

ModelTier = Literal["deep", "small"]

DEFAULT_DEEP_CONFIG = {
    "provider": "ollama",
    "model": os.getenv("LLM_DEEP_MODEL", "qwen3-coder:30b"),
    "base_url": os.getenv("LLM_BASE_URL", "http://localhost:11434"),
    "temperature": 0.1,
    "max_tokens": 2000,
}

DEFAULT_SMALL_CONFIG = {
    "provider": "ollama",
    "model": os.getenv("LLM_SMALL_MODEL", "phi3.5:3.8b"),
    "base_url": os.getenv("LLM_BASE_URL", "http://localhost:11434"),
    "temperature": 0.1,
    "max_tokens": 1000,
}

# Global config cache (set by the worker on startup)
_llm_config: dict[str, Any] | None = None


@dataclass
class LLMResponse:
    """Text plus usage reported by the provider."""
    text: str
    model: str
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


def set_llm_config(config: dict[str, Any]) -> None:
    """Set the global LLM configuration.

    Args:
        config: LLM config dict with 'deep' and 'small' keys
    """
    global _llm_config
    _llm_config = config
    logger.info(
        f"LLM config set: deep={config.get('deep', {}).get('model')}, "
        f"small={config.get('small', {}).get('model')}"
    )


def get_llm_config(task_type: ModelTier = "small") -> dict[str, Any]:
    """Get LLM configuration for a model tier.

    Args:
        task_type: 'deep' for complex tasks, 'small' for simple tasks

    Returns:
        Dict with provider, model, base_url, temperature, max_tokens
    """
    if _llm_config:
        if task_type == "deep":
            return _llm_config.get("deep", DEFAULT_DEEP_CONFIG)
        return _llm_config.get("small", DEFAULT_SMALL_CONFIG)

    if task_type == "deep":
        return DEFAULT_DEEP_CONFIG
    return DEFAULT_SMALL_CONFIG


async def call_llm(
    prompt: str,
    task_type: ModelTier = "small",
    timeout: float = 120.0,
    config_override: dict[str, Any] | None = None,
    system: str | None = None,
) -> LLMResponse | None:
    """Call LLM to generate text.

    Args:
        prompt: User prompt to send
        task_type: 'deep' or 'small' to select model
        timeout: Request timeout in seconds
        config_override: Optional config to override defaults
        system: Optional system prompt

    Returns:
        LLMResponse, or None on error
    """
    config = config_override or get_llm_config(task_type)

    provider = config.get("provider", "ollama")
    model = config.get("model") or ""
    base_url = config.get("base_url", "http://localhost:11434")
    temperature = config.get("temperature", 0.1)
    max_tokens = config.get("max_tokens", 2000)

    logger.debug(f"Calling {provider}/{model} (task_type={task_type})")

    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            if provider == "ollama":
                body: dict[str, Any] = {
                    "model": model,
                    "prompt": prompt,
                    "stream": False,
                    "options": {
                        "temperature": temperature,
                        "num_predict": max_tokens
                    }
                }
                if system:
                    body["system"] = system
                response = await client.post(f"{base_url.rstrip('/')}/api/generate", json=body)
                response.raise_for_status()
                data = response.json()
                return LLMResponse(
                    text=data.get("response", ""),
                    model=model,
                    input_tokens=data.get("prompt_eval_count", 0) or 0,
                    output_tokens=data.get("eval_count", 0) or 0,
                )

            elif provider == "vllm":
                api_key = config.get("api_key") or os.getenv("VLLM_API_KEY", "local-key")
                full_prompt = f"{system}\n\n{prompt}" if system else prompt
                response = await client.post(
                    f"{base_url.rstrip('/')}/v1/completions",
                    headers={"Authorization": f"Bearer {api_key}"},
                    json={
                        "model": model,
                        "prompt": full_prompt,
                        "max_tokens": max_tokens,
                        "temperature": temperature
                    }
                )
                response.raise_for_status()
                data = response.json()
                choices = data.get("choices", [])
                if choices:
                    return _with_usage(choices[0].get("text", ""), model, data)

            elif provider == "openai":
                # OpenAI-compatible chat completions API
                api_key = config.get("api_key") or os.getenv("OPENAI_API_KEY", "")
                if not api_key:
                    logger.error("OpenAI API key not configured (set api_key in config or OPENAI_API_KEY env var)")
                    return None
                messages = []
                if system:
                    messages.append({"role": "system", "content": system})
                messages.append({"role": "user", "content": prompt})
                response = await client.post(
                    f"{base_url.rstrip('/')}/v1/chat/completions",
                    headers={"Authorization": f"Bearer {api_key}"},
                    json={
                        "model": model,
                        "messages": messages,
                        "max_tokens": max_tokens,
                        "temperature": temperature
                    }
                )
                response.raise_for_status()
                data = response.json()
                choices = data.get("choices", [])
                if choices:
                    return _with_usage(choices[0].get("message", {}).get("content", ""), model, data)

    except httpx.HTTPError as e:
        logger.warning(f"LLM call failed ({provider}/{model}): {e}")

    return None


def _with_usage(text: str, model: str, data: dict[str, Any]) -> LLMResponse:
    usage = data.get("usage") or {}
    return LLMResponse(
        text=text,
        model=data.get("model", model),
        input_tokens=usage.get("prompt_tokens", 0) or 0,
        output_tokens=usage.get("completion_tokens", 0) or 0,
    )


def parse_json_response(text: str) -> dict[str, Any] | list | None:
    """Parse JSON from LLM response.

    Handles various LLM output formats:
    - Direct JSON
    - JSON in markdown code blocks
    - JSON with surrounding text

    Args:
        text: Raw LLM response

    Returns:
        Parsed JSON or None
    """
    text = text.strip()

    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass

    match = re.search(r'```(?:json)?\s*([\s\S]*?)```', text)
    if match:
        try:
            return json.loads(match.group(1).strip())
        except json.JSONDecodeError:
            pass

    for pattern in [r'\{[\s\S]*\}', r'\[[\s\S]*\]']:
        match = re.search(pattern, text)
        if match:
            try:
                return json.loads(match.group(0))
            except json.JSONDecodeError:
                pass

    return None
