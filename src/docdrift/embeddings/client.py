"""Embedding client for claim text.

Supports ollama's /api/embeddings and the OpenAI-compatible /v1/embeddings
endpoint served by vLLM and OpenAI.
"""
from __future__ import annotations
import logging

import httpx

from docdrift.config import EmbeddingsConfig

logger = logging.getLogger(__name__)


async def ollama_embed(
    texts: list[str],
    model: str,
    base_url: str,
    timeout: float = 120.0
) -> list[list[float]]:
    """Generate embeddings with ollama, one request per text.

    Raises:
        RuntimeError: If the API request fails
    """
    embeddings: list[list[float]] = []

    async with httpx.AsyncClient(timeout=timeout) as client:
        for text in texts:
            try:
                response = await client.post(
                    f"{base_url.rstrip('/')}/api/embeddings",
                    json={"model": model, "prompt": text},
                )
                response.raise_for_status()
                embeddings.append(response.json().get("embedding", []))
            except httpx.HTTPError as e:
                raise RuntimeError(f"Ollama embedding failed: {e}") from e

    return embeddings


async def openai_embed(
    texts: list[str],
    model: str,
    base_url: str,
    api_key: str,
    batch_size: int = 32,
    timeout: float = 120.0
) -> list[list[float]]:
    """Generate embeddings using an OpenAI-compatible API (vLLM, OpenAI).

    Args:
        texts: List of texts to embed
        model: Model name
        base_url: Provider base URL
        api_key: API key for authentication
        batch_size: Maximum texts per request

    Returns:
        List of embedding vectors

    Raises:
        RuntimeError: If the API request fails
    """
    all_embeddings: list[list[float]] = []

    headers = {}
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"

    async with httpx.AsyncClient(timeout=timeout) as client:
        for i in range(0, len(texts), batch_size):
            batch = texts[i:i + batch_size]

            try:
                response = await client.post(
                    f"{base_url.rstrip('/')}/v1/embeddings",
                    headers=headers,
                    json={"model": model, "input": batch},
                )
                response.raise_for_status()
                data = response.json()
                all_embeddings.extend(item["embedding"] for item in data["data"])
            except httpx.HTTPError as e:
                raise RuntimeError(f"Embedding request failed: {e}") from e

    return all_embeddings


async def embed_texts(texts: list[str], config: EmbeddingsConfig) -> list[list[float]]:
    """Embed texts with the configured provider."""
    if not texts:
        return []

    if config.provider == "ollama":
        return await ollama_embed(texts, config.model, config.base_url)
    return await openai_embed(texts, config.model, config.base_url, config.api_key)


async def embed_query(text: str, config: EmbeddingsConfig) -> list[float] | None:
    """Embed one query, returning None when disabled or on failure."""
    if not config.enabled or not text:
        return None

    try:
        vectors = await embed_texts([text], config)
    except RuntimeError as e:
        logger.warning(f"Query embedding failed ({config.provider}/{config.model}): {e}")
        return None

    return vectors[0] if vectors and vectors[0] else None
