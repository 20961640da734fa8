"""Embedding providers."""
from .client import embed_query, embed_texts, ollama_embed, openai_embed

__all__ = ["embed_query", "embed_texts", "ollama_embed", "openai_embed"]
