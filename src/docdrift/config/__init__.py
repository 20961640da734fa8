"""Configuration management for docdrift."""
from .settings import (
    DocDriftConfig,
    DatabaseConfig,
    MappingConfig,
    MappingWeights,
    CoChangeConfig,
    VerificationConfig,
    UrlCheckConfig,
    AgentConfig,
    LLMConfig,
    LLMModelConfig,
    EmbeddingsConfig,
    LearningConfig,
    SuppressEntry,
    load_config,
)

__all__ = [
    "DocDriftConfig",
    "DatabaseConfig",
    "MappingConfig",
    "MappingWeights",
    "CoChangeConfig",
    "VerificationConfig",
    "UrlCheckConfig",
    "AgentConfig",
    "LLMConfig",
    "LLMModelConfig",
    "EmbeddingsConfig",
    "LearningConfig",
    "SuppressEntry",
    "load_config",
]
