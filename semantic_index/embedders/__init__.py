from .base import BaseEmbedder
from .ollama import OllamaEmbedder
from .openai_client import OpenAIEmbedder


def create_embedder(config) -> BaseEmbedder:
    """Build the embedder selected by ``config.EMBEDDING_PROVIDER``."""
    common = dict(
        model_version=config.MODEL_VERSION,
        dimension=config.EMBEDDING_DIMENSION,
        max_retries=config.EMBED_MAX_RETRIES,
        retry_delay=config.EMBED_RETRY_DELAY,
    )
    provider = config.EMBEDDING_PROVIDER
    if provider == "ollama":
        return OllamaEmbedder(config.OLLAMA_BASE_URL, config.EMBEDDING_MODEL, **common)
    if provider == "openai":
        return OpenAIEmbedder(config.OPENAI_BASE_URL, config.EMBEDDING_MODEL,
                              config.OPENAI_API_KEY, **common)
    raise ValueError(f"Unknown embedding provider: {provider}")


__all__ = ["BaseEmbedder", "OllamaEmbedder", "OpenAIEmbedder", "create_embedder"]
