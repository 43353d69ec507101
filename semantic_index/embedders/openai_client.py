"""
OpenAI-compatible embedder. Works with OpenAI and any provider that
implements the OpenAI embeddings API.  Needs the ``semantic`` extra.
"""

import logging
from typing import List

from .base import BaseEmbedder

logger = logging.getLogger(__name__)


def _get_openai_client(api_key: str, base_url: str):
    """Return an openai.OpenAI client, raising ImportError if not installed."""
    try:
        import openai  # type: ignore
    except ImportError as exc:
        raise ImportError(
            "openai package is required for OpenAI embeddings. "
            "Install it with: pip install 'semantic-code-index[semantic]'"
        ) from exc
    if not api_key:
        raise EnvironmentError(
            "OPENAI_API_KEY environment variable is not set."
        )
    return openai.OpenAI(api_key=api_key, base_url=base_url or None)


class OpenAIEmbedder(BaseEmbedder):

    provider = "openai"

    def __init__(self, base_url: str, model: str, api_key: str, **kwargs):
        super().__init__(model, **kwargs)
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self._client = None

    def _get_client(self):
        if self._client is None:
            self._client = _get_openai_client(self.api_key, self.base_url)
        return self._client

    def _embed(self, text: str) -> List[float]:
        response = self._get_client().embeddings.create(
            model=self.model,
            input=[text],
        )
        logger.debug("[openai] Embedded %d chars with %s", len(text), self.model)
        return response.data[0].embedding if response.data else []
