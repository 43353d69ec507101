import logging
from typing import List

import requests

from .base import BaseEmbedder

logger = logging.getLogger(__name__)


class OllamaEmbedder(BaseEmbedder):

    provider = "ollama"

    def __init__(self, base_url: str, model: str, **kwargs):
        super().__init__(model, **kwargs)
        self.base_url = base_url
        # Accept either the server root or a full /api/... endpoint
        if "/api/" in base_url:
            self._api_root = base_url.rsplit("/api/", 1)[0]
        else:
            self._api_root = base_url.rstrip("/")

    def _embed(self, text: str) -> List[float]:
        url = f"{self._api_root}/api/embed"
        payload = {"model": self.model, "input": text}
        response = requests.post(url, json=payload, timeout=(10, 120))
        response.raise_for_status()
        data = response.json()
        embeddings = data.get("embeddings", [[]])
        logger.debug("[ollama] Embedded %d chars with %s", len(text), self.model)
        return embeddings[0] if embeddings else []
