import logging
import random
import time
from abc import ABC, abstractmethod
from typing import List, Optional

import numpy as np

from ..errors import ComputeFailed, ModelVersionMismatch

logger = logging.getLogger(__name__)


class BaseEmbedder(ABC):
    """Embedding function with retry and a fixed model identity.

    Instances are callable as ``embedder(text, model_version)``, the shape
    the ingestion pipeline and query engine expect.
    """

    provider = ""

    def __init__(self, model: str, model_version: Optional[str] = None,
                 dimension: Optional[int] = None, max_retries: int = 3,
                 retry_delay: float = 2.0):
        self.model = model
        self.model_version = model_version or f"{self.provider}:{model}"
        self.dimension = dimension
        self.max_retries = max(1, max_retries)
        self.retry_delay = retry_delay

    def __call__(self, text: str, model_version: str) -> np.ndarray:
        if model_version != self.model_version:
            raise ModelVersionMismatch(self.model_version, model_version)
        return self.embed(text)

    # ── Public entry point ──

    def embed(self, text: str) -> np.ndarray:
        """Embed *text* with automatic retry and exponential backoff.

        Raises :class:`ComputeFailed` after all retries are exhausted, or
        at once when the model returns a vector of the wrong dimension.
        """
        last_error: Exception | None = None

        for attempt in range(1, self.max_retries + 1):
            try:
                vector = np.asarray(self._embed(text), dtype=np.float32)
            except Exception as e:
                last_error = e
                logger.warning("[%s] Embedding error on attempt %d/%d: %s",
                               self.provider, attempt, self.max_retries, e)
            else:
                if vector.ndim == 1 and vector.size > 0:
                    if self.dimension and vector.size != self.dimension:
                        raise ComputeFailed(
                            f"{self.model} returned {vector.size} dimensions, "
                            f"expected {self.dimension}")
                    return vector
                last_error = ComputeFailed("empty embedding")
                logger.warning("[%s] Empty embedding on attempt %d/%d",
                               self.provider, attempt, self.max_retries)

            if attempt < self.max_retries:
                # Jittered exponential backoff
                wait = self.retry_delay * (2 ** (attempt - 1))
                jitter = wait * 0.1 * random.random()
                if "429" in str(last_error):
                    wait *= 2
                    logger.info("[%s] Rate limit detected (429). Backing off for %.1fs",
                                self.provider, wait)
                time.sleep(wait + jitter)

        raise ComputeFailed(
            f"{self.provider} embedding failed after {self.max_retries} "
            f"retries: {last_error}")

    # ── Subclass hooks ──

    @abstractmethod
    def _embed(self, text: str) -> List[float]:
        """Return the raw embedding for *text*; may raise."""
