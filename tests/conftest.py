import hashlib
import math
import os
import re
import sys

import pytest

# Force CPU-only mode for tests (avoids CUDA compatibility issues)
os.environ["CUDA_VISIBLE_DEVICES"] = ""

# Keep tests off any embedded Qdrant store on disk
if "LMEM_QDRANT_URL" not in os.environ and "LMEM_QDRANT_STORAGE_PATH" not in os.environ:
    os.environ["LMEM_QDRANT_URL"] = ":memory:"

# Add src directory to Python path
sys.path.insert(0, os.path.join(os.path.dirname(os.path.dirname(__file__)), "src"))

_WORD = re.compile(r"\w+")


class FakeEmbeddings:
    """Deterministic bag-of-words hashing embedder.

    Identical texts get identical unit vectors; texts sharing words are
    closer than unrelated ones.
    """

    def __init__(self, dimensions: int = 64):
        self.dimensions = dimensions
        self.calls: list[str] = []

    def vector(self, text: str) -> list[float]:
        vec = [0.0] * self.dimensions
        for word in _WORD.findall(text.lower()):
            digest = hashlib.sha256(word.encode("utf-8")).digest()
            vec[int.from_bytes(digest[:4], "big") % self.dimensions] += 1.0
        norm = math.sqrt(sum(v * v for v in vec))
        if norm == 0:
            vec[0] = 1.0
            return vec
        return [v / norm for v in vec]

    async def embed(self, text: str) -> list[float]:
        self.calls.append(text)
        return self.vector(text)


@pytest.fixture
def fake_embeddings():
    return FakeEmbeddings()


@pytest.fixture
def qdrant_client():
    from qdrant_client import QdrantClient

    client = QdrantClient(location=":memory:")
    yield client
    client.close()


@pytest.fixture
def clean_layer_env(monkeypatch):
    """Remove any LMEM_* variables that could leak into settings."""
    for name in list(os.environ):
        if name.startswith("LMEM_") and not name.startswith("LMEM_QDRANT_"):
            monkeypatch.delenv(name, raising=False)
