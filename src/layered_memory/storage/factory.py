# Copyright 2024 Heinrich Krupp
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Storage backend factory for the layered memory engine.

One Qdrant client is shared by all layers; each layer gets its own
collection.
"""

import logging
from pathlib import Path

from qdrant_client import QdrantClient

from ..config import QdrantSettings
from .qdrant_table import QdrantVectorTable

logger = logging.getLogger(__name__)


def create_qdrant_client(settings: QdrantSettings, data_dir: Path) -> QdrantClient:
    """
    Create the Qdrant client in server, in-memory or embedded mode.

    ``url=":memory:"`` selects the in-process store used by tests; any other
    URL selects server mode; otherwise an embedded store lives under
    ``storage_path`` (default ``<data_dir>/qdrant``).
    """
    if settings.url == ":memory:":
        logger.info("Initialized Qdrant in in-memory mode")
        return QdrantClient(location=":memory:")
    if settings.url:
        logger.info(f"Initialized Qdrant in server mode: {settings.url}")
        return QdrantClient(url=settings.url)

    path = settings.storage_path or data_dir / "qdrant"
    path.mkdir(parents=True, exist_ok=True)
    logger.info(f"Initialized Qdrant in embedded mode: {path}")
    return QdrantClient(path=str(path))


def create_vector_table(client: QdrantClient, settings: QdrantSettings, layer: str, vector_size: int) -> QdrantVectorTable:
    return QdrantVectorTable(client, f"{settings.collection_prefix}{layer}", vector_size)
