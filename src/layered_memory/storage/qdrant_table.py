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
Qdrant-backed vector table for one memory layer.

The blocking ``QdrantClient`` is driven from the default executor.  Points
live in a Euclidean collection created lazily on first use; hits are scored
``1/(1+distance)``.
"""

import asyncio
import logging

from qdrant_client import QdrantClient
from qdrant_client.http import exceptions as qdrant_exceptions
from qdrant_client.models import Distance, PointStruct, VectorParams
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from ..models.record import MemoryRecord, ScoredRecord
from ..utils.decay import similarity_from_distance
from .base import VectorTable

logger = logging.getLogger(__name__)


def is_retryable_error(exception: Exception) -> bool:
    """
    Determine if an exception is retryable (transient 5xx server errors only).

    Notes:
        - 5xx server errors are transient and retryable
        - 4xx client errors are permanent (configuration/validation) and NOT retryable
        - Dimension mismatches are NOT retryable (configuration error)
    """
    if isinstance(exception, qdrant_exceptions.UnexpectedResponse):
        return hasattr(exception, "status_code") and 500 <= exception.status_code < 600
    return False


_retry_transient = retry(
    retry=retry_if_exception(is_retryable_error),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=5),
    reraise=True,
)


class QdrantVectorTable(VectorTable):
    """A layer collection in Qdrant (server, embedded path or ``:memory:``)."""

    def __init__(self, client: QdrantClient, collection_name: str, vector_size: int):
        self.client = client
        self.collection_name = collection_name
        self.vector_size = vector_size
        self._ready = False
        self._init_lock = asyncio.Lock()

    async def _ensure_collection(self) -> None:
        if self._ready:
            return
        async with self._init_lock:
            if self._ready:
                return
            loop = asyncio.get_running_loop()
            exists = await loop.run_in_executor(None, self.client.collection_exists, self.collection_name)
            if not exists:
                await loop.run_in_executor(
                    None,
                    lambda: self.client.create_collection(
                        collection_name=self.collection_name,
                        vectors_config=VectorParams(size=self.vector_size, distance=Distance.EUCLID),
                    ),
                )
                logger.info(f"Created collection '{self.collection_name}' ({self.vector_size} dims)")
            self._ready = True

    async def _write(self, record: MemoryRecord) -> MemoryRecord:
        if record.vector is None:
            raise ValueError(f"Record {record.id} has no vector")
        if len(record.vector) != self.vector_size:
            raise ValueError(
                f"Embedding dimension mismatch: expected {self.vector_size}, got {len(record.vector)}. "
                f"This indicates a configuration error or model change."
            )
        await self._ensure_collection()
        point = PointStruct(id=record.id, vector=record.vector, payload=record.to_payload())
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, lambda: self.client.upsert(collection_name=self.collection_name, points=[point]))
        return record

    @_retry_transient
    async def store(self, record: MemoryRecord) -> MemoryRecord:
        stored = await self._write(record)
        logger.debug("Stored %s record %s", self.collection_name, record.id[:8])
        return stored

    @_retry_transient
    async def upsert(self, record: MemoryRecord) -> MemoryRecord:
        updated = await self._write(record)
        logger.debug("Overwrote %s record %s", self.collection_name, record.id[:8])
        return updated

    @_retry_transient
    async def touch(self, record_id: str, updated_at: float) -> None:
        await self._ensure_collection()
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(
            None,
            lambda: self.client.set_payload(
                collection_name=self.collection_name,
                payload={"updated_at": updated_at},
                points=[record_id],
            ),
        )

    @_retry_transient
    async def search(self, vector: list[float], limit: int) -> list[ScoredRecord]:
        await self._ensure_collection()
        loop = asyncio.get_running_loop()
        response = await loop.run_in_executor(
            None,
            lambda: self.client.query_points(
                collection_name=self.collection_name,
                query=vector,
                limit=limit,
                with_payload=True,
                with_vectors=False,
            ),
        )

        results = []
        for point in response.points:
            try:
                record = MemoryRecord.from_payload(point.id, point.payload)
            except ValueError as e:
                logger.warning("Skipping malformed point %s in %s: %s", point.id, self.collection_name, e)
                continue
            # Euclidean collections report the distance as the score.
            similarity = similarity_from_distance(float(point.score))
            results.append(ScoredRecord(record=record, raw_score=similarity, score=similarity, debug_info={"distance": point.score}))
        results.sort(key=lambda r: r.score, reverse=True)
        return results

    async def count(self) -> int:
        await self._ensure_collection()
        loop = asyncio.get_running_loop()
        result = await loop.run_in_executor(
            None, lambda: self.client.count(collection_name=self.collection_name, exact=True)
        )
        return result.count
