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
Abstract vector table interface.

Each memory layer owns one table (collection).  Records are never deleted.
"""

from abc import ABC, abstractmethod

from ..models.record import MemoryRecord, ScoredRecord


class VectorTable(ABC):
    """One layer's collection of embedded records."""

    collection_name: str

    @abstractmethod
    async def store(self, record: MemoryRecord) -> MemoryRecord:
        """Persist a new record; ``record.vector`` must be set."""

    @abstractmethod
    async def upsert(self, record: MemoryRecord) -> MemoryRecord:
        """Write *record* over any existing row with the same id."""

    @abstractmethod
    async def touch(self, record_id: str, updated_at: float) -> None:
        """Refresh ``updated_at`` without re-embedding."""

    @abstractmethod
    async def search(self, vector: list[float], limit: int) -> list[ScoredRecord]:
        """Nearest neighbours, most similar first, scored ``1/(1+distance)``."""

    @abstractmethod
    async def count(self) -> int:
        """Number of stored records."""
