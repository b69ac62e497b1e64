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

"""Memory record models.

One generic ``MemoryRecord`` is shared by every layer; layer-specific data
rides in ``metadata``.  Drafts produced by extraction are plain dataclasses
since they never leave the process.
"""

import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Literal, Self

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .validators import Confidence, DecayField, LayerName, NonNegativeInt, Timestamp

logger = logging.getLogger(__name__)


def semantic_key(kind: str, name: str) -> str:
    """Dedup key for a captured fact: ``lower(kind) + "::" + lower(name)``."""
    return f"{(kind or '').strip().lower()}::{(name or '').strip().lower()}"


# ---------------------------------------------------------------------------
# Persisted record
# ---------------------------------------------------------------------------


class MemoryRecord(BaseModel):
    """A single embedded memory row stored in a layer's collection."""

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), frozen=True)
    layer: LayerName
    text: str = Field(min_length=1)
    vector: list[float] | None = None
    kind: str = ""
    key: str = ""
    created_at: Timestamp = Field(default_factory=time.time, frozen=True)
    updated_at: Timestamp | None = None
    occurred_at: Timestamp | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def fill_updated_at(self) -> Self:
        if self.updated_at is None:
            self.updated_at = self.created_at
        return self

    def decay_timestamp(self, decay_field: DecayField = "created_at") -> float:
        """Timestamp used for age-based decay, falling back to ``created_at``."""
        value = getattr(self, decay_field)
        return value if value is not None else self.created_at

    def to_payload(self) -> dict[str, Any]:
        """Payload stored alongside the vector (everything but id and vector)."""
        return self.model_dump(exclude={"id", "vector"})

    @classmethod
    def from_payload(cls, point_id: Any, payload: dict[str, Any] | None, vector: list[float] | None = None) -> "MemoryRecord":
        data = dict(payload or {})
        data["id"] = str(point_id)
        if vector is not None:
            data["vector"] = vector
        return cls.model_validate(data)


class ScoredRecord(BaseModel):
    """Search hit with its raw similarity and its adjusted score."""

    record: MemoryRecord
    raw_score: float
    score: float
    debug_info: dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Side files
# ---------------------------------------------------------------------------


class IndexEntry(BaseModel):
    """Row of a layer's lightweight dedup index, one per semantic key."""

    key: str
    name: str
    kind: str = ""
    summary: str
    record_id: str
    created_at: Timestamp
    updated_at: Timestamp


class PatternStats(BaseModel):
    """Usage counters for one tool pattern, with recent successful examples."""

    total: NonNegativeInt = 0
    success: NonNegativeInt = 0
    last_used_at: Timestamp | None = None
    examples: list[str] = Field(default_factory=list)

    @property
    def rate(self) -> float:
        return self.success / self.total if self.total else 0.0

    @property
    def rate_label(self) -> str:
        return f"{self.success}/{self.total}" if self.total else "n/a"


class ToolStats(BaseModel):
    """Per-tool totals plus the patterns seen for that tool."""

    total: NonNegativeInt = 0
    success: NonNegativeInt = 0
    last_used_at: Timestamp | None = None
    patterns: dict[str, PatternStats] = Field(default_factory=dict)

    @property
    def rate(self) -> float:
        return self.success / self.total if self.total else 0.0


class BoardItem(BaseModel):
    """One shared blackboard line."""

    type: str
    text: str = Field(min_length=1)
    updated_at: Timestamp

    @property
    def key(self) -> str:
        return semantic_key(self.type, self.text)


class SentimentEntry(BaseModel):
    """One scored turn in the sentiment log."""

    ts: Timestamp
    label: Literal["positive", "neutral", "negative"]
    score: float = Field(ge=-1.0, le=1.0)
    sample: str = ""


# ---------------------------------------------------------------------------
# Extraction drafts
# ---------------------------------------------------------------------------


@dataclass
class DraftRecord:
    """A fact extracted from conversation text, not yet embedded or stored.

    ``text`` is set by turn builders that render their own summary
    (episodes, procedures); grammar drafts leave it empty and the layer's
    summary formatter renders ``kind``/``name``/``fields``/``details``.
    """

    kind: str
    name: str
    fields: dict[str, str] = field(default_factory=dict)
    details: list[str] = field(default_factory=list)
    confidence: Confidence = "explicit"
    occurred_at: float | None = None
    text: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> str:
        return semantic_key(self.kind, self.name)
