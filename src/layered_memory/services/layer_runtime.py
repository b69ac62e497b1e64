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

"""Per-layer runtime wiring and pipeline outcome types."""

import asyncio
import logging
from collections.abc import Awaitable
from dataclasses import dataclass, field
from enum import Enum
from typing import TypeVar

from ..config import LayerSettings
from ..errors import ExternalCallError
from ..layers import LayerDefinition
from ..side_layers import SideLayer
from ..storage.base import VectorTable
from ..storage.json_store import LayerIndex, PatternStatsStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


class PipelineState(str, Enum):
    IDLE = "idle"
    GATE_CHECK = "gate_check"
    SKIPPED = "skipped"
    EMBEDDING = "embedding"
    SEARCHING = "searching"
    RANKING = "ranking"
    FORMATTING = "formatting"
    INJECTED = "injected"
    EXTRACTING = "extracting"
    NO_RECORDS = "no_records"
    REDACTING = "redacting"
    PERSISTING = "persisting"


@dataclass
class PipelineOutcome:
    """What one layer's pipeline did for one host event."""

    layer: str
    states: list[PipelineState] = field(default_factory=lambda: [PipelineState.IDLE])
    block: str | None = None
    stored: int = 0
    error: str | None = None

    @property
    def state(self) -> PipelineState:
        return self.states[-1]

    def enter(self, state: PipelineState) -> None:
        if self.states[-1] is not state:
            self.states.append(state)

    def fail(self, error: Exception) -> None:
        self.error = str(error)
        self.enter(PipelineState.IDLE)


@dataclass
class LayerRuntime:
    """A registered layer: its definition, resolved settings and stores."""

    definition: LayerDefinition
    settings: LayerSettings
    table: VectorTable | None = None
    index: LayerIndex | None = None
    pattern_stats: PatternStatsStore | None = None
    side: SideLayer | None = None

    @property
    def name(self) -> str:
        return self.definition.name

    @property
    def priority(self) -> int:
        return self.definition.priority


async def call_external(operation: str, awaitable: Awaitable[T], timeout: float) -> T:
    """Await an embedding/store/rerank call with a timeout.

    Raises:
        ExternalCallError: On timeout or any failure of the call.
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except ExternalCallError:
        raise
    except asyncio.TimeoutError as e:
        raise ExternalCallError(operation, f"timed out after {timeout}s") from e
    except Exception as e:
        raise ExternalCallError(operation, f"{type(e).__name__}: {e}") from e
