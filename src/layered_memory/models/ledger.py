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

"""Routing ledger document models.

The ledger file is a single JSON document
``{routing_stats, token_savings, counters}``.
Field names are the on-disk keys.
"""

from pydantic import BaseModel, ConfigDict, Field

from .validators import NonNegativeFloat, NonNegativeInt, Timestamp, UnitFloat


class LedgerEntry(BaseModel):
    """Usage statistics for one memory layer."""

    model_config = ConfigDict(extra="ignore")

    activations: NonNegativeInt = 0
    chars_injected: NonNegativeFloat = 0
    useful_up: NonNegativeInt = 0
    useful_down: NonNegativeInt = 0
    useful_rate: UnitFloat | None = None
    last_activated_at: Timestamp | None = None
    last_feedback_at: Timestamp | None = None

    @property
    def avg_chars(self) -> int:
        return round(self.chars_injected / self.activations) if self.activations else 0


class RoutingStats(BaseModel):
    """Per-layer entries plus process-wide session aggregates."""

    model_config = ConfigDict(extra="ignore")

    layers: dict[str, LedgerEntry] = Field(default_factory=dict)
    total_activations: NonNegativeInt = 0
    total_chars_injected: NonNegativeFloat = 0
    current_session_chars: NonNegativeFloat = 0
    current_session_activations: NonNegativeInt = 0
    sessions: NonNegativeInt = 0
    total_session_chars: NonNegativeFloat = 0
    total_session_activations: NonNegativeInt = 0
    after_routing_avg: NonNegativeFloat | None = None
    last_session_chars: NonNegativeFloat | None = None
    last_session_activations: NonNegativeInt | None = None
    last_updated_at: Timestamp | None = None


class TokenSavings(BaseModel):
    """Estimated context savings against an external pre-routing baseline."""

    model_config = ConfigDict(extra="ignore")

    before_routing_avg: NonNegativeFloat | None = None
    after_routing_avg: NonNegativeFloat | None = None
    saved_last_session: NonNegativeFloat = 0
    saved_total: NonNegativeFloat = 0
    saved_this_week: NonNegativeFloat = 0
    week_start: Timestamp | None = None


class SessionCounters(BaseModel):
    """Turn-level health counters shown in the meta block."""

    model_config = ConfigDict(extra="ignore")

    sessions: NonNegativeInt = 0
    last_session_at: Timestamp | None = None
    tool_calls: NonNegativeInt = 0
    tool_errors: NonNegativeInt = 0
    memory_commands: NonNegativeInt = 0
    last_memory_command_at: Timestamp | None = None
    ltm_count: NonNegativeInt | None = None
    ltm_updated_at: Timestamp | None = None


class LedgerDocument(BaseModel):
    """Root of the ledger JSON file."""

    model_config = ConfigDict(extra="ignore")

    routing_stats: RoutingStats = Field(default_factory=RoutingStats)
    token_savings: TokenSavings = Field(default_factory=TokenSavings)
    counters: SessionCounters = Field(default_factory=SessionCounters)
