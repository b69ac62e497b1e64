"""Shared Pydantic types and validators for reuse across models.

Centralises layer-name normalisation, range-clamped floats, timestamps
and Literal enums so every model speaks the same language.
"""

from __future__ import annotations

import math
from typing import Annotated, Any, Literal

from pydantic import BeforeValidator, Field

# ---------------------------------------------------------------------------
# Layer names
# ---------------------------------------------------------------------------


def normalize_layer_name(v: Any) -> str:
    """Lower-case and strip a layer name; ``None`` becomes ``""``."""
    if v is None:
        return ""
    return str(v).strip().lower()


LayerName = Annotated[str, BeforeValidator(normalize_layer_name), Field(min_length=1, pattern=r"^[a-z0-9_-]+$")]
"""Layer identifier as it appears in the ledger and feedback markers."""


# ---------------------------------------------------------------------------
# Numeric types
# ---------------------------------------------------------------------------


def finite_or_zero(v: Any) -> float:
    """Coerce *v* to a finite float; anything else counts as ``0.0``."""
    try:
        result = float(v)
    except (TypeError, ValueError):
        return 0.0
    return result if math.isfinite(result) else 0.0


UnitFloat = Annotated[float, Field(ge=0.0, le=1.0)]
"""Float clamped to [0.0, 1.0] for scores, thresholds, similarities."""

NonNegativeInt = Annotated[int, Field(ge=0)]
"""Integer >= 0 for counters."""

NonNegativeFloat = Annotated[float, Field(ge=0.0)]
"""Float >= 0 for character volumes and averages."""

Timestamp = Annotated[float, Field(ge=0.0)]
"""UNIX timestamp in seconds."""


# ---------------------------------------------------------------------------
# Literal enums
# ---------------------------------------------------------------------------

Confidence = Literal["explicit", "pattern"]
DedupePolicy = Literal["refresh", "append"]
DecayField = Literal["created_at", "updated_at", "occurred_at"]
