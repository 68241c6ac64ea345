"""Vector shapes and dimension bookkeeping for the product collection."""
import numbers
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Union

import numpy as np

from config import DEFAULT_VECTOR_DIMENSION
from errors import ValidationError

VECTOR_NAMES = ("image", "text")
DEFAULT_VECTOR_NAME = "text"

# Dimension sources, strongest first
CONFIGURED = "configured"
OBSERVED = "observed"
INFERRED = "inferred"
DEFAULT = "default"


@dataclass(frozen=True)
class FlatVector:
    values: List[float]


@dataclass(frozen=True)
class NamedVector:
    name: str
    values: List[float]


@dataclass(frozen=True)
class MultiVector:
    slots: Dict[str, List[float]] = field(default_factory=dict)


Vector = Union[FlatVector, NamedVector, MultiVector]


@dataclass(frozen=True)
class DimensionResolution:
    """Resolved vector dimension together with where it came from."""

    value: int
    source: str

    @classmethod
    def initial(cls, configured: Optional[int] = None) -> "DimensionResolution":
        if configured and configured > 0:
            return cls(configured, CONFIGURED)
        return cls(DEFAULT_VECTOR_DIMENSION, DEFAULT)

    @property
    def is_settled(self) -> bool:
        return self.source != DEFAULT

    def observe(self, size: int) -> "DimensionResolution":
        # An existing collection always wins
        return DimensionResolution(int(size), OBSERVED)

    def infer(self, size: Optional[int]) -> "DimensionResolution":
        if self.is_settled or not size or size <= 0:
            return self
        return DimensionResolution(int(size), INFERRED)


def _coerce_values(raw: Any) -> List[float]:
    if isinstance(raw, np.ndarray):
        if raw.ndim != 1:
            raise ValidationError("Vector must be a one-dimensional array of numbers")
        raw = raw.tolist()
    if isinstance(raw, (str, bytes)) or not isinstance(raw, Sequence):
        raise ValidationError("Vector must be an array of numbers")
    values = []
    for value in raw:
        if isinstance(value, bool) or not isinstance(value, numbers.Real):
            raise ValidationError("Vector must be an array of numbers")
        values.append(float(value))
    return values


def normalize_vector_name(value: Any) -> Optional[str]:
    if value is None:
        return None
    name = str(value).strip().lower()
    return name if name in VECTOR_NAMES else None


def parse_vector(raw: Any) -> Vector:
    """Convert JSON-shaped input into one of the tagged vector forms.

    Accepts a flat list of numbers, a single named vector
    (``{"name": "image", "vector": [...]}``) or a map keyed by slot name
    (``{"image": [...], "text": [...]}``).
    """
    if isinstance(raw, (FlatVector, NamedVector, MultiVector)):
        return raw
    if isinstance(raw, dict):
        if "name" in raw or "vector" in raw:
            name = raw.get("name")
            normalized = normalize_vector_name(name) if name is not None else DEFAULT_VECTOR_NAME
            if normalized is None:
                raise ValidationError(
                    f"Unknown vector name '{name}'; expected one of: {', '.join(VECTOR_NAMES)}"
                )
            return NamedVector(normalized, _coerce_values(raw.get("vector")))
        unknown = [str(key) for key in raw if str(key) not in VECTOR_NAMES]
        if unknown:
            raise ValidationError(
                f"Unknown vector(s): {', '.join(unknown)}; expected: {', '.join(VECTOR_NAMES)}"
            )
        slots = {
            name: _coerce_values(raw[name])
            for name in VECTOR_NAMES
            if raw.get(name) is not None
        }
        return MultiVector(slots)
    return FlatVector(_coerce_values(raw))


def vector_size(vector: Vector) -> Optional[int]:
    """Size hint used when a collection has to be created."""
    if isinstance(vector, FlatVector):
        return len(vector.values)
    if isinstance(vector, NamedVector):
        return len(vector.values)
    for name in VECTOR_NAMES:
        if name in vector.slots:
            return len(vector.slots[name])
    return None


def average_vectors(vectors: Sequence[Sequence[float]]) -> Optional[List[float]]:
    """Element-wise mean of equally sized vectors."""
    if not vectors:
        return None
    dimension = len(vectors[0])
    if dimension == 0:
        return None
    if any(len(vector) != dimension for vector in vectors):
        raise ValidationError("Image embeddings returned inconsistent dimensions")
    return np.asarray(vectors, dtype="float64").mean(axis=0).tolist()
