"""
Small helpers shared by the embedding service and the vector store.
"""

import hashlib
import math
from typing import Iterable, List, Optional

from apps.search.exceptions import DimensionMismatchError

Vector = List[float]


def hash_text(text: str) -> str:
    """SHA-256 hex digest of ``text``; the in-process cache key."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def normalize_query(query: str) -> str:
    """Collapse whitespace so trivially different spellings share a record."""
    return " ".join(query.split())


def hash_query(query: str) -> str:
    """Key of a stored query embedding."""
    return hash_text(normalize_query(query))


def as_vector(values: Iterable) -> Vector:
    """Convert a numpy array, pgvector value or sequence to a list of floats."""
    if hasattr(values, "tolist"):
        values = values.tolist()
    return [float(v) for v in values]


def validate_dimension(vector, dimensions: Optional[int]) -> None:
    """Reject vectors of the wrong length or with non-finite values."""
    if dimensions and len(vector) != dimensions:
        raise DimensionMismatchError(dimensions, len(vector))
    for i, value in enumerate(vector):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError(f"Non-numeric value at embedding index {i}")
        if not math.isfinite(value):
            raise ValueError(f"Non-finite value at embedding index {i}")
