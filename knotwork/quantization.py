"""
Quantization parameters for spatial keys.

Embeddings are reduced from N source dimensions to D reduced dimensions and
each reduced dimension is bounded by the min/max seen over a sample. The
bounds are an explicit, versioned value: keys computed under one version
must never be range-scanned against keys computed under another.
"""

import math
from dataclasses import dataclass, field
from typing import Iterable, Optional, Sequence

from .errors import ValidationError
from .types import utc_now

# Width given to degenerate (min == max) dimensions
DEGENERATE_RANGE = 1e-6

REDUCTIONS = ("first", "blockavg")


def _finite(value) -> float:
    try:
        v = float(value)
    except (TypeError, ValueError):
        return 0.0
    return v if math.isfinite(v) else 0.0


def reduce_embedding(
    embedding: Sequence[float],
    reduced_dims: int,
    reduction: str = "blockavg",
) -> list[float]:
    """
    Reduce an embedding to ``reduced_dims`` values.

    ``first`` keeps the leading dimensions; ``blockavg`` splits the vector
    into contiguous blocks and averages each one (the last block absorbs any
    remainder). Non-finite values count as 0.
    """
    if reduction == "first":
        reduced = [_finite(v) for v in embedding[:reduced_dims]]
        reduced.extend([0.0] * (reduced_dims - len(reduced)))
        return reduced
    if reduction == "blockavg":
        n = len(embedding)
        block = n // reduced_dims if reduced_dims else 0
        result = []
        for i in range(reduced_dims):
            start = i * block
            end = n if i == reduced_dims - 1 else start + block
            values = [_finite(v) for v in embedding[start:end]]
            result.append(sum(values) / len(values) if values else 0.0)
        return result
    raise ValidationError(f"Unknown reduction method: {reduction!r}. Use one of {REDUCTIONS}")


@dataclass(frozen=True)
class QuantizationParams:
    """Per-dimension bounds plus the reduction mapping, versioned."""
    reduced_dims: int
    bits: int
    mins: tuple[float, ...]
    maxs: tuple[float, ...]
    reduction: str = "blockavg"
    source_dims: int = 0
    version: int = 1
    sample_size: int = 0
    computed_at: str = field(default_factory=utc_now)

    @property
    def levels(self) -> int:
        """Largest quantized value per dimension: 2^B - 1."""
        return (1 << self.bits) - 1

    @property
    def key_bits(self) -> int:
        return self.reduced_dims * self.bits

    def reduce(self, embedding: Sequence[float]) -> list[float]:
        return reduce_embedding(embedding, self.reduced_dims, self.reduction)

    def compatible_with(self, other: Optional["QuantizationParams"]) -> bool:
        """Keys are only comparable when computed under the same version."""
        return other is not None and other.version == self.version

    def to_dict(self) -> dict:
        return {
            "reduced_dims": self.reduced_dims,
            "bits": self.bits,
            "mins": list(self.mins),
            "maxs": list(self.maxs),
            "reduction": self.reduction,
            "source_dims": self.source_dims,
            "version": self.version,
            "sample_size": self.sample_size,
            "computed_at": self.computed_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "QuantizationParams":
        return cls(
            reduced_dims=int(data["reduced_dims"]),
            bits=int(data["bits"]),
            mins=tuple(float(v) for v in data["mins"]),
            maxs=tuple(float(v) for v in data["maxs"]),
            reduction=data.get("reduction", "blockavg"),
            source_dims=int(data.get("source_dims", 0)),
            version=int(data.get("version", 1)),
            sample_size=int(data.get("sample_size", 0)),
            computed_at=data.get("computed_at") or utc_now(),
        )


def compute_quantization_params(
    embeddings: Iterable[Sequence[float]],
    *,
    reduced_dims: int = 8,
    bits: int = 16,
    reduction: str = "blockavg",
    version: int = 1,
) -> QuantizationParams:
    """
    Compute min/max bounds over a sample of embeddings in a single pass.

    Raises:
        ValidationError: empty sample, mismatched vector lengths, or bad
            dimension/bit settings
    """
    if reduced_dims < 1 or bits < 1:
        raise ValidationError("reduced_dims and bits must be positive")
    if reduction not in REDUCTIONS:
        raise ValidationError(f"Unknown reduction method: {reduction!r}")

    source_dims = None
    rd = reduced_dims
    mins: list[float] = []
    maxs: list[float] = []
    count = 0

    for emb in embeddings:
        if not emb:
            continue
        if source_dims is None:
            source_dims = len(emb)
            rd = min(reduced_dims, source_dims)
            mins = [math.inf] * rd
            maxs = [-math.inf] * rd
        elif len(emb) != source_dims:
            raise ValidationError(
                f"Embedding length mismatch: expected {source_dims}, got {len(emb)}"
            )
        reduced = reduce_embedding(emb, rd, reduction)
        for i, v in enumerate(reduced):
            if v < mins[i]:
                mins[i] = v
            if v > maxs[i]:
                maxs[i] = v
        count += 1

    if count == 0:
        raise ValidationError("Need at least one embedding to compute quantization params")

    for i in range(rd):
        if maxs[i] - mins[i] < DEGENERATE_RANGE:
            maxs[i] = mins[i] + DEGENERATE_RANGE

    return QuantizationParams(
        reduced_dims=rd,
        bits=bits,
        mins=tuple(mins),
        maxs=tuple(maxs),
        reduction=reduction,
        source_dims=source_dims or 0,
        version=version,
        sample_size=count,
    )


def is_out_of_bounds(
    params: QuantizationParams,
    embedding: Sequence[float],
    margin: float = 0.1,
) -> bool:
    """True if any reduced dimension falls outside the bounds widened by ``margin`` of its range."""
    for i, v in enumerate(params.reduce(embedding)):
        span = params.maxs[i] - params.mins[i]
        if v < params.mins[i] - margin * span or v > params.maxs[i] + margin * span:
            return True
    return False


def coverage_ratio(
    params: QuantizationParams,
    embeddings: Iterable[Sequence[float]],
    margin: float = 0.1,
) -> float:
    """Fraction of embeddings inside the (widened) bounds. 1.0 for an empty batch."""
    total = 0
    inside = 0
    for emb in embeddings:
        if not emb:
            continue
        total += 1
        if not is_out_of_bounds(params, emb, margin):
            inside += 1
    return inside / total if total else 1.0


def needs_recompute(
    params: Optional[QuantizationParams],
    embeddings: Iterable[Sequence[float]],
    threshold: float = 0.2,
    margin: float = 0.1,
) -> bool:
    """Stale-coverage policy: recompute when more than ``threshold`` of a batch is out of bounds."""
    if params is None:
        return True
    return (1.0 - coverage_ratio(params, embeddings, margin)) > threshold
