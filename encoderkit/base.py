"""Shared model interface: pooling, model types and token batches."""

from __future__ import annotations

import enum
from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass, field

import numpy as np


class ModelError(Exception):
    """Raised when a model cannot be built or run."""


class Pool(enum.Enum):
    CLS = "cls"
    MEAN = "mean"
    SPLADE = "splade"

    @classmethod
    def parse(cls, value: str) -> "Pool":
        try:
            return cls(value.lower())
        except ValueError:
            raise ValueError(f"unknown pooling {value!r}") from None


@dataclass(frozen=True)
class ModelType:
    """Either a classifier or an embedding model with a pooling method."""

    pool: Pool | None = None

    @classmethod
    def classifier(cls) -> "ModelType":
        return cls(None)

    @classmethod
    def embedding(cls, pool: Pool) -> "ModelType":
        return cls(pool)

    def is_classifier(self) -> bool:
        return self.pool is None


@dataclass
class Batch:
    """Concatenated token sequences with their cumulative boundaries."""

    input_ids: list[int]
    token_type_ids: list[int]
    position_ids: list[int]
    cumulative_seq_lengths: list[int]
    max_length: int
    pooled_indices: list[int] = field(default_factory=list)
    raw_indices: list[int] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.cumulative_seq_lengths) - 1

    @classmethod
    def from_sequences(
        cls,
        sequences: Sequence[Sequence[int]],
        pooled_indices: Sequence[int] | None = None,
        raw_indices: Sequence[int] | None = None,
    ) -> "Batch":
        """Build a batch; members are pooled unless listed otherwise."""
        if not sequences:
            raise ValueError("a batch needs at least one sequence")
        if any(len(seq) == 0 for seq in sequences):
            raise ValueError("sequences must not be empty")
        lengths = [len(seq) for seq in sequences]
        cumulative = [0, *np.cumsum(lengths).tolist()]
        if pooled_indices is None:
            raw = list(raw_indices or [])
            pooled = [i for i in range(len(sequences)) if i not in raw]
        else:
            pooled = list(pooled_indices)
            raw = list(raw_indices or [])
        for index in (*pooled, *raw):
            if not 0 <= index < len(sequences):
                raise ValueError(f"index {index} is out of range")
        return cls(
            input_ids=[token for seq in sequences for token in seq],
            token_type_ids=[0] * sum(lengths),
            position_ids=[pos for n in lengths for pos in range(n)],
            cumulative_seq_lengths=cumulative,
            max_length=max(lengths),
            pooled_indices=pooled,
            raw_indices=raw,
        )


class Model(ABC):
    """An encoder that embeds or classifies batches."""

    @abstractmethod
    def is_padded(self) -> bool:
        """Whether the model works on padded ``(batch, max_length)`` inputs."""

    def embed(self, batch: Batch) -> tuple[np.ndarray | None, np.ndarray | None]:
        raise ModelError("`embed` is not implemented for this model")

    def predict(self, batch: Batch) -> np.ndarray:
        raise ModelError("`predict` is not implemented for this model")