"""The DistilBERT encoder model: padded batching and pooling."""

from __future__ import annotations

from itertools import pairwise

import numpy as np

from .base import Batch, Model, ModelError, ModelType, Pool
from .distilbert_layers import (
    DistilBertConfig,
    DistilBertEmbeddings,
    DistilBertEncoder,
    DistilBertSpladeHead,
)
from .weights import VarBuilder, WeightError

_LOAD_ERRORS = (WeightError, ModelError)


def _load_trunk(
    vb: VarBuilder, config: DistilBertConfig
) -> tuple[DistilBertEmbeddings, DistilBertEncoder]:
    """Load embeddings and encoder at the root, else under the ``distilbert`` prefix."""
    try:
        return (
            DistilBertEmbeddings.load(vb.pp("embeddings"), config),
            DistilBertEncoder.load(vb.pp("encoder"), config),
        )
    except _LOAD_ERRORS as err:
        first_error = err

    try:
        return (
            DistilBertEmbeddings.load(vb.pp("distilbert.embeddings"), config),
            DistilBertEncoder.load(vb.pp("distilbert.transformer"), config),
        )
    except _LOAD_ERRORS:
        raise first_error from None


class DistilBertModel(Model):
    """DistilBERT encoder working on padded batches."""

    def __init__(
        self,
        embeddings: DistilBertEmbeddings,
        encoder: DistilBertEncoder,
        pool: Pool,
        splade: DistilBertSpladeHead | None,
        num_attention_heads: int,
        dtype=np.float32,
    ):
        self.embeddings = embeddings
        self.encoder = encoder
        self.pool = pool
        self.splade = splade
        self.num_attention_heads = num_attention_heads
        self.dtype = np.dtype(dtype)

    @classmethod
    def load(
        cls, vb: VarBuilder, config: DistilBertConfig, model_type: ModelType
    ) -> "DistilBertModel":
        if model_type.is_classifier():
            raise ModelError("`classifier` model type is not supported for DistilBert")
        pool = model_type.pool

        embeddings, encoder = _load_trunk(vb, config)
        splade = DistilBertSpladeHead.load(vb, config) if pool is Pool.SPLADE else None

        return cls(embeddings, encoder, pool, splade, config.n_heads, vb.dtype)

    def forward(self, batch: Batch) -> tuple[np.ndarray | None, np.ndarray | None]:
        """Return ``(pooled, raw)`` embeddings; either is ``None`` when not requested."""
        batch_size = len(batch)
        max_length = batch.max_length
        lengths = [end - start for start, end in pairwise(batch.cumulative_seq_lengths)]

        attention_bias = None
        attention_mask = None
        masking = False

        if batch_size > 1:
            shape = (batch_size, max_length)
            input_ids = np.zeros(shape, dtype=np.int64)
            position_ids = np.zeros(shape, dtype=np.int64)
            mask = np.zeros(shape, dtype=bool)

            for row, (start, end) in enumerate(pairwise(batch.cumulative_seq_lengths)):
                n = end - start
                input_ids[row, :n] = batch.input_ids[start:end]
                position_ids[row, :n] = batch.position_ids[start:end]
                mask[row, :n] = True

            masking = any(n < max_length for n in lengths)
            if masking:
                # The mask is only needed for mean pooling; the bias covers attention.
                if self.pool is Pool.MEAN:
                    attention_mask = mask[:, :, np.newaxis].astype(self.dtype)
                bias = np.where(mask, 0.0, -np.inf).astype(self.dtype)
                attention_bias = np.broadcast_to(
                    bias[:, np.newaxis, np.newaxis, :],
                    (batch_size, self.num_attention_heads, max_length, max_length),
                )
            input_lengths = np.asarray(lengths, dtype=self.dtype).reshape(batch_size, 1)
        else:
            shape = (1, max_length)
            input_ids = np.asarray(batch.input_ids, dtype=np.int64).reshape(shape)
            position_ids = np.asarray(batch.position_ids, dtype=np.int64).reshape(shape)
            input_lengths = np.full((1, 1), max_length, dtype=self.dtype)

        embedding_output = self.embeddings.forward(input_ids, position_ids)
        outputs = self.encoder.forward(embedding_output, attention_bias)

        has_pooling_requests = bool(batch.pooled_indices)
        has_raw_requests = bool(batch.raw_indices)

        pooled_embeddings = None
        if has_pooling_requests:
            selected = outputs
            selected_mask = attention_mask
            selected_lengths = input_lengths
            if has_raw_requests:
                pooled_indices = np.asarray(batch.pooled_indices, dtype=np.int64)
                selected = outputs[pooled_indices]
                selected_lengths = input_lengths[pooled_indices]
                if selected_mask is not None:
                    selected_mask = selected_mask[pooled_indices]

            if self.pool is Pool.CLS:
                pooled_embeddings = selected[:, 0]
            elif self.pool is Pool.MEAN:
                if selected_mask is not None:
                    selected = selected * selected_mask
                pooled_embeddings = selected.sum(axis=1) / selected_lengths
            else:
                if self.splade is None:
                    raise ModelError("splade head is not loaded")
                relu_log = self.splade.forward(selected)
                if selected_mask is not None:
                    relu_log = relu_log * selected_mask
                pooled_embeddings = relu_log.max(axis=1)

        raw_embeddings = None
        if has_raw_requests:
            b, length, hidden = outputs.shape
            flat = outputs.reshape(b * length, hidden)
            # Padding tokens are dropped whenever the batch holds padded members
            # or members that are pooled rather than returned raw.
            if batch_size > 1 and (masking or has_pooling_requests):
                final_indices = np.concatenate(
                    [
                        np.arange(i * max_length, i * max_length + lengths[i])
                        for i in batch.raw_indices
                    ]
                )
                flat = flat[final_indices]
            raw_embeddings = flat

        return pooled_embeddings, raw_embeddings

    def is_padded(self) -> bool:
        return True

    def embed(self, batch: Batch) -> tuple[np.ndarray | None, np.ndarray | None]:
        return self.forward(batch)