"""DistilBERT configuration and the layers a DistilBERT encoder is built from."""

from __future__ import annotations

import math
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

import numpy as np

from .layers import HiddenAct, LayerNorm, Linear, softmax_last_dim
from .weights import VarBuilder

LAYER_NORM_EPS = 1e-12

_REQUIRED = (
    "vocab_size",
    "dim",
    "n_layers",
    "n_heads",
    "hidden_dim",
    "activation",
    "max_position_embeddings",
    "pad_token_id",
)


@dataclass
class DistilBertConfig:
    vocab_size: int
    dim: int
    n_layers: int
    n_heads: int
    hidden_dim: int
    activation: HiddenAct
    max_position_embeddings: int
    pad_token_id: int
    model_type: str | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "DistilBertConfig":
        """Build a config from a ``config.json`` mapping; unknown keys are ignored."""
        missing = [key for key in _REQUIRED if key not in data]
        if missing:
            raise ValueError(f"missing field `{missing[0]}`")
        model_type = data.get("model_type")
        return cls(
            vocab_size=int(data["vocab_size"]),
            dim=int(data["dim"]),
            n_layers=int(data["n_layers"]),
            n_heads=int(data["n_heads"]),
            hidden_dim=int(data["hidden_dim"]),
            activation=HiddenAct.parse(data["activation"]),
            max_position_embeddings=int(data["max_position_embeddings"]),
            pad_token_id=int(data["pad_token_id"]),
            model_type=None if model_type is None else str(model_type),
        )


def _linear(vb: VarBuilder, out_size: int, in_size: int, act: HiddenAct | None = None) -> Linear:
    return Linear(vb.get((out_size, in_size), "weight"), vb.get(out_size, "bias"), act)


class DistilBertEmbeddings:
    """Word and absolute position embeddings followed by a layer norm."""

    def __init__(
        self,
        word_embeddings: np.ndarray,
        position_embeddings: np.ndarray,
        layer_norm: LayerNorm,
    ):
        self.word_embeddings = word_embeddings
        self.position_embeddings = position_embeddings
        self.layer_norm = layer_norm

    @classmethod
    def load(cls, vb: VarBuilder, config: DistilBertConfig) -> "DistilBertEmbeddings":
        return cls(
            vb.pp("word_embeddings").get((config.vocab_size, config.dim), "weight"),
            vb.pp("position_embeddings").get(
                (config.max_position_embeddings, config.dim), "weight"
            ),
            LayerNorm.load(vb.pp("LayerNorm"), config.dim, LAYER_NORM_EPS),
        )

    def forward(self, input_ids, position_ids) -> np.ndarray:
        inputs = self.word_embeddings[np.asarray(input_ids)]
        positions = self.position_embeddings[np.asarray(position_ids)]
        return self.layer_norm.forward(inputs, positions)


class DistilBertAttention:
    """Multi-head self-attention with a fused QKV projection and output projection."""

    def __init__(
        self,
        qkv_linear: Linear,
        dense: Linear,
        num_attention_heads: int,
        attention_head_size: int,
    ):
        self.qkv_linear = qkv_linear
        self.dense = dense
        self.num_attention_heads = num_attention_heads
        self.attention_head_size = attention_head_size
        self.softmax_scale = 1.0 / math.sqrt(attention_head_size)

    @classmethod
    def load(cls, vb: VarBuilder, config: DistilBertConfig) -> "DistilBertAttention":
        head_size = config.dim // config.n_heads
        all_head_size = config.n_heads * head_size
        hidden = config.dim

        parts = [vb.pp(name) for name in ("q_lin", "k_lin", "v_lin")]
        qkv_weight = np.concatenate([p.get((all_head_size, hidden), "weight") for p in parts])
        qkv_bias = np.concatenate([p.get(all_head_size, "bias") for p in parts])

        return cls(
            Linear(qkv_weight, qkv_bias),
            _linear(vb.pp("out_lin"), hidden, hidden),
            config.n_heads,
            head_size,
        )

    def forward(self, hidden_states: np.ndarray, attention_bias: np.ndarray | None = None) -> np.ndarray:
        qkv = self.qkv_linear.forward(hidden_states)
        qkv = qkv.reshape(
            *qkv.shape[:-1], self.num_attention_heads * 3, self.attention_head_size
        ).swapaxes(1, 2)
        query, key, value = np.split(qkv, 3, axis=1)

        scores = np.matmul(query, key.swapaxes(-1, -2)) * self.softmax_scale
        if attention_bias is not None:
            scores = scores + attention_bias
        probs = softmax_last_dim(scores)
        context = np.matmul(probs, value).swapaxes(1, 2)
        context = context.reshape(*context.shape[:-2], -1)

        return self.dense.forward(context)


class DistilBertMLP:
    """Two-layer feed-forward block with the configured activation in between."""

    def __init__(self, lin1: Linear, lin2: Linear):
        self.lin1 = lin1
        self.lin2 = lin2

    @classmethod
    def load(cls, vb: VarBuilder, config: DistilBertConfig) -> "DistilBertMLP":
        return cls(
            _linear(vb.pp("lin1"), config.hidden_dim, config.dim, config.activation),
            _linear(vb.pp("lin2"), config.dim, config.hidden_dim),
        )

    def forward(self, hidden_states: np.ndarray) -> np.ndarray:
        return self.lin2.forward(self.lin1.forward(hidden_states))


class DistilBertBlock:
    """Attention and feed-forward, each followed by a residual layer norm."""

    def __init__(
        self,
        attention: DistilBertAttention,
        mlp: DistilBertMLP,
        post_attention_layer_norm: LayerNorm,
        output_layer_norm: LayerNorm,
    ):
        self.attention = attention
        self.mlp = mlp
        self.post_attention_layer_norm = post_attention_layer_norm
        self.output_layer_norm = output_layer_norm

    @classmethod
    def load(cls, vb: VarBuilder, config: DistilBertConfig) -> "DistilBertBlock":
        return cls(
            DistilBertAttention.load(vb.pp("attention"), config),
            DistilBertMLP.load(vb.pp("ffn"), config),
            LayerNorm.load(vb.pp("sa_layer_norm"), config.dim, LAYER_NORM_EPS),
            LayerNorm.load(vb.pp("output_layer_norm"), config.dim, LAYER_NORM_EPS),
        )

    def forward(self, hidden_states: np.ndarray, attention_bias: np.ndarray | None = None) -> np.ndarray:
        attn_output = self.attention.forward(hidden_states, attention_bias)
        hidden_states = self.post_attention_layer_norm.forward(hidden_states, attn_output)
        mlp_out = self.mlp.forward(hidden_states)
        return self.output_layer_norm.forward(hidden_states, mlp_out)


class DistilBertEncoder:
    """A stack of ``DistilBertBlock``s."""

    def __init__(self, layers: list[DistilBertBlock]):
        self.layers = layers

    @classmethod
    def load(cls, vb: VarBuilder, config: DistilBertConfig) -> "DistilBertEncoder":
        return cls(
            [DistilBertBlock.load(vb.pp(f"layer.{index}"), config) for index in range(config.n_layers)]
        )

    def forward(self, hidden_states: np.ndarray, attention_bias: np.ndarray | None = None) -> np.ndarray:
        for layer in self.layers:
            hidden_states = layer.forward(hidden_states, attention_bias)
        return hidden_states


class DistilBertSpladeHead:
    """Masked-language-model head producing ``log(1 + relu(logits))``."""

    def __init__(self, vocab_transform: Linear, vocab_projector: Linear, vocab_layer_norm: LayerNorm):
        self.vocab_transform = vocab_transform
        self.vocab_projector = vocab_projector
        self.vocab_layer_norm = vocab_layer_norm

    @classmethod
    def load(cls, vb: VarBuilder, config: DistilBertConfig) -> "DistilBertSpladeHead":
        return cls(
            _linear(vb.pp("vocab_transform"), config.dim, config.dim, config.activation),
            _linear(vb.pp("vocab_projector"), config.vocab_size, config.dim, HiddenAct.RELU),
            LayerNorm.load(vb.pp("vocab_layer_norm"), config.dim, LAYER_NORM_EPS),
        )

    def forward(self, hidden_states: np.ndarray) -> np.ndarray:
        hidden_states = self.vocab_transform.forward(hidden_states)
        hidden_states = self.vocab_layer_norm.forward(hidden_states)
        hidden_states = self.vocab_projector.forward(hidden_states)
        return np.log(1.0 + hidden_states)