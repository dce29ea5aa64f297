"""BERT configuration and the layers a BERT encoder is built from."""

from __future__ import annotations

import enum
import math
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

import numpy as np

from .base import ModelError
from .layers import HiddenAct, LayerNorm, Linear, softmax_last_dim
from .weights import VarBuilder, WeightError


class PositionEmbeddingType(enum.Enum):
    ABSOLUTE = "absolute"
    ALIBI = "alibi"


_REQUIRED = (
    "vocab_size",
    "hidden_size",
    "num_hidden_layers",
    "num_attention_heads",
    "intermediate_size",
    "hidden_act",
    "hidden_dropout_prob",
    "max_position_embeddings",
    "type_vocab_size",
    "initializer_range",
    "layer_norm_eps",
    "pad_token_id",
)


@dataclass
class BertConfig:
    vocab_size: int
    hidden_size: int
    num_hidden_layers: int
    num_attention_heads: int
    intermediate_size: int
    hidden_act: HiddenAct
    hidden_dropout_prob: float
    max_position_embeddings: int
    type_vocab_size: int
    initializer_range: float
    layer_norm_eps: float
    pad_token_id: int
    position_embedding_type: PositionEmbeddingType = PositionEmbeddingType.ABSOLUTE
    use_cache: bool = False
    classifier_dropout: float | None = None
    id2label: dict[str, str] | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "BertConfig":
        """Build a config from a ``config.json`` mapping; unknown keys are ignored."""
        missing = [key for key in _REQUIRED if key not in data]
        if missing:
            raise ValueError(f"missing field `{missing[0]}`")

        position = data.get("position_embedding_type")
        try:
            position_type = (
                PositionEmbeddingType.ABSOLUTE
                if position is None
                else PositionEmbeddingType(position)
            )
        except ValueError:
            raise ValueError(f"unknown position embedding type {position!r}") from None

        id2label = data.get("id2label")
        return cls(
            vocab_size=int(data["vocab_size"]),
            hidden_size=int(data["hidden_size"]),
            num_hidden_layers=int(data["num_hidden_layers"]),
            num_attention_heads=int(data["num_attention_heads"]),
            intermediate_size=int(data["intermediate_size"]),
            hidden_act=HiddenAct.parse(data["hidden_act"]),
            hidden_dropout_prob=float(data["hidden_dropout_prob"]),
            max_position_embeddings=int(data["max_position_embeddings"]),
            type_vocab_size=int(data["type_vocab_size"]),
            initializer_range=float(data["initializer_range"]),
            layer_norm_eps=float(data["layer_norm_eps"]),
            pad_token_id=int(data["pad_token_id"]),
            position_embedding_type=position_type,
            use_cache=bool(data.get("use_cache", False)),
            classifier_dropout=(
                None
                if data.get("classifier_dropout") is None
                else float(data["classifier_dropout"])
            ),
            id2label=None if id2label is None else {str(k): str(v) for k, v in id2label.items()},
        )


def _linear(vb: VarBuilder, out_size: int, in_size: int, act: HiddenAct | None = None) -> Linear:
    return Linear(vb.get((out_size, in_size), "weight"), vb.get(out_size, "bias"), act)


class BertEmbeddings:
    """Word, token-type and absolute position embeddings followed by a layer norm."""

    def __init__(
        self,
        word_embeddings: np.ndarray,
        token_type_embeddings: np.ndarray,
        position_embeddings: np.ndarray,
        layer_norm: LayerNorm,
    ):
        self.word_embeddings = word_embeddings
        self.token_type_embeddings = token_type_embeddings
        self.position_embeddings = position_embeddings
        self.layer_norm = layer_norm

    @classmethod
    def load(cls, vb: VarBuilder, config: BertConfig) -> "BertEmbeddings":
        if config.position_embedding_type is not PositionEmbeddingType.ABSOLUTE:
            raise ModelError("Bert only supports absolute position embeddings")
        hidden = config.hidden_size
        return cls(
            vb.pp("word_embeddings").get((config.vocab_size, hidden), "weight"),
            vb.pp("token_type_embeddings").get((config.type_vocab_size, hidden), "weight"),
            vb.pp("position_embeddings").get(
                (config.max_position_embeddings, hidden), "weight"
            ),
            LayerNorm.load(vb.pp("LayerNorm"), hidden, config.layer_norm_eps),
        )

    def forward(self, input_ids, token_type_ids, position_ids) -> np.ndarray:
        inputs = self.word_embeddings[np.asarray(input_ids)]
        token_types = self.token_type_embeddings[np.asarray(token_type_ids)]
        positions = self.position_embeddings[np.asarray(position_ids)]
        return self.layer_norm.forward(inputs + token_types, positions)


class BertAttention:
    """Multi-head self-attention with a fused QKV projection and post layer norm."""

    def __init__(
        self,
        qkv_linear: Linear,
        dense: Linear,
        layer_norm: LayerNorm,
        num_attention_heads: int,
        attention_head_size: int,
    ):
        self.qkv_linear = qkv_linear
        self.dense = dense
        self.layer_norm = layer_norm
        self.num_attention_heads = num_attention_heads
        self.attention_head_size = attention_head_size
        self.softmax_scale = 1.0 / math.sqrt(attention_head_size)

    @classmethod
    def load(cls, vb: VarBuilder, config: BertConfig) -> "BertAttention":
        head_size = config.hidden_size // config.num_attention_heads
        all_head_size = config.num_attention_heads * head_size
        hidden = config.hidden_size

        parts = [vb.pp(f"self.{name}") for name in ("query", "key", "value")]
        qkv_weight = np.concatenate([p.get((all_head_size, hidden), "weight") for p in parts])
        qkv_bias = np.concatenate([p.get(all_head_size, "bias") for p in parts])

        output = vb.pp("output")
        return cls(
            Linear(qkv_weight, qkv_bias),
            _linear(output.pp("dense"), hidden, hidden),
            LayerNorm.load(output.pp("LayerNorm"), hidden, config.layer_norm_eps),
            config.num_attention_heads,
            head_size,
        )

    def forward(self, hidden_states: np.ndarray, attention_bias: np.ndarray | None = None) -> np.ndarray:
        residual = hidden_states
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

        hidden_states = self.dense.forward(context)
        return self.layer_norm.forward(hidden_states, residual)


class BertLayer:
    """Attention followed by the feed-forward block."""

    def __init__(self, attention: BertAttention, intermediate: Linear, output: Linear, layer_norm: LayerNorm):
        self.attention = attention
        self.intermediate = intermediate
        self.output = output
        self.layer_norm = layer_norm

    @classmethod
    def load(cls, vb: VarBuilder, config: BertConfig) -> "BertLayer":
        return cls(
            BertAttention.load(vb.pp("attention"), config),
            _linear(
                vb.pp("intermediate").pp("dense"),
                config.intermediate_size,
                config.hidden_size,
                config.hidden_act,
            ),
            _linear(vb.pp("output").pp("dense"), config.hidden_size, config.intermediate_size),
            LayerNorm.load(
                vb.pp("output").pp("LayerNorm"), config.hidden_size, config.layer_norm_eps
            ),
        )

    def forward(self, hidden_states: np.ndarray, attention_bias: np.ndarray | None = None) -> np.ndarray:
        hidden_states = self.attention.forward(hidden_states, attention_bias)
        residual = hidden_states
        hidden_states = self.intermediate.forward(hidden_states)
        hidden_states = self.output.forward(hidden_states)
        return self.layer_norm.forward(hidden_states, residual)


class BertEncoder:
    """A stack of ``BertLayer``s."""

    def __init__(self, layers: list[BertLayer]):
        self.layers = layers

    @classmethod
    def load(cls, vb: VarBuilder, config: BertConfig) -> "BertEncoder":
        return cls(
            [BertLayer.load(vb.pp(f"layer.{index}"), config) for index in range(config.num_hidden_layers)]
        )

    def forward(self, hidden_states: np.ndarray, attention_bias: np.ndarray | None = None) -> np.ndarray:
        for layer in self.layers:
            hidden_states = layer.forward(hidden_states, attention_bias)
        return hidden_states


def _num_classes(config: BertConfig) -> int:
    if config.id2label is None:
        raise ModelError("`id2label` must be set for classifier models")
    return len(config.id2label)


class BertClassificationHead:
    """Optional tanh pooler followed by a linear classifier."""

    def __init__(self, pooler: Linear | None, output: Linear):
        self.pooler = pooler
        self.output = output

    @classmethod
    def load(cls, vb: VarBuilder, config: BertConfig) -> "BertClassificationHead":
        n_classes = _num_classes(config)
        hidden = config.hidden_size
        try:
            pooler_weight = vb.pp("bert.pooler.dense").get((hidden, hidden), "weight")
        except WeightError:
            pooler = None
        else:
            pooler = Linear(pooler_weight, vb.pp("bert.pooler.dense").get(hidden, "bias"))
        return cls(pooler, _linear(vb.pp("classifier"), n_classes, hidden))

    def forward(self, hidden_states: np.ndarray) -> np.ndarray:
        hidden_states = hidden_states[:, np.newaxis]
        if self.pooler is not None:
            hidden_states = np.tanh(self.pooler.forward(hidden_states))
        return self.output.forward(hidden_states)[:, 0]


class RobertaClassificationHead:
    """Dense + tanh followed by an output projection."""

    def __init__(self, intermediate: Linear, output: Linear):
        self.intermediate = intermediate
        self.output = output

    @classmethod
    def load(cls, vb: VarBuilder, config: BertConfig) -> "RobertaClassificationHead":
        n_classes = _num_classes(config)
        hidden = config.hidden_size
        return cls(
            _linear(vb.pp("dense"), hidden, hidden),
            _linear(vb.pp("out_proj"), n_classes, hidden),
        )

    def forward(self, hidden_states: np.ndarray) -> np.ndarray:
        hidden_states = hidden_states[:, np.newaxis]
        hidden_states = np.tanh(self.intermediate.forward(hidden_states))
        return self.output.forward(hidden_states)[:, 0]


class BertSpladeHead:
    """Masked-language-model head producing ``log(1 + relu(logits))``."""

    def __init__(self, transform: Linear, transform_layer_norm: LayerNorm, decoder: Linear):
        self.transform = transform
        self.transform_layer_norm = transform_layer_norm
        self.decoder = decoder

    @classmethod
    def load(cls, vb: VarBuilder, config: BertConfig) -> "BertSpladeHead":
        vb = vb.pp("cls.predictions")
        hidden = config.hidden_size
        return cls(
            _linear(vb.pp("transform.dense"), hidden, hidden, config.hidden_act),
            LayerNorm.load(vb.pp("transform.LayerNorm"), hidden, config.layer_norm_eps),
            Linear(
                vb.pp("decoder").get((config.vocab_size, hidden), "weight"),
                vb.get(config.vocab_size, "bias"),
                HiddenAct.RELU,
            ),
        )

    @classmethod
    def load_roberta(cls, vb: VarBuilder, config: BertConfig) -> "BertSpladeHead":
        vb = vb.pp("lm_head")
        hidden = config.hidden_size
        return cls(
            _linear(vb.pp("dense"), hidden, hidden, HiddenAct.GELU),
            LayerNorm.load(vb.pp("layer_norm"), hidden, config.layer_norm_eps),
            Linear(
                vb.pp("decoder").get((config.vocab_size, hidden), "weight"),
                vb.get(config.vocab_size, "bias"),
                HiddenAct.RELU,
            ),
        )

    def forward(self, hidden_states: np.ndarray) -> np.ndarray:
        hidden_states = self.transform.forward(hidden_states)
        hidden_states = self.transform_layer_norm.forward(hidden_states)
        hidden_states = self.decoder.forward(hidden_states)
        return np.log(1.0 + hidden_states)