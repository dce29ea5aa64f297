"""Dense building blocks: activations, linear projection and layer norm."""

from __future__ import annotations

import enum
import math

import numpy as np

from .weights import VarBuilder, WeightError

_SQRT_2_OVER_PI = math.sqrt(2.0 / math.pi)


def gelu(x: np.ndarray) -> np.ndarray:
    """GELU, tanh approximation."""
    return 0.5 * x * (1.0 + np.tanh(_SQRT_2_OVER_PI * (x + 0.044715 * x**3)))


def relu(x: np.ndarray) -> np.ndarray:
    return np.maximum(x, 0)


def _silu(x: np.ndarray) -> np.ndarray:
    return x / (1.0 + np.exp(-x))


def swiglu(x: np.ndarray) -> np.ndarray:
    """Split the last axis in two halves and return ``silu(a) * b``."""
    a, b = np.split(x, 2, axis=-1)
    return _silu(a) * b


def softmax_last_dim(x: np.ndarray) -> np.ndarray:
    shifted = x - np.max(x, axis=-1, keepdims=True)
    exp = np.exp(shifted)
    return exp / np.sum(exp, axis=-1, keepdims=True)


class HiddenAct(enum.Enum):
    GELU = "gelu"
    RELU = "relu"
    SWIGLU = "swiglu"

    @classmethod
    def parse(cls, value: str) -> "HiddenAct":
        try:
            return cls(value)
        except ValueError:
            raise ValueError(f"unknown activation {value!r}") from None

    def apply(self, x: np.ndarray) -> np.ndarray:
        if self is HiddenAct.GELU:
            return gelu(x)
        if self is HiddenAct.RELU:
            return relu(x)
        return swiglu(x)


class Linear:
    """``y = act(x @ weight.T + bias)``, with weight shaped ``(out, in)``."""

    def __init__(self, weight: np.ndarray, bias: np.ndarray | None = None, act: HiddenAct | None = None):
        self.weight = weight
        self.bias = bias
        self.act = act

    def forward(self, x: np.ndarray) -> np.ndarray:
        out = np.matmul(x, self.weight.T)
        if self.bias is not None:
            out = out + self.bias
        if self.act is not None:
            out = self.act.apply(out)
        return out


class LayerNorm:
    """Layer normalisation over the last axis, with an optional residual add."""

    def __init__(self, weight: np.ndarray, bias: np.ndarray, epsilon: float):
        self.weight = weight
        self.bias = bias
        self.epsilon = epsilon

    @classmethod
    def load(cls, vb: VarBuilder, hidden_size: int, epsilon: float) -> "LayerNorm":
        def first(*names: str) -> np.ndarray:
            error: WeightError | None = None
            for name in names:
                try:
                    return vb.get(hidden_size, name)
                except WeightError as err:
                    error = err
            assert error is not None
            raise error

        return cls(first("weight", "gamma"), first("bias", "beta"), epsilon)

    def forward(self, hidden_states: np.ndarray, residual: np.ndarray | None = None) -> np.ndarray:
        if residual is not None:
            hidden_states = hidden_states + residual
        original_dtype = hidden_states.dtype
        internal = np.float32 if original_dtype == np.float16 else original_dtype
        x = hidden_states.astype(internal)
        x = x - x.mean(axis=-1, keepdims=True)
        variance = np.square(x).mean(axis=-1, keepdims=True)
        normed = x / np.sqrt(variance + self.epsilon)
        return normed.astype(original_dtype) * self.weight + self.bias