"""ALiBi (attention with linear biases) slopes and bias tensors."""

from __future__ import annotations

import math

import numpy as np


def get_slopes_power_of_2(n: int) -> list[float]:
    """Return the geometric slope sequence for ``n`` heads, ``n`` a power of two."""
    start = 2.0 ** (-(2.0 ** (-(math.log2(n) - 3.0))))
    return [start * start**i for i in range(n)]


def alibi_head_slopes(num_attention_heads: int) -> list[float]:
    """Return one ALiBi slope per attention head."""
    exponent = math.log2(num_attention_heads)
    if exponent == math.floor(exponent):
        return get_slopes_power_of_2(num_attention_heads)

    closest_power_of_2 = 2 ** math.floor(exponent)
    slopes = get_slopes_power_of_2(closest_power_of_2)
    additional = get_slopes_power_of_2(2 * closest_power_of_2)[::2]
    slopes.extend(additional[: num_attention_heads - closest_power_of_2])
    return slopes


def build_alibi_tensor(
    num_positions: int, num_heads: int, dtype=np.float32
) -> np.ndarray:
    """Build the ALiBi bias of shape ``(1, num_heads, num_positions, num_positions)``."""
    positions = np.arange(num_positions, dtype=np.float64)
    relative = np.abs(positions[np.newaxis, :] - positions[:, np.newaxis])
    slopes = -np.asarray(alibi_head_slopes(num_heads), dtype=np.float64).reshape(
        num_heads, 1, 1
    )
    alibi = relative[np.newaxis, :, :] * slopes
    return alibi.reshape(1, num_heads, num_positions, num_positions).astype(dtype)