"""Reading named weight tensors from safetensors files."""

from __future__ import annotations

import json
import struct
from collections.abc import Iterable, Mapping
from os import PathLike
from pathlib import Path

import numpy as np

_DTYPES = {
    "F64": "<f8",
    "F32": "<f4",
    "F16": "<f2",
    "I64": "<i8",
    "I32": "<i4",
    "I16": "<i2",
    "I8": "i1",
    "U64": "<u8",
    "U32": "<u4",
    "U16": "<u2",
    "U8": "u1",
    "BOOL": "?",
}


class WeightError(Exception):
    """Raised when weights cannot be read or a tensor is missing or malformed."""


def _decode(raw: bytes, dtype_name: str, shape: tuple[int, ...]) -> np.ndarray:
    if dtype_name == "BF16":
        halves = np.frombuffer(raw, dtype="<u2").astype(np.uint32) << 16
        array = halves.view(np.float32)
    elif dtype_name in _DTYPES:
        array = np.frombuffer(raw, dtype=_DTYPES[dtype_name])
    else:
        raise WeightError(f"unsupported dtype {dtype_name}")
    try:
        return array.reshape(shape).copy()
    except ValueError as err:
        raise WeightError(f"data does not match shape {shape}") from err


def load_safetensors(path: str | PathLike) -> dict[str, np.ndarray]:
    """Load every tensor of a safetensors file into a dict of arrays."""
    data = Path(path).read_bytes()
    if len(data) < 8:
        raise WeightError(f"{path}: file too short")
    (header_len,) = struct.unpack("<Q", data[:8])
    if 8 + header_len > len(data):
        raise WeightError(f"{path}: header length exceeds file size")
    try:
        header = json.loads(data[8 : 8 + header_len].decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as err:
        raise WeightError(f"{path}: invalid header") from err
    body = data[8 + header_len :]

    tensors: dict[str, np.ndarray] = {}
    for name, info in header.items():
        if name == "__metadata__":
            continue
        try:
            begin, end = info["data_offsets"]
            shape = tuple(info["shape"])
            dtype_name = info["dtype"]
        except (KeyError, TypeError, ValueError) as err:
            raise WeightError(f"{path}: malformed entry for {name}") from err
        if not 0 <= begin <= end <= len(body):
            raise WeightError(f"{path}: offsets of {name} out of range")
        tensors[name] = _decode(body[begin:end], dtype_name, shape)
    return tensors


class VarBuilder:
    """Hands out named tensors under a dotted prefix, converted to one dtype."""

    def __init__(self, tensors: Mapping[str, np.ndarray], dtype=np.float32, prefix: str = ""):
        self.tensors = tensors
        self.dtype = np.dtype(dtype)
        self.prefix = prefix

    @classmethod
    def from_safetensors(cls, paths: Iterable[str | PathLike], dtype=np.float32) -> "VarBuilder":
        tensors: dict[str, np.ndarray] = {}
        for path in paths:
            tensors.update(load_safetensors(path))
        return cls(tensors, dtype)

    def _full_name(self, name: str) -> str:
        return f"{self.prefix}.{name}" if self.prefix else name

    def pp(self, name: str) -> "VarBuilder":
        """Return a builder whose names are nested under ``name``."""
        return VarBuilder(self.tensors, self.dtype, self._full_name(name))

    def contains(self, name: str) -> bool:
        return self._full_name(name) in self.tensors

    def get(self, shape, name: str) -> np.ndarray:
        """Return the tensor ``name``, checking its shape."""
        full_name = self._full_name(name)
        try:
            tensor = self.tensors[full_name]
        except KeyError:
            raise WeightError(f"cannot find tensor {full_name}") from None
        expected = (shape,) if isinstance(shape, int) else tuple(shape)
        if tuple(tensor.shape) != expected:
            raise WeightError(
                f"shape mismatch for {full_name}, got {tuple(tensor.shape)}, expected {expected}"
            )
        return np.asarray(tensor).astype(self.dtype)