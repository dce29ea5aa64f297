"""Loading an encoder from a model directory and serving embed and predict calls."""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from itertools import pairwise
from os import PathLike
from pathlib import Path
from typing import Any

import numpy as np

from .base import Batch, Model, ModelError, ModelType
from .bert import BertModel
from .bert_layers import BertConfig, PositionEmbeddingType
from .distilbert import DistilBertModel
from .distilbert_layers import DistilBertConfig
from .weights import VarBuilder, WeightError

logger = logging.getLogger(__name__)

_DEVICE = "cpu"
_CPU_MAX_BATCH_SIZE = 4

_BERT_FAMILY = ("bert", "xlm-roberta", "camembert", "roberta")
_ROBERTA_FAMILY = ("xlm-roberta", "camembert", "roberta")
_UNSUPPORTED = ("nomic_bert",)


class BackendError(Exception):
    """Base class of backend failures."""


class StartError(BackendError):
    """Raised when the backend cannot be started."""


class InferenceError(BackendError):
    """Raised when running a batch through the model fails."""


def parse_dtype(name: str) -> np.dtype:
    """Map a dtype name to the numpy dtype the weights are loaded in."""
    if name == "float32":
        return np.dtype(np.float32)
    if name == "float16":
        return np.dtype(np.float16)
    raise StartError(f"DType {name} is not supported")


def _parse_config(data: Any) -> tuple[str, BertConfig | DistilBertConfig]:
    if not isinstance(data, Mapping):
        raise ValueError("config must be a JSON object")
    if "model_type" not in data:
        raise ValueError("missing field `model_type`")
    model_type = data["model_type"]
    if model_type in _BERT_FAMILY:
        return model_type, BertConfig.from_dict(data)
    if model_type == "distilbert":
        return model_type, DistilBertConfig.from_dict(data)
    if model_type in _UNSUPPORTED:
        raise ValueError(f"model type `{model_type}` is not available in this backend")
    raise ValueError(f"unknown variant `{model_type}`")


def load_config(model_path: str | PathLike) -> tuple[str, BertConfig | DistilBertConfig]:
    """Read ``config.json`` and return ``(model_type, config)``."""
    try:
        text = (Path(model_path) / "config.json").read_text(encoding="utf-8")
    except OSError as err:
        raise StartError(str(err)) from err
    try:
        return _parse_config(json.loads(text))
    except (ValueError, KeyError, TypeError) as err:
        raise StartError(f"Model is not supported: {err}") from err


def _var_builder(model_path: Path, dtype: np.dtype) -> VarBuilder:
    safetensors_path = model_path / "model.safetensors"
    if not safetensors_path.exists():
        raise StartError(
            f"cannot read {model_path / 'pytorch_model.bin'}: only safetensors weights are supported"
        )
    try:
        return VarBuilder.from_safetensors([safetensors_path], dtype)
    except (OSError, WeightError) as err:
        raise StartError(str(err)) from err


def _build_model(
    family: str, config: BertConfig | DistilBertConfig, vb: VarBuilder, model_type: ModelType
) -> Model:
    if family == "bert":
        assert isinstance(config, BertConfig)
        if config.position_embedding_type is PositionEmbeddingType.ALIBI:
            raise StartError("JinaBertModel is not available in this backend")
        logger.info("Starting Bert model on %s", _DEVICE)
        return BertModel.load(vb, config, model_type)
    if family in _ROBERTA_FAMILY:
        assert isinstance(config, BertConfig)
        logger.info("Starting Bert model on %s", _DEVICE)
        return BertModel.load_roberta(vb, config, model_type)
    assert isinstance(config, DistilBertConfig)
    logger.info("Starting DistilBertModel model on %s", _DEVICE)
    return DistilBertModel.load(vb, config, model_type)


class EmbeddingBackend:
    """An encoder model loaded from a directory, running on the CPU."""

    def __init__(self, model_path: str | PathLike, dtype: str, model_type: ModelType):
        path = Path(model_path)
        family, config = load_config(path)
        np_dtype = parse_dtype(dtype)
        vb = _var_builder(path, np_dtype)
        try:
            self.model = _build_model(family, config, vb, model_type)
        except (WeightError, ModelError, ValueError) as err:
            raise StartError(str(err)) from err
        self.device = _DEVICE

    def max_batch_size(self) -> int | None:
        """Batches are limited to four members on the CPU."""
        return _CPU_MAX_BATCH_SIZE if self.device == "cpu" else None

    def health(self) -> None:
        return None

    def is_padded(self) -> bool:
        return self.model.is_padded()

    def embed(self, batch: Batch) -> dict[int, list[float] | list[list[float]]]:
        """Embed a batch.

        Pooled members map to one vector; raw members map to one vector per token.
        """
        pooled_indices = list(batch.pooled_indices)
        raw_indices = list(batch.raw_indices)
        input_lengths = [end - start for start, end in pairwise(batch.cumulative_seq_lengths)]

        try:
            pooled, raw = self.model.embed(batch)
        except (ModelError, ValueError, IndexError) as err:
            raise InferenceError(str(err)) from err

        pooled_rows = [] if pooled is None else np.asarray(pooled, dtype=np.float32).tolist()
        raw_rows = [] if raw is None else np.asarray(raw, dtype=np.float32).tolist()

        embeddings: dict[int, list[float] | list[list[float]]] = {}
        for index, row in zip(pooled_indices, pooled_rows):
            embeddings[index] = row

        offset = 0
        for index in raw_indices:
            length = input_lengths[index]
            embeddings[index] = raw_rows[offset : offset + length]
            offset += length
        return embeddings

    def predict(self, batch: Batch) -> dict[int, list[float]]:
        """Return the classifier scores of each batch member."""
        try:
            results = self.model.predict(batch)
        except (ModelError, ValueError, IndexError) as err:
            raise InferenceError(str(err)) from err
        rows = np.asarray(results, dtype=np.float32).tolist()
        return dict(enumerate(rows))