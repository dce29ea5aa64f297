# encoderkit

Inference for BERT-family encoder models, written with NumPy. It reads a model
directory holding a `config.json` and `model.safetensors` weights, and turns
batches of token ids into sentence embeddings, per-token embeddings, SPLADE
sparse vectors or classifier scores.

Supported `model_type` values in `config.json`:

- `bert` (absolute position embeddings only), loaded as `BertModel`
- `roberta`, `xlm-roberta` and `camembert`, loaded with `BertModel.load_roberta`
- `distilbert`, loaded as `DistilBertModel` (embedding models only)

Pooling strategies are CLS, mean and SPLADE (`encoderkit.base.Pool`).
Classifier models (`ModelType.classifier()`) always pool on the first token
and are available for the BERT and RoBERTa families.

## Installation

```
pip install encoderkit
```

To run the test suite:

```
pip install "encoderkit[test]"
pytest
```

## Usage

```python
from encoderkit.backend import EmbeddingBackend
from encoderkit.base import Batch, ModelType, Pool

backend = EmbeddingBackend("path/to/model", "float32", ModelType.embedding(Pool.MEAN))

batch = Batch.from_sequences(
    [[101, 7592, 102], [101, 2088, 2003, 102]],
    pooled_indices=[0],
    raw_indices=[1],
)
embeddings = backend.embed(batch)
# embeddings[0] is one pooled vector, embeddings[1] one vector per token
```

`Batch.from_sequences` concatenates the sequences, numbers positions from zero
in each, and sets all token type ids to zero. When `pooled_indices` is not
given, every member not listed in `raw_indices` is pooled.

`EmbeddingBackend.embed` returns a dict from each member's index to its
embedding: a pooled vector for members in `pooled_indices`, a list of
per-token vectors for members in `raw_indices`. For classifier models,
`EmbeddingBackend.predict` returns a dict from each member's index to its
scores.

Supported dtypes are `"float32"` and `"float16"` (`parse_dtype`). Layer norm
is computed in float32 for float16 inputs. `max_batch_size()` returns 4, and
`is_padded()` reports whether the model works on padded batches (both models
here do).

Errors raised while loading a model are `StartError`; errors raised while
running one are `InferenceError`. Both derive from `BackendError`.

## Building blocks

The lower layers can be used on their own:

- `encoderkit.weights`: `load_safetensors` reads a safetensors file into a dict
  of arrays (BF16 is widened to float32); `VarBuilder` hands out tensors by
  dotted name (`pp`, `get`, `contains`), checking shapes and converting to one
  dtype. Missing or malformed tensors raise `WeightError`.
- `encoderkit.layers`: `Linear`, `LayerNorm`, `HiddenAct`, and the functions
  `gelu` (tanh approximation), `relu`, `swiglu` and `softmax_last_dim`.
- `encoderkit.bert_layers` and `encoderkit.distilbert_layers`: the configs
  (`BertConfig.from_dict`, `DistilBertConfig.from_dict`), embeddings,
  attention, encoder stacks, classification heads and SPLADE heads.
- `encoderkit.bert.BertModel` and `encoderkit.distilbert.DistilBertModel`:
  full models returning `(pooled, raw)` arrays from `forward`.
- `encoderkit.alibi`: ALiBi head slopes (`alibi_head_slopes`) and bias tensors
  (`build_alibi_tensor`).
- `encoderkit.compute_cap`: `compute_cap_matching` tells whether kernels built
  for one CUDA compute capability run on another; `detect_compute_cap` reads
  the capability from `CUDA_COMPUTE_CAP` or from `nvidia-smi`, raising
  `ComputeCapError` when it cannot.

## What it does not do

- It runs on the CPU only; the compute-capability helpers only report, they
  do not select a GPU.
- It reads `model.safetensors` only; `pytorch_model.bin` weights are refused.
- BERT configs with ALiBi position embeddings and `nomic_bert` models are
  refused at start-up.
- It has no tokenizer: batches are built from token ids.
- It has no command line and no server; it is a library.