import math

import numpy as np
import pytest

from encoderkit.distilbert_layers import (
    DistilBertAttention,
    DistilBertBlock,
    DistilBertConfig,
    DistilBertEmbeddings,
    DistilBertEncoder,
    DistilBertMLP,
    DistilBertSpladeHead,
)
from encoderkit.layers import HiddenAct, LayerNorm
from encoderkit.weights import VarBuilder, WeightError

RAW_CONFIG = {
    "vocab_size": 11,
    "dim": 8,
    "n_layers": 2,
    "n_heads": 2,
    "hidden_dim": 12,
    "activation": "gelu",
    "max_position_embeddings": 16,
    "pad_token_id": 0,
    "model_type": "distilbert",
    "dropout": 0.1,
}


def make_config(**overrides):
    data = dict(RAW_CONFIG)
    data.update(overrides)
    return DistilBertConfig.from_dict(data)


def _linear(tensors, name, out_size, in_size, rng):
    tensors[f"{name}.weight"] = rng.normal(size=(out_size, in_size))
    tensors[f"{name}.bias"] = rng.normal(size=(out_size,))


def _norm(tensors, name, size):
    tensors[f"{name}.weight"] = np.ones(size)
    tensors[f"{name}.bias"] = np.zeros(size)


def make_tensors(config, seed=0):
    rng = np.random.default_rng(seed)
    d, h, v = config.dim, config.hidden_dim, config.vocab_size
    t = {}
    t["embeddings.word_embeddings.weight"] = rng.normal(size=(v, d))
    t["embeddings.position_embeddings.weight"] = rng.normal(
        size=(config.max_position_embeddings, d)
    )
    _norm(t, "embeddings.LayerNorm", d)
    for i in range(config.n_layers):
        p = f"encoder.layer.{i}"
        for lin in ("q_lin", "k_lin", "v_lin", "out_lin"):
            _linear(t, f"{p}.attention.{lin}", d, d, rng)
        _linear(t, f"{p}.ffn.lin1", h, d, rng)
        _linear(t, f"{p}.ffn.lin2", d, h, rng)
        _norm(t, f"{p}.sa_layer_norm", d)
        _norm(t, f"{p}.output_layer_norm", d)
    _linear(t, "vocab_transform", d, d, rng)
    _linear(t, "vocab_projector", v, d, rng)
    _norm(t, "vocab_layer_norm", d)
    return t


def make_vb(config, seed=0):
    return VarBuilder(make_tensors(config, seed), np.float64)


def test_config_from_dict_reads_fields():
    config = make_config()
    assert config.vocab_size == 11
    assert config.dim == 8
    assert config.n_layers == 2
    assert config.n_heads == 2
    assert config.hidden_dim == 12
    assert config.activation is HiddenAct.GELU
    assert config.max_position_embeddings == 16
    assert config.model_type == "distilbert"


def test_config_model_type_optional():
    data = {k: v for k, v in RAW_CONFIG.items() if k != "model_type"}
    assert DistilBertConfig.from_dict(data).model_type is None


def test_config_missing_field_raises():
    data = {k: v for k, v in RAW_CONFIG.items() if k != "dim"}
    with pytest.raises(ValueError, match="dim"):
        DistilBertConfig.from_dict(data)


def test_config_unknown_activation_raises():
    with pytest.raises(ValueError):
        make_config(activation="tanh")


def test_embeddings_forward_matches_layer_norm_of_sum():
    config = make_config()
    tensors = make_tensors(config)
    emb = DistilBertEmbeddings.load(VarBuilder(tensors, np.float64).pp("embeddings"), config)
    ids = np.array([[3, 5, 7]])
    pos = np.array([[0, 1, 2]])
    out = emb.forward(ids, pos)
    assert out.shape == (1, 3, 8)
    norm = LayerNorm(np.ones(8), np.zeros(8), 1e-12)
    expected = norm.forward(
        tensors["embeddings.word_embeddings.weight"][ids],
        tensors["embeddings.position_embeddings.weight"][pos],
    )
    np.testing.assert_allclose(out, expected)
    np.testing.assert_allclose(out.mean(axis=-1), 0.0, atol=1e-9)
    np.testing.assert_allclose(out.var(axis=-1), 1.0, atol=1e-6)


def test_embeddings_missing_weight_raises():
    config = make_config()
    tensors = make_tensors(config)
    del tensors["embeddings.position_embeddings.weight"]
    with pytest.raises(WeightError):
        DistilBertEmbeddings.load(VarBuilder(tensors).pp("embeddings"), config)


def test_attention_softmax_scale_and_shape():
    config = make_config()
    attn = DistilBertAttention.load(make_vb(config).pp("encoder.layer.0.attention"), config)
    assert attn.attention_head_size == 4
    assert math.isclose(attn.softmax_scale, 0.5)
    x = np.random.default_rng(1).normal(size=(2, 5, 8))
    assert attn.forward(x).shape == (2, 5, 8)


def test_attention_with_constant_values_is_uniform():
    config = make_config()
    tensors = make_tensors(config)
    p = "encoder.layer.0.attention"
    for lin in ("q_lin", "k_lin", "v_lin"):
        tensors[f"{p}.{lin}.weight"] = np.zeros((8, 8))
    attn = DistilBertAttention.load(VarBuilder(tensors, np.float64).pp(p), config)
    x = np.random.default_rng(2).normal(size=(1, 4, 8))
    out = attn.forward(x)
    expected = attn.dense.forward(tensors[f"{p}.v_lin.bias"])
    for row in out[0]:
        np.testing.assert_allclose(row, expected)


def test_attention_bias_masks_padded_position():
    config = make_config()
    attn = DistilBertAttention.load(make_vb(config).pp("encoder.layer.0.attention"), config)
    rng = np.random.default_rng(3)
    x = rng.normal(size=(1, 4, 8))
    bias = np.zeros((1, 2, 4, 4))
    bias[..., -1] = -np.inf
    changed = x.copy()
    changed[0, -1] = rng.normal(size=8)
    out_a = attn.forward(x, bias)
    out_b = attn.forward(changed, bias)
    np.testing.assert_allclose(out_a[0, :-1], out_b[0, :-1])


def test_mlp_with_zero_output_weight_returns_bias():
    config = make_config()
    tensors = make_tensors(config)
    tensors["encoder.layer.0.ffn.lin2.weight"] = np.zeros((8, 12))
    mlp = DistilBertMLP.load(VarBuilder(tensors, np.float64).pp("encoder.layer.0.ffn"), config)
    x = np.random.default_rng(4).normal(size=(1, 3, 8))
    out = mlp.forward(x)
    for row in out[0]:
        np.testing.assert_allclose(row, tensors["encoder.layer.0.ffn.lin2.bias"])


def test_mlp_hidden_width():
    config = make_config()
    mlp = DistilBertMLP.load(make_vb(config).pp("encoder.layer.0.ffn"), config)
    assert mlp.lin1.weight.shape == (12, 8)
    assert mlp.lin1.act is HiddenAct.GELU
    assert mlp.lin2.weight.shape == (8, 12)


def test_block_output_is_normalised():
    config = make_config()
    block = DistilBertBlock.load(make_vb(config).pp("encoder.layer.0"), config)
    x = np.random.default_rng(5).normal(size=(2, 3, 8))
    out = block.forward(x)
    assert out.shape == (2, 3, 8)
    np.testing.assert_allclose(out.mean(axis=-1), 0.0, atol=1e-9)
    np.testing.assert_allclose(out.var(axis=-1), 1.0, atol=1e-6)


def test_block_output_norm_bias_only():
    config = make_config()
    tensors = make_tensors(config)
    shift = np.arange(8, dtype=np.float64)
    tensors["encoder.layer.0.output_layer_norm.weight"] = np.zeros(8)
    tensors["encoder.layer.0.output_layer_norm.bias"] = shift
    block = DistilBertBlock.load(VarBuilder(tensors, np.float64).pp("encoder.layer.0"), config)
    out = block.forward(np.random.default_rng(6).normal(size=(1, 2, 8)))
    for row in out[0]:
        np.testing.assert_allclose(row, shift)


def test_encoder_loads_all_layers_and_chains_them():
    config = make_config()
    vb = make_vb(config).pp("encoder")
    encoder = DistilBertEncoder.load(vb, config)
    assert len(encoder.layers) == 2
    x = np.random.default_rng(7).normal(size=(1, 3, 8))
    expected = encoder.layers[1].forward(encoder.layers[0].forward(x))
    np.testing.assert_allclose(encoder.forward(x), expected)


def test_encoder_without_layers_is_identity():
    config = make_config(n_layers=0)
    encoder = DistilBertEncoder.load(make_vb(config).pp("encoder"), config)
    x = np.random.default_rng(8).normal(size=(1, 3, 8))
    np.testing.assert_array_equal(encoder.forward(x), x)


def test_encoder_missing_layer_raises():
    config = make_config(n_layers=3)
    with pytest.raises(WeightError):
        DistilBertEncoder.load(make_vb(make_config()).pp("encoder"), config)


def test_splade_head_is_non_negative():
    config = make_config()
    head = DistilBertSpladeHead.load(make_vb(config), config)
    out = head.forward(np.random.default_rng(9).normal(size=(2, 3, 8)))
    assert out.shape == (2, 3, 11)
    assert np.all(out >= 0.0)


def test_splade_head_log1p_of_relu_bias():
    config = make_config(vocab_size=2)
    tensors = make_tensors(config)
    tensors["vocab_projector.weight"] = np.zeros((2, 8))
    tensors["vocab_projector.bias"] = np.array([math.e - 1.0, -3.0])
    head = DistilBertSpladeHead.load(VarBuilder(tensors, np.float64), config)
    out = head.forward(np.random.default_rng(10).normal(size=(1, 2, 8)))
    for row in out[0]:
        np.testing.assert_allclose(row, [1.0, 0.0], atol=1e-12)


def test_splade_head_missing_weight_raises():
    config = make_config()
    tensors = make_tensors(config)
    del tensors["vocab_layer_norm.weight"]
    with pytest.raises(WeightError):
        DistilBertSpladeHead.load(VarBuilder(tensors), config)