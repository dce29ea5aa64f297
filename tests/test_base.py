import pytest

from encoderkit.base import Batch, Model, ModelError, ModelType, Pool


class _Padded(Model):
    def is_padded(self):
        return True


def test_pool_parse():
    assert Pool.parse("cls") is Pool.CLS
    assert Pool.parse("MEAN") is Pool.MEAN
    assert Pool.parse("splade") is Pool.SPLADE
    with pytest.raises(ValueError):
        Pool.parse("max")


def test_model_type():
    assert ModelType.classifier().is_classifier()
    embedding = ModelType.embedding(Pool.MEAN)
    assert not embedding.is_classifier()
    assert embedding.pool is Pool.MEAN
    assert embedding == ModelType.embedding(Pool.MEAN)


def test_batch_from_sequences():
    batch = Batch.from_sequences([[101, 7, 102], [101, 102]])
    assert len(batch) == 2
    assert batch.input_ids == [101, 7, 102, 101, 102]
    assert batch.cumulative_seq_lengths == [0, 3, 5]
    assert batch.position_ids == [0, 1, 2, 0, 1]
    assert batch.token_type_ids == [0] * 5
    assert batch.max_length == 3
    assert batch.pooled_indices == [0, 1]
    assert batch.raw_indices == []


def test_batch_raw_indices_excluded_from_pooled():
    batch = Batch.from_sequences([[1], [2, 3], [4]], raw_indices=[1])
    assert batch.pooled_indices == [0, 2]
    assert batch.raw_indices == [1]


def test_batch_explicit_indices():
    batch = Batch.from_sequences([[1], [2]], pooled_indices=[1], raw_indices=[0])
    assert batch.pooled_indices == [1]
    assert batch.raw_indices == [0]


def test_batch_errors():
    with pytest.raises(ValueError):
        Batch.from_sequences([])
    with pytest.raises(ValueError):
        Batch.from_sequences([[1], []])
    with pytest.raises(ValueError):
        Batch.from_sequences([[1]], raw_indices=[3])


def test_model_defaults_raise():
    model = _Padded()
    batch = Batch.from_sequences([[1, 2]])
    assert model.is_padded() is True
    with pytest.raises(ModelError):
        model.embed(batch)
    with pytest.raises(ModelError):
        model.predict(batch)