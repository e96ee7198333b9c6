"""Tests for Q/K/V projection, output projection and the embedding table."""

import numpy as np
import pytest
import torch

from infini_mem import (
    EmbeddingTable,
    FixedPartitionProjection,
    InvalidConfiguration,
    LinearQKVProjection,
    TiledOutputProjection,
)


class TestFixedPartitionProjection:
    def test_numpy_partition(self):
        x = np.arange(18, dtype=np.float32).reshape(2, 9)
        q, k, v = FixedPartitionProjection(9)(x)
        np.testing.assert_array_equal(q, x[:, 0:3])
        np.testing.assert_array_equal(k, x[:, 3:6])
        np.testing.assert_array_equal(v, x[:, 6:9])

    def test_torch_partition(self):
        x = torch.randn(4, 6)
        q, k, v = FixedPartitionProjection(6)(x)
        assert q.shape == k.shape == v.shape == (4, 2)
        torch.testing.assert_close(torch.cat([q, k, v], dim=-1), x)

    def test_no_numeric_change(self):
        x = np.random.default_rng(0).normal(size=(5, 3)).astype(np.float32)
        q, k, v = FixedPartitionProjection(3)(x)
        np.testing.assert_array_equal(np.concatenate([q, k, v], axis=-1), x)

    @pytest.mark.parametrize("d_model", [0, 4, 11])
    def test_invalid_width(self, d_model):
        with pytest.raises(InvalidConfiguration):
            FixedPartitionProjection(d_model)

    def test_wrong_input_width(self):
        with pytest.raises(ValueError, match="last dimension"):
            FixedPartitionProjection(6)(np.zeros((2, 9)))


class TestLinearQKVProjection:
    def test_matches_matmul(self):
        rng = np.random.default_rng(1)
        w = [rng.normal(size=(6, 2)) for _ in range(3)]
        projection = LinearQKVProjection(*w)
        x = rng.normal(size=(4, 6)).astype(np.float32)

        for out, weight in zip(projection(x), w):
            np.testing.assert_allclose(out, x @ weight.astype(np.float32), rtol=1e-5)

    def test_torch_and_numpy_agree(self):
        projection = LinearQKVProjection.random(d_model=6, d_key=2, seed=3)
        x = np.random.default_rng(2).normal(size=(3, 6)).astype(np.float32)
        for a, b in zip(projection(x), projection(torch.from_numpy(x))):
            np.testing.assert_allclose(b.numpy(), a, rtol=1e-5, atol=1e-6)

    def test_mismatched_weights(self):
        with pytest.raises(InvalidConfiguration):
            LinearQKVProjection(np.zeros((6, 2)), np.zeros((6, 3)), np.zeros((6, 2)))


class TestTiledOutputProjection:
    def test_tiles_context(self):
        context = np.array([[1.0, 2.0]])
        np.testing.assert_array_equal(TiledOutputProjection(6)(context), [[1.0, 2.0, 1.0, 2.0, 1.0, 2.0]])

    def test_torch_input(self):
        out = TiledOutputProjection(3)(torch.ones(4, 1))
        assert out.shape == (4, 3)

    def test_width_check(self):
        with pytest.raises(ValueError, match="context width"):
            TiledOutputProjection(6)(np.zeros((1, 3)))


class TestEmbeddingTable:
    def test_random_range_and_shape(self):
        table = EmbeddingTable.random(100, 12, seed=0)
        assert table.weights.shape == (100, 12)
        assert table.weights.dtype == np.float32
        assert (np.abs(table.weights) <= 0.1).all()

    def test_seed_is_deterministic(self):
        a = EmbeddingTable.random(10, 3, seed=7)
        b = EmbeddingTable.random(10, 3, seed=7)
        np.testing.assert_array_equal(a.weights, b.weights)

    def test_lookup_modulo(self):
        table = EmbeddingTable(np.arange(15, dtype=np.float32).reshape(5, 3))
        out = table.lookup([0, 7, 2**64 + 1])
        # 2**64 == 1 (mod 5)
        np.testing.assert_array_equal(out, table.weights[[0, 2, 2]])

    def test_empty_lookup(self):
        table = EmbeddingTable.random(5, 3, seed=0)
        assert table.lookup([]).shape == (0, 3)

    def test_load(self, tmp_path):
        weights = np.random.default_rng(0).normal(size=(4, 6)).astype(np.float32)
        path = tmp_path / "emb.npy"
        np.save(path, weights)
        np.testing.assert_array_equal(EmbeddingTable.load(path).weights, weights)

    def test_load_rejects_non_array_file(self, tmp_path):
        path = tmp_path / "emb.npy"
        path.write_bytes(b"not an array")
        with pytest.raises(InvalidConfiguration, match="cannot load embedding table"):
            EmbeddingTable.load(path)

    def test_rejects_bad_shape(self):
        with pytest.raises(InvalidConfiguration):
            EmbeddingTable(np.zeros(5))
