"""Tests for SegmentOrchestrator."""

import numpy as np
import pytest
import torch

from infini_mem import (
    ComputeContext,
    DeviceBackend,
    EmbeddingTable,
    InvalidConfiguration,
    NumericDegeneracy,
    ReferenceBackend,
    SegmentOrchestrator,
    StreamState,
    TransferFailure,
    default_engine_config,
)

BACKENDS = [
    "reference",
    "cpu",
    pytest.param("cuda", marks=pytest.mark.skipif(not torch.cuda.is_available(), reason="CUDA not available")),
]


def make_orchestrator(kind, config, table):
    if kind == "reference":
        backend = ReferenceBackend(config)
    else:
        backend = DeviceBackend(config, ComputeContext.create(kind))
    return SegmentOrchestrator(config, backend, table)


def scenario_config():
    """segment_size=4, d_model=3, one head, vocabulary of 10."""
    return default_engine_config(segment_size=4, embed_dim=3, vocab_size=10, num_heads=1)


def scenario_table() -> EmbeddingTable:
    """Row t = [q, k, v] for token t."""
    t = np.arange(10, dtype=np.float64)
    return EmbeddingTable(np.stack([0.1 * t - 0.3, 0.2 - 0.07 * t, 0.05 * t + 0.1], axis=1))


def elu1(x):
    return x + 1.0 if x > 0 else float(np.exp(x))


def scenario_expected():
    """Hand-computed per-token outputs for tokens [1, 2, 3, 4] then [5]."""
    table = scenario_table().weights.astype(np.float64)
    q, k, v = table[:, 0], table[:, 1], table[:, 2]

    first = [1, 2, 3, 4]
    outputs = []
    for i in first:
        scores = np.array([q[i] * k[j] for j in first])
        weights = np.exp(scores - scores.max())
        weights /= weights.sum()
        local = float(weights @ v[first])
        # empty memory: retrieval is 0
        outputs.append(0.5 * local)

    m1 = sum(elu1(k[j]) * v[j] for j in first)
    z1 = sum(elu1(k[j]) for j in first)

    # single token: local attention returns its own value
    memory_read = elu1(q[5]) * m1 / max(elu1(q[5]) * z1, 1e-6)
    outputs.append(0.5 * memory_read + 0.5 * v[5])
    return outputs, m1, z1


@pytest.mark.parametrize("kind", BACKENDS)
class TestEndToEndScenario:
    """Tokens [1, 2, 3, 4, 5] with segment_size 4."""

    def test_final_average(self, kind):
        orchestrator = make_orchestrator(kind, scenario_config(), scenario_table())
        result = orchestrator.run([1, 2, 3, 4, 5])

        outputs, _, _ = scenario_expected()
        expected = np.full(3, np.mean(outputs))

        assert result.token_count == 5
        assert result.segment_count == 2
        assert not result.is_empty
        np.testing.assert_allclose(result.average, expected, rtol=1e-5, atol=1e-7)

    def test_memory_after_first_segment(self, kind):
        orchestrator = make_orchestrator(kind, scenario_config(), scenario_table())
        orchestrator.feed([1, 2, 3, 4])

        _, m1, z1 = scenario_expected()
        head = orchestrator.memory[0]
        np.testing.assert_allclose(head.M.cpu().numpy(), [[m1]], rtol=1e-5)
        np.testing.assert_allclose(head.z.cpu().numpy(), [z1], rtol=1e-5)

    def test_per_segment_outputs(self, kind):
        orchestrator = make_orchestrator(kind, scenario_config(), scenario_table())
        outputs, _, _ = scenario_expected()

        first = orchestrator.process_segment([1, 2, 3, 4])
        second = orchestrator.process_segment([5])

        assert first.shape == (4, 3)
        assert second.shape == (1, 3)
        np.testing.assert_allclose(first, np.repeat(np.array(outputs[:4])[:, None], 3, axis=1), rtol=1e-5, atol=1e-7)
        np.testing.assert_allclose(second, np.full((1, 3), outputs[4]), rtol=1e-5, atol=1e-7)

    def test_token_ids_wrap_modulo_vocab(self, kind):
        """Token t and t + vocab_size embed identically."""
        a = make_orchestrator(kind, scenario_config(), scenario_table()).run([1, 2, 3, 4, 5])
        b = make_orchestrator(kind, scenario_config(), scenario_table()).run([11, 22, 33, 44, 10**30 + 5])
        np.testing.assert_allclose(a.average, b.average)


class TestStateMachine:
    """Streaming -> FlushingFinal -> Done."""

    def test_initial_state(self):
        orchestrator = make_orchestrator("reference", scenario_config(), scenario_table())
        assert orchestrator.state is StreamState.STREAMING
        assert orchestrator.token_count == 0

    def test_full_segments_dispatch_while_streaming(self):
        orchestrator = make_orchestrator("reference", scenario_config(), scenario_table())
        orchestrator.feed([1, 2, 3])
        assert orchestrator.segment_count == 0
        orchestrator.feed([4, 5])
        assert orchestrator.segment_count == 1
        assert orchestrator.token_count == 4
        assert orchestrator.state is StreamState.STREAMING

    def test_feed_in_pieces_matches_single_feed(self):
        config = default_engine_config(segment_size=3, embed_dim=6, vocab_size=20, num_heads=2)
        table = EmbeddingTable.random(20, 6, seed=4)
        tokens = list(range(11))

        whole = make_orchestrator("reference", config, table).run(tokens)
        pieces = make_orchestrator("reference", config, table)
        for chunk in ([0], [1, 2, 3, 4], [], [5, 6], [7, 8, 9, 10]):
            pieces.feed(chunk)
        split = pieces.finish()

        np.testing.assert_allclose(split.average, whole.average)
        assert split.segment_count == whole.segment_count == 4

    def test_remainder_flushed_on_finish(self):
        orchestrator = make_orchestrator("reference", scenario_config(), scenario_table())
        orchestrator.feed([1, 2, 3, 4, 5, 6])
        result = orchestrator.finish()
        assert orchestrator.state is StreamState.DONE
        assert result.token_count == 6
        assert result.segment_count == 2

    def test_exact_multiple_skips_flush(self):
        orchestrator = make_orchestrator("reference", scenario_config(), scenario_table())
        result = orchestrator.run(range(8))
        assert result.segment_count == 2
        assert result.token_count == 8

    def test_zero_tokens(self):
        """An empty stream reports the empty result, never divides by zero."""
        orchestrator = make_orchestrator("reference", scenario_config(), scenario_table())
        result = orchestrator.run([])
        assert result.is_empty
        assert result.average is None
        assert result.token_count == 0
        assert result.segment_count == 0
        assert orchestrator.state is StreamState.DONE

    def test_finish_is_idempotent(self):
        orchestrator = make_orchestrator("reference", scenario_config(), scenario_table())
        first = orchestrator.run([1, 2])
        second = orchestrator.finish()
        np.testing.assert_array_equal(first.average, second.average)

    def test_feed_after_done_raises(self):
        orchestrator = make_orchestrator("reference", scenario_config(), scenario_table())
        orchestrator.finish()
        with pytest.raises(RuntimeError, match="cannot feed"):
            orchestrator.feed([1])

    def test_result_before_finish_raises(self):
        orchestrator = make_orchestrator("reference", scenario_config(), scenario_table())
        with pytest.raises(RuntimeError, match="not finished"):
            orchestrator.result()


class TestProcessSegmentValidation:
    def test_empty_segment_rejected(self):
        orchestrator = make_orchestrator("reference", scenario_config(), scenario_table())
        with pytest.raises(ValueError, match="segment length"):
            orchestrator.process_segment([])

    def test_oversized_segment_rejected(self):
        orchestrator = make_orchestrator("reference", scenario_config(), scenario_table())
        with pytest.raises(ValueError, match="segment length"):
            orchestrator.process_segment([1, 2, 3, 4, 5])

    def test_embedding_width_mismatch(self):
        with pytest.raises(InvalidConfiguration, match="embedding width"):
            make_orchestrator("reference", scenario_config(), EmbeddingTable.random(10, 6, seed=0))


@pytest.mark.parametrize("kind", ["reference", "cpu"])
class TestNumericDegeneracy:
    def test_overflow_aborts(self, kind):
        """Values large enough to overflow float32 memory abort the run."""
        config = default_engine_config(segment_size=2, embed_dim=3, vocab_size=2, num_heads=1)
        table = EmbeddingTable(np.full((2, 3), 1e30))
        orchestrator = make_orchestrator(kind, config, table)
        with pytest.raises(NumericDegeneracy):
            orchestrator.run([0, 1, 0, 1])
        assert orchestrator.state is StreamState.FAILED
        with pytest.raises(NumericDegeneracy):
            orchestrator.finish()

    def test_check_can_be_disabled(self, kind):
        config = default_engine_config(segment_size=2, embed_dim=3, vocab_size=2, num_heads=1, check_numerics=False)
        table = EmbeddingTable(np.full((2, 3), 1e30))
        orchestrator = make_orchestrator(kind, config, table)
        orchestrator.process_segment([0, 1])
        assert not torch.isfinite(orchestrator.memory[0].M).all()


class TestFailedSegment:
    """A failed pass ends the stream; nothing is retried or averaged."""

    def _failing_download(self, orchestrator, monkeypatch):
        def fail(handle, element_count):
            raise TransferFailure(f"download of {handle.label!r} failed: device lost")

        monkeypatch.setattr(orchestrator.backend.buffers, "download", fail)

    def test_failed_download_moves_to_failed_state(self, monkeypatch):
        orchestrator = make_orchestrator("cpu", scenario_config(), scenario_table())
        self._failing_download(orchestrator, monkeypatch)
        with pytest.raises(TransferFailure, match="device lost"):
            orchestrator.feed([1, 2, 3, 4])
        assert orchestrator.state is StreamState.FAILED
        assert orchestrator.segment_count == 0
        assert orchestrator.token_count == 0

    def test_finish_after_failure_does_not_rerun_segment(self, monkeypatch):
        orchestrator = make_orchestrator("cpu", scenario_config(), scenario_table())
        self._failing_download(orchestrator, monkeypatch)
        with pytest.raises(TransferFailure):
            orchestrator.feed([1, 2, 3, 4])
        z_after_failure = orchestrator.memory[0].z.clone()
        monkeypatch.undo()

        with pytest.raises(TransferFailure):
            orchestrator.finish()
        with pytest.raises(TransferFailure):
            orchestrator.result()
        with pytest.raises(TransferFailure):
            orchestrator.feed([5])
        with pytest.raises(TransferFailure):
            orchestrator.process_segment([5])

        _, _, z1 = scenario_expected()
        torch.testing.assert_close(orchestrator.memory[0].z, z_after_failure)
        np.testing.assert_allclose(orchestrator.memory[0].z.cpu().numpy(), [z1], rtol=1e-5)

    def test_failure_during_final_flush(self, monkeypatch):
        orchestrator = make_orchestrator("cpu", scenario_config(), scenario_table())
        orchestrator.feed([1, 2, 3, 4, 5])
        self._failing_download(orchestrator, monkeypatch)
        with pytest.raises(TransferFailure):
            orchestrator.finish()
        assert orchestrator.state is StreamState.FAILED
        with pytest.raises(TransferFailure):
            orchestrator.finish()

    def test_buffers_released_after_failure(self, monkeypatch):
        orchestrator = make_orchestrator("cpu", scenario_config(), scenario_table())
        self._failing_download(orchestrator, monkeypatch)
        with pytest.raises(TransferFailure):
            orchestrator.feed([1, 2, 3, 4])
        assert orchestrator.backend.buffers.live_count == 0
