"""Segment orchestrator: drives the pipeline over a token stream."""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Iterable, Sequence

import numpy as np

from .backends import AttentionBackend
from .config import EngineConfig
from .embedding import EmbeddingTable
from .errors import InvalidConfiguration

logger = logging.getLogger(__name__)


class StreamState(enum.Enum):
    """Lifecycle of one token stream."""

    STREAMING = "streaming"
    FLUSHING_FINAL = "flushing_final"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class StreamResult:
    """Final outcome of a stream.

    Args:
        token_count: Tokens processed.
        segment_count: Pipeline passes run (full segments plus the remainder).
        average: Mean output vector over all tokens, or None for an empty stream.
    """

    token_count: int
    segment_count: int
    average: np.ndarray | None

    @property
    def is_empty(self) -> bool:
        """True when no tokens were processed."""
        return self.average is None


class SegmentOrchestrator:
    """
    Feeds a token stream through the segment pipeline.

    Tokens are buffered until a full segment is available; each segment runs
    project -> local attention -> memory read -> combine -> memory update ->
    download, strictly one after another, so segment k+1 reads the memory
    written by segment k. ``finish`` flushes a short remainder through the
    same pipeline and returns the running average of every output row.

    Args:
        config: Engine configuration.
        backend: Stage implementation (device or CPU reference).
        embedding: Table mapping token ids to [d_model] rows.

    Example:
        >>> orchestrator = SegmentOrchestrator(config, ReferenceBackend(config), table)
        >>> orchestrator.feed([1, 2, 3])
        >>> result = orchestrator.finish()
    """

    def __init__(
        self,
        config: EngineConfig,
        backend: AttentionBackend,
        embedding: EmbeddingTable,
    ) -> None:
        if embedding.d_model != config.d_model:
            raise InvalidConfiguration(
                f"embedding width ({embedding.d_model}) does not match embed_dim ({config.d_model})"
            )
        self.config = config
        self.backend = backend
        self.embedding = embedding
        self.memory = backend.create_memory()

        self.state = StreamState.STREAMING
        self._buffer: list[int] = []
        self._sum = np.zeros(config.d_model, dtype=np.float64)
        self._token_count = 0
        self._segment_count = 0
        self._error: Exception | None = None

    @property
    def token_count(self) -> int:
        """Tokens processed so far (buffered tokens excluded)."""
        return self._token_count

    @property
    def segment_count(self) -> int:
        """Segments processed so far."""
        return self._segment_count

    def process_segment(self, token_ids: Sequence[int]) -> np.ndarray:
        """
        Run one pipeline pass and return its [n, d_model] output.

        Memory retrieval for this segment reads the state left by the previous
        segment; the update happens afterwards.
        """
        self._raise_if_failed()
        n = len(token_ids)
        if n == 0 or n > self.config.segment_size:
            raise ValueError(f"segment length must be in [1, {self.config.segment_size}], got {n}")

        backend = self.backend
        try:
            embedded = self.embedding.lookup(token_ids)
            segment = backend.project(embedded)
            local = backend.local_attention(segment)
            retrieved = backend.retrieve(segment, self.memory)
            combined = backend.combine(segment, local, retrieved, self.memory)
            backend.update(segment, self.memory)
            output = backend.finish(segment, combined)

            if self.config.check_numerics:
                self.memory.check_numerics()
        except Exception as exc:
            # memory may already hold this segment's update; the stream cannot continue
            self.state = StreamState.FAILED
            self._error = exc
            logger.error("segment %d failed: %s", self._segment_count + 1, exc)
            raise

        self._segment_count += 1
        logger.debug("segment %d: %d tokens via %s backend", self._segment_count, n, backend.name)
        return output

    def _accumulate(self, output: np.ndarray) -> None:
        self._sum += output.sum(axis=0, dtype=np.float64)
        self._token_count += output.shape[0]

    def _raise_if_failed(self) -> None:
        if self.state is StreamState.FAILED:
            raise self._error

    def feed(self, token_ids: Iterable[int]) -> None:
        """Buffer tokens, dispatching every full segment."""
        self._raise_if_failed()
        if self.state is not StreamState.STREAMING:
            raise RuntimeError(f"cannot feed tokens in state {self.state.value}")
        size = self.config.segment_size
        for token in token_ids:
            self._buffer.append(token)
            if len(self._buffer) >= size:
                self._accumulate(self.process_segment(self._buffer[:size]))
                del self._buffer[:size]

    def finish(self) -> StreamResult:
        """
        Flush the remainder and return the stream result.

        A stream whose segment failed has no result: the original error is
        raised again.
        """
        self._raise_if_failed()
        if self.state is StreamState.DONE:
            return self.result()
        if self._buffer:
            self.state = StreamState.FLUSHING_FINAL
            self._accumulate(self.process_segment(self._buffer))
            self._buffer.clear()
        self.state = StreamState.DONE
        return self.result()

    def result(self) -> StreamResult:
        """Result for a finished stream."""
        self._raise_if_failed()
        if self.state is not StreamState.DONE:
            raise RuntimeError("stream is not finished. Call finish() first.")
        if self._token_count == 0:
            average = None
        else:
            average = (self._sum / self._token_count).astype(np.float32)
        return StreamResult(self._token_count, self._segment_count, average)

    def run(self, token_ids: Iterable[int]) -> StreamResult:
        """Feed a whole stream and finish it."""
        self.feed(token_ids)
        return self.finish()
