"""Basic usage examples for the infini-mem library."""

import numpy as np
import torch

from infini_mem import (
    ComputeContext,
    DeviceBackend,
    EmbeddingTable,
    ReferenceBackend,
    SegmentOrchestrator,
    default_engine_config,
)


def stream_example():
    """
    Example: averaging segment outputs over a token stream (CPU reference).

    The orchestrator buffers tokens into segments and carries each head's
    memory from one segment to the next.
    """
    print("=" * 60)
    print("Stream Example (CPU reference)")
    print("=" * 60)

    config = default_engine_config(segment_size=8, embed_dim=12, num_heads=2)
    table = EmbeddingTable.random(config.vocab_size, config.d_model, seed=0)
    orchestrator = SegmentOrchestrator(config, ReferenceBackend(config), table)

    tokens = np.random.default_rng(0).integers(0, 1_000_000, size=45).tolist()
    result = orchestrator.run(tokens)

    print(f"Tokens: {result.token_count}, segments: {result.segment_count}")
    print(f"Average: {np.array2string(result.average, precision=4)}")
    for h, head in enumerate(orchestrator.memory):
        print(f"  head {h}: z = {head.z.numpy()}")
    print()


def memory_growth_example():
    """
    Example: watching memory fill up segment by segment.

    The first segment reads an empty memory, so its memory context is zero;
    later segments read everything accumulated before them.
    """
    print("=" * 60)
    print("Memory Growth Example")
    print("=" * 60)

    config = default_engine_config(segment_size=4, embed_dim=6)
    table = EmbeddingTable.random(config.vocab_size, config.d_model, seed=1)
    orchestrator = SegmentOrchestrator(config, ReferenceBackend(config), table)

    for k, segment in enumerate([[1, 2, 3, 4], [5, 6, 7, 8], [9]]):
        output = orchestrator.process_segment(segment)
        head = orchestrator.memory[0]
        print(f"Segment {k + 1}: output {output.shape}, z sum after update = {head.z.sum().item():.4f}")
    print()


def device_example():
    """
    Example: the device backend, checked against the CPU reference.
    """
    print("=" * 60)
    print("Device Backend Example")
    print("=" * 60)

    device = "cuda" if torch.cuda.is_available() else "cpu"
    config = default_engine_config(segment_size=16, embed_dim=24, num_heads=4, use_device_backend=True)
    table = EmbeddingTable.random(config.vocab_size, config.d_model, seed=2)
    tokens = list(range(100))

    device_result = SegmentOrchestrator(
        config, DeviceBackend(config, ComputeContext.create(device)), table
    ).run(tokens)
    reference_result = SegmentOrchestrator(config, ReferenceBackend(config), table).run(tokens)

    diff = np.abs(device_result.average - reference_result.average).max()
    print(f"Device: {device}")
    print(f"Max |device - reference|: {diff:.2e}")
    print()


if __name__ == "__main__":
    stream_example()
    memory_growth_example()
    device_example()
