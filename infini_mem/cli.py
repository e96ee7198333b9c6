"""Command-line entry point: average segmented-memory attention output over a document.

Usage:
    infini-mem --input notes.txt
    infini-mem --input paper.pdf --segment-size 32 --embed-dim 24 --heads 2 --gpu
"""

from __future__ import annotations

import argparse
import logging
import sys
from dataclasses import replace
from pathlib import Path

from .backends import create_backend
from .config import EngineConfig, default_engine_config
from .device import shared_context
from .embedding import EmbeddingTable
from .errors import InfiniMemError, InvalidConfiguration
from .orchestrator import SegmentOrchestrator
from .text import iter_lines, tokenize


def build_parser() -> argparse.ArgumentParser:
    defaults = default_engine_config()
    parser = argparse.ArgumentParser(
        prog="infini-mem",
        description="Segmented compressive-memory attention over txt/pdf/docx documents",
    )
    parser.add_argument("-i", "--input", type=Path, required=True, help="Path to a text, PDF, or DOCX file")
    parser.add_argument("-s", "--segment-size", type=int, default=defaults.segment_size, help="Segment size")
    parser.add_argument("-e", "--embed-dim", type=int, default=defaults.embed_dim, help="Embedding dimension (multiple of 3)")
    parser.add_argument(
        "-v",
        "--vocab-size",
        type=int,
        default=None,
        help=f"Rows in the random embedding table (default: {defaults.vocab_size}, or the loaded table's rows)",
    )
    parser.add_argument("--heads", type=int, default=defaults.num_heads, help="Number of heads")
    parser.add_argument("--gpu", action="store_true", help="Use the device backend instead of the CPU reference")
    parser.add_argument("--device", type=str, default=None, help="Device for --gpu (default: cuda, then mps)")
    parser.add_argument("--feature-map", type=str, default=defaults.feature_map, help="Feature map for memory reads")
    parser.add_argument("--seed", type=int, default=None, help="Seed for the random embedding table")
    parser.add_argument("--embeddings", type=Path, default=None, help="Load the embedding table from a .npy file")
    parser.add_argument("--verbose", action="store_true", help="Log every segment")
    return parser


def config_from_args(args: argparse.Namespace, embedding: EmbeddingTable | None = None) -> EngineConfig:
    """Build the engine config; a loaded table supplies vocab_size when -v is not given."""
    defaults = default_engine_config()
    vocab_size = args.vocab_size
    if embedding is not None:
        if vocab_size is not None and vocab_size != embedding.vocab_size:
            raise InvalidConfiguration(
                f"--vocab-size {vocab_size} does not match the loaded embedding table ({embedding.vocab_size} rows)"
            )
        vocab_size = embedding.vocab_size
    elif vocab_size is None:
        vocab_size = defaults.vocab_size
    return replace(
        defaults,
        segment_size=args.segment_size,
        embed_dim=args.embed_dim,
        vocab_size=vocab_size,
        num_heads=args.heads,
        use_device_backend=args.gpu,
        feature_map=args.feature_map,
    )


def run(args: argparse.Namespace) -> int:
    embedding = None
    if args.embeddings is not None:
        embedding = EmbeddingTable.load(args.embeddings)
    config = config_from_args(args, embedding)

    context = None
    if config.use_device_backend:
        print("Initializing GPU context...")
        context = shared_context(args.device)
    backend = create_backend(config, context)

    if embedding is None:
        embedding = EmbeddingTable.random(config.vocab_size, config.d_model, seed=args.seed)

    orchestrator = SegmentOrchestrator(config, backend, embedding)
    for line in iter_lines(args.input):
        orchestrator.feed(tokenize(line))
    result = orchestrator.finish()

    if result.is_empty:
        print("No tokens processed.")
        return 0

    print(f"Processed {result.token_count} tokens, final avg of first 10 dims:")
    print(" ".join(f"{value:.4f}" for value in result.average[:10]))
    return 0


def main(argv: list[str] | None = None) -> int:
    """Parse arguments, run, and map errors to a non-zero exit status."""
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        return run(args)
    except (InfiniMemError, OSError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
