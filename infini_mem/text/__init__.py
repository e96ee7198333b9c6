"""Text input: document conversion and tokenization."""

from .convert import CONVERTERS, iter_lines
from .tokenizer import HashTokenizer, tokenize

__all__ = [
    "CONVERTERS",
    "HashTokenizer",
    "iter_lines",
    "tokenize",
]
