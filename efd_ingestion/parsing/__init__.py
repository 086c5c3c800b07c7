"""Streaming parser: chunked line reader, tokenizer, record interpreter."""

from efd_ingestion.parsing.chunked_reader import ChunkedLineReader, RawLine
from efd_ingestion.parsing.record_interpreter import ParseState, RecordInterpreter
from efd_ingestion.parsing.tokenizer import tokenize

__all__ = [
    "ChunkedLineReader",
    "RawLine",
    "ParseState",
    "RecordInterpreter",
    "tokenize",
]
