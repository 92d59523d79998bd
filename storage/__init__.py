"""Storage layer: record codec, memo files and the random-access store."""

from storage.codec import FIELD_CODECS, FieldCodec, RecordCodec
from storage.memo import MemoFile, MemoFormat, MemoLink
from storage.store import RandomAccessStore

__all__ = [
    "RandomAccessStore",
    "RecordCodec",
    "FieldCodec",
    "FIELD_CODECS",
    "MemoFile",
    "MemoFormat",
    "MemoLink",
]
