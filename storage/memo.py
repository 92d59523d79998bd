"""Memo (overflow) file access.

Records only hold a block number for MEMO / GENERAL_OLE / PICTURE / BLOB
fields; the payload lives in a companion file. The store reads payloads
through the MemoLink protocol, so any object with a matching ``read_data``
can stand in for a real file.

Supported layouts (read only):
    .fpt  FoxPro:     header [next_free:4 BE][unused:2][block_size:2 BE]
                      block  [type:4 BE][length:4 BE][payload]
    .dbt  dBase IV:   header block size at offset 20 (LE, 0 = 512)
                      block  [FF FF 08 00][length:4 LE, 8-byte block header included][payload]
    .dbt  dBase III:  512-byte blocks, payload terminated by 0x1A
"""

import struct
from enum import Enum
from pathlib import Path
from typing import BinaryIO, Protocol, Self

from exceptions import DBFIOError, IllegalStateError
from models.charset import DEFAULT_CHARSET
from models.field import FieldType

DEFAULT_DBT_BLOCK_SIZE = 512
DEFAULT_FPT_BLOCK_SIZE = 64
DBASE4_BLOCK_MARKER = b"\xff\xff\x08\x00"
MEMO_BLOCK_HEADER_SIZE = 8
MEMO_TERMINATOR = b"\x1a"


class MemoLink(Protocol):
    """Anything able to resolve a memo block number to its payload."""

    def read_data(self, block_number: int, field_type: FieldType) -> bytes | str | None: ...


class MemoFormat(Enum):
    DBT = "dbt"
    FPT = "fpt"


class MemoFile:
    """Read-only memo file.

    MEMO payloads are returned as text decoded with ``charset``; every other
    field type gets raw bytes. Blocks past the end of the file resolve to None.
    """

    def __init__(
        self,
        path: Path | str,
        charset: str = DEFAULT_CHARSET,
        memo_format: MemoFormat | None = None,
    ):
        self.path = Path(path)
        self.charset = charset
        self.memo_format = memo_format or (MemoFormat.FPT if self.path.suffix.lower() == ".fpt" else MemoFormat.DBT)

        try:
            self._file: BinaryIO | None = open(self.path, "rb")
        except OSError as e:
            raise DBFIOError(f"Cannot read memo file {self.path}: {e}") from e

        self.block_size = self._read_block_size()

    def _read_block_size(self) -> int:
        header = self._read_at(0, 22)
        if self.memo_format is MemoFormat.FPT:
            if len(header) < 8:
                return DEFAULT_FPT_BLOCK_SIZE
            (size,) = struct.unpack(">H", header[6:8])
            return size or DEFAULT_FPT_BLOCK_SIZE

        if len(header) < 22:
            return DEFAULT_DBT_BLOCK_SIZE
        (size,) = struct.unpack("<H", header[20:22])
        return size or DEFAULT_DBT_BLOCK_SIZE

    def _read_at(self, offset: int, size: int = -1) -> bytes:
        if self._file is None:
            raise IllegalStateError("Memo file is closed")
        try:
            self._file.seek(offset)
            return self._file.read(size)
        except OSError as e:
            raise DBFIOError(f"Error reading memo file {self.path} at offset {offset}: {e}") from e

    def read_block(self, block_number: int) -> bytes | None:
        """Raw payload stored at ``block_number``, or None when out of range."""
        offset = block_number * self.block_size
        head = self._read_at(offset, MEMO_BLOCK_HEADER_SIZE)
        if not head:
            return None

        if self.memo_format is MemoFormat.FPT:
            if len(head) < MEMO_BLOCK_HEADER_SIZE:
                return None
            _block_type, length = struct.unpack(">II", head)
            return self._read_at(offset + MEMO_BLOCK_HEADER_SIZE, length)

        if head[:4] == DBASE4_BLOCK_MARKER and len(head) == MEMO_BLOCK_HEADER_SIZE:
            (length,) = struct.unpack("<I", head[4:])
            return self._read_at(offset + MEMO_BLOCK_HEADER_SIZE, max(0, length - MEMO_BLOCK_HEADER_SIZE))

        return self._read_terminated(offset)

    def _read_terminated(self, offset: int) -> bytes:
        """dBase III payload: everything up to the first 0x1A."""
        chunks = []
        while chunk := self._read_at(offset, self.block_size):
            end = chunk.find(MEMO_TERMINATOR)
            if end >= 0:
                chunks.append(chunk[:end])
                break
            chunks.append(chunk)
            offset += len(chunk)
        return b"".join(chunks)

    def read_data(self, block_number: int, field_type: FieldType) -> bytes | str | None:
        data = self.read_block(block_number)
        if data is None:
            return None
        if field_type is FieldType.MEMO:
            return data.decode(self.charset, errors="replace")
        return data

    def close(self) -> None:
        if self._file is not None:
            self._file.close()
            self._file = None

    def __enter__(self) -> Self:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
