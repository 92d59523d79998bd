"""Random-access reads and writes on a .dbf table.

File layout:
    [header: 32-byte prologue][field descriptors: 32 bytes each][0x0D]
    [record 0][record 1]...[record n-1]
    [0x1A end-of-data marker, written on close]

Each record is record_length bytes: the deletion flag (' ' or '*') followed
by every field in declaration order. The store seeks immediately before each
read and write, so one instance must not be shared between threads.
"""

import os
from collections.abc import Iterator, Sequence
from datetime import date
from pathlib import Path
from typing import Any, BinaryIO, Self

from pydantic import ValidationError

from config import StoreOptions
from exceptions import (
    DBFIOError,
    IllegalStateError,
    InvalidFieldDefinitionError,
    InvalidFieldValueError,
    OutOfRangeError,
    RecordLengthMismatchError,
    UnsupportedCharsetError,
)
from models.charset import DEFAULT_CHARSET, charset_for_language_driver, language_driver_for_charset, normalize_charset
from models.field import FieldDescriptor, FieldType
from models.header import END_OF_DATA, SIG_DBASE_III, SIG_DBASE_III_MEMO, DBFHeader
from storage.codec import ACTIVE_FLAG, DELETED_FLAG, RecordCodec
from storage.memo import MemoFile, MemoLink
from utils.logging import get_logger

logger = get_logger("dbf.store")

MAX_LENGTH = 0xFFFF


def _apply_flag_states(flags: int, states: dict[int, bool]) -> int:
    for bit, is_set in states.items():
        flags = flags | (1 << bit) if is_set else flags & ~(1 << bit)
    return flags


class RandomAccessStore:
    """Reads, updates and appends records of a single .dbf file.

    Opening an empty or missing file defers everything until define_fields();
    opening an existing file parses its header and seeds the record counter.
    The header's record count is only persisted by close(), which also
    rewrites the header and the end-of-data marker. A read_only store never
    writes, and close() only releases the file.
    """

    def __init__(
        self,
        path: Path | str,
        charset: str | None = None,
        show_deleted: bool = False,
        *,
        trim_right_spaces: bool = True,
        create: bool = True,
        read_only: bool = False,
    ):
        try:
            self.options = StoreOptions(
                charset=charset,
                show_deleted=show_deleted,
                trim_right_spaces=trim_right_spaces,
            )
        except ValidationError as e:
            raise UnsupportedCharsetError(f"Unsupported charset {charset!r}") from e

        self.path = Path(path)
        self.read_only = read_only
        self._file: BinaryIO | None = None
        self._closed = False
        self._header = DBFHeader()
        self._record_count = 0
        self._codec: RecordCodec | None = None
        self._memo_link: MemoLink | None = None
        self._owned_memo: MemoFile | None = None

        if not self.path.exists() and (read_only or not create):
            raise FileNotFoundError(f"Table file not found: {self.path}")

        if not self.path.exists() or self.path.stat().st_size == 0:
            self._create_new()
        else:
            self._open_existing()

    def _create_new(self) -> None:
        """Record the charset for a new table; fields and header come later."""
        charset = self.options.charset or normalize_charset(DEFAULT_CHARSET)
        language_driver = language_driver_for_charset(charset)
        if language_driver is None:
            raise UnsupportedCharsetError(f"Unsupported charset {charset}")

        if self.read_only:
            self._file = self._open_file("rb")
        else:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._file = self._open_file("w+b")
        self._charset = charset
        self._header = DBFHeader(language_driver=language_driver)
        logger.debug("Created %s (charset %s)", self.path, charset)

    def _open_existing(self) -> None:
        """Open an existing table and parse its header."""
        self._file = self._open_file("rb" if self.read_only else "r+b")
        try:
            self._file.seek(0)
            header = DBFHeader.read(self._file, self.options.charset)
        except OSError as e:
            self._release()
            raise DBFIOError(f"Error reading header of {self.path}: {e}") from e
        except Exception:
            self._release()
            raise

        self._charset = (
            self.options.charset
            or charset_for_language_driver(header.language_driver)
            or normalize_charset(DEFAULT_CHARSET)
        )
        self._header = header
        self._record_count = header.number_of_records
        if header.fields:
            self._codec = self._build_codec(header.fields)

        if header.header_length != header.derived_header_length or header.record_length != header.derived_record_length:
            logger.warning(
                "%s: stored header/record length %d/%d differ from field layout %d/%d",
                self.path,
                header.header_length,
                header.record_length,
                header.derived_header_length,
                header.derived_record_length,
            )
        logger.debug("Opened %s: %d fields, %d records", self.path, len(header.fields), self._record_count)

    def _open_file(self, mode: str) -> BinaryIO:
        try:
            return open(self.path, mode)
        except OSError as e:
            raise DBFIOError(f"Cannot open {self.path}: {e}") from e

    def _build_codec(self, fields: Sequence[FieldDescriptor]) -> RecordCodec:
        return RecordCodec(
            fields,
            charset=self._charset,
            trim_right_spaces=self.options.trim_right_spaces,
            memo_link=self._memo_link,
        )

    # --- low level I/O ---

    def _file_size(self) -> int:
        try:
            return os.fstat(self._file.fileno()).st_size
        except OSError as e:
            raise DBFIOError(f"Cannot stat {self.path}: {e}") from e

    def _read_at(self, offset: int, size: int, operation: str) -> bytes:
        try:
            self._file.seek(offset)
            return self._file.read(size)
        except OSError as e:
            raise DBFIOError(f"Error while trying to {operation} in {self.path}: {e}") from e

    def _write_at(self, offset: int, data: bytes, operation: str) -> None:
        try:
            self._file.seek(offset)
            self._file.write(data)
        except OSError as e:
            raise DBFIOError(f"Error while trying to {operation} in {self.path}: {e}") from e

    def _record_offset(self, index: int) -> int:
        return self._header.header_length + self._header.record_length * index

    # --- validation ---

    def _check_open(self) -> None:
        if self._closed:
            raise IllegalStateError("Store is closed")

    def _check_writable(self) -> None:
        self._check_open()
        if self.read_only:
            raise IllegalStateError("Store is read-only")

    def _require_codec(self) -> RecordCodec:
        if self._codec is None:
            raise IllegalStateError("Fields have not been defined")
        return self._codec

    def _check_record_index(self, index: int) -> None:
        if not 0 <= index < self._record_count:
            raise OutOfRangeError(f"Invalid record position {index}. Valid range is 0 to {self._record_count - 1}")

    def _resolve_field(self, field_ref: int | str) -> int:
        """User-visible field index for an index or a case-insensitive name."""
        user_fields = self._header.user_fields
        if isinstance(field_ref, str):
            wanted = field_ref.lower()
            for index, field in enumerate(user_fields):
                if field.name.lower() == wanted:
                    return index
            raise OutOfRangeError(f"Unknown field: {field_ref!r}")
        if not 0 <= field_ref < len(user_fields):
            raise OutOfRangeError(f"Invalid field position {field_ref}. Valid range is 0 to {len(user_fields) - 1}")
        return field_ref

    @staticmethod
    def _validate_fields(fields: Sequence[FieldDescriptor | None] | None) -> list[FieldDescriptor]:
        if not fields:
            raise InvalidFieldDefinitionError("Should have at least one field")

        seen: set[str] = set()
        for i, field in enumerate(fields):
            if field is None:
                raise InvalidFieldDefinitionError(f"Field {i} is null")
            if not isinstance(field, FieldDescriptor):
                raise InvalidFieldDefinitionError(f"Field {i} is not a FieldDescriptor: {field!r}")
            if field.name.lower() in seen:
                raise InvalidFieldDefinitionError(f"Duplicate field name: {field.name!r}")
            seen.add(field.name.lower())

        if all(field.system for field in fields):
            raise InvalidFieldDefinitionError("Should have at least one non-system field")

        null_flags = [field for field in fields if field.field_type is FieldType.NULL_FLAGS]
        bits = sum(field.null_flag_bits for field in fields)
        if len(null_flags) > 1:
            raise InvalidFieldDefinitionError("Only one NULL_FLAGS field is allowed")
        if bits and not null_flags:
            raise InvalidFieldDefinitionError("Nullable and variable-length fields require a NULL_FLAGS field")
        if null_flags and null_flags[0].length * 8 < bits:
            raise InvalidFieldDefinitionError(
                f"NULL_FLAGS field holds {null_flags[0].length * 8} bits, {bits} are needed"
            )

        record_length = 1 + sum(field.length for field in fields)
        if record_length > MAX_LENGTH:
            raise InvalidFieldDefinitionError(f"Record length {record_length} exceeds {MAX_LENGTH} bytes")
        return list(fields)

    # --- fields ---

    def define_fields(self, fields: Sequence[FieldDescriptor]) -> None:
        """Set the table's columns. Only allowed once, and only on a table without fields."""
        self._check_writable()
        if self._codec is not None:
            raise IllegalStateError("Fields have already been set")
        fields = self._validate_fields(fields)

        signature = self._header.signature
        if self._file_size() == 0:
            has_memo = any(field.is_memo for field in fields)
            signature = SIG_DBASE_III_MEMO if has_memo else SIG_DBASE_III

        header = self._header.model_copy(update={"fields": tuple(fields), "signature": signature}).stamped()
        if header.derived_header_length > MAX_LENGTH:
            raise InvalidFieldDefinitionError(f"Too many fields: header would be {header.derived_header_length} bytes")

        if self._file_size() == 0:
            self._write_at(0, header.to_bytes(self._charset), "write header")

        self._header = header
        self._codec = self._build_codec(header.fields)
        logger.debug("Defined %d fields on %s", len(fields), self.path)

    @property
    def fields(self) -> tuple[FieldDescriptor, ...]:
        """User-visible fields, system fields excluded."""
        return self._header.user_fields

    @property
    def header(self) -> DBFHeader:
        return self._header

    @property
    def charset(self) -> str:
        return self._charset

    @property
    def last_modified(self) -> date | None:
        return self._header.last_modified

    @property
    def is_closed(self) -> bool:
        return self._closed

    def get_field(self, index: int) -> FieldDescriptor:
        user_fields = self._header.user_fields
        if not 0 <= index < len(user_fields):
            raise OutOfRangeError(f"Invalid field index: ({index}). Valid range is 0 to {len(user_fields) - 1}")
        return user_fields[index]

    def get_field_count(self) -> int:
        return len(self._header.user_fields)

    # --- reading ---

    def get_record_count(self) -> int:
        """Number of records, deleted ones included.

        This is the live count: records appended since the table was opened
        are included even though the header on disk is only updated by close().
        """
        return self._record_count

    def _read_record(self, index: int) -> bytes:
        self._check_open()
        self._require_codec()
        self._check_record_index(index)

        record_length = self._header.record_length
        data = self._read_at(self._record_offset(index), record_length, f"read record {index}")
        if len(data) != record_length:
            raise RecordLengthMismatchError(
                f"Record length mismatch for record {index}: got {len(data)} bytes, expected {record_length}"
            )
        return data

    def get_record(self, index: int) -> list[Any] | None:
        """Values of the user-visible fields, or None for a hidden deleted record."""
        data = self._read_record(index)
        if data[:1] == DELETED_FLAG and not self.options.show_deleted:
            return None
        return self._codec.decode_record(data)

    def get_row(self, index: int) -> dict[str, Any] | None:
        """Like get_record(), keyed by field name."""
        record = self.get_record(index)
        if record is None:
            return None
        return {field.name: value for field, value in zip(self._header.user_fields, record)}

    def get_value(self, index: int, field_ref: int | str) -> Any:
        field_index = self._resolve_field(field_ref)
        record = self.get_record(index)
        if record is None:
            return None
        return record[field_index]

    def iter_records(self) -> Iterator[list[Any]]:
        """Yield every visible record in file order."""
        for index in range(self._record_count):
            record = self.get_record(index)
            if record is not None:
                yield record

    def is_deleted(self, index: int) -> bool:
        self._check_open()
        self._require_codec()
        self._check_record_index(index)
        return self._read_at(self._record_offset(index), 1, f"read record {index}") == DELETED_FLAG

    # --- writing ---

    def set_deleted(self, index: int, deleted: bool = True) -> None:
        """Flag a record as deleted (or active again) without touching its data."""
        self._check_writable()
        self._require_codec()
        self._check_record_index(index)
        self._write_at(self._record_offset(index), DELETED_FLAG if deleted else ACTIVE_FLAG, f"flag record {index}")

    def update_field(self, index: int, field_ref: int | str, value: Any) -> None:
        """Overwrite one field of one record in place.

        Only the field's own bytes are written, plus the NULL_FLAGS bytes for
        nullable and variable-length fields. None is accepted for nullable
        fields only.
        """
        self._check_writable()
        codec = self._require_codec()
        self._check_record_index(index)
        position = codec.user_positions[self._resolve_field(field_ref)]
        field = codec.fields[position]
        if value is None and not field.nullable:
            raise InvalidFieldValueError(f"Null value for field {field.name!r}")

        data = codec.encode_field(field, value)
        self._write_at(self._record_offset(index) + codec.offsets[position], data, f"update record {index}")

        flag_states = codec.flag_bits_for(position, value)
        if flag_states:
            self._update_null_flags(index, flag_states)

    def _update_null_flags(self, index: int, states: dict[int, bool]) -> None:
        codec = self._codec
        position = codec.null_flags_position
        if position is None:
            return

        field = codec.fields[position]
        offset = self._record_offset(index) + codec.offsets[position]
        flags = int.from_bytes(self._read_at(offset, field.length, f"read null flags of record {index}"), "little")
        flags = _apply_flag_states(flags, states)
        self._write_at(offset, flags.to_bytes(field.length, "little"), f"update null flags of record {index}")

    def update_record(self, index: int, values: Sequence[Any]) -> None:
        """Mark a record active and overwrite every user field.

        Every value is encoded before anything is written; the new record is
        then written in one piece, so a bad value leaves the record as it was.
        """
        self._check_writable()
        codec = self._require_codec()
        self._check_record_index(index)
        if len(values) != self.get_field_count():
            raise InvalidFieldValueError(f"Invalid record: expected {self.get_field_count()} values, got {len(values)}")

        spans = []
        states: dict[int, bool] = {}
        for position, value in zip(codec.user_positions, values):
            field = codec.fields[position]
            if value is None and not field.nullable:
                raise InvalidFieldValueError(f"Null value for field {field.name!r}")
            spans.append((codec.offsets[position], codec.encode_field(field, value)))
            states.update(codec.flag_bits_for(position, value))

        record = bytearray(self._read_record(index))
        record[0:1] = ACTIVE_FLAG
        for offset, data in spans:
            record[offset : offset + len(data)] = data
        if states and codec.null_flags_position is not None:
            field = codec.fields[codec.null_flags_position]
            offset = codec.offsets[codec.null_flags_position]
            flags = _apply_flag_states(int.from_bytes(record[offset : offset + field.length], "little"), states)
            record[offset : offset + field.length] = flags.to_bytes(field.length, "little")

        self._write_at(self._record_offset(index), bytes(record), f"update record {index}")

    def add_record(self, values: Sequence[Any]) -> int:
        """Append a record and return its index.

        The record is encoded in full before anything is written, so a value
        that cannot be encoded leaves the file and the record count untouched.
        """
        self._check_writable()
        if self._codec is None:
            raise IllegalStateError("Fields should be set before adding records")
        if values is None:
            raise InvalidFieldValueError("Null cannot be added as row")

        data = self._codec.encode_record(values)
        index = self._record_count
        self._write_at(self._record_offset(index), data, f"add record {index}")
        self._record_count += 1
        return index

    # --- memo ---

    def set_memo_link(self, link: MemoLink | Path | str) -> None:
        """Attach the memo source. A path is opened as a MemoFile owned by this store."""
        self._check_open()
        if self._memo_link is not None:
            raise IllegalStateError("Memo link is already set")

        if isinstance(link, (str, Path)):
            self._owned_memo = MemoFile(link, self._charset)
            link = self._owned_memo

        self._memo_link = link
        if self._codec is not None:
            self._codec.memo_link = link

    # --- lifecycle ---

    def sync(self) -> None:
        """Flush all writes to disk."""
        if self._file is not None:
            try:
                self._file.flush()
                os.fsync(self._file.fileno())
            except OSError as e:
                raise DBFIOError(f"Cannot sync {self.path}: {e}") from e

    def close(self) -> None:
        """Persist the record count, header and end-of-data marker, then release the file.

        Safe to call more than once; only the first call does anything.
        """
        if self._closed:
            return
        self._closed = True

        try:
            if self._codec is not None and self._file is not None and not self.read_only:
                self._finalize()
        finally:
            self._release()
        logger.debug("Closed %s with %d records", self.path, self._record_count)

    def _finalize(self) -> None:
        end_of_data = self._record_offset(self._record_count)
        size = self._file_size()

        header = self._header.model_copy(update={"number_of_records": self._record_count}).stamped()
        self._write_at(0, header.to_bytes(self._charset), "write header")
        self._header = header

        try:
            if size <= end_of_data + 1:
                self._file.seek(end_of_data)
                self._file.write(bytes([END_OF_DATA]))
                self._file.truncate()
            else:
                logger.warning("%s: %d unexpected bytes after the last record", self.path, size - end_of_data)
                self._file.seek(size)
                self._file.write(bytes([END_OF_DATA]))
            self._file.flush()
        except OSError as e:
            raise DBFIOError(f"Error while trying to write end of data in {self.path}: {e}") from e

    def _release(self) -> None:
        if self._owned_memo is not None:
            self._owned_memo.close()
            self._owned_memo = None
        if self._file is not None:
            self._file.close()
            self._file = None

    def __enter__(self) -> Self:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
