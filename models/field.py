"""Column metadata: field types and the 32-byte field descriptor.

Struct format reference (https://docs.python.org/3/library/struct.html):
    <   = little-endian byte order
    11s = 11-byte string (NUL padded)
    c   = single byte
    B   = unsigned char (1 byte)
    I   = unsigned int (4 bytes)
    8s  = 8-byte string (reserved area)
"""

import struct
from collections.abc import Iterable
from enum import Enum
from typing import Any, BinaryIO, ClassVar, Self

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator, model_validator

from exceptions import MalformedHeaderError, UnsupportedFieldTypeError

# Descriptor format: [name:11][type:1][displacement:4][length:1][decimal_count:1]
#                    [flags:1][autoinc_next:4][autoinc_step:1][reserved:8]
FIELD_DESCRIPTOR_FMT = "<11scIBBBIB8s"
FIELD_DESCRIPTOR_SIZE = 32

# Byte that ends the descriptor list in the header
HEADER_TERMINATOR = 0x0D

FLAG_SYSTEM = 0x01
FLAG_NULLABLE = 0x02

MAX_NAME_LENGTH = 10
NULL_FLAGS_NAME = "_NullFlags"


class FieldType(str, Enum):
    """Column types, keyed by their one-character type code."""

    CHARACTER = "C"
    VARCHAR = "V"
    VARBINARY = "Q"
    DATE = "D"
    FLOATING_POINT = "F"
    NUMERIC = "N"
    LOGICAL = "L"
    LONG = "I"
    AUTOINCREMENT = "+"
    CURRENCY = "Y"
    TIMESTAMP = "T"
    TIMESTAMP_DBASE7 = "@"
    DOUBLE = "O"
    MEMO = "M"
    GENERAL_OLE = "G"
    PICTURE = "P"
    BLOB = "W"
    BINARY = "B"
    NULL_FLAGS = "0"


FIXED_LENGTHS: dict[FieldType, int] = {
    FieldType.DATE: 8,
    FieldType.LOGICAL: 1,
    FieldType.LONG: 4,
    FieldType.AUTOINCREMENT: 4,
    FieldType.CURRENCY: 8,
    FieldType.TIMESTAMP: 8,
    FieldType.TIMESTAMP_DBASE7: 8,
    FieldType.DOUBLE: 8,
}

MEMO_TYPES = frozenset({FieldType.MEMO, FieldType.GENERAL_OLE, FieldType.PICTURE, FieldType.BLOB})
VARIABLE_TYPES = frozenset({FieldType.VARCHAR, FieldType.VARBINARY})
NUMERIC_TYPES = frozenset({FieldType.NUMERIC, FieldType.FLOATING_POINT})

# Memo block references are either 10 ASCII digits (dBase) or a 4-byte int (FoxPro)
MEMO_REFERENCE_LENGTHS = (4, 10)


class FieldListEnd(Enum):
    """Returned by FieldDescriptor.read() when the header terminator is reached."""

    END_OF_FIELDS = "end_of_fields"


END_OF_FIELDS = FieldListEnd.END_OF_FIELDS


class FieldDescriptor(BaseModel):
    """Immutable metadata for one column.

    Layout (32 bytes):
        offset  size  field
        ------  ----  -----
        0       11    name (NUL padded)
        11      1     type code
        12      4     displacement (unused, written as 0)
        16      1     length (CHARACTER: low byte)
        17      1     decimal count (CHARACTER: length high byte)
        18      1     flags (0x01 system, 0x02 nullable)
        19      4     autoincrement next value
        23      1     autoincrement step
        24      8     reserved

    Fixed-size types (DATE, LOGICAL, LONG, ...) get their length filled in
    when it is omitted. Memo-family fields default to the 10-byte ASCII block
    reference.
    """

    model_config = ConfigDict(frozen=True)

    SIZE: ClassVar[int] = FIELD_DESCRIPTOR_SIZE

    name: str
    field_type: FieldType
    length: int = 0
    decimal_count: int = 0
    system: bool = False
    nullable: bool = False
    autoincrement_next: int = 0
    autoincrement_step: int = 0

    @model_validator(mode="before")
    @classmethod
    def fill_default_length(cls, data: Any) -> Any:
        if not isinstance(data, dict) or data.get("length"):
            return data
        try:
            field_type = FieldType(data.get("field_type"))
        except ValueError:
            return data
        if field_type in FIXED_LENGTHS:
            return {**data, "length": FIXED_LENGTHS[field_type]}
        if field_type in MEMO_TYPES or field_type is FieldType.BINARY:
            return {**data, "length": 10}
        return data

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not v:
            raise ValueError("Field name must not be empty")
        if len(v) > MAX_NAME_LENGTH:
            raise ValueError(f"Field name must be at most {MAX_NAME_LENGTH} characters, got {v!r}")
        if "\x00" in v or v[0] == chr(HEADER_TERMINATOR):
            raise ValueError(f"Field name contains a reserved character: {v!r}")
        return v

    @field_validator("decimal_count", "autoincrement_step")
    @classmethod
    def validate_byte(cls, v: int) -> int:
        if not 0 <= v <= 0xFF:
            raise ValueError(f"Value must fit in one byte, got {v}")
        return v

    @field_validator("autoincrement_next")
    @classmethod
    def validate_autoincrement_next(cls, v: int) -> int:
        if not 0 <= v <= 0xFFFFFFFF:
            raise ValueError(f"Autoincrement value must fit in 4 bytes, got {v}")
        return v

    @model_validator(mode="after")
    def validate_layout(self) -> Self:
        ft = self.field_type
        max_length = 0xFFFF if ft is FieldType.CHARACTER else 0xFF

        if not 1 <= self.length <= max_length:
            raise ValueError(f"{ft.name} field {self.name!r} length must be 1..{max_length}, got {self.length}")
        if ft in FIXED_LENGTHS and self.length != FIXED_LENGTHS[ft]:
            raise ValueError(f"{ft.name} field {self.name!r} must be {FIXED_LENGTHS[ft]} bytes, got {self.length}")
        if ft in MEMO_TYPES and self.length not in MEMO_REFERENCE_LENGTHS:
            raise ValueError(f"{ft.name} field {self.name!r} must be 4 or 10 bytes, got {self.length}")
        if ft is FieldType.BINARY and self.length not in (4, 8, 10):
            raise ValueError(f"BINARY field {self.name!r} must be 4, 8 or 10 bytes, got {self.length}")
        if ft is FieldType.CHARACTER and self.decimal_count:
            raise ValueError(f"CHARACTER field {self.name!r} cannot declare decimals")
        if ft in NUMERIC_TYPES and self.decimal_count and self.decimal_count > self.length - 2:
            raise ValueError(
                f"{ft.name} field {self.name!r} with length {self.length} cannot hold {self.decimal_count} decimals"
            )
        if ft is FieldType.NULL_FLAGS and not self.system:
            raise ValueError("NULL_FLAGS field must be a system field")
        return self

    @property
    def is_variable_length(self) -> bool:
        return self.field_type in VARIABLE_TYPES

    @property
    def is_memo(self) -> bool:
        """True when the record holds a memo block reference instead of data."""
        if self.field_type is FieldType.BINARY:
            return self.length != 8
        return self.field_type in MEMO_TYPES

    @property
    def null_flag_bits(self) -> int:
        """Number of NULL_FLAGS bits this field consumes."""
        return int(self.nullable) + int(self.is_variable_length)

    @classmethod
    def null_flags_for(cls, fields: Iterable["FieldDescriptor"]) -> "FieldDescriptor":
        """Build the system NULL_FLAGS field sized for the given fields."""
        bits = sum(f.null_flag_bits for f in fields)
        return cls(
            name=NULL_FLAGS_NAME,
            field_type=FieldType.NULL_FLAGS,
            length=max(1, (bits + 7) // 8),
            system=True,
        )

    def to_bytes(self, charset: str = "ascii") -> bytes:
        """Serialize to bytes. See class docstring for layout details."""
        name = self.name.encode(charset, errors="replace")[:MAX_NAME_LENGTH]
        length, decimal_count = self.length, self.decimal_count
        if self.field_type is FieldType.CHARACTER and length > 0xFF:
            # Wide character fields spill the length into the decimal byte
            length, decimal_count = length & 0xFF, length >> 8
        flags = (FLAG_SYSTEM if self.system else 0) | (FLAG_NULLABLE if self.nullable else 0)

        return struct.pack(
            FIELD_DESCRIPTOR_FMT,
            name,
            self.field_type.value.encode("ascii"),
            0,
            length,
            decimal_count,
            flags,
            self.autoincrement_next,
            self.autoincrement_step,
            b"",
        )

    @classmethod
    def from_bytes(cls, data: bytes, charset: str = "ascii") -> Self:
        """Deserialize from bytes."""
        if len(data) < FIELD_DESCRIPTOR_SIZE:
            raise MalformedHeaderError(
                f"Field descriptor too short: expected {FIELD_DESCRIPTOR_SIZE} bytes, got {len(data)}"
            )

        raw_name, raw_type, _displacement, length, decimal_count, flags, autoinc_next, autoinc_step, _reserved = (
            struct.unpack(FIELD_DESCRIPTOR_FMT, data[:FIELD_DESCRIPTOR_SIZE])
        )

        try:
            field_type = FieldType(raw_type.decode("ascii"))
        except (UnicodeDecodeError, ValueError):
            raise UnsupportedFieldTypeError(f"Unknown field type code: {raw_type!r}") from None

        if field_type is FieldType.CHARACTER:
            length |= decimal_count << 8
            decimal_count = 0

        name = raw_name.split(b"\x00", 1)[0].decode(charset, errors="replace").strip()

        try:
            return cls(
                name=name,
                field_type=field_type,
                length=length,
                decimal_count=decimal_count,
                system=bool(flags & FLAG_SYSTEM),
                nullable=bool(flags & FLAG_NULLABLE),
                autoincrement_next=autoinc_next,
                autoincrement_step=autoinc_step,
            )
        except ValidationError as e:
            raise MalformedHeaderError(f"Invalid field descriptor {name!r}: {e}") from e

    @classmethod
    def read(cls, stream: BinaryIO, charset: str = "ascii") -> "FieldDescriptor | FieldListEnd":
        """Read the next descriptor, or END_OF_FIELDS when the terminator byte is found."""
        lead = stream.read(1)
        if not lead:
            raise MalformedHeaderError("Unexpected end of file while reading field descriptors")
        if lead[0] == HEADER_TERMINATOR:
            return END_OF_FIELDS

        rest = stream.read(FIELD_DESCRIPTOR_SIZE - 1)
        return cls.from_bytes(lead + rest, charset)
