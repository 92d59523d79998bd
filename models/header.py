"""Table header model: the 32-byte prologue plus the field descriptor list.

Struct format reference (https://docs.python.org/3/library/struct.html):
    <  = little-endian byte order
    B  = unsigned char (1 byte)
    H  = unsigned short (2 bytes)
    I  = unsigned int (4 bytes)
"""

import io
import struct
from datetime import date
from typing import BinaryIO, ClassVar, Self

from pydantic import BaseModel, ConfigDict, field_validator

from exceptions import MalformedHeaderError
from models.charset import DEFAULT_CHARSET, charset_for_language_driver
from models.field import END_OF_FIELDS, FIELD_DESCRIPTOR_SIZE, HEADER_TERMINATOR, FieldDescriptor

# Prologue format:
#   [signature:1][year:1][month:1][day:1][record_count:4][header_length:2][record_length:2]
#   [reserved1:2][incomplete_txn:1][encryption:1][free_record_thread:4][reserved2:4][reserved3:4]
#   [mdx_flag:1][language_driver:1][reserved4:2]
HEADER_PROLOGUE_FMT = "<BBBBIHHHBBIIIBBH"
HEADER_PROLOGUE_SIZE = 32

# Trailing byte written after the last record
END_OF_DATA = 0x1A

SIG_DBASE_III = 0x03
SIG_DBASE_III_MEMO = 0x83

VALID_SIGNATURES = frozenset(
    {
        0x02,  # FoxBASE
        0x03,  # dBase III / FoxPro, no memo
        0x04,  # dBase IV, no memo
        0x05,  # dBase V, no memo
        0x30,  # Visual FoxPro
        0x31,  # Visual FoxPro, autoincrement
        0x32,  # Visual FoxPro, varchar/varbinary
        0x43,  # dBase IV SQL table
        0x63,  # dBase IV SQL system file
        0x83,  # dBase III with memo
        0x8B,  # dBase IV with memo
        0x8E,  # dBase IV with SQL table
        0xCB,  # dBase IV SQL table with memo
        0xF5,  # FoxPro 2.x with memo
        0xFB,  # FoxBASE with memo
    }
)


class DBFHeader(BaseModel):
    """Table header stored at the start of every .dbf file.

    Layout:
        [prologue:32][field descriptor:32 * n][terminator:1]

    header_length and record_length are derived from the field list whenever
    the header is serialized; the stored values are only trusted for locating
    records in a file that has just been opened.

    Fields:
        signature: format/version byte
        year, month, day: last modification date (year counted from 1900)
        number_of_records: records in the file, deleted ones included
        language_driver: code page identifier (see models.charset)
        fields: ordered column descriptors, system fields included
    """

    model_config = ConfigDict(frozen=True)

    PROLOGUE_SIZE: ClassVar[int] = HEADER_PROLOGUE_SIZE

    signature: int = SIG_DBASE_III
    year: int = 0
    month: int = 0
    day: int = 0
    number_of_records: int = 0
    header_length: int = 0
    record_length: int = 0
    reserved1: int = 0
    incomplete_transaction: int = 0
    encryption_flag: int = 0
    free_record_thread: int = 0
    reserved2: int = 0
    reserved3: int = 0
    mdx_flag: int = 0
    language_driver: int = 0
    reserved4: int = 0
    fields: tuple[FieldDescriptor, ...] = ()

    @field_validator("signature")
    @classmethod
    def validate_signature(cls, v: int) -> int:
        if v not in VALID_SIGNATURES:
            raise ValueError(f"Invalid signature: 0x{v:02X}")
        return v

    @field_validator("number_of_records")
    @classmethod
    def validate_record_count(cls, v: int) -> int:
        if v < 0:
            raise ValueError(f"Record count must not be negative, got {v}")
        return v

    @property
    def derived_header_length(self) -> int:
        return HEADER_PROLOGUE_SIZE + FIELD_DESCRIPTOR_SIZE * len(self.fields) + 1

    @property
    def derived_record_length(self) -> int:
        # Leading byte is the deletion flag
        return 1 + sum(field.length for field in self.fields)

    @property
    def user_fields(self) -> tuple[FieldDescriptor, ...]:
        """Fields visible to callers (system fields excluded)."""
        return tuple(field for field in self.fields if not field.system)

    @property
    def has_memo_fields(self) -> bool:
        return any(field.is_memo for field in self.fields)

    @property
    def last_modified(self) -> date | None:
        """Last modification date, or None when unset or invalid."""
        if not (self.year and self.month and self.day):
            return None
        try:
            return date(1900 + self.year, self.month, self.day)
        except ValueError:
            return None

    def stamped(self, today: date | None = None) -> Self:
        """Copy with the modification date set and lengths re-derived from the fields."""
        today = today or date.today()
        return self.model_copy(
            update={
                "year": today.year - 1900,
                "month": today.month,
                "day": today.day,
                "header_length": self.derived_header_length,
                "record_length": self.derived_record_length,
            }
        )

    def to_bytes(self, charset: str = DEFAULT_CHARSET) -> bytes:
        """Serialize prologue, descriptors and terminator. Lengths are always derived."""
        prologue = struct.pack(
            HEADER_PROLOGUE_FMT,
            self.signature,
            self.year,
            self.month,
            self.day,
            self.number_of_records,
            self.derived_header_length,
            self.derived_record_length,
            self.reserved1,
            self.incomplete_transaction,
            self.encryption_flag,
            self.free_record_thread,
            self.reserved2,
            self.reserved3,
            self.mdx_flag,
            self.language_driver,
            self.reserved4,
        )
        descriptors = b"".join(field.to_bytes(charset) for field in self.fields)
        return prologue + descriptors + bytes([HEADER_TERMINATOR])

    @classmethod
    def read(cls, stream: BinaryIO, charset: str | None = None) -> Self:
        """Parse a header from the current stream position.

        Field names are decoded with ``charset``, falling back to the code page
        named by the language driver byte.
        """
        prologue = stream.read(HEADER_PROLOGUE_SIZE)
        if len(prologue) < HEADER_PROLOGUE_SIZE:
            raise MalformedHeaderError(
                f"Data too short: expected at least {HEADER_PROLOGUE_SIZE} bytes, got {len(prologue)}"
            )

        (
            signature,
            year,
            month,
            day,
            number_of_records,
            header_length,
            record_length,
            reserved1,
            incomplete_transaction,
            encryption_flag,
            free_record_thread,
            reserved2,
            reserved3,
            mdx_flag,
            language_driver,
            reserved4,
        ) = struct.unpack(HEADER_PROLOGUE_FMT, prologue)

        if signature not in VALID_SIGNATURES:
            raise MalformedHeaderError(f"Invalid signature: 0x{signature:02X}")

        names_charset = charset or charset_for_language_driver(language_driver) or DEFAULT_CHARSET
        fields = []
        while (field := FieldDescriptor.read(stream, names_charset)) is not END_OF_FIELDS:
            fields.append(field)

        return cls(
            signature=signature,
            year=year,
            month=month,
            day=day,
            number_of_records=number_of_records,
            header_length=header_length,
            record_length=record_length,
            reserved1=reserved1,
            incomplete_transaction=incomplete_transaction,
            encryption_flag=encryption_flag,
            free_record_thread=free_record_thread,
            reserved2=reserved2,
            reserved3=reserved3,
            mdx_flag=mdx_flag,
            language_driver=language_driver,
            reserved4=reserved4,
            fields=tuple(fields),
        )

    @classmethod
    def from_bytes(cls, data: bytes, charset: str | None = None) -> Self:
        """Deserialize from bytes."""
        return cls.read(io.BytesIO(data), charset)
