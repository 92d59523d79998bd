"""Per-type encode/decode rules and whole-record (de)serialization.

Records are decoded positionally: byte 0 is the deletion flag and every field
then consumes exactly ``field.length`` bytes, in declaration order. All
type-specific work goes through FIELD_CODECS, which maps every FieldType to
its decoder and, where the type can be written, its encoder.

Struct format reference (https://docs.python.org/3/library/struct.html):
    <  = little-endian byte order
    i  = signed int (4 bytes)
    d  = double float (8 bytes)
"""

import re
import struct
from collections.abc import Callable, Sequence
from datetime import date, datetime, time, timedelta
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import TYPE_CHECKING, Any, NamedTuple

from exceptions import InvalidFieldValueError, RecordLengthMismatchError, UnsupportedFieldTypeError
from models.charset import DEFAULT_CHARSET
from models.field import FieldDescriptor, FieldType

if TYPE_CHECKING:
    from storage.memo import MemoLink

ACTIVE_FLAG = b" "
DELETED_FLAG = b"*"

MILLISECONDS_PER_DAY = 24 * 60 * 60 * 1000
# Julian day 0 (24 Nov 4713 BC, proleptic Gregorian) relative to the Unix epoch
JULIAN_EPOCH_MILLIS = -210866803200000
UNIX_EPOCH = datetime(1970, 1, 1)

INT32_MIN = -(2**31)
INT32_MAX = 2**31 - 1

# Plain decimal text: optional sign, digits with an optional point, optional exponent
NUMERIC_TEXT = re.compile(rb"[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?")

Decoder = Callable[["RecordCodec", FieldDescriptor, bytes], Any]
Encoder = Callable[["RecordCodec", FieldDescriptor, Any], bytes]


class FieldCodec(NamedTuple):
    decode: Decoder
    encode: Encoder | None = None


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float, Decimal)) and not isinstance(value, bool)


# --- CHARACTER ---


def _decode_character(codec: "RecordCodec", field: FieldDescriptor, raw: bytes) -> str:
    if codec.trim_right_spaces:
        raw = raw.rstrip(b" ")
    return raw.decode(codec.charset, errors="replace")


def _encode_character(codec: "RecordCodec", field: FieldDescriptor, value: Any) -> bytes:
    text = "" if value is None else str(value)
    data = text.encode(codec.charset, errors="replace")
    return data[: field.length].ljust(field.length, b" ")


# --- VARCHAR / VARBINARY ---


def _variable_payload(codec: "RecordCodec", field: FieldDescriptor, value: Any) -> bytes:
    if value is None:
        return b""
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value)
    if field.field_type is FieldType.VARCHAR and isinstance(value, str):
        return value.encode(codec.charset, errors="replace")
    raise InvalidFieldValueError(f"{field.field_type.name} field {field.name!r} cannot store {type(value).__name__}")


def _decode_variable(codec: "RecordCodec", field: FieldDescriptor, raw: bytes) -> bytes:
    # Payload length lives in the NULL_FLAGS pass, see RecordCodec.decode_record
    return bytes(raw)


def _encode_variable(codec: "RecordCodec", field: FieldDescriptor, value: Any) -> bytes:
    payload = _variable_payload(codec, field, value)
    if len(payload) >= field.length:
        return payload[: field.length]
    # Short payloads keep their length in the last byte of the field
    return payload.ljust(field.length - 1, b"\x00") + bytes([len(payload)])


# --- DATE ---


def _decode_date(codec: "RecordCodec", field: FieldDescriptor, raw: bytes) -> date | None:
    text = raw[:8]
    if len(text) != 8 or not text.isdigit():
        return None
    try:
        return date(int(text[:4]), int(text[4:6]), int(text[6:8]))
    except ValueError:
        return None


def _encode_date(codec: "RecordCodec", field: FieldDescriptor, value: Any) -> bytes:
    if value is None:
        return b" " * 8
    if not isinstance(value, date):
        raise InvalidFieldValueError(f"DATE field {field.name!r} expects a date, got {type(value).__name__}")
    return f"{value.year:04d}{value.month:02d}{value.day:02d}".encode("ascii")


# --- NUMERIC / FLOATING_POINT ---


def _decode_numeric(codec: "RecordCodec", field: FieldDescriptor, raw: bytes) -> Decimal | None:
    text = raw.replace(b"\x00", b" ").strip()
    # NaN, Infinity and underscore groupings are rejected like any other junk
    if not NUMERIC_TEXT.fullmatch(text):
        return None
    return Decimal(text.decode("ascii"))


def _encode_numeric(codec: "RecordCodec", field: FieldDescriptor, value: Any) -> bytes:
    if value is None:
        return b" " * field.length
    if not _is_number(value):
        raise InvalidFieldValueError(f"{field.field_type.name} field {field.name!r} expects a number, got {value!r}")

    number = Decimal(str(value)) if isinstance(value, float) else Decimal(value)
    if not number.is_finite():
        raise InvalidFieldValueError(f"{field.field_type.name} field {field.name!r} cannot store {value!r}")
    try:
        text = f"{number.quantize(Decimal(1).scaleb(-field.decimal_count), rounding=ROUND_HALF_UP):f}"
    except InvalidOperation:
        raise InvalidFieldValueError(f"Value {value!r} does not fit field {field.name!r}") from None

    if len(text) > field.length:
        raise InvalidFieldValueError(
            f"Value {value!r} needs {len(text)} characters, field {field.name!r} holds {field.length}"
        )
    return text.rjust(field.length).encode("ascii")


# --- LOGICAL ---


def _decode_logical(codec: "RecordCodec", field: FieldDescriptor, raw: bytes) -> bool | None:
    flag = raw[0]
    if flag in b"TtYy":
        return True
    if flag in b"FfNn":
        return False
    return None


def _encode_logical(codec: "RecordCodec", field: FieldDescriptor, value: Any) -> bytes:
    if isinstance(value, bool):
        return b"T" if value else b"F"
    return b"?"


# --- LONG / AUTOINCREMENT / CURRENCY ---


def _decode_long(codec: "RecordCodec", field: FieldDescriptor, raw: bytes) -> int:
    return struct.unpack("<i", raw[:4])[0]


def _encode_long(codec: "RecordCodec", field: FieldDescriptor, value: Any) -> bytes:
    if value is None:
        return bytes(4)
    if not isinstance(value, int) or isinstance(value, bool):
        raise InvalidFieldValueError(f"LONG field {field.name!r} expects an int, got {value!r}")
    if not INT32_MIN <= value <= INT32_MAX:
        raise InvalidFieldValueError(f"Value {value} out of 32-bit range for field {field.name!r}")
    return struct.pack("<i", value)


def _decode_currency(codec: "RecordCodec", field: FieldDescriptor, raw: bytes) -> Decimal:
    # Four implied decimals: 12345 -> "12345" -> 1.2345
    digits = f"{struct.unpack('<i', raw[:4])[0]:05d}"
    return Decimal(f"{digits[:-4]}.{digits[-4:]}")


# --- TIMESTAMP ---


def _decode_timestamp(codec: "RecordCodec", field: FieldDescriptor, raw: bytes) -> datetime | None:
    days, millis = struct.unpack("<ii", raw[:8])
    if days == 0 and millis == 0:
        return None
    offset = days * MILLISECONDS_PER_DAY + JULIAN_EPOCH_MILLIS + millis
    try:
        # Naive local wall-clock time, as stored
        return UNIX_EPOCH + timedelta(milliseconds=offset)
    except OverflowError:
        return None


def _encode_timestamp(codec: "RecordCodec", field: FieldDescriptor, value: Any) -> bytes:
    if value is None:
        return bytes(8)
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone().replace(tzinfo=None)
    elif isinstance(value, date):
        value = datetime.combine(value, time())
    else:
        raise InvalidFieldValueError(f"TIMESTAMP field {field.name!r} expects a datetime, got {value!r}")

    offset = (value - UNIX_EPOCH) // timedelta(milliseconds=1)
    days, millis = divmod(offset - JULIAN_EPOCH_MILLIS, MILLISECONDS_PER_DAY)
    return struct.pack("<ii", days, millis)


# --- DOUBLE / BINARY ---


def _decode_double(codec: "RecordCodec", field: FieldDescriptor, raw: bytes) -> float:
    return struct.unpack("<d", raw[:8])[0]


def _encode_double(codec: "RecordCodec", field: FieldDescriptor, value: Any) -> bytes:
    if value is None:
        return bytes(8)
    if not _is_number(value):
        raise InvalidFieldValueError(f"{field.field_type.name} field {field.name!r} expects a number, got {value!r}")
    return struct.pack("<d", float(value))


def _decode_binary(codec: "RecordCodec", field: FieldDescriptor, raw: bytes) -> Any:
    if field.length == 8:
        return _decode_double(codec, field, raw)
    return _decode_memo(codec, field, raw)


def _encode_binary(codec: "RecordCodec", field: FieldDescriptor, value: Any) -> bytes:
    if field.length == 8:
        return _encode_double(codec, field, value)
    return _encode_memo(codec, field, value)


# --- MEMO family ---


def _memo_block(field: FieldDescriptor, raw: bytes) -> int | None:
    if field.length == 10:
        text = raw.strip(b" \x00")
        return int(text) if text.isdigit() else None
    return struct.unpack("<i", raw[:4])[0]


def _decode_memo(codec: "RecordCodec", field: FieldDescriptor, raw: bytes) -> Any:
    block = _memo_block(field, raw)
    # Block 0 is the memo file header, never a payload
    if not block or codec.memo_link is None:
        return None
    return codec.memo_link.read_data(block, field.field_type)


def _encode_memo(codec: "RecordCodec", field: FieldDescriptor, value: Any) -> bytes:
    if value is not None:
        raise UnsupportedFieldTypeError(f"Writing {field.field_type.name} data is not supported (field {field.name!r})")
    return b" " * field.length if field.length == 10 else bytes(field.length)


# --- NULL_FLAGS ---


def _decode_null_flags(codec: "RecordCodec", field: FieldDescriptor, raw: bytes) -> int:
    return int.from_bytes(raw, "little")


FIELD_CODECS: dict[FieldType, FieldCodec] = {
    FieldType.CHARACTER: FieldCodec(_decode_character, _encode_character),
    FieldType.VARCHAR: FieldCodec(_decode_variable, _encode_variable),
    FieldType.VARBINARY: FieldCodec(_decode_variable, _encode_variable),
    FieldType.DATE: FieldCodec(_decode_date, _encode_date),
    FieldType.NUMERIC: FieldCodec(_decode_numeric, _encode_numeric),
    FieldType.FLOATING_POINT: FieldCodec(_decode_numeric, _encode_numeric),
    FieldType.LOGICAL: FieldCodec(_decode_logical, _encode_logical),
    FieldType.LONG: FieldCodec(_decode_long, _encode_long),
    FieldType.AUTOINCREMENT: FieldCodec(_decode_long),
    FieldType.CURRENCY: FieldCodec(_decode_currency),
    FieldType.TIMESTAMP: FieldCodec(_decode_timestamp, _encode_timestamp),
    FieldType.TIMESTAMP_DBASE7: FieldCodec(_decode_timestamp, _encode_timestamp),
    FieldType.DOUBLE: FieldCodec(_decode_double, _encode_double),
    FieldType.MEMO: FieldCodec(_decode_memo, _encode_memo),
    FieldType.GENERAL_OLE: FieldCodec(_decode_memo, _encode_memo),
    FieldType.PICTURE: FieldCodec(_decode_memo, _encode_memo),
    FieldType.BLOB: FieldCodec(_decode_memo, _encode_memo),
    FieldType.BINARY: FieldCodec(_decode_binary, _encode_binary),
    FieldType.NULL_FLAGS: FieldCodec(_decode_null_flags),
}


class RecordCodec:
    """Encodes and decodes whole records for one field layout.

    Nullable and variable-length fields each own bits in the NULL_FLAGS
    system field, assigned in declaration order: a nullable field takes one
    bit (set = null), then a VARCHAR/VARBINARY field takes one more (set = the
    payload fills the field, clear = the last byte holds the payload length).
    """

    def __init__(
        self,
        fields: Sequence[FieldDescriptor],
        charset: str = DEFAULT_CHARSET,
        trim_right_spaces: bool = True,
        memo_link: "MemoLink | None" = None,
    ):
        self.fields = tuple(fields)
        self.charset = charset
        self.trim_right_spaces = trim_right_spaces
        self.memo_link = memo_link

        offsets = []
        offset = 1  # Skip deletion flag
        for field in self.fields:
            offsets.append(offset)
            offset += field.length
        self.offsets = tuple(offsets)
        self.record_length = offset

        self.user_positions = tuple(pos for pos, field in enumerate(self.fields) if not field.system)
        self.null_flags_position = next(
            (pos for pos, field in enumerate(self.fields) if field.field_type is FieldType.NULL_FLAGS), None
        )

        # field position -> (null bit, variable-length bit)
        self._flag_bits: dict[int, tuple[int | None, int | None]] = {}
        bit = 0
        for pos, field in enumerate(self.fields):
            null_bit = var_bit = None
            if field.nullable:
                null_bit, bit = bit, bit + 1
            if field.is_variable_length:
                var_bit, bit = bit, bit + 1
            if null_bit is not None or var_bit is not None:
                self._flag_bits[pos] = (null_bit, var_bit)
        self.flag_bit_count = bit

    def decode_field(self, field: FieldDescriptor, raw: bytes) -> Any:
        return FIELD_CODECS[field.field_type].decode(self, field, raw)

    def encode_field(self, field: FieldDescriptor, value: Any) -> bytes:
        """Encode one value to exactly ``field.length`` bytes."""
        codec = FIELD_CODECS[field.field_type]
        if codec.encode is None:
            raise UnsupportedFieldTypeError(f"Cannot write {field.field_type.name} field {field.name!r}")
        return codec.encode(self, field, value)

    def flag_bits_for(self, position: int, value: Any) -> dict[int, bool]:
        """NULL_FLAGS bit states implied by writing ``value`` at field ``position``."""
        null_bit, var_bit = self._flag_bits.get(position, (None, None))
        field = self.fields[position]
        states = {}
        if null_bit is not None:
            states[null_bit] = value is None
        if var_bit is not None:
            states[var_bit] = value is not None and len(_variable_payload(self, field, value)) >= field.length
        return states

    def decode_record(self, data: bytes) -> list[Any]:
        """Decode a full record (deletion flag included) into user-visible values.

        Bytes past the last field are ignored; some writers pad records.
        """
        if len(data) < self.record_length:
            raise RecordLengthMismatchError(f"Record length mismatch: got {len(data)} bytes, expected {self.record_length}")

        values = [
            self.decode_field(field, data[offset : offset + field.length])
            for field, offset in zip(self.fields, self.offsets)
        ]

        flags = values[self.null_flags_position] if self.null_flags_position is not None else None
        for pos, (null_bit, var_bit) in self._flag_bits.items():
            if flags is not None and null_bit is not None and flags >> null_bit & 1:
                values[pos] = None
                continue
            if var_bit is not None:
                # Without a NULL_FLAGS field every variable field is taken as full
                full = flags is None or bool(flags >> var_bit & 1)
                values[pos] = self._project_variable(self.fields[pos], values[pos], full)

        return [values[pos] for pos in self.user_positions]

    def _project_variable(self, field: FieldDescriptor, raw: bytes, full: bool) -> bytes | str:
        payload = raw if full else raw[: min(raw[-1], len(raw))]
        if field.field_type is FieldType.VARCHAR:
            return payload.decode(self.charset, errors="replace")
        return payload

    def encode_record(self, values: Sequence[Any]) -> bytes:
        """Encode user-visible values into a full active record, NULL_FLAGS included."""
        if len(values) != len(self.user_positions):
            raise InvalidFieldValueError(
                f"Invalid record: expected {len(self.user_positions)} values, got {len(values)}"
            )

        buffer = bytearray(self.record_length)
        buffer[0:1] = ACTIVE_FLAG
        flags = 0
        for pos, value in zip(self.user_positions, values):
            field = self.fields[pos]
            offset = self.offsets[pos]
            buffer[offset : offset + field.length] = self.encode_field(field, value)
            for bit, is_set in self.flag_bits_for(pos, value).items():
                if is_set:
                    flags |= 1 << bit

        if self.null_flags_position is not None:
            field = self.fields[self.null_flags_position]
            offset = self.offsets[self.null_flags_position]
            buffer[offset : offset + field.length] = flags.to_bytes(field.length, "little")
        return bytes(buffer)
