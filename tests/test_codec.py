"""Tests for per-type field codecs and whole-record encoding."""

import struct
from datetime import date, datetime
from decimal import Decimal

import pytest

from exceptions import ErrorKind, InvalidFieldValueError, RecordLengthMismatchError, UnsupportedFieldTypeError
from models.field import FieldDescriptor, FieldType
from storage.codec import FIELD_CODECS, RecordCodec


def field(name, field_type, length=0, decimal_count=0, **kwargs):
    return FieldDescriptor(name=name, field_type=field_type, length=length, decimal_count=decimal_count, **kwargs)


class FakeMemo:
    def __init__(self, blocks):
        self.blocks = blocks
        self.requests = []

    def read_data(self, block_number, field_type):
        self.requests.append((block_number, field_type))
        return self.blocks.get(block_number)


class TestDispatchTable:
    """Tests for FIELD_CODECS coverage."""

    def test_every_type_has_a_decoder(self):
        assert set(FIELD_CODECS) == set(FieldType)
        assert all(callable(codec.decode) for codec in FIELD_CODECS.values())

    def test_read_only_types(self):
        for field_type in (FieldType.AUTOINCREMENT, FieldType.CURRENCY, FieldType.NULL_FLAGS):
            assert FIELD_CODECS[field_type].encode is None


class TestDecode:
    """Tests for decoding individual field types."""

    codec = RecordCodec([])

    def test_character_trimmed(self):
        f = field("C", FieldType.CHARACTER, 8)
        assert self.codec.decode_field(f, b"abc     ") == "abc"

    def test_character_untrimmed(self):
        f = field("C", FieldType.CHARACTER, 8)
        codec = RecordCodec([f], trim_right_spaces=False)
        assert codec.decode_field(f, b"abc     ") == "abc     "

    def test_character_charset(self):
        f = field("C", FieldType.CHARACTER, 4)
        codec = RecordCodec([f], charset="cp866")
        assert codec.decode_field(f, "Мир ".encode("cp866")) == "Мир"

    def test_date(self):
        f = field("D", FieldType.DATE)
        assert self.codec.decode_field(f, b"20230115") == date(2023, 1, 15)

    def test_blank_date(self):
        f = field("D", FieldType.DATE)
        assert self.codec.decode_field(f, b"        ") is None

    def test_invalid_date(self):
        f = field("D", FieldType.DATE)
        assert self.codec.decode_field(f, b"20231399") is None

    def test_numeric(self):
        f = field("N", FieldType.NUMERIC, 8, 2)
        assert self.codec.decode_field(f, b"  -12.50") == Decimal("-12.50")

    def test_blank_numeric(self):
        f = field("N", FieldType.NUMERIC, 8, 2)
        assert self.codec.decode_field(f, b"        ") is None

    @pytest.mark.parametrize("raw", [b"   NaN", b"Infinity", b" 1_000", b"  12abc", b" -", b"  1.2.3"])
    def test_non_numeric_text(self, raw):
        f = field("N", FieldType.NUMERIC, len(raw))
        assert self.codec.decode_field(f, raw) is None

    def test_numeric_exponent(self):
        f = field("F", FieldType.FLOATING_POINT, 8, 2)
        assert self.codec.decode_field(f, b"  1.5E+2") == Decimal("150")

    @pytest.mark.parametrize(
        ("raw", "expected"),
        [(b"T", True), (b"y", True), (b"F", False), (b"n", False), (b"?", None), (b" ", None)],
    )
    def test_logical(self, raw, expected):
        f = field("L", FieldType.LOGICAL)
        assert self.codec.decode_field(f, raw) is expected

    def test_long(self):
        f = field("I", FieldType.LONG)
        assert self.codec.decode_field(f, struct.pack("<i", -42)) == -42

    def test_currency_implied_decimals(self):
        f = field("Y", FieldType.CURRENCY)
        assert self.codec.decode_field(f, struct.pack("<q", 12345)) == Decimal("1.2345")

    def test_currency_small_value(self):
        f = field("Y", FieldType.CURRENCY)
        assert self.codec.decode_field(f, struct.pack("<q", 7)) == Decimal("0.0007")

    @pytest.mark.parametrize(("stored", "expected"), [(-5, Decimal("-0.0005")), (-12345, Decimal("-1.2345"))])
    def test_currency_negative(self, stored, expected):
        f = field("Y", FieldType.CURRENCY)
        assert self.codec.decode_field(f, struct.pack("<q", stored)) == expected

    def test_timestamp_unix_epoch(self):
        f = field("T", FieldType.TIMESTAMP)
        assert self.codec.decode_field(f, struct.pack("<ii", 2440588, 0)) == datetime(1970, 1, 1)

    def test_timestamp_with_time(self):
        f = field("T", FieldType.TIMESTAMP)
        raw = struct.pack("<ii", 2440589, (13 * 3600 + 30 * 60) * 1000)
        assert self.codec.decode_field(f, raw) == datetime(1970, 1, 2, 13, 30)

    def test_empty_timestamp(self):
        f = field("T", FieldType.TIMESTAMP)
        assert self.codec.decode_field(f, bytes(8)) is None

    def test_double(self):
        f = field("O", FieldType.DOUBLE)
        assert self.codec.decode_field(f, struct.pack("<d", 2.5)) == 2.5

    def test_binary_double(self):
        f = field("B", FieldType.BINARY, 8)
        assert self.codec.decode_field(f, struct.pack("<d", -1.25)) == -1.25

    def test_memo_without_link(self):
        f = field("M", FieldType.MEMO)
        assert self.codec.decode_field(f, b"         3") is None

    def test_memo_ascii_reference(self):
        f = field("M", FieldType.MEMO)
        memo = FakeMemo({3: "hello"})
        codec = RecordCodec([f], memo_link=memo)

        assert codec.decode_field(f, b"         3") == "hello"
        assert memo.requests == [(3, FieldType.MEMO)]

    def test_memo_binary_reference(self):
        f = field("G", FieldType.GENERAL_OLE, 4)
        memo = FakeMemo({9: b"\x01\x02"})
        codec = RecordCodec([f], memo_link=memo)

        assert codec.decode_field(f, struct.pack("<i", 9)) == b"\x01\x02"

    def test_memo_block_zero_is_empty(self):
        f = field("M", FieldType.MEMO)
        memo = FakeMemo({})
        codec = RecordCodec([f], memo_link=memo)

        assert codec.decode_field(f, b"          ") is None
        assert codec.decode_field(f, b"0000000000") is None
        assert memo.requests == []


class TestEncode:
    """Tests for encoding individual field types."""

    codec = RecordCodec([])

    def test_character_padded(self):
        f = field("C", FieldType.CHARACTER, 6)
        assert self.codec.encode_field(f, "ab") == b"ab    "

    def test_character_truncated(self):
        f = field("C", FieldType.CHARACTER, 3)
        assert self.codec.encode_field(f, "abcdef") == b"abc"

    def test_date(self):
        f = field("D", FieldType.DATE)
        assert self.codec.encode_field(f, date(2023, 1, 15)) == b"20230115"

    def test_date_wrong_type(self):
        f = field("D", FieldType.DATE)
        with pytest.raises(InvalidFieldValueError, match="expects a date"):
            self.codec.encode_field(f, "2023-01-15")

    def test_numeric_rounded(self):
        f = field("N", FieldType.NUMERIC, 8, 2)
        assert self.codec.encode_field(f, 3.14159) == b"    3.14"
        assert self.codec.encode_field(f, Decimal("2.345")) == b"    2.35"

    def test_numeric_integer(self):
        f = field("N", FieldType.NUMERIC, 5)
        assert self.codec.encode_field(f, -42) == b"  -42"

    def test_numeric_overflow(self):
        f = field("N", FieldType.NUMERIC, 5, 2)
        with pytest.raises(InvalidFieldValueError, match="holds 5") as exc_info:
            self.codec.encode_field(f, 1234.5)
        assert exc_info.value.kind is ErrorKind.INVALID_FIELD_VALUE

    def test_numeric_rejects_bool(self):
        f = field("N", FieldType.NUMERIC, 5)
        with pytest.raises(InvalidFieldValueError, match="expects a number"):
            self.codec.encode_field(f, True)

    def test_logical(self):
        f = field("L", FieldType.LOGICAL)
        assert self.codec.encode_field(f, True) == b"T"
        assert self.codec.encode_field(f, False) == b"F"
        assert self.codec.encode_field(f, None) == b"?"

    def test_long_out_of_range(self):
        f = field("I", FieldType.LONG)
        with pytest.raises(InvalidFieldValueError, match="32-bit"):
            self.codec.encode_field(f, 2**31)

    def test_timestamp(self):
        f = field("T", FieldType.TIMESTAMP)
        assert self.codec.encode_field(f, datetime(1970, 1, 2, 0, 0, 1)) == struct.pack("<ii", 2440589, 1000)

    def test_currency_not_writable(self):
        f = field("Y", FieldType.CURRENCY)
        with pytest.raises(UnsupportedFieldTypeError, match="Cannot write CURRENCY") as exc_info:
            self.codec.encode_field(f, Decimal("1.5"))
        assert exc_info.value.kind is ErrorKind.UNSUPPORTED_FIELD_TYPE

    def test_memo_payload_not_writable(self):
        f = field("M", FieldType.MEMO)
        with pytest.raises(UnsupportedFieldTypeError, match="MEMO"):
            self.codec.encode_field(f, "text")

    def test_memo_blank_reference(self):
        assert self.codec.encode_field(field("M", FieldType.MEMO), None) == b" " * 10
        assert self.codec.encode_field(field("M", FieldType.MEMO, 4), None) == bytes(4)

    def test_varchar_short_payload(self):
        f = field("V", FieldType.VARCHAR, 6)
        assert self.codec.encode_field(f, "abc") == b"abc\x00\x00\x03"

    def test_varchar_full_payload(self):
        f = field("V", FieldType.VARCHAR, 3)
        assert self.codec.encode_field(f, "abcdef") == b"abc"


class TestRecordCodec:
    """Tests for whole-record layout and NULL_FLAGS handling."""

    def test_offsets_skip_deletion_flag(self):
        codec = RecordCodec([field("A", FieldType.CHARACTER, 3), field("B", FieldType.LONG)])

        assert codec.offsets == (1, 4)
        assert codec.record_length == 8

    def test_decode_record(self):
        codec = RecordCodec([field("NAME", FieldType.CHARACTER, 5), field("OK", FieldType.LOGICAL)])
        assert codec.decode_record(b" Bob  T") == ["Bob", True]

    def test_decode_short_record(self):
        codec = RecordCodec([field("NAME", FieldType.CHARACTER, 5)])
        with pytest.raises(RecordLengthMismatchError, match="got 3 bytes") as exc_info:
            codec.decode_record(b" Bo")
        assert exc_info.value.kind is ErrorKind.RECORD_LENGTH_MISMATCH

    def test_encode_record(self):
        codec = RecordCodec([field("NAME", FieldType.CHARACTER, 5), field("N", FieldType.NUMERIC, 4)])
        assert codec.encode_record(["Bob", 12]) == b" Bob    12"

    def test_encode_wrong_value_count(self):
        codec = RecordCodec([field("NAME", FieldType.CHARACTER, 5)])
        with pytest.raises(InvalidFieldValueError, match="expected 1 values, got 2"):
            codec.encode_record(["a", "b"])

    def test_system_fields_hidden(self):
        fields = [field("A", FieldType.CHARACTER, 2, nullable=True)]
        fields.append(FieldDescriptor.null_flags_for(fields))
        codec = RecordCodec(fields)

        assert codec.user_positions == (0,)
        assert codec.decode_record(b" hi\x00") == ["hi"]

    def test_null_bit_projects_none(self):
        fields = [field("A", FieldType.CHARACTER, 2, nullable=True), field("B", FieldType.LONG, nullable=True)]
        fields.append(FieldDescriptor.null_flags_for(fields))
        codec = RecordCodec(fields)

        record = codec.encode_record([None, 5])
        assert record[-1] == 0b01
        assert codec.decode_record(record) == [None, 5]

    def test_variable_length_projection(self):
        fields = [field("V", FieldType.VARCHAR, 6), field("Q", FieldType.VARBINARY, 3)]
        fields.append(FieldDescriptor.null_flags_for(fields))
        codec = RecordCodec(fields)

        record = codec.encode_record(["abc", b"xyz"])
        # VARCHAR short (bit 0 clear), VARBINARY full (bit 1 set)
        assert record[-1] == 0b10
        assert codec.decode_record(record) == ["abc", b"xyz"]

    def test_nullable_varchar_uses_two_bits(self):
        fields = [field("V", FieldType.VARCHAR, 4, nullable=True)]
        fields.append(FieldDescriptor.null_flags_for(fields))
        codec = RecordCodec(fields)

        assert codec.flag_bits_for(0, None) == {0: True, 1: False}
        assert codec.flag_bits_for(0, "abcd") == {0: False, 1: True}
        assert codec.decode_record(codec.encode_record([None])) == [None]
        assert codec.decode_record(codec.encode_record(["ab"])) == ["ab"]

    def test_all_zero_flags_keep_values(self):
        fields = [field("A", FieldType.CHARACTER, 2)]
        fields.append(FieldDescriptor.null_flags_for(fields))
        codec = RecordCodec(fields)

        assert codec.decode_record(b" ok\x00") == ["ok"]

    def test_variable_without_null_flags_is_full(self):
        codec = RecordCodec([field("V", FieldType.VARCHAR, 4)])
        assert codec.decode_record(b" ab\x00\x02") == ["ab\x00\x02"]

    def test_trailing_padding_ignored(self):
        codec = RecordCodec([field("A", FieldType.CHARACTER, 2)])
        assert codec.decode_record(b" ok  ") == ["ok"]
