"""Error taxonomy for dbf-access.

Every error raised by the store carries an explicit ``kind`` so callers can
dispatch on it without matching on message text. Each class also derives from
the closest builtin exception so generic ``except ValueError`` style handlers
keep working.
"""

from enum import Enum
from typing import ClassVar


class ErrorKind(Enum):
    MALFORMED_HEADER = "malformed_header"
    INVALID_FIELD_DEFINITION = "invalid_field_definition"
    ILLEGAL_STATE = "illegal_state"
    OUT_OF_RANGE = "out_of_range"
    RECORD_LENGTH_MISMATCH = "record_length_mismatch"
    UNSUPPORTED_FIELD_TYPE = "unsupported_field_type"
    INVALID_FIELD_VALUE = "invalid_field_value"
    IO_FAILURE = "io_failure"


class DBFError(Exception):
    """Base class for all dbf-access errors."""

    kind: ClassVar[ErrorKind]


class MalformedHeaderError(DBFError, ValueError):
    """Header could not be parsed: bad signature, truncated prologue or descriptor."""

    kind = ErrorKind.MALFORMED_HEADER


class UnsupportedCharsetError(MalformedHeaderError):
    """Requested charset has no language driver code."""


class InvalidFieldDefinitionError(DBFError, ValueError):
    kind = ErrorKind.INVALID_FIELD_DEFINITION


class IllegalStateError(DBFError, RuntimeError):
    """Operation not allowed in the store's current state (closed, already set...)."""

    kind = ErrorKind.ILLEGAL_STATE


class OutOfRangeError(DBFError, IndexError):
    kind = ErrorKind.OUT_OF_RANGE


class RecordLengthMismatchError(DBFError, ValueError):
    """A record read returned fewer bytes than the header's record length."""

    kind = ErrorKind.RECORD_LENGTH_MISMATCH


class UnsupportedFieldTypeError(DBFError, ValueError):
    kind = ErrorKind.UNSUPPORTED_FIELD_TYPE


class InvalidFieldValueError(DBFError, ValueError):
    """Value cannot be encoded into its field (wrong type, does not fit)."""

    kind = ErrorKind.INVALID_FIELD_VALUE


class DBFIOError(DBFError, OSError):
    """Wraps an underlying OSError with the operation that triggered it."""

    kind = ErrorKind.IO_FAILURE
