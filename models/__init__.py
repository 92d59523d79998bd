"""Pydantic models for the .dbf on-disk header structures."""

from models.charset import DEFAULT_CHARSET, LANGUAGE_DRIVERS
from models.field import END_OF_FIELDS, FieldDescriptor, FieldListEnd, FieldType
from models.header import END_OF_DATA, DBFHeader

__all__ = [
    "DBFHeader",
    "FieldDescriptor",
    "FieldListEnd",
    "FieldType",
    "END_OF_DATA",
    "END_OF_FIELDS",
    "DEFAULT_CHARSET",
    "LANGUAGE_DRIVERS",
]
