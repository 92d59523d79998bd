"""Options accepted when opening a table."""

from pydantic import BaseModel, field_validator

from models.charset import normalize_charset


class StoreOptions(BaseModel):
    """Per-store settings.

    charset: codec used for field names and text values. None means "take it
        from the header's language driver" for existing files and the default
        code page for new ones.
    show_deleted: return records flagged as deleted instead of None.
    trim_right_spaces: strip trailing blanks from CHARACTER values on read.
    """

    charset: str | None = None
    show_deleted: bool = False
    trim_right_spaces: bool = True

    @field_validator("charset")
    @classmethod
    def validate_charset(cls, v: str | None) -> str | None:
        if v is None:
            return v
        try:
            return normalize_charset(v)
        except LookupError:
            raise ValueError(f"Unknown charset: {v}") from None
