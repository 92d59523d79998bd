"""Language driver byte <-> Python codec mapping.

Only the code pages commonly found in dBase / FoxPro files are listed. The
header's language driver byte (offset 29) selects one of them; ``0x00`` means
"unspecified" and falls back to ``DEFAULT_CHARSET``.
"""

import codecs

DEFAULT_CHARSET = "latin-1"

LANGUAGE_DRIVERS: dict[int, str] = {
    0x01: "cp437",  # US MS-DOS
    0x02: "cp850",  # International MS-DOS
    0x03: "cp1252",  # Windows ANSI
    0x57: "cp1252",  # ANSI (ESRI shapefiles)
    0x64: "cp852",  # Eastern European MS-DOS
    0x65: "cp866",  # Russian MS-DOS
    0x66: "cp865",  # Nordic MS-DOS
    0x67: "cp861",  # Icelandic MS-DOS
    0x6A: "cp737",  # Greek MS-DOS
    0x6B: "cp857",  # Turkish MS-DOS
    0x78: "cp950",  # Traditional Chinese
    0x79: "cp949",  # Korean
    0x7A: "gbk",  # Simplified Chinese
    0x7B: "cp932",  # Japanese
    0x7C: "cp874",  # Thai
    0xC8: "cp1250",  # Eastern European Windows
    0xC9: "cp1251",  # Russian Windows
    0xCA: "cp1254",  # Turkish Windows
    0xCB: "cp1253",  # Greek Windows
}


def normalize_charset(name: str) -> str:
    """Canonical codec name, e.g. ``"windows-1252"`` -> ``"cp1252"``.

    Raises LookupError for names Python does not know.
    """
    return codecs.lookup(name).name


def charset_for_language_driver(code: int) -> str | None:
    """Codec for a language driver byte, or None when unknown/unspecified."""
    return LANGUAGE_DRIVERS.get(code)


def language_driver_for_charset(name: str) -> int | None:
    """Language driver byte for a charset.

    Returns 0 for the default charset (no driver recorded) and None when the
    charset cannot be expressed in a header.
    """
    canonical = normalize_charset(name)
    if canonical == normalize_charset(DEFAULT_CHARSET):
        return 0
    for code, charset in LANGUAGE_DRIVERS.items():
        if normalize_charset(charset) == canonical:
            return code
    return None
