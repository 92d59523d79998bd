#!/usr/bin/env python3
"""Table inspection tool for debugging .dbf files.

Usage:
    python tools/dbf_inspect.py --db ./data/customers.dbf --summary
    python tools/dbf_inspect.py --db ./data/customers.dbf --fields
    python tools/dbf_inspect.py --db ./data/customers.dbf --record 3 --show-deleted
    python tools/dbf_inspect.py --db ./data/notes.dbf --record 0 --memo ./data/notes.fpt
"""

import argparse
import sys
from pathlib import Path

# Add project root to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from exceptions import DBFError
from models.field import FieldDescriptor
from storage.store import RandomAccessStore


def print_header(store: RandomAccessStore) -> None:
    """Print header prologue information."""
    header = store.header
    print("=== Header ===")
    print(f"  Signature: 0x{header.signature:02X}")
    print(f"  Last Modified: {store.last_modified or '(unset)'}")
    print(f"  Records: {store.get_record_count()}")
    print(f"  Header Length: {header.header_length} bytes")
    print(f"  Record Length: {header.record_length} bytes")
    print(f"  Language Driver: 0x{header.language_driver:02X} ({store.charset})")
    print()


def print_summary(store: RandomAccessStore) -> None:
    """Print table summary."""
    print("=" * 50)
    print("TABLE SUMMARY")
    print("=" * 50)
    print()

    print_header(store)

    deleted = sum(store.is_deleted(i) for i in range(store.get_record_count())) if store.header.fields else 0
    print("=== File Statistics ===")
    print(f"  Fields: {store.get_field_count()} ({len(store.header.fields)} including system fields)")
    print(f"  Active Records: {store.get_record_count() - deleted}")
    print(f"  Deleted Records: {deleted}")
    print(f"  File Size: {store.path.stat().st_size} bytes")
    print()


def _describe_field(field: FieldDescriptor) -> str:
    flags = [name for name, on in (("system", field.system), ("nullable", field.nullable)) if on]
    text = f"{field.name:<10} {field.field_type.name:<16} len={field.length:<5} dec={field.decimal_count}"
    return f"{text} [{', '.join(flags)}]" if flags else text


def print_fields(store: RandomAccessStore) -> None:
    """Print every field descriptor, system fields included."""
    print("=== Fields ===")
    if not store.header.fields:
        print("  No fields defined")
        print()
        return

    for i, field in enumerate(store.header.fields):
        print(f"  [{i}] {_describe_field(field)}")
    print()


def print_record(store: RandomAccessStore, index: int) -> None:
    """Print one record as name/value pairs."""
    print(f"=== Record {index} ===")
    row = store.get_row(index)
    if row is None:
        print("  (deleted, use --show-deleted to display)")
        print()
        return

    if store.is_deleted(index):
        print("  (deleted)")
    for name, value in row.items():
        print(f"  {name:<10} = {value!r}")
    print()


def main() -> None:
    parser = argparse.ArgumentParser(description="Inspect dBase table files")
    parser.add_argument("--db", required=True, help="Path to .dbf file")
    parser.add_argument("--summary", action="store_true", help="Show table summary")
    parser.add_argument("--fields", action="store_true", help="Show field descriptors")
    parser.add_argument("--record", type=int, help="Show specific record")
    parser.add_argument("--show-deleted", action="store_true", help="Display records flagged as deleted")
    parser.add_argument("--memo", help="Path to the companion .dbt/.fpt memo file")
    parser.add_argument("--charset", help="Override the table's code page")

    args = parser.parse_args()

    db_path = Path(args.db)
    if not db_path.exists():
        print(f"Error: Table file not found: {db_path}", file=sys.stderr)
        sys.exit(1)

    try:
        with RandomAccessStore(db_path, args.charset, args.show_deleted, read_only=True) as store:
            if args.memo:
                store.set_memo_link(args.memo)

            if args.fields:
                print_fields(store)
            elif args.record is not None:
                print_record(store, args.record)
            else:
                print_summary(store)
    except DBFError as e:
        print(f"Error ({e.kind.value}): {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
