"""Tests for the dbf_inspect command line tool."""

import subprocess
import sys
import tempfile
from datetime import date
from decimal import Decimal
from pathlib import Path

from models.field import FieldDescriptor, FieldType
from storage.store import RandomAccessStore

TOOL = Path(__file__).parent.parent / "tools" / "dbf_inspect.py"


def run_tool(*args: str) -> subprocess.CompletedProcess:
    return subprocess.run([sys.executable, str(TOOL), *args], capture_output=True, text=True)


def create_table(path: Path) -> None:
    with RandomAccessStore(path) as store:
        store.define_fields(
            [
                FieldDescriptor(name="NAME", field_type=FieldType.CHARACTER, length=10),
                FieldDescriptor(name="AMOUNT", field_type=FieldType.NUMERIC, length=8, decimal_count=2),
                FieldDescriptor(name="BORN", field_type=FieldType.DATE),
            ]
        )
        store.add_record(["Alice", Decimal("12.50"), date(1990, 4, 1)])
        store.add_record(["Bob", Decimal("1"), None])
        store.set_deleted(1)


class TestInspectTool:
    """Tests for the inspection views."""

    def test_summary(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "people.dbf"
            create_table(path)

            result = run_tool("--db", str(path), "--summary")

            assert result.returncode == 0, result.stderr
            assert "TABLE SUMMARY" in result.stdout
            assert "Records: 2" in result.stdout
            assert "Deleted Records: 1" in result.stdout

    def test_fields(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "people.dbf"
            create_table(path)

            result = run_tool("--db", str(path), "--fields")

            assert result.returncode == 0, result.stderr
            assert "AMOUNT" in result.stdout
            assert "NUMERIC" in result.stdout

    def test_record(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "people.dbf"
            create_table(path)

            result = run_tool("--db", str(path), "--record", "0")

            assert result.returncode == 0, result.stderr
            assert "'Alice'" in result.stdout

    def test_deleted_record(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "people.dbf"
            create_table(path)

            hidden = run_tool("--db", str(path), "--record", "1")
            shown = run_tool("--db", str(path), "--record", "1", "--show-deleted")

            assert "use --show-deleted" in hidden.stdout
            assert "'Bob'" in shown.stdout

    def test_does_not_modify_file(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "people.dbf"
            create_table(path)
            before = path.read_bytes()

            run_tool("--db", str(path), "--summary")

            assert path.read_bytes() == before

    def test_missing_file(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            result = run_tool("--db", str(Path(tmpdir) / "missing.dbf"))

            assert result.returncode == 1
            assert "Table file not found" in result.stderr

    def test_record_out_of_range(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "people.dbf"
            create_table(path)

            result = run_tool("--db", str(path), "--record", "5")

            assert result.returncode == 1
            assert "out_of_range" in result.stderr
