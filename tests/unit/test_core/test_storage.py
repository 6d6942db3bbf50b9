"""
test_storage.py - 원자적 파일 쓰기 테스트

DoD:
- 실패 시 기존 파일 보존, temp 파일 정리
- 권한 비트 복사 (mode_from)
"""

import json
import os
import stat
from pathlib import Path
from unittest.mock import patch

import pytest

from src.core.storage import atomic_write_bytes, atomic_write_json, atomic_write_text, load_json


class TestAtomicWrite:
    """atomic_write_* 함수 테스트."""

    def test_creates_parent_directories(self, tmp_path: Path):
        path = tmp_path / "a" / "b" / "file.txt"
        atomic_write_text(path, "hello")
        assert path.read_text(encoding="utf-8") == "hello"

    def test_replaces_existing_file(self, tmp_path: Path):
        path = tmp_path / "file.txt"
        path.write_text("old", encoding="utf-8")
        atomic_write_text(path, "new")
        assert path.read_text(encoding="utf-8") == "new"

    def test_failure_keeps_original_and_cleans_temp(self, tmp_path: Path):
        path = tmp_path / "file.txt"
        path.write_text("original", encoding="utf-8")

        with patch("src.core.storage.os.replace", side_effect=OSError("disk full")):
            with pytest.raises(OSError):
                atomic_write_bytes(path, b"partial")

        assert path.read_text(encoding="utf-8") == "original"
        assert [p.name for p in tmp_path.iterdir()] == ["file.txt"]

    @pytest.mark.skipif(os.name == "nt", reason="POSIX permission bits")
    def test_mode_copied_from_source(self, tmp_path: Path):
        source = tmp_path / "run.sh"
        source.write_text("#!/bin/sh\n", encoding="utf-8")
        source.chmod(0o755)
        dest = tmp_path / "out" / "run.sh"

        atomic_write_bytes(dest, source.read_bytes(), mode_from=source)

        assert stat.S_IMODE(dest.stat().st_mode) == 0o755

    @pytest.mark.skipif(os.name == "nt", reason="POSIX permission bits")
    def test_default_mode_is_readable(self, tmp_path: Path):
        path = tmp_path / "file.txt"
        atomic_write_text(path, "x")
        assert stat.S_IMODE(path.stat().st_mode) == 0o644

    def test_json_round_trip(self, tmp_path: Path):
        path = tmp_path / "report.json"
        atomic_write_json(path, {"name": "데모", "count": 2})

        assert load_json(path) == {"name": "데모", "count": 2}
        # ensure_ascii=False
        assert "데모" in path.read_text(encoding="utf-8")

    def test_load_json_invalid(self, tmp_path: Path):
        path = tmp_path / "bad.json"
        path.write_text("{oops", encoding="utf-8")
        with pytest.raises(json.JSONDecodeError):
            load_json(path)
