"""
test_materializer.py - FileMaterializer 테스트

DoD:
1. 같은 실행 안의 README 충돌 → overwrite / skip / merge 전략대로 처리
2. 같은 입력 2회 실행 → 같은 결과 (idempotent)
3. 텍스트만 치환, 바이너리는 byte-for-byte
4. 실행 비트 보존
5. 파일 단위 실패는 plan.errors, 배치 계속 (실패한 쓰기는 충돌 대상 아님)
6. 변수를 모두 주면 출력 트리 어디에도 {{ }} 없음
"""

import asyncio
import os
import stat
from unittest.mock import patch

import pytest

from src.core.storage import atomic_write_bytes
from src.domain.errors import InvalidStrategy
from src.domain.schemas import CopyResolution
from src.templates.manager import ManifestStore
from src.templates.materializer import (
    FileMaterializer,
    decode_text,
    detect_placeholders,
    has_placeholders,
    is_binary,
    substitute_variables,
)

VARIABLES = {"projectName": "demo"}


@pytest.fixture
def materializer() -> FileMaterializer:
    return FileMaterializer()


@pytest.fixture
def load():
    store = ManifestStore()

    def _load(*selections):
        result = store.load_many(selections)
        assert result.ok, result.errors
        return result.manifests

    return _load


# =============================================================================
# Variable substitution
# =============================================================================

class TestSubstitution:
    """{{name}} 치환."""

    def test_known_names_replaced(self):
        assert substitute_variables("# {{ projectName }}", VARIABLES) == "# demo"
        assert substitute_variables("{{projectName}}-{{projectName}}", VARIABLES) == "demo-demo"

    def test_unknown_names_left_intact(self):
        text = "Hello {{ userName }} from {{projectName}}"
        assert substitute_variables(text, VARIABLES) == "Hello {{ userName }} from demo"

    def test_detect_placeholders(self):
        assert detect_placeholders("{{ a }} and {{b}}") == ["a", "b"]
        assert has_placeholders("x {{y}}")
        assert not has_placeholders("no braces { here }")

    def test_binary_detection(self):
        assert is_binary(b"\x89PNG\r\n\x1a\n\x00\x00")
        assert decode_text(b"\x00abc") is None
        assert decode_text(b"\xff\xfe\xfd") is None
        assert decode_text("한글".encode("utf-8")) == "한글"


# =============================================================================
# Collisions
# =============================================================================

class TestCollisions:
    """같은 실행 안의 dest 충돌."""

    def test_overwrite_keeps_later_file(
        self, materializer, load, react_template, supabase_template, target_root
    ):
        manifests = load(react_template, supabase_template)
        plan = materializer.materialize(manifests, target_root, VARIABLES, "overwrite")

        assert (target_root / "README.md").read_text(encoding="utf-8") == "# demo (supabase)\n"
        readme = plan.entries_for("README.md")
        assert [e.resolution for e in readme] == [
            CopyResolution.WRITTEN,
            CopyResolution.OVERWRITTEN,
        ]
        assert readme[1].conflicts_with == ["react/basic"]
        assert len(plan.collisions) == 1
        assert plan.errors == []

    def test_skip_keeps_first_file(
        self, materializer, load, react_template, supabase_template, target_root
    ):
        manifests = load(react_template, supabase_template)
        plan = materializer.materialize(manifests, target_root, VARIABLES, "skip")

        assert (target_root / "README.md").read_text(encoding="utf-8") == "# demo (react)\n"
        assert plan.entries_for("README.md")[1].resolution == CopyResolution.SKIPPED
        # 충돌 없는 파일은 모두 기록
        assert (target_root / "lib" / "supabase.ts").exists()
        assert (target_root / "src" / "App.tsx").exists()

    def test_merge_adopts_later_file_and_records_metadata(
        self, materializer, load, react_template, supabase_template, target_root
    ):
        manifests = load(react_template, supabase_template)
        plan = materializer.materialize(manifests, target_root, VARIABLES, "merge")

        assert (target_root / "README.md").read_text(encoding="utf-8") == "# demo (supabase)\n"
        assert plan.conflict_strategy == "merge"
        assert plan.collisions[0].dest_path == "README.md"

    def test_preexisting_file_is_not_a_collision(
        self, materializer, load, react_template, target_root
    ):
        target_root.mkdir()
        (target_root / "README.md").write_text("old", encoding="utf-8")
        plan = materializer.materialize(load(react_template), target_root, VARIABLES, "skip")

        assert plan.collisions == []
        assert (target_root / "README.md").read_text(encoding="utf-8") == "# demo (react)\n"

    def test_invalid_strategy(self, materializer, load, react_template, target_root):
        with pytest.raises(InvalidStrategy):
            materializer.materialize(load(react_template), target_root, VARIABLES, "append")

    def test_rerun_is_idempotent(
        self, materializer, load, react_template, supabase_template, target_root
    ):
        manifests = load(react_template, supabase_template)
        first = materializer.materialize(manifests, target_root, VARIABLES, "skip")
        snapshot = {
            p.relative_to(target_root).as_posix(): p.read_bytes()
            for p in target_root.rglob("*") if p.is_file()
        }
        second = materializer.materialize(manifests, target_root, VARIABLES, "skip")
        again = {
            p.relative_to(target_root).as_posix(): p.read_bytes()
            for p in target_root.rglob("*") if p.is_file()
        }

        assert snapshot == again
        assert first.to_dict() == second.to_dict()


# =============================================================================
# Content handling
# =============================================================================

class TestContent:
    """치환 / 바이너리 / 권한."""

    def test_text_is_substituted(self, materializer, load, react_template, target_root):
        plan = materializer.materialize(load(react_template), target_root, VARIABLES)

        app = (target_root / "src" / "App.tsx").read_text(encoding="utf-8")
        assert app == "export const name = 'demo';\n"
        assert all(e.substituted for e in plan.entries)

    def test_binary_copied_verbatim(self, materializer, load, make_template, target_root):
        payload = b"\x89PNG\x00\x00{{projectName}}\xff"
        selection = make_template("assets", files={"logo.png": payload})
        plan = materializer.materialize(load(selection), target_root, VARIABLES)

        assert (target_root / "logo.png").read_bytes() == payload
        assert plan.entries[0].binary
        assert not plan.entries[0].substituted

    def test_destination_path_is_substituted(
        self, materializer, load, make_template, target_root
    ):
        selection = make_template(
            "docs",
            files={"guide.md": "guide"},
            config={"files": {"guide.md": "docs/{{projectName}}.md"}},
        )
        plan = materializer.materialize(load(selection), target_root, VARIABLES)

        assert (target_root / "docs" / "demo.md").read_text(encoding="utf-8") == "guide"
        assert plan.entries[0].dest_path == "docs/demo.md"

    def test_no_placeholders_left_in_output_tree(
        self, materializer, load, make_template, target_root
    ):
        """모든 변수가 주어지면 파일 내용과 경로 어디에도 {{ 가 남지 않음."""
        variables = {"projectName": "demo", "author": "kim", "port": "3000"}
        app = make_template(
            "app",
            files={
                "README.md": "# {{ projectName }}\nby {{author}}\n",
                "src/config.ts": "export const port = {{port}};\nexport const app = '{{projectName}}';\n",
                "docs/guide.md": "{{projectName}} guide ({{ author }})\n",
            },
            config={
                "files": {
                    "README.md": "README.md",
                    "src/config.ts": "src/{{projectName}}.config.ts",
                    "docs/guide.md": "docs/{{author}}/{{projectName}}.md",
                }
            },
        )
        env = make_template("env", files={".env.local": "PORT={{port}}\nNAME={{projectName}}\n"})
        plan = materializer.materialize(load(app, env), target_root, variables)

        outputs = [p for p in target_root.rglob("*") if p.is_file()]
        assert len(outputs) == 4
        assert plan.errors == []
        for path in outputs:
            rel = path.relative_to(target_root).as_posix()
            assert "{{" not in rel
            assert "{{" not in path.read_text(encoding="utf-8"), rel
        assert (target_root / "src" / "demo.config.ts").exists()
        assert (target_root / "docs" / "kim" / "demo.md").exists()

    @pytest.mark.skipif(os.name == "nt", reason="POSIX permission bits")
    def test_executable_bit_preserved(self, materializer, load, make_template, target_root):
        selection = make_template("scripts", files={"bin/setup.sh": "#!/bin/sh\necho hi\n"})
        source = selection.template_root / "bin" / "setup.sh"
        source.chmod(0o755)
        materializer.materialize(load(selection), target_root, VARIABLES)

        mode = (target_root / "bin" / "setup.sh").stat().st_mode
        assert mode & stat.S_IXUSR


# =============================================================================
# Per-file failures
# =============================================================================

class TestFailures:
    """파일 단위 실패는 기록 후 계속."""

    def test_source_deleted_after_load(self, materializer, load, react_template, target_root):
        manifests = load(react_template)
        (react_template.template_root / "src" / "App.tsx").unlink()
        plan = materializer.materialize(manifests, target_root, VARIABLES)

        assert [e.code for e in plan.errors] == ["SOURCE_FILE_MISSING"]
        assert plan.errors[0].source_template == "react/basic"
        assert (target_root / "README.md").exists()

    def test_destination_escaping_target(self, materializer, load, make_template, target_root):
        selection = make_template(
            "evil",
            files={"a.txt": "a", "b.txt": "b"},
            config={"files": {"a.txt": "../outside.txt", "b.txt": "b.txt"}},
        )
        plan = materializer.materialize(load(selection), target_root, VARIABLES)

        assert [e.code for e in plan.errors] == ["WRITE_FAILED"]
        assert not (target_root.parent / "outside.txt").exists()
        assert (target_root / "b.txt").read_text(encoding="utf-8") == "b"

    @pytest.mark.parametrize("strategy", ["skip", "overwrite"])
    def test_failed_write_does_not_claim_destination(
        self, materializer, load, make_template, target_root, strategy
    ):
        first = make_template("first", files={"README.md": "first"})
        second = make_template("second", files={"README.md": "second"})
        calls = []

        def fail_once(path, data, **kwargs):
            calls.append(path)
            if len(calls) == 1:
                raise OSError("disk full")
            return atomic_write_bytes(path, data, **kwargs)

        with patch("src.templates.materializer.atomic_write_bytes", side_effect=fail_once):
            plan = materializer.materialize(
                load(first, second), target_root, VARIABLES, strategy
            )

        assert [(e.code, e.source_template) for e in plan.errors] == [
            ("WRITE_FAILED", "first/basic")
        ]
        [entry] = plan.entries_for("README.md")
        assert entry.source_template == "second/basic"
        assert entry.resolution == CopyResolution.WRITTEN
        assert entry.conflicts_with == []
        assert plan.collisions == []
        assert (target_root / "README.md").read_text(encoding="utf-8") == "second"

    def test_cancel_stops_before_next_file(self, materializer, load, react_template, target_root):
        cancel = asyncio.Event()
        cancel.set()
        plan = materializer.materialize(
            load(react_template), target_root, VARIABLES, cancel=cancel
        )

        assert plan.cancelled
        assert plan.entries == []
        assert not target_root.exists()
