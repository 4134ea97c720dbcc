"""Tests for path validation and the path middleware."""

import os
import sys
from pathlib import Path
from typing import Any

import pytest

from loopdesk.config import FileConfig, LoopDeskConfig
from loopdesk.foundation.errors import ErrorCode, LoopDeskError
from loopdesk.host.paths import PathValidator


class TestValidate:
    """PathValidator.validate."""

    @pytest.mark.parametrize(
        "target",
        ["/etc/passwd", "/usr/bin/env", "/bin/sh", "/sbin/init", "/var/log/syslog", "~/secrets", "/a/../b"],
    )
    def test_dangerous_patterns(self, target: str) -> None:
        """System locations, home shortcuts and parent references are refused."""
        with pytest.raises(LoopDeskError) as exc_info:
            PathValidator().validate(target)

        assert exc_info.value.code == ErrorCode.PATH_TRAVERSAL

    def test_nul_byte(self) -> None:
        """NUL bytes are refused."""
        with pytest.raises(LoopDeskError) as exc_info:
            PathValidator().validate("/tmp/a\x00b")

        assert exc_info.value.code == ErrorCode.PATH_TRAVERSAL

    def test_absolute_path_is_normalized(self, tmp_path: Path) -> None:
        """Absolute paths come back normalized."""
        assert PathValidator().validate(f"{tmp_path}//sub/./file.md") == os.path.join(str(tmp_path), "sub", "file.md")

    def test_relative_without_base(self) -> None:
        """A relative path with nothing to resolve against is VERIFY_PATH."""
        with pytest.raises(LoopDeskError) as exc_info:
            PathValidator().validate("docs/readme.md")

        assert exc_info.value.code == ErrorCode.VERIFY_PATH

    def test_relative_resolves_against_base(self, tmp_path: Path) -> None:
        """Relative paths are joined onto the base."""
        assert PathValidator().validate("docs/a.md", str(tmp_path)) == os.path.join(str(tmp_path), "docs", "a.md")

    def test_absolute_outside_base(self, tmp_path: Path) -> None:
        """An absolute path outside the base escapes it."""
        (tmp_path / "project").mkdir()
        with pytest.raises(LoopDeskError) as exc_info:
            PathValidator().validate(str(tmp_path / "other" / "x.md"), str(tmp_path / "project"))

        assert exc_info.value.code == ErrorCode.PATH_TRAVERSAL
        assert "escapes" in exc_info.value.context["detail"]

    def test_sibling_prefix_is_not_inside(self, tmp_path: Path) -> None:
        """``/x/project-other`` is not inside ``/x/project``."""
        with pytest.raises(LoopDeskError):
            PathValidator().validate(str(tmp_path / "project-other" / "a"), str(tmp_path / "project"))

    def test_allow_list(self, tmp_path: Path) -> None:
        """With an allow-list, paths outside every base are refused."""
        allowed = tmp_path / "allowed"
        validator = PathValidator([str(allowed)])

        assert validator.validate(str(allowed / "a.md")) == str(allowed / "a.md")
        with pytest.raises(LoopDeskError) as exc_info:
            validator.validate(str(tmp_path / "elsewhere" / "a.md"))
        assert exc_info.value.context["detail"] == "outside allowed directories"

        validator.add_allowed_base_path(str(tmp_path / "elsewhere"))
        assert validator.validate(str(tmp_path / "elsewhere" / "a.md"))


class TestMiddleware:
    """PathValidator.middleware."""

    @pytest.mark.asyncio
    async def test_normalizes_fields(self, tmp_path: Path) -> None:
        """projectPath and a relative path are rewritten before next_."""
        seen: list[Any] = []

        async def next_(payload: Any) -> Any:
            seen.append(payload)
            return "ok"

        original = {"projectPath": f"{tmp_path}/", "path": "docs/a.md"}
        result = await PathValidator().middleware("file:read", original, next_)

        assert result == "ok"
        assert seen == [{"projectPath": str(tmp_path), "path": os.path.join(str(tmp_path), "docs", "a.md")}]
        assert original["path"] == "docs/a.md"

    @pytest.mark.asyncio
    async def test_relative_project_path_rejected(self) -> None:
        """projectPath must be absolute."""

        async def next_(payload: Any) -> Any:
            raise AssertionError("must not be called")

        with pytest.raises(LoopDeskError) as exc_info:
            await PathValidator().middleware("cli:execute", {"projectPath": "relative/dir"}, next_)

        assert exc_info.value.code == ErrorCode.VERIFY_PATH

    @pytest.mark.asyncio
    async def test_payload_without_paths_passes_through(self) -> None:
        """Payloads without path fields are untouched."""

        async def next_(payload: Any) -> Any:
            return payload

        assert await PathValidator().middleware("cli:cancel", {"executionId": "x"}, next_) == {"executionId": "x"}
        assert await PathValidator().middleware("project:state", None, next_) is None

    @pytest.mark.asyncio
    async def test_snake_case_project_path_is_validated(self, tmp_path: Path) -> None:
        """project_path is checked against the allow-list like projectPath."""
        validator = PathValidator([str(tmp_path / "allowed")])

        async def next_(payload: Any) -> Any:
            raise AssertionError("must not be called")

        with pytest.raises(LoopDeskError) as exc_info:
            await validator.middleware(
                "cli:execute", {"command": "pwd", "project_path": str(tmp_path / "outside")}, next_
            )

        assert exc_info.value.code == ErrorCode.PATH_TRAVERSAL
        assert exc_info.value.context["detail"] == "outside allowed directories"

    @pytest.mark.asyncio
    async def test_snake_case_project_path_is_normalized_and_used_as_base(self, tmp_path: Path) -> None:
        """A snake_case project path is rewritten in place and anchors a relative path."""
        seen: list[Any] = []

        async def next_(payload: Any) -> Any:
            seen.append(payload)
            return None

        await PathValidator().middleware("file:read", {"project_path": f"{tmp_path}/", "path": "a.md"}, next_)

        assert seen == [{"project_path": str(tmp_path), "path": os.path.join(str(tmp_path), "a.md")}]

    @pytest.mark.asyncio
    async def test_snake_case_relative_project_path_rejected(self) -> None:
        """project_path must be absolute too."""

        async def next_(payload: Any) -> Any:
            raise AssertionError("must not be called")

        with pytest.raises(LoopDeskError) as exc_info:
            await PathValidator().middleware("cli:execute", {"project_path": "relative/dir"}, next_)

        assert exc_info.value.code == ErrorCode.VERIFY_PATH


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX shell semantics")
class TestHostPathGuard:
    """Path validation on the full dispatch chain."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("key", ["projectPath", "project_path"])
    async def test_execute_outside_allow_list_is_refused(self, make_host, tmp_path: Path, key: str) -> None:
        """cli:execute never spawns in a directory outside the allow-list, whatever the key spelling."""
        allowed = tmp_path / "allowed"
        outside = tmp_path / "outside"
        allowed.mkdir()
        outside.mkdir()
        host = make_host(LoopDeskConfig(files=FileConfig(allowed_base_paths=[str(allowed)])))

        with pytest.raises(LoopDeskError) as exc_info:
            await host.invoke("cli:execute", {"command": "pwd", key: str(outside)})

        assert exc_info.value.code == ErrorCode.PATH_TRAVERSAL
        assert host.engine.list_executions() == []
