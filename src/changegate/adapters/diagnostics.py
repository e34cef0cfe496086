"""Diagnostics providers used for the post-apply check.

SyntaxDiagnostics parses Python, JSON and YAML files in-process.
CommandDiagnostics runs an external checker (mypy, ruff, tsc, ...) on
the touched paths and parses its "path:line[:col]: message" output.
"""

from __future__ import annotations

import ast
import asyncio
import json
import re
from collections.abc import Sequence
from pathlib import Path

import structlog
import yaml

from changegate.core.domain_types import Diagnostic
from changegate.core.interfaces import FileStore

logger = structlog.get_logger()

DIAGNOSTIC_LINE = re.compile(
    r"^(?P<path>[^:\s][^:]*):(?P<line>\d+)(?::(?P<col>\d+))?:\s*"
    r"(?:(?P<severity>error|warning|note)\s*:?\s*)?(?P<message>.+)$"
)


class SyntaxDiagnostics:
    """Reports parse errors for Python, JSON and YAML files."""

    def __init__(self, files: FileStore) -> None:
        """Initialize the provider.

        Args:
            files: Store the paths are read from.
        """
        self.files = files

    async def diagnose(self, paths: list[str]) -> list[Diagnostic]:
        """Parse each path; missing and unsupported files are skipped."""
        diagnostics: list[Diagnostic] = []
        for path in paths:
            content = await self.files.read(path)
            if content is None:
                continue
            diagnostic = self.check(path, content)
            if diagnostic is not None:
                diagnostics.append(diagnostic)
        return diagnostics

    @staticmethod
    def check(path: str, content: bytes) -> Diagnostic | None:
        """Return the parse error of one file, if any."""
        suffix = Path(path).suffix.lower()
        text = content.decode("utf-8", errors="replace")

        if suffix == ".py":
            try:
                ast.parse(text, filename=path)
            except SyntaxError as e:
                return Diagnostic(
                    severity="error",
                    location=f"{path}:{e.lineno or 0}:{e.offset or 0}",
                    message=f"SyntaxError: {e.msg}",
                )
        elif suffix == ".json":
            try:
                json.loads(text)
            except json.JSONDecodeError as e:
                return Diagnostic(
                    severity="error",
                    location=f"{path}:{e.lineno}:{e.colno}",
                    message=f"JSONDecodeError: {e.msg}",
                )
        elif suffix in (".yaml", ".yml"):
            try:
                list(yaml.safe_load_all(text))
            except yaml.YAMLError as e:
                mark = getattr(e, "problem_mark", None)
                line = mark.line + 1 if mark is not None else 0
                problem = getattr(e, "problem", None) or str(e)
                return Diagnostic(
                    severity="error",
                    location=f"{path}:{line}",
                    message=f"YAMLError: {problem}",
                )
        return None


class CommandDiagnostics:
    """Runs a checker command on the touched paths.

    Example:
        CommandDiagnostics(["mypy", "--no-error-summary"], cwd=workspace)
    """

    def __init__(
        self,
        argv: Sequence[str],
        cwd: Path,
        timeout_seconds: float = 60.0,
        include_warnings: bool = True,
    ) -> None:
        """Initialize the provider.

        Args:
            argv: Checker command; paths are appended.
            cwd: Working directory (the workspace root).
            timeout_seconds: Hard limit for one run.
            include_warnings: Also report warnings, not only errors.
        """
        self.argv = list(argv)
        self.cwd = cwd
        self.timeout_seconds = timeout_seconds
        self.include_warnings = include_warnings

    async def diagnose(self, paths: list[str]) -> list[Diagnostic]:
        """Run the checker and parse its output.

        Raises:
            TimeoutError: If the checker exceeds the timeout (it is killed).
        """
        if not paths:
            return []

        process = await asyncio.create_subprocess_exec(
            *self.argv,
            *paths,
            cwd=self.cwd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
        try:
            stdout, _ = await asyncio.wait_for(process.communicate(), timeout=self.timeout_seconds)
        except (TimeoutError, asyncio.TimeoutError):
            process.kill()
            await process.wait()
            logger.warning("diagnostics_timeout", argv=self.argv, timeout=self.timeout_seconds)
            raise TimeoutError(f"{self.argv[0]} exceeded {self.timeout_seconds}s") from None

        output = stdout.decode("utf-8", errors="replace")
        diagnostics = self.parse(output, paths)
        logger.debug(
            "diagnostics_run",
            argv=self.argv,
            returncode=process.returncode,
            diagnostics=len(diagnostics),
        )
        return diagnostics

    def parse(self, output: str, paths: list[str]) -> list[Diagnostic]:
        """Parse checker output, keeping only lines about the given paths."""
        wanted = {Path(p).as_posix() for p in paths}
        diagnostics = []
        for raw in output.splitlines():
            match = DIAGNOSTIC_LINE.match(raw.strip())
            if not match:
                continue
            path = Path(match.group("path")).as_posix()
            if path not in wanted:
                continue
            severity = match.group("severity") or "error"
            if severity == "note" or (severity == "warning" and not self.include_warnings):
                continue
            location = f"{path}:{match.group('line')}"
            if match.group("col"):
                location += f":{match.group('col')}"
            diagnostics.append(
                Diagnostic(severity=severity, location=location, message=match.group("message"))
            )
        return diagnostics
