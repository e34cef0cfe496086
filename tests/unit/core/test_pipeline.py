"""Unit tests for the validation pipeline."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime

from changegate.core.domain_types import FileChange, FileOp, Severity, ValidationFinding
from changegate.core.pipeline import PipelineConfig, ValidationPipeline
from changegate.core.state import ChangeGroup
from tests.fixtures.mocks import StubValidator


def _finding(
    severity: Severity, source: str, location: str, message: str = "m"
) -> ValidationFinding:
    return ValidationFinding(
        severity=severity,
        kind="k",
        message=message,
        source_validator=source,
        location=location,
    )


def _group(*changes: FileChange) -> ChangeGroup:
    return ChangeGroup(id="g1", files=changes, created_at=datetime(2024, 1, 1, tzinfo=UTC))


class TestValidationPipeline:
    """Tests for ValidationPipeline."""

    async def test_empty_report_is_low(self) -> None:
        """Test no findings means low and no approval."""
        pipeline = ValidationPipeline([StubValidator("a")])
        report = await pipeline.run(_group(FileChange(path="x.py", new_content=b"")))

        assert report.findings == ()
        assert report.overall_severity == Severity.LOW
        assert report.requires_approval is False

    async def test_merge_order_is_file_then_validator(self) -> None:
        """Test findings are ordered by file, then validator."""
        first = StubValidator(
            "first",
            {
                "a.py": [_finding(Severity.LOW, "first", "a.py:1")],
                "b.py": [_finding(Severity.LOW, "first", "b.py:1")],
            },
        )
        second = StubValidator(
            "second",
            {
                "a.py": [_finding(Severity.HIGH, "second", "a.py:2")],
                "b.py": [_finding(Severity.MEDIUM, "second", "b.py:2")],
            },
        )
        pipeline = ValidationPipeline([first, second])

        report = await pipeline.run(
            _group(
                FileChange(path="a.py", new_content=b"1"),
                FileChange(path="b.py", new_content=b"2"),
            )
        )

        assert [f.location for f in report.findings] == ["a.py:1", "a.py:2", "b.py:1", "b.py:2"]
        assert report.overall_severity == Severity.HIGH
        assert report.requires_approval is True

    async def test_exact_duplicates_collapse(self) -> None:
        """Test group-level duplicates are reported once."""
        shared = ValidationFinding(
            severity=Severity.LOW, kind="k", message="same", source_validator="v"
        )
        pipeline = ValidationPipeline([StubValidator("v", {"a.py": [shared], "b.py": [shared]})])

        report = await pipeline.run(
            _group(
                FileChange(path="a.py", new_content=b""),
                FileChange(path="b.py", new_content=b""),
            )
        )

        assert report.findings == (shared,)

    async def test_deleted_files_are_not_scanned(self) -> None:
        """Test deletes never reach validators."""
        validator = StubValidator("v")
        pipeline = ValidationPipeline([validator])

        await pipeline.run(
            _group(
                FileChange(path="keep.py", new_content=b""),
                FileChange(path="gone.py", op=FileOp.DELETE),
            )
        )

        assert validator.seen == ["keep.py"]

    async def test_threshold_is_configurable(self) -> None:
        """Test a lower threshold requires approval for medium."""
        validator = StubValidator("v", {"a.py": [_finding(Severity.MEDIUM, "v", "a.py:1")]})
        config = PipelineConfig(approval_threshold=Severity.MEDIUM)
        pipeline = ValidationPipeline([validator], config)

        report = await pipeline.run(_group(FileChange(path="a.py", new_content=b"")))

        assert report.requires_approval is True

    async def test_validators_run_concurrently(self) -> None:
        """Test validators overlap in time."""
        running = 0
        peak = 0

        class SlowValidator:
            name = "slow"

            async def validate(self, artifact: object) -> list[ValidationFinding]:
                nonlocal running, peak
                running += 1
                peak = max(peak, running)
                await asyncio.sleep(0.01)
                running -= 1
                return []

        pipeline = ValidationPipeline([SlowValidator(), SlowValidator()])
        await pipeline.run(_group(FileChange(path="a.py"), FileChange(path="b.py")))

        assert peak == 4

    async def test_rerun_is_byte_identical(self) -> None:
        """Test re-running on unchanged input yields the same serialization."""
        validator = StubValidator(
            "v",
            {
                "a.py": [
                    _finding(Severity.HIGH, "v", "a.py:1"),
                    _finding(Severity.LOW, "v", "a.py:2"),
                ]
            },
        )
        pipeline = ValidationPipeline([validator])
        group = _group(FileChange(path="a.py", new_content=b"x"))

        first = await pipeline.run(group)
        second = await pipeline.run(group)

        assert first.model_dump_json() == second.model_dump_json()
