"""Validation Pipeline - Fan-out validators, fan-in one report.

Flow: for every non-deleted file, run every validator concurrently,
then merge findings in a fixed order (file, validator, check) so the
same input always produces the same report.
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass

import structlog

from .domain_types import Artifact, FileOp, Severity, ValidationFinding, ValidationReport
from .interfaces import Validator
from .state import ChangeGroup

logger = structlog.get_logger()


@dataclass(frozen=True)
class PipelineConfig:
    """Configuration for the validation pipeline.

    Attributes:
        approval_threshold: Lowest overall severity that needs a human decision.
    """

    approval_threshold: Severity = Severity.HIGH


class ValidationPipeline:
    """Runs stateless validators over a change group.

    Validators are pure functions of content plus static metadata, so
    they may run in any order and in parallel; only the merge order is
    fixed.
    """

    def __init__(
        self,
        validators: Sequence[Validator],
        config: PipelineConfig | None = None,
    ) -> None:
        """Initialize the pipeline.

        Args:
            validators: Validators in merge order.
            config: Optional pipeline configuration.
        """
        self.validators = list(validators)
        self.config = config or PipelineConfig()

    async def run(self, group: ChangeGroup) -> ValidationReport:
        """Validate every file of a group.

        Args:
            group: The change group.

        Returns:
            The merged validation report.
        """
        log = logger.bind(group_id=group.id)
        artifacts = [
            Artifact(
                path=change.path,
                content=change.new_content.decode("utf-8", errors="replace"),
                test_results=group.test_results,
            )
            for change in group.files
            if change.op != FileOp.DELETE
        ]

        # Fan-out
        results = await asyncio.gather(
            *(
                validator.validate(artifact)
                for artifact in artifacts
                for validator in self.validators
            )
        )

        # Fan-in: gather preserves argument order
        findings: list[ValidationFinding] = []
        seen: set[ValidationFinding] = set()
        for batch in results:
            for finding in batch:
                if finding in seen:
                    continue
                seen.add(finding)
                findings.append(finding)

        overall = Severity.highest([f.severity for f in findings])
        report = ValidationReport(
            group_id=group.id,
            findings=tuple(findings),
            overall_severity=overall,
            requires_approval=overall >= self.config.approval_threshold,
        )

        log.info(
            "validation_complete",
            files=len(artifacts),
            findings=len(findings),
            overall_severity=overall.value,
            requires_approval=report.requires_approval,
        )
        return report
