"""Hallucination Detector - Finds fabricated artifacts in generated code.

Generated code tends to invent things that look plausible: packages that
were never published, endpoints the backend does not serve, placeholder
data, dates that have not happened yet. Each check here is independent;
the two that need external lookups (package registry and route table)
are bounded so a slow registry degrades to an "unverified" finding
instead of stalling the pipeline.
"""

from __future__ import annotations

import ast
import asyncio
import re
import sys
from collections.abc import Callable, Iterable
from datetime import UTC, date, datetime
from typing import Any

import structlog

from changegate.core.domain_types import Artifact, Severity, ValidationFinding
from changegate.core.exceptions import RegistryLookupTimeout
from changegate.core.interfaces import PackageRegistry, RouteTable

from .lookup import LookupPolicy, bounded_lookup
from .rulebook import default_rulebook

logger = structlog.get_logger()

PYTHON_SUFFIXES = {".py", ".pyi"}
JS_SUFFIXES = {".js", ".jsx", ".ts", ".tsx", ".mjs", ".cjs"}

_JS_IMPORT = re.compile(
    r"""(?:\bimport\s+(?:[\w*${}\s,]+\s+from\s+)?|\brequire\(\s*|\bimport\(\s*)['"]([^'"]+)['"]"""
)
_DATE_VALUE = re.compile(
    r"""["']?(?P<field>[A-Za-z_]\w*)["']?\s*[:=]\s*["'](?P<value>\d{4}-\d{2}-\d{2})[^"']*["']"""
)
_NUMBER_VALUE = re.compile(
    r"""["']?(?P<field>[A-Za-z_]\w*)["']?\s*[:=]\s*(?P<value>-?\d+(?:\.\d+)?)\b"""
)
_TEMPLATE_PARAM = re.compile(r"\$\{[^}]*\}")


def _line_of(content: str, index: int) -> int:
    return content.count("\n", 0, index) + 1


class HallucinationDetector:
    """Detects invented packages, endpoints, data and test results.

    Attributes:
        name: Validator name stamped on every finding.
    """

    name = "hallucination"

    def __init__(
        self,
        registry: PackageRegistry | None = None,
        routes: RouteTable | None = None,
        rules: dict[str, Any] | None = None,
        first_party: Iterable[str] = (),
        npm_registry: PackageRegistry | None = None,
        now: Callable[[], datetime] | None = None,
        policy: LookupPolicy | None = None,
    ) -> None:
        """Initialize the detector.

        Args:
            registry: Python package registry. Package checks are skipped without one.
            routes: Known application routes. Endpoint checks are skipped without one.
            rules: Hallucination rule set. Defaults to the packaged rules.
            first_party: Top-level import names that belong to the project itself.
            npm_registry: JavaScript package registry.
            now: Clock used for temporal checks.
            policy: Lookup limits for registry and route calls.
        """
        self.registry = registry
        self.routes = routes
        self.npm_registry = npm_registry
        self.rules = rules or default_rulebook().load("hallucination")
        self.first_party = set(first_party)
        self.now = now or (lambda: datetime.now(UTC))
        self.policy = policy or LookupPolicy()

        self._emails = [re.compile(p, re.IGNORECASE) for p in self.rules["fake_email_patterns"]]
        self._placeholders = [
            re.compile(p, re.IGNORECASE) for p in self.rules["placeholder_patterns"]
        ]
        self._historical = re.compile(self.rules["historical_field_pattern"], re.IGNORECASE)
        self._count = re.compile(self.rules["count_field_pattern"], re.IGNORECASE)
        self._percent = re.compile(self.rules["percent_field_pattern"], re.IGNORECASE)
        self._age = re.compile(self.rules["age_field_pattern"])
        self._id_field = re.compile(
            self.rules["id_field_pattern"] + r"""["']?\s*[:=]\s*(?P<value>\d+)\b"""
        )
        self._route_call = re.compile(self.rules["route_call_pattern"])
        self._aliases: dict[str, str] = self.rules.get("package_aliases", {})
        self._node_builtins = set(self.rules.get("node_builtins", []))

    async def validate(self, artifact: Artifact) -> list[ValidationFinding]:
        """Validator entry point used by the pipeline."""
        return await self.detect(artifact)

    async def detect(self, artifact: Artifact) -> list[ValidationFinding]:
        """Run every check against one artifact.

        Args:
            artifact: Proposed file content.

        Returns:
            Findings in check order: packages, endpoints, fabricated data,
            impossible values, test results.
        """
        findings: list[ValidationFinding] = []
        findings.extend(await self.check_packages(artifact))
        findings.extend(await self.check_endpoints(artifact))
        findings.extend(self.check_fabricated_data(artifact))
        findings.extend(self.check_impossible_values(artifact))
        findings.extend(self.check_test_results(artifact))
        return findings

    # Packages

    def extract_packages(self, artifact: Artifact) -> list[tuple[str, int, str]]:
        """Return (registry name, line, ecosystem) for third-party imports, first seen wins."""
        if artifact.suffix in PYTHON_SUFFIXES:
            found = self._python_imports(artifact.content)
            ecosystem = "python"
        elif artifact.suffix in JS_SUFFIXES:
            found = self._js_imports(artifact.content)
            ecosystem = "npm"
        else:
            return []

        seen: set[str] = set()
        packages = []
        for name, line in found:
            if name in seen:
                continue
            seen.add(name)
            packages.append((name, line, ecosystem))
        return packages

    def _python_imports(self, content: str) -> list[tuple[str, int]]:
        try:
            tree = ast.parse(content)
        except SyntaxError:
            return []

        modules: list[tuple[str, int]] = []
        for node in ast.walk(tree):
            if isinstance(node, ast.Import):
                modules.extend((alias.name, node.lineno) for alias in node.names)
            elif isinstance(node, ast.ImportFrom) and node.level == 0 and node.module:
                modules.append((node.module, node.lineno))

        result = []
        for module, line in sorted(modules, key=lambda m: m[1]):
            top = module.split(".")[0]
            if top == "__future__" or top in sys.stdlib_module_names or top in self.first_party:
                continue
            result.append((self._aliases.get(top, top).lower(), line))
        return result

    def _js_imports(self, content: str) -> list[tuple[str, int]]:
        result = []
        for match in _JS_IMPORT.finditer(content):
            spec = match.group(1)
            if spec.startswith((".", "/", "node:")):
                continue
            parts = spec.split("/")
            name = "/".join(parts[:2]) if spec.startswith("@") else parts[0]
            if name in self._node_builtins or name in self.first_party:
                continue
            result.append((name, _line_of(content, match.start())))
        return result

    async def check_packages(self, artifact: Artifact) -> list[ValidationFinding]:
        """Flag imports of packages the registry does not know."""
        lookups = []
        for name, line, ecosystem in self.extract_packages(artifact):
            registry = self.registry if ecosystem == "python" else self.npm_registry
            if registry is None:
                continue
            lookups.append((name, line, ecosystem, registry))

        results = await asyncio.gather(
            *(self._lookup_package(registry, name) for name, _, _, registry in lookups)
        )

        findings = []
        for (name, line, ecosystem, _), exists in zip(lookups, results, strict=True):
            location = f"{artifact.path}:{line}"
            if exists is None:
                findings.append(
                    self._finding(
                        Severity.MEDIUM,
                        "unverified_package",
                        f"could not verify that {ecosystem} package exists: {name}",
                        location,
                        verified=False,
                    )
                )
            elif not exists:
                findings.append(
                    self._finding(
                        Severity.HIGH,
                        "nonexistent_package",
                        f"package does not exist: {name}",
                        location,
                    )
                )
        return findings

    async def _lookup_package(self, registry: PackageRegistry, name: str) -> bool | None:
        try:
            return await bounded_lookup(
                f"package {name}", lambda: registry.exists(name), self.policy
            )
        except RegistryLookupTimeout as e:
            logger.warning("package_lookup_unverified", package=name, error=str(e))
            return None

    # Endpoints

    def extract_endpoints(self, artifact: Artifact) -> list[tuple[str, str, int]]:
        """Return (METHOD, path, line) for client calls with literal paths."""
        seen: set[tuple[str, str]] = set()
        endpoints = []
        for match in self._route_call.finditer(artifact.content):
            path = _TEMPLATE_PARAM.sub("{param}", match.group("path"))
            if match.group("call") == "fetch":
                # Options object of this call only.
                tail = artifact.content[match.end() : match.end() + 200].split(")", 1)[0]
                method_match = re.search(r"""method\s*:\s*['"](\w+)['"]""", tail)
                method = method_match.group(1).upper() if method_match else "GET"
            else:
                method = match.group("verb").upper()

            if (method, path) in seen:
                continue
            seen.add((method, path))
            endpoints.append((method, path, _line_of(artifact.content, match.start())))
        return endpoints

    async def check_endpoints(self, artifact: Artifact) -> list[ValidationFinding]:
        """Flag calls to routes the application does not serve."""
        routes = self.routes
        if routes is None:
            return []

        endpoints = self.extract_endpoints(artifact)
        results = await asyncio.gather(
            *(self._lookup_route(routes, method, path) for method, path, _ in endpoints)
        )

        findings = []
        for (method, path, line), exists in zip(endpoints, results, strict=True):
            location = f"{artifact.path}:{line}"
            if exists is None:
                findings.append(
                    self._finding(
                        Severity.MEDIUM,
                        "unverified_endpoint",
                        f"could not verify that endpoint exists: {method} {path}",
                        location,
                        verified=False,
                    )
                )
            elif not exists:
                findings.append(
                    self._finding(
                        Severity.HIGH,
                        "nonexistent_endpoint",
                        f"endpoint does not exist: {method} {path}",
                        location,
                    )
                )
        return findings

    async def _lookup_route(self, routes: RouteTable, method: str, path: str) -> bool | None:
        try:
            return await bounded_lookup(
                f"route {method} {path}", lambda: routes.exists(method, path), self.policy
            )
        except RegistryLookupTimeout as e:
            logger.warning("route_lookup_unverified", method=method, path=path, error=str(e))
            return None

    # Fabricated data

    def check_fabricated_data(self, artifact: Artifact) -> list[ValidationFinding]:
        """Flag placeholder emails, filler text and runs of sequential ids."""
        content = artifact.content
        findings = []

        for pattern in self._emails:
            for match in pattern.finditer(content):
                findings.append(
                    self._finding(
                        Severity.MEDIUM,
                        "fabricated_data",
                        f"placeholder email address: {match.group(0)}",
                        f"{artifact.path}:{_line_of(content, match.start())}",
                    )
                )

        for pattern in self._placeholders:
            for match in pattern.finditer(content):
                findings.append(
                    self._finding(
                        Severity.MEDIUM,
                        "fabricated_data",
                        f"placeholder text: {match.group(0)}",
                        f"{artifact.path}:{_line_of(content, match.start())}",
                    )
                )

        findings.extend(self._sequential_ids(artifact))
        return findings

    def _sequential_ids(self, artifact: Artifact) -> list[ValidationFinding]:
        min_run = int(self.rules.get("sequential_id_min_run", 3))
        values: dict[str, list[tuple[int, int]]] = {}
        for match in self._id_field.finditer(artifact.content):
            values.setdefault(match.group(1), []).append((int(match.group("value")), match.start()))

        findings = []
        for field, seq in values.items():
            run = 1
            for i in range(1, len(seq)):
                run = run + 1 if seq[i][0] == seq[i - 1][0] + 1 else 1
                if run == min_run:
                    start = seq[i - min_run + 1]
                    findings.append(
                        self._finding(
                            Severity.MEDIUM,
                            "fabricated_data",
                            f"sequential fake ids in {field}: starting at {start[0]}",
                            f"{artifact.path}:{_line_of(artifact.content, start[1])}",
                        )
                    )
        return findings

    # Impossible values

    def check_impossible_values(self, artifact: Artifact) -> list[ValidationFinding]:
        """Flag future dates in historical fields and out-of-range numbers."""
        content = artifact.content
        findings = []
        today = self.now().date()

        for match in _DATE_VALUE.finditer(content):
            field = match.group("field")
            if not self._historical.fullmatch(field):
                continue
            value = match.group("value")
            location = f"{artifact.path}:{_line_of(content, match.start())}"
            try:
                parsed = date.fromisoformat(value)
            except ValueError:
                findings.append(
                    self._finding(
                        Severity.MEDIUM,
                        "temporal_impossibility",
                        f"temporal impossibility: {field} is not a valid date ({value})",
                        location,
                    )
                )
                continue
            if parsed > today:
                findings.append(
                    self._finding(
                        Severity.MEDIUM,
                        "temporal_impossibility",
                        f"temporal impossibility: {field} is in the future ({value})",
                        location,
                    )
                )

        max_age = float(self.rules.get("max_age", 150))
        for match in _NUMBER_VALUE.finditer(content):
            field = match.group("field")
            value = float(match.group("value"))
            problem = None
            if self._count.fullmatch(field) and value < 0:
                problem = f"{field} is a negative count ({match.group('value')})"
            elif self._percent.fullmatch(field) and not 0 <= value <= 100:
                problem = f"{field} is outside 0..100 ({match.group('value')})"
            elif self._age.fullmatch(field) and not 0 <= value <= max_age:
                problem = f"{field} is outside 0..{max_age:g} ({match.group('value')})"
            if problem:
                findings.append(
                    self._finding(
                        Severity.MEDIUM,
                        "numeric_impossibility",
                        f"numeric impossibility: {problem}",
                        f"{artifact.path}:{_line_of(content, match.start())}",
                    )
                )

        return findings

    # Test results

    def check_test_results(self, artifact: Artifact) -> list[ValidationFinding]:
        """Flag test runs that look too perfect to be real.

        The finding carries no location, so the pipeline collapses the
        copies reported for each file of the group into one.
        """
        summary = artifact.test_results
        if summary is None:
            return []

        min_total = int(self.rules.get("perfect_tests_min_total", 10))
        durations = summary.durations_ms
        if (
            summary.total >= min_total
            and summary.passed == summary.total
            and summary.failed == 0
            and summary.skipped == 0
            and durations
            and max(durations) == min(durations)
        ):
            return [
                self._finding(
                    Severity.LOW,
                    "suspicious_test_results",
                    f"suspiciously perfect test results: {summary.total} tests, "
                    f"all passed with identical durations",
                    None,
                )
            ]
        return []

    def _finding(
        self,
        severity: Severity,
        kind: str,
        message: str,
        location: str | None,
        verified: bool = True,
    ) -> ValidationFinding:
        return ValidationFinding(
            severity=severity,
            kind=kind,
            message=message,
            source_validator=self.name,
            location=location,
            verified=verified,
        )
