"""Security Validator - Static security pattern checks.

Scans proposed file content for common vulnerability patterns. Every
check is independent and side-effect free; findings carry "path:line"
locations. Secret values are never copied into finding messages.
"""

from __future__ import annotations

import math
import re
from collections import Counter
from typing import Any

from changegate.core.domain_types import Artifact, Severity, ValidationFinding

from .rulebook import default_rulebook

_GLOBAL_MIDDLEWARE = re.compile(r"\.(use|add_middleware|before_request)\s*\(|\bCSRFProtect\s*\(")

# Lines above and below a route declaration searched for route-level middleware.
ROUTE_CONTEXT_LINES = 3


def shannon_entropy(value: str) -> float:
    """Return the Shannon entropy of a string in bits per character."""
    if not value:
        return 0.0
    counts = Counter(value)
    length = len(value)
    return -sum((n / length) * math.log2(n / length) for n in counts.values())


class SecurityValidator:
    """Flags injection, XSS, secrets, missing middleware and weak passwords.

    Attributes:
        name: Validator name stamped on every finding.
    """

    name = "security"

    def __init__(self, rules: dict[str, Any] | None = None) -> None:
        """Initialize the validator.

        Args:
            rules: Security rule set. Defaults to the packaged rules.
        """
        self.rules = rules or default_rulebook().load("security")
        r = self.rules

        self._sql_keywords = re.compile(r["sql_keywords"], re.IGNORECASE)
        self._sql_concat = [re.compile(p, re.IGNORECASE) for p in r["sql_concatenation_patterns"]]
        self._sql_payloads = [re.compile(p, re.IGNORECASE) for p in r["sql_injection_patterns"]]
        self._xss = [re.compile(p) for p in r["xss_patterns"]]
        self._eval = [re.compile(p) for p in r["dynamic_eval_patterns"]]
        self._insecure_http = re.compile(r["insecure_http_pattern"])
        self._routes = [re.compile(p) for p in r["route_patterns"]]
        self._mutating = {m.lower() for m in r["mutating_methods"]}
        self._public_prefixes = tuple(r["public_route_prefixes"])
        self._secrets = [(s["name"], re.compile(s["pattern"])) for s in r["secret_patterns"]]
        self._secret_assignment = re.compile(r["secret_assignment_pattern"])
        self._entropy_threshold = float(r["entropy_threshold"])
        self._weak_passwords = {str(p).lower() for p in r["weak_passwords"]}
        self._weak_password = re.compile(r["weak_password_pattern"])
        self._weak_hash = re.compile(r["weak_hash_pattern"])
        self._plaintext_password = re.compile(r["plaintext_password_pattern"])

    async def validate(self, artifact: Artifact) -> list[ValidationFinding]:
        """Run every check against one artifact.

        Args:
            artifact: Proposed file content.

        Returns:
            Findings in check order.
        """
        lines = artifact.content.splitlines()
        findings: list[ValidationFinding] = []
        findings.extend(self.check_sql_injection(artifact.path, lines))
        findings.extend(self.check_xss(artifact.path, lines))
        findings.extend(self.check_dynamic_eval(artifact.path, lines))
        findings.extend(self.check_insecure_transport(artifact.path, lines))
        findings.extend(self.check_secrets(artifact.path, lines))
        findings.extend(self.check_routes(artifact.path, lines))
        findings.extend(self.check_passwords(artifact.path, lines))
        return findings

    def check_sql_injection(self, path: str, lines: list[str]) -> list[ValidationFinding]:
        """Flag SQL assembled from strings and known injection payloads."""
        findings = []
        for lineno, line in enumerate(lines, 1):
            if self._sql_keywords.search(line) and any(p.search(line) for p in self._sql_concat):
                findings.append(
                    self._finding(
                        Severity.CRITICAL,
                        "sql_injection",
                        "SQL query built by string concatenation or interpolation",
                        path,
                        lineno,
                    )
                )
            if any(p.search(line) for p in self._sql_payloads):
                findings.append(
                    self._finding(
                        Severity.CRITICAL,
                        "sql_injection",
                        "SQL injection payload in source",
                        path,
                        lineno,
                    )
                )
        return findings

    def check_xss(self, path: str, lines: list[str]) -> list[ValidationFinding]:
        """Flag output written into HTML without escaping."""
        return [
            self._finding(Severity.HIGH, "xss", "unescaped output into HTML", path, lineno)
            for lineno, line in enumerate(lines, 1)
            if any(p.search(line) for p in self._xss)
        ]

    def check_dynamic_eval(self, path: str, lines: list[str]) -> list[ValidationFinding]:
        """Flag eval() and new Function()."""
        return [
            self._finding(
                Severity.HIGH, "dynamic_eval", "dynamic code evaluation", path, lineno
            )
            for lineno, line in enumerate(lines, 1)
            if any(p.search(line) for p in self._eval)
        ]

    def check_insecure_transport(self, path: str, lines: list[str]) -> list[ValidationFinding]:
        """Flag plain http:// URLs to non-local hosts."""
        return [
            self._finding(
                Severity.MEDIUM,
                "insecure_transport",
                "plain http URL to a non-local host",
                path,
                lineno,
            )
            for lineno, line in enumerate(lines, 1)
            if self._insecure_http.search(line)
        ]

    def check_secrets(self, path: str, lines: list[str]) -> list[ValidationFinding]:
        """Flag credentials committed in source.

        Known token formats are matched first; otherwise a secret-named
        assignment is flagged when its value's entropy is high enough.
        """
        findings = []
        for lineno, line in enumerate(lines, 1):
            named = [name for name, pattern in self._secrets if pattern.search(line)]
            if named:
                findings.append(
                    self._finding(
                        Severity.CRITICAL,
                        "hardcoded_secret",
                        f"hardcoded secret ({named[0]})",
                        path,
                        lineno,
                    )
                )
                continue

            match = self._secret_assignment.search(line)
            if match and shannon_entropy(match.group("value")) >= self._entropy_threshold:
                findings.append(
                    self._finding(
                        Severity.CRITICAL,
                        "hardcoded_secret",
                        "hardcoded secret (high-entropy value in secret-named assignment)",
                        path,
                        lineno,
                    )
                )
        return findings

    def check_routes(self, path: str, lines: list[str]) -> list[ValidationFinding]:
        """Flag routes lacking CSRF protection, authentication or rate limiting.

        Middleware counts when it is registered globally in the same file
        (app.use, add_middleware, CSRFProtect) or appears near the route
        declaration (arguments, decorators, dependencies).
        """
        global_text = "\n".join(line for line in lines if _GLOBAL_MIDDLEWARE.search(line))
        markers = self.rules

        findings = []
        for lineno, line in enumerate(lines, 1):
            route = self._match_route(line)
            if route is None:
                continue
            method, route_path = route
            if route_path.startswith(self._public_prefixes):
                continue

            start = max(0, lineno - 1 - ROUTE_CONTEXT_LINES)
            window = "\n".join(lines[start : lineno + ROUTE_CONTEXT_LINES]) + "\n" + global_text
            label = f"{method.upper()} {route_path}"

            if method in self._mutating and not self._has_marker(window, markers["csrf_markers"]):
                findings.append(
                    self._finding(
                        Severity.HIGH,
                        "missing_csrf",
                        f"mutating route without CSRF protection: {label}",
                        path,
                        lineno,
                    )
                )
            if not self._has_marker(window, markers["auth_markers"]):
                findings.append(
                    self._finding(
                        Severity.HIGH,
                        "missing_auth",
                        f"route without authentication middleware: {label}",
                        path,
                        lineno,
                    )
                )
            if not self._has_marker(window, markers["rate_limit_markers"]):
                findings.append(
                    self._finding(
                        Severity.HIGH,
                        "missing_rate_limit",
                        f"route without rate limiting: {label}",
                        path,
                        lineno,
                    )
                )
        return findings

    def _match_route(self, line: str) -> tuple[str, str] | None:
        for pattern in self._routes:
            match = pattern.search(line)
            if match:
                groups = match.groupdict()
                return (groups.get("method") or "get").lower(), groups["path"]
        return None

    @staticmethod
    def _has_marker(text: str, markers: list[str]) -> bool:
        return any(marker in text for marker in markers)

    def check_passwords(self, path: str, lines: list[str]) -> list[ValidationFinding]:
        """Flag default passwords, md5/sha1 password hashing and plaintext storage."""
        hashed = self._has_marker("\n".join(lines), self.rules["password_hash_markers"])
        findings = []
        for lineno, line in enumerate(lines, 1):
            match = self._weak_password.search(line)
            if match and match.group("value").lower() in self._weak_passwords | {""}:
                findings.append(
                    self._finding(
                        Severity.CRITICAL,
                        "weak_password",
                        "default or empty password",
                        path,
                        lineno,
                    )
                )
            if self._weak_hash.search(line):
                findings.append(
                    self._finding(
                        Severity.CRITICAL,
                        "weak_password_hash",
                        "password hashed with md5 or sha1",
                        path,
                        lineno,
                    )
                )
            if not hashed and self._plaintext_password.search(line):
                findings.append(
                    self._finding(
                        Severity.CRITICAL,
                        "plaintext_password",
                        "password from request stored without hashing",
                        path,
                        lineno,
                    )
                )
        return findings

    def _finding(
        self, severity: Severity, kind: str, message: str, path: str, lineno: int
    ) -> ValidationFinding:
        return ValidationFinding(
            severity=severity,
            kind=kind,
            message=message,
            source_validator=self.name,
            location=f"{path}:{lineno}",
        )
