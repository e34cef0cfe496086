"""Rule Book - Loads versioned YAML rule sets.

Regex lists, keyword sets and thresholds used by the validators live in
YAML files rather than inline literals, so the classification boundary
(e.g. what counts as a mass delete) can be reviewed and tested on its own.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml

SUPPORTED_VERSION = 1


class RuleBook:
    """Loads rule sets from a directory of YAML files.

    Each file holds one rule set and must declare a ``version`` key.

    Attributes:
        rules_dir: Directory containing rule files.
    """

    def __init__(self, rules_dir: Path | None = None) -> None:
        """Initialize the rule book.

        Args:
            rules_dir: Directory containing rule YAML files.
                       Defaults to the package's rules directory.
        """
        if rules_dir is None:
            rules_dir = Path(__file__).parent.parent / "rules"

        self.rules_dir = rules_dir
        self._cache: dict[str, dict[str, Any]] = {}

    def load(self, name: str) -> dict[str, Any]:
        """Load a rule set from cache or disk.

        Args:
            name: Name of the rule file (without .yaml extension).

        Returns:
            The parsed rule set.

        Raises:
            FileNotFoundError: If the rule file doesn't exist.
            ValueError: If the rule set version is unsupported.
        """
        if name not in self._cache:
            path = self.rules_dir / f"{name}.yaml"
            with open(path) as f:
                data = yaml.safe_load(f) or {}
            version = data.get("version")
            if version != SUPPORTED_VERSION:
                raise ValueError(f"Unsupported rule set version in {path}: {version!r}")
            self._cache[name] = data

        return self._cache[name]

    def version(self, name: str) -> int:
        """Return the declared version of a rule set."""
        return int(self.load(name)["version"])

    def list_rule_sets(self) -> list[str]:
        """List available rule set names."""
        return sorted(p.stem for p in self.rules_dir.glob("*.yaml"))

    def clear_cache(self) -> None:
        """Clear the rule cache."""
        self._cache = {}


@lru_cache
def default_rulebook() -> RuleBook:
    """Return the shared rule book for the packaged rules."""
    return RuleBook()
