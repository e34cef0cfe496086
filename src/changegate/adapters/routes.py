"""Static route table.

Routes are registered as "METHOD /path" with "{param}" or ":param"
segments. A placeholder on either side matches any single segment, so a
client call to "/users/{param}" (built from a template literal) matches
a route declared as "/users/:id".
"""

from __future__ import annotations

import json
from collections.abc import Iterable
from pathlib import Path
from typing import Any

import yaml

HTTP_METHODS = {"get", "post", "put", "patch", "delete", "head", "options"}


def _segments(path: str) -> list[str]:
    return [s for s in path.split("?")[0].strip("/").split("/") if s]


def _is_param(segment: str) -> bool:
    return segment.startswith(":") or (segment.startswith("{") and segment.endswith("}"))


class StaticRouteTable:
    """RouteTable over a fixed list of routes."""

    def __init__(self, routes: Iterable[tuple[str, str]] = ()) -> None:
        """Initialize the table.

        Args:
            routes: (method, path) pairs. Method "*" matches any method.
        """
        self.routes: list[tuple[str, list[str]]] = []
        for method, path in routes:
            self.add(method, path)

    def add(self, method: str, path: str) -> None:
        """Register a route."""
        self.routes.append((method.upper(), _segments(path)))

    @classmethod
    def from_openapi(cls, spec: dict[str, Any] | str | Path) -> StaticRouteTable:
        """Build a table from an OpenAPI document.

        Args:
            spec: Parsed document, or a path to a JSON/YAML file.

        Returns:
            A table with every path + method pair from the document.
        """
        if not isinstance(spec, dict):
            text = Path(spec).read_text(encoding="utf-8")
            spec = json.loads(text) if str(spec).endswith(".json") else yaml.safe_load(text)

        prefix = ""
        servers = spec.get("servers") or []
        if servers and isinstance(servers[0], dict):
            url = str(servers[0].get("url", ""))
            if url.startswith("/"):
                prefix = url.rstrip("/")

        table = cls()
        for path, operations in (spec.get("paths") or {}).items():
            for method in operations or {}:
                if method.lower() in HTTP_METHODS:
                    table.add(method, prefix + path)
        return table

    async def exists(self, method: str, path: str) -> bool:
        """Check whether a registered route serves method + path."""
        method = method.upper()
        wanted = _segments(path)
        for route_method, segments in self.routes:
            if route_method not in ("*", method) or len(segments) != len(wanted):
                continue
            if all(
                a == b or _is_param(a) or _is_param(b)
                for a, b in zip(segments, wanted, strict=True)
            ):
                return True
        return False
