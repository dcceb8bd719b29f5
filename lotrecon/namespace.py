"""Namespace enforcement for DDL name control.

A Namespace controls what names a node may use in CREATE/DROP VIEW|MACRO
statements. Two factory methods encode the workspace naming conventions:

- ``Namespace.for_node(node)`` — node SQL: ``{name}_*`` views, validation
  views forbidden.
- ``Namespace.for_validation(node)`` — validation checks:
  ``{name}__validation_*`` views only.
"""

from __future__ import annotations

from typing import Callable, TYPE_CHECKING

from .task import is_validation_view_for_node, validation_view_prefix

if TYPE_CHECKING:
    from .task import Node


class Namespace:
    """Controls what DDL names can be created/dropped.

    Attributes:
        allowed_names: Explicit set of permitted names.
        prefix: Names starting with ``{prefix}_`` are also allowed.
        forbidden: Optional callable returning True for names that are
            blocked even if they match allowed/prefix.
        forbidden_msg: Explanation used when ``forbidden`` triggers.
    """

    __slots__ = ("allowed_names", "prefix", "forbidden", "forbidden_msg")

    def __init__(
        self,
        allowed_names: frozenset[str],
        prefix: str,
        *,
        forbidden: Callable[[str], bool] | None = None,
        forbidden_msg: str = "Name is forbidden in this context.",
    ) -> None:
        self.allowed_names = allowed_names
        self.prefix = prefix
        self.forbidden = forbidden
        self.forbidden_msg = forbidden_msg

    @classmethod
    def for_node(cls, node: Node) -> Namespace:
        """Namespace for a sql node's own statements."""
        return cls(
            allowed_names=frozenset(node.output_columns),
            prefix=node.name,
            forbidden=lambda name: is_validation_view_for_node(name, node.name),
            forbidden_msg=(
                "Validation views cannot be created by node SQL; "
                "they are defined from the node's validate checks."
            ),
        )

    @classmethod
    def for_validation(cls, node: Node) -> Namespace:
        """Namespace for a node's validation checks."""
        return cls(
            allowed_names=frozenset(node.validation_view_names()),
            prefix=validation_view_prefix(node.name),
        )

    def is_name_allowed(self, name: str) -> bool:
        return name in self.allowed_names or name.startswith(f"{self.prefix}_")

    def check_name(
        self, name: str | None, kind_label: str, action: str
    ) -> tuple[bool, str]:
        """Check if a DDL name is allowed. Returns ``(ok, error_msg)``."""
        if name is None:
            return (
                False,
                f"Could not extract {kind_label} name from {action} statement.",
            )
        if self.forbidden and self.forbidden(name):
            return False, f"Cannot {action} '{name}': {self.forbidden_msg}"
        if not self.is_name_allowed(name):
            return (
                False,
                f"Cannot {action} {kind_label} '{name}'. "
                f"Allowed names: {self.format_allowed()}",
            )
        return True, ""

    def format_allowed(self) -> str:
        parts: list[str] = []
        if self.allowed_names:
            parts.append(", ".join(sorted(self.allowed_names)))
        if self.prefix:
            parts.append(f"{self.prefix}_* (prefix)")
        return " | ".join(parts) if parts else "(none)"

    def __repr__(self) -> str:
        return (
            f"Namespace(allowed_names={self.allowed_names!r}, prefix={self.prefix!r})"
        )
