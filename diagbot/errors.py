"""Exception types raised by diagbot."""

from __future__ import annotations

from typing import TYPE_CHECKING, Sequence

if TYPE_CHECKING:
    from .catalog import CatalogIssue


class DiagbotError(Exception):
    """Base class for diagbot errors."""


class StorageError(DiagbotError):
    """A storage backend failed; the current event is aborted."""


class CatalogValidationError(DiagbotError):
    """The scenario catalog violates the tree invariants."""

    def __init__(self, issues: Sequence["CatalogIssue"]) -> None:
        self.issues = list(issues)
        summary = "; ".join(str(issue) for issue in self.issues[:5])
        more = f" (+{len(self.issues) - 5} more)" if len(self.issues) > 5 else ""
        super().__init__(f"{len(self.issues)} catalog issue(s): {summary}{more}")
