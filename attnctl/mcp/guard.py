"""
MCP Server Guard — Path validation and payload caps.

Prevents path traversal and symlink escape for the attention database,
and caps what a single call may write: session payload size, tabs per
session, dispositions per batch.

Instantiated once at server startup and shared across all tool calls
via closure.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


class GuardError(ValueError):
    """Raised when a guard check fails (path violation, size cap, etc.)."""


class ServerGuard:
    """Path validation and resource guardrails for the MCP server."""

    def __init__(
        self,
        db_root: Optional[Path] = None,
        max_payload_bytes: int = 262_144,
        max_tabs_per_session: int = 500,
        max_batch_items: int = 200,
        max_db_size_mb: Optional[int] = None,
    ):
        self._db_root: Optional[Path] = db_root.resolve() if db_root else None
        self._max_payload_bytes = max_payload_bytes
        self._max_tabs_per_session = max_tabs_per_session
        self._max_batch_items = max_batch_items
        self._max_db_size_mb = max_db_size_mb

    @property
    def db_root(self) -> Optional[Path]:
        return self._db_root

    def validate_db_path(self, requested: str) -> Path:
        """
        Resolve and validate a database path against db-root.

        Rejects any '..' segment, resolves symlinks, and requires the
        result to be under db_root (containment skipped when unset).

        Raises:
            GuardError: On traversal or containment violation.
        """
        raw = Path(requested)
        for part in raw.parts:
            if part == "..":
                raise GuardError(
                    f"Path traversal rejected: '..' in path '{requested}'"
                )

        if self._db_root and not raw.is_absolute():
            resolved = (self._db_root / raw).resolve()
        else:
            resolved = raw.resolve()

        if self._db_root is not None:
            try:
                resolved.relative_to(self._db_root)
            except ValueError:
                raise GuardError(
                    f"Path outside db-root: '{resolved}' is not under '{self._db_root}'"
                )
        return resolved

    def relative_db_path(self, resolved: Path) -> str:
        """Root-relative path for audit records (absolute when no root is set)."""
        if self._db_root is not None:
            try:
                return str(resolved.relative_to(self._db_root))
            except ValueError:
                pass
        return str(resolved)

    def check_payload_size(self, payload: str) -> None:
        """Raise GuardError if a JSON payload exceeds max_payload_bytes."""
        size = len(payload.encode("utf-8"))
        if size > self._max_payload_bytes:
            raise GuardError(
                f"Payload size {size} bytes exceeds limit of {self._max_payload_bytes} bytes"
            )

    def check_session_tabs(self, count: int) -> None:
        """Raise GuardError if a captured session carries too many tabs."""
        if count > self._max_tabs_per_session:
            raise GuardError(
                f"Session with {count} tabs exceeds limit of {self._max_tabs_per_session}"
            )

    def check_batch(self, count: int) -> None:
        """Raise GuardError if a disposition batch exceeds max_batch_items."""
        if count > self._max_batch_items:
            raise GuardError(
                f"Batch of {count} dispositions exceeds limit of {self._max_batch_items}"
            )

    def check_db_size(self, db_path: Path) -> None:
        """Log a warning if the DB exceeds max_db_size_mb. Non-blocking."""
        if self._max_db_size_mb is None:
            return
        try:
            size_mb = db_path.stat().st_size / (1024 * 1024)
        except OSError:
            return
        if size_mb > self._max_db_size_mb:
            logger.warning(
                "Database %s is %.1f MB (limit: %d MB)",
                db_path, size_mb, self._max_db_size_mb,
            )
