"""
Tests for attnctl.mcp.guard — ServerGuard path validation and payload caps.

Covers invariants:
  G1: validate_db_path rejects '..' traversal (pre-check, before resolve)
  G2: validate_db_path rejects symlinks escaping db-root
  G3: validate_db_path rejects absolute paths outside db-root
  G4: validate_db_path accepts valid relative paths within root
  G5: payload, tab and batch caps raise GuardError
  G6: relative_db_path returns root-relative string

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

import logging
import os

import pytest

from attnctl.mcp.guard import GuardError, ServerGuard


@pytest.fixture
def db_root(tmp_path):
    root = tmp_path / "dbroot"
    root.mkdir()
    (root / "sub").mkdir()
    return root


@pytest.fixture
def guard(db_root):
    """Guard with a defined db-root and tight caps for testing."""
    return ServerGuard(
        db_root=db_root,
        max_payload_bytes=256,
        max_tabs_per_session=3,
        max_batch_items=2,
        max_db_size_mb=1,
    )


class TestPathValidation:
    def test_traversal_rejected(self, guard):
        with pytest.raises(GuardError, match="traversal"):
            guard.validate_db_path("sub/../../escape.db")

    def test_absolute_outside_root(self, guard, tmp_path):
        with pytest.raises(GuardError, match="outside db-root"):
            guard.validate_db_path(str(tmp_path / "elsewhere.db"))

    @pytest.mark.skipif(not hasattr(os, "symlink"), reason="symlinks unavailable")
    def test_symlink_escape(self, guard, db_root, tmp_path):
        outside = tmp_path / "outside"
        outside.mkdir()
        (db_root / "link").symlink_to(outside, target_is_directory=True)
        with pytest.raises(GuardError):
            guard.validate_db_path("link/attention.db")

    def test_relative_inside_root(self, guard, db_root):
        resolved = guard.validate_db_path("sub/attention.db")
        assert resolved == (db_root / "sub" / "attention.db").resolve()

    def test_no_root_is_permissive(self, tmp_path):
        g = ServerGuard()
        assert g.validate_db_path(str(tmp_path / "a.db")) == (tmp_path / "a.db").resolve()
        assert g.db_root is None


class TestRelativePath:
    def test_root_relative(self, guard, db_root):
        rel = guard.relative_db_path((db_root / "sub" / "a.db").resolve())
        assert rel == os.path.join("sub", "a.db")

    def test_outside_root_absolute(self, guard, tmp_path):
        p = (tmp_path / "x.db").resolve()
        assert guard.relative_db_path(p) == str(p)


class TestCaps:
    def test_payload(self, guard):
        guard.check_payload_size("x" * 256)
        with pytest.raises(GuardError, match="Payload size"):
            guard.check_payload_size("x" * 257)

    def test_payload_counts_bytes(self, guard):
        with pytest.raises(GuardError):
            guard.check_payload_size("é" * 200)

    def test_tabs(self, guard):
        guard.check_session_tabs(3)
        with pytest.raises(GuardError, match="4 tabs"):
            guard.check_session_tabs(4)

    def test_batch(self, guard):
        guard.check_batch(2)
        with pytest.raises(GuardError, match="Batch of 3"):
            guard.check_batch(3)

    def test_guard_error_is_value_error(self):
        assert issubclass(GuardError, ValueError)


class TestDbSize:
    def test_warns_when_large(self, guard, db_root, caplog):
        big = db_root / "big.db"
        with open(big, "wb") as f:
            f.truncate(2 * 1024 * 1024)
        with caplog.at_level(logging.WARNING, logger="attnctl.mcp.guard"):
            guard.check_db_size(big)
        assert "limit: 1 MB" in caplog.text

    def test_missing_file_silent(self, guard, db_root):
        guard.check_db_size(db_root / "absent.db")
