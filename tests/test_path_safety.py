"""
Tests for path safety validation.

Tests the shared path_safety module and its integration with the extractor.
"""
from __future__ import annotations

import pytest

from embedded_mongo.distribution import OS
from embedded_mongo.errors import ExtractionFailure
from embedded_mongo.extract import Extractor
from embedded_mongo.path_safety import MARKER_NAME, safe_member_path

from tests.helpers.archives import build_archive


class TestSafeMemberPath:
    """Test safe_member_path function directly."""

    def test_safe_paths_allowed(self):
        """Test that safe relative paths are allowed."""
        assert safe_member_path("mongod") == "mongod"
        assert safe_member_path("bin/mongod") == "bin/mongod"
        assert safe_member_path("mongodb-linux-x86_64-4.2.0/bin/mongod") == "mongodb-linux-x86_64-4.2.0/bin/mongod"

    def test_paths_are_normalized(self):
        assert safe_member_path("./bin/mongod") == "bin/mongod"
        assert safe_member_path("root/bin/") == "root/bin"
        assert safe_member_path("root//bin/mongod") == "root/bin/mongod"

    def test_absolute_paths_rejected(self):
        """Test that absolute paths are rejected."""
        with pytest.raises(ValueError, match="unsafe path: /etc/passwd"):
            safe_member_path("/etc/passwd")

    def test_parent_directory_traversal_rejected(self):
        """Test that parent directory traversal is rejected."""
        with pytest.raises(ValueError, match="unsafe path: ../evil"):
            safe_member_path("../evil")

        with pytest.raises(ValueError, match="unsafe path: root/../../evil"):
            safe_member_path("root/../../evil")

    def test_empty_and_current_directory_rejected(self):
        with pytest.raises(ValueError, match="unsafe path"):
            safe_member_path("")
        with pytest.raises(ValueError, match="unsafe path"):
            safe_member_path(".")

    def test_windows_style_paths_rejected(self):
        """Test that backslashes and drive letters are rejected."""
        with pytest.raises(ValueError, match="unsafe path"):
            safe_member_path("root\\bin\\mongod.exe")
        with pytest.raises(ValueError, match="unsafe path"):
            safe_member_path("C:/Windows/system32")

    def test_marker_name_rejected_at_root(self):
        """Test that an archive cannot forge the completion marker."""
        with pytest.raises(ValueError, match="unsafe path"):
            safe_member_path(MARKER_NAME)
        assert safe_member_path(f"root/{MARKER_NAME}") == f"root/{MARKER_NAME}"


class TestExtractorIntegration:
    """Test that unsafe members abort extraction."""

    @pytest.mark.parametrize("fmt", ["tgz", "zip"])
    def test_traversal_member_aborts_extraction(self, tmp_path, fmt):
        archive = tmp_path / f"evil.{fmt}"
        archive.write_bytes(build_archive([
            ("root/bin/mongod", b"#!/bin/sh\n", 0o755),
            ("../escaped.txt", b"gotcha", 0o644),
        ], fmt))

        with pytest.raises(ExtractionFailure, match="unsafe path"):
            Extractor().extract(archive, tmp_path / "out", operating_system=OS.LINUX)

        assert not (tmp_path / "escaped.txt").exists()
        assert not (tmp_path / "out" / MARKER_NAME).exists()
