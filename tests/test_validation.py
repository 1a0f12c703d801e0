"""Tests for input validation.

Tests cover:
- Branch names: git rules plus shell metacharacter rejection
- Paths: traversal, metacharacters, containment under a root
- Git refs and exploration ids
- Reason text: sanitized, never rejected
- Command output sanitization
"""

from __future__ import annotations

from pathlib import Path

import pytest

from explorer.core.errors import ValidationError
from explorer.core.validation import DEFAULT_REASON, InputValidator, sanitize_command_output


@pytest.fixture
def validator() -> InputValidator:
    return InputValidator()


class TestBranchNames:
    """Tests for validate_branch_name."""

    @pytest.mark.parametrize(
        "name",
        ["feature/login", "exploration/exp-abc_12-redis", "fix-123", "release/v1.2.3"],
    )
    def test_valid_names_returned_unchanged(self, validator, name):
        assert validator.validate_branch_name(name) == name

    @pytest.mark.parametrize(
        "name",
        [
            "",
            "feature;rm -rf /",
            "a$(whoami)",
            "back`tick`",
            "has space",
            "tilde~1",
            "caret^",
            "colon:name",
            "../escape",
            "-leading-dash",
            ".hidden",
            "/abs",
            "trailing/",
            "ref.lock",
            "double//slash",
            "at@{brace",
            "dot/.segment",
        ],
    )
    def test_invalid_names_rejected(self, validator, name):
        with pytest.raises(ValidationError):
            validator.validate_branch_name(name)

    def test_too_long_rejected(self):
        validator = InputValidator(max_branch_length=10)
        with pytest.raises(ValidationError, match="too long"):
            validator.validate_branch_name("a" * 11)


class TestPaths:
    """Tests for validate_path."""

    def test_relative_path_resolved_under_root(self, validator, tmp_path):
        resolved = validator.validate_path("worktrees/one", tmp_path)
        assert resolved == (tmp_path / "worktrees" / "one").resolve()

    def test_absolute_path_inside_root_accepted(self, validator, tmp_path):
        inside = tmp_path / "a" / "b"
        assert validator.validate_path(inside, tmp_path) == inside.resolve()

    def test_absolute_path_outside_root_rejected(self, validator, tmp_path):
        with pytest.raises(ValidationError, match="escapes"):
            validator.validate_path("/etc/passwd", tmp_path)

    def test_traversal_rejected(self, validator, tmp_path):
        with pytest.raises(ValidationError, match="traversal"):
            validator.validate_path("a/../../b", tmp_path)

    @pytest.mark.parametrize("path", ["a;b", "a|b", "a`b`", "a$b", "a\nb"])
    def test_metacharacters_rejected(self, validator, tmp_path, path):
        with pytest.raises(ValidationError):
            validator.validate_path(path, tmp_path)

    def test_empty_rejected(self, validator, tmp_path):
        with pytest.raises(ValidationError):
            validator.validate_path("", tmp_path)

    def test_symlink_escaping_root_rejected(self, validator, tmp_path):
        outside = tmp_path / "outside"
        outside.mkdir()
        root = tmp_path / "root"
        root.mkdir()
        (root / "link").symlink_to(outside)
        with pytest.raises(ValidationError):
            validator.validate_path(Path("link") / "x", root)


class TestGitRefs:
    """Tests for validate_git_ref."""

    @pytest.mark.parametrize("ref", ["HEAD", "main", "refs/heads/main", "HEAD~1", "a1b2c3d4"])
    def test_valid_refs(self, validator, ref):
        assert validator.validate_git_ref(ref) == ref

    @pytest.mark.parametrize("ref", ["", "--upload-pack=x", "main..dev", "a;b", "a b"])
    def test_invalid_refs(self, validator, ref):
        with pytest.raises(ValidationError):
            validator.validate_git_ref(ref)


class TestExplorationIds:
    def test_generated_style_id_accepted(self, validator):
        assert validator.validate_exploration_id("exp-4fK2_a9Qz1") == "exp-4fK2_a9Qz1"

    @pytest.mark.parametrize("value", ["", "exp-", "../exp-1", "exp-a/b", "run-123"])
    def test_invalid_ids_rejected(self, validator, value):
        with pytest.raises(ValidationError):
            validator.validate_exploration_id(value)


class TestReasonText:
    """Reason text is cleaned up rather than refused."""

    def test_empty_gets_default(self, validator):
        assert validator.validate_reason_text("") == DEFAULT_REASON
        assert validator.validate_reason_text(None) == DEFAULT_REASON

    def test_shell_characters_stripped(self, validator):
        cleaned = validator.validate_reason_text("testing; rm -rf / && echo $HOME")
        assert ";" not in cleaned
        assert "&" not in cleaned
        assert "$" not in cleaned
        assert cleaned.startswith("testing")

    def test_whitespace_collapsed(self, validator):
        assert validator.validate_reason_text("a \n\t  b") == "a b"

    def test_truncated_to_limit(self):
        validator = InputValidator(max_reason_length=10)
        assert len(validator.validate_reason_text("x" * 100)) == 10

    def test_only_disallowed_characters_gives_default(self, validator):
        assert validator.validate_reason_text("$$$;;;") == DEFAULT_REASON


class TestSanitizeCommandOutput:
    def test_strips_ansi_and_control_characters(self):
        assert sanitize_command_output("\x1b[31mred\x1b[0m\x07") == "red"

    def test_keeps_newlines_and_tabs(self):
        assert sanitize_command_output("a\n\tb") == "a\n\tb"

    def test_truncation_keeps_tail(self):
        result = sanitize_command_output("a" * 50 + "END", max_length=10)
        assert result.endswith("a" * 7 + "END")
        assert "43 chars truncated" in result
