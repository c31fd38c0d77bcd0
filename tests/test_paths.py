"""Tests for the path helpers."""
import pytest

from notesapp.exceptions import ErrorCode, PathError
from notesapp.storage.paths import (
    MAX_FILE_NAME_LENGTH,
    generate_safe_path,
    normalize_path,
    resolve_under,
    sanitize_file_name,
    validate_path,
)


class TestNormalizePath:
    def test_collapses_separators(self):
        assert normalize_path("a//b///c") == "a/b/c"

    def test_converts_backslashes(self):
        assert normalize_path("a\\b\\\\c") == "a/b/c"

    def test_empty_path_rejected(self):
        with pytest.raises(PathError) as exc_info:
            normalize_path("")
        assert exc_info.value.code == ErrorCode.INVALID_PATH

    def test_non_string_rejected(self):
        with pytest.raises(PathError):
            normalize_path(None)


class TestValidatePath:
    def test_plain_path_is_valid(self):
        assert validate_path("/notebooks/123/chapters/456") is True

    def test_colon_is_allowed(self):
        assert validate_path("/notebooks/My: Notes") is True

    @pytest.mark.parametrize("char", ["<", ">", '"', "|", "?", "*", "\x00", "\x1f"])
    def test_dangerous_characters_rejected(self, char):
        assert validate_path(f"/notebooks/a{char}b") is False

    def test_reserved_names_rejected_on_desktop(self):
        assert validate_path("/notebooks/CON/x", platform="desktop") is False
        assert validate_path("/notebooks/lpt1", platform="desktop") is False

    def test_reserved_names_allowed_on_mobile(self):
        assert validate_path("/notebooks/CON/x", platform="android") is True
        assert validate_path("/notebooks/CON/x", platform="ios") is True

    def test_empty_path_invalid(self):
        assert validate_path("") is False


class TestSanitizeFileName:
    def test_keeps_colons(self):
        assert sanitize_file_name("My: Notes") == "My: Notes"

    def test_replaces_separators(self):
        assert sanitize_file_name("a/b\\c") == "a_b_c"

    def test_strips_dangerous_characters(self):
        assert sanitize_file_name('a<b>c"d') == "abcd"

    def test_all_dangerous_becomes_untitled(self):
        assert sanitize_file_name("<>") == "untitled"

    def test_empty_becomes_untitled(self):
        assert sanitize_file_name("") == "untitled"

    def test_truncates_long_names(self):
        assert len(sanitize_file_name("x" * 500)) == MAX_FILE_NAME_LENGTH


class TestGenerateSafePath:
    def test_joins_segments_onto_base(self):
        assert generate_safe_path("/notebooks", "1", "chapters", "2") == (
            "/notebooks/1/chapters/2"
        )

    def test_segments_are_sanitized(self):
        assert generate_safe_path("/notebooks", "a/b") == "/notebooks/a_b"

    def test_base_is_not_sanitized(self):
        assert generate_safe_path("/notebooks/1", "notes") == "/notebooks/1/notes"

    def test_numeric_segments(self):
        assert generate_safe_path("/notebooks", 42) == "/notebooks/42"


class TestResolveUnder:
    def test_resolves_entity_path(self, tmp_path):
        assert resolve_under(tmp_path, "/notebooks/1") == tmp_path / "notebooks" / "1"

    def test_rejects_traversal(self, tmp_path):
        with pytest.raises(PathError) as exc_info:
            resolve_under(tmp_path, "/notebooks/../../etc")
        assert exc_info.value.code == ErrorCode.PATH_TRAVERSAL_DETECTED

    def test_rejects_invalid_characters(self, tmp_path):
        with pytest.raises(PathError) as exc_info:
            resolve_under(tmp_path, "/notebooks/a*b")
        assert exc_info.value.code == ErrorCode.INVALID_PATH
