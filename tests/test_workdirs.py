"""Tests for directory resolution and favorite names."""

import pytest

from codexgate.exceptions import FavoriteNameInvalid, PathResolutionError
from codexgate.workdirs import (
    expand_path_variables,
    is_valid_favorite_name,
    resolve_directory,
    unquote_wrapped,
    validate_favorite_name,
)


@pytest.mark.parametrize("raw, expected", [
    ('"My Project"', "My Project"),
    ("'x'", "x"),
    ('"unbalanced', '"unbalanced'),
    ("  plain  ", "plain"),
    ('"', '"'),
])
def test_unquote_wrapped(raw, expected):
    assert unquote_wrapped(raw) == expected


def test_expand_variables(monkeypatch, tmp_path):
    monkeypatch.setenv("CODEXGATE_TEST_DIR", str(tmp_path))
    assert expand_path_variables("$CODEXGATE_TEST_DIR/a") == f"{tmp_path}/a"
    assert expand_path_variables("%CODEXGATE_TEST_DIR%/b") == f"{tmp_path}/b"
    assert expand_path_variables("%CODEXGATE_UNSET_VAR%") == "%CODEXGATE_UNSET_VAR%"


def test_expand_home(monkeypatch, tmp_path):
    monkeypatch.setenv("HOME", str(tmp_path))
    assert expand_path_variables("~/x") == f"{tmp_path}/x"


class TestResolveDirectory:

    def test_relative_to_base(self, tmp_path):
        (tmp_path / "sub").mkdir()
        assert resolve_directory("sub", tmp_path) == tmp_path / "sub"

    def test_parent_segments_normalized(self, tmp_path):
        (tmp_path / "a").mkdir()
        (tmp_path / "b").mkdir()
        assert resolve_directory("../b", tmp_path / "a") == tmp_path / "b"

    def test_absolute_and_quoted(self, tmp_path):
        target = tmp_path / "with space"
        target.mkdir()
        assert resolve_directory(f'"{target}"', tmp_path / "elsewhere") == target

    def test_missing(self, tmp_path):
        with pytest.raises(PathResolutionError, match="No such directory"):
            resolve_directory("nope", tmp_path)

    def test_file_is_not_a_directory(self, tmp_path):
        (tmp_path / "file.txt").write_text("x")
        with pytest.raises(PathResolutionError, match="Not a directory"):
            resolve_directory("file.txt", tmp_path)

    def test_empty(self, tmp_path):
        with pytest.raises(PathResolutionError, match="Missing path"):
            resolve_directory('""', tmp_path)


@pytest.mark.parametrize("name, valid", [
    ("proj", True),
    ("a", True),
    ("my-proj_2.0", True),
    ("a" * 32, True),
    ("a" * 33, False),
    (".hidden", False),
    ("Upper", False),
    ("", False),
])
def test_is_valid_favorite_name(name, valid):
    assert is_valid_favorite_name(name) is valid


def test_validate_favorite_name_lowercases():
    assert validate_favorite_name(" API ") == "api"
    with pytest.raises(FavoriteNameInvalid, match=r"\[a-z0-9._-\]"):
        validate_favorite_name("bad name")
