"""Unit tests for the directory browser."""

import os

import pytest

from claude_hub.browse import BrowseError, browse_directory


@pytest.fixture
def tree(tmp_path):
    (tmp_path / "beta").mkdir()
    (tmp_path / "Alpha").mkdir()
    (tmp_path / ".hidden").mkdir()
    (tmp_path / "notes.txt").write_text("x")
    (tmp_path / ".env").write_text("x")
    return tmp_path


def test_lists_visible_folders_sorted(tree):
    result = browse_directory(str(tree))

    assert result["current"] == str(tree)
    assert result["parent"] == str(tree.parent)
    assert [f["name"] for f in result["folders"]] == ["Alpha", "beta"]
    assert result["files"] == []


def test_includes_files_on_request(tree):
    result = browse_directory(str(tree), include_files=True)
    assert [f["name"] for f in result["files"]] == ["notes.txt"]


def test_entries_carry_mtime(tree):
    result = browse_directory(str(tree))
    alpha = result["folders"][0]
    assert alpha["mtime"] == pytest.approx(os.stat(tree / "Alpha").st_mtime)


def test_defaults_to_home():
    assert browse_directory()["current"] == os.path.expanduser("~")


def test_expands_tilde():
    assert browse_directory("~")["current"] == os.path.expanduser("~")


def test_root_has_no_parent():
    assert browse_directory("/")["parent"] is None


def test_missing_directory_raises(tmp_path):
    with pytest.raises(BrowseError):
        browse_directory(str(tmp_path / "missing"))


def test_file_path_raises(tree):
    with pytest.raises(BrowseError):
        browse_directory(str(tree / "notes.txt"))


def test_broken_symlink_skipped(tree):
    (tree / "dangling").symlink_to(tree / "nowhere")
    result = browse_directory(str(tree), include_files=True)
    names = [e["name"] for e in result["folders"] + result["files"]]
    assert "dangling" not in names
