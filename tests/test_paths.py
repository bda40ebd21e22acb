"""Tests for path helpers."""
from cloudstash.utils.paths import (
    find_ancestor,
    folder_name,
    is_archive_name,
    is_within,
    is_zip_name,
    iter_ancestors,
    join_key,
    normalize_folder_path,
    parent_path,
)


def test_normalize_folder_path():
    assert normalize_folder_path(None) == ""
    assert normalize_folder_path("/") == ""
    assert normalize_folder_path("/Docs/Private/") == "Docs/Private"
    assert normalize_folder_path("Docs") == "Docs"


def test_parent_path():
    assert parent_path("a/b/c.txt") == "a/b"
    assert parent_path("c.txt") == ""
    assert parent_path("a/b/") == "a"
    assert parent_path(None) == ""


def test_folder_name_and_join():
    assert folder_name("Docs/Private/") == "Private"
    assert folder_name("") == ""
    assert join_key("", "a.txt") == "a.txt"
    assert join_key("/Docs/", "a.txt") == "Docs/a.txt"


def test_iter_ancestors_nearest_first():
    assert list(iter_ancestors("a/b/c")) == ["a/b/c", "a/b", "a"]
    assert list(iter_ancestors("")) == []


def test_find_ancestor():
    members = {"Docs/Private", "Team"}
    assert find_ancestor("Docs/Private/sub", members) == "Docs/Private"
    assert find_ancestor("Team/Secrets", members) == "Team"
    assert find_ancestor("Docs", members) is None


def test_is_within():
    assert is_within("Docs/Private/sub", "Docs/Private")
    assert is_within("Docs/Private", "Docs/Private")
    assert not is_within("Docs/PrivateX", "Docs/Private")
    assert is_within("anything", "")


def test_archive_names():
    assert is_archive_name("photos.ZIP")
    assert is_archive_name("backup.tar.gz")
    assert is_archive_name("x.rar")
    assert not is_archive_name("notes.txt")
    assert not is_archive_name(None)
    assert is_zip_name("a/b/x.zip")
    assert not is_zip_name("x.tar")
