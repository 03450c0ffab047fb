"""Tests for the directory-backed feed source."""

import threading

import pytest

from slopedin.feed import DirectoryFeedSource, FileTextExtractor


class TestDirectoryFeedSource:
    def test_items_match_patterns_only(self, tmp_path):
        (tmp_path / "b.txt").write_text("post")
        (tmp_path / "a.md").write_text("post")
        (tmp_path / "a.md.badge.json").write_text("{}")
        (tmp_path / ".hidden.txt").write_text("post")
        (tmp_path / "image.png").write_bytes(b"\x89PNG")
        (tmp_path / "nested").mkdir()
        (tmp_path / "nested" / "c.txt").write_text("post")

        source = DirectoryFeedSource(tmp_path, ["*.txt", "*.md"])

        assert [path.name for path in source.items()] == ["a.md", "b.txt"]

    def test_missing_directory_has_no_items(self, tmp_path):
        assert list(DirectoryFeedSource(tmp_path / "nope").items()) == []

    def test_handles_are_stable_resolved_paths(self, tmp_path):
        (tmp_path / "post.txt").write_text("post")
        source = DirectoryFeedSource(tmp_path)

        assert list(source.items()) == [source.handle_for(tmp_path / "post.txt")]

    def test_new_files_are_published_as_additions(self, tmp_path):
        source = DirectoryFeedSource(tmp_path, ["*.txt"])
        added = threading.Event()
        seen = []

        def on_batch(batch):
            for mutation in batch:
                seen.extend(mutation.added)
                if mutation.added:
                    added.set()

        unsubscribe = source.subscribe(on_batch)
        try:
            (tmp_path / "ignored.log").write_text("not a post")
            (tmp_path / "fresh.txt").write_text("a brand new post")
            assert added.wait(timeout=5)
        finally:
            unsubscribe()

        assert (tmp_path / "fresh.txt").resolve() in seen
        assert all(path.suffix == ".txt" for path in seen)


class TestFileTextExtractor:
    def test_collapses_whitespace(self, tmp_path):
        post = tmp_path / "post.txt"
        post.write_text("  Hello,\n\n   world!\t\tHow are\r\nyou?  ")

        assert FileTextExtractor().extract(post) == "Hello, world! How are you?"

    def test_missing_file_raises(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            FileTextExtractor().extract(tmp_path / "gone.txt")
