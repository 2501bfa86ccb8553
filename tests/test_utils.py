"""
Tests for filesystem and naming helpers.
"""

import re
from pathlib import Path

import pytest

from slidecast_backend import utils
from slidecast_backend.utils import retry_delete, sanitize_name, sort_by_number_token, split_extension

PAGE = re.compile(r"page-(\d+)\.png$")


class TestNaming:
    def test_sanitize_replaces_non_alphanumerics(self):
        assert sanitize_name("Quarterly Report (v2)") == "Quarterly_Report__v2_"

    def test_sanitize_fallback(self):
        assert sanitize_name("   ") == "document"

    def test_split_extension_lowercases(self):
        assert split_extension("Deck.PPTX") == ("Deck", ".pptx")


class TestSorting:
    def test_numeric_not_lexicographic(self):
        paths = [Path(f"page-{n}.png") for n in (10, 9, 1, 2, 11)]

        ordered = sort_by_number_token(paths, PAGE)

        assert [p.name for p in ordered] == ["page-1.png", "page-2.png", "page-9.png", "page-10.png", "page-11.png"]

    def test_zero_padded_tokens(self):
        paths = [Path("page-10.png"), Path("page-02.png"), Path("page-01.png")]

        assert [p.name for p in sort_by_number_token(paths, PAGE)] == ["page-01.png", "page-02.png", "page-10.png"]

    def test_missing_token_sorts_first(self):
        paths = [Path("page-3.png"), Path("cover.png")]

        assert [p.name for p in sort_by_number_token(paths, PAGE)] == ["cover.png", "page-3.png"]


class TestRetryDelete:
    @pytest.mark.asyncio
    async def test_removes_directory_tree(self, tmp_path):
        target = tmp_path / "scratch"
        (target / "audio").mkdir(parents=True)
        (target / "audio" / "slide1.wav").write_bytes(b"x")

        assert await retry_delete(target, delay=0) is True
        assert not target.exists()

    @pytest.mark.asyncio
    async def test_missing_path_counts_as_deleted(self, tmp_path):
        assert await retry_delete(tmp_path / "nothing-here", delay=0) is True

    @pytest.mark.asyncio
    async def test_gives_up_without_raising(self, tmp_path, monkeypatch):
        delays = []

        async def fake_sleep(seconds):
            delays.append(seconds)

        def locked(path):
            raise PermissionError("file in use")

        monkeypatch.setattr(utils, "_remove", locked)

        assert await retry_delete(tmp_path / "busy", attempts=5, delay=2.0, sleep=fake_sleep) is False
        assert delays == [2.0, 4.0, 6.0, 8.0]
