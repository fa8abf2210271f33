"""
Tests for digest map construction and the top-level transform.
"""

import asyncio
import gc
import io
import logging
import sys

import httpx
import pytest

from plugins.css_cache_buster import cache_buster
from plugins.css_cache_buster.cache_buster import build_digest_map, transform, transform_sync
from plugins.css_cache_buster.errors import (
    ResourceReadFailure,
    TransformFailure,
    UnsupportedInputKind,
)

EMPTY_MD5 = "d41d8cd98f00b204e9800998ecf8427e"
HELLO_MD5 = "5d41402abc4b2a76b9719d911017c592"

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="/dev/null is POSIX only")


def _empty_body(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, content=b"")


def _transform(css, url_table, handler=_empty_body):
    async def _run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await transform(css, url_table, client=client)

    return asyncio.run(_run())


@pytest.fixture
def no_hashing(monkeypatch):
    """Fail the test if any resource gets hashed."""

    async def _fail(locator, **kwargs):
        raise AssertionError(f"unexpected hash of {locator}")

    monkeypatch.setattr(cache_buster, "hash_resource", _fail)


class TestTransform:
    """End-to-end behaviour of transform()."""

    @posix_only
    def test_local_url(self):
        """Test: A local file in the table is cache-busted."""
        result = _transform("src: url(path/to/local/file)", {"path/to/local/file": "/dev/null"})
        assert result == f"src: url(path/to/local/file?md5-by-cache-buster={EMPTY_MD5})"

    def test_remote_url(self):
        """Test: A remote URL in the table is cache-busted."""
        result = _transform(
            "src: url(path/to/remote/file)",
            {"path/to/remote/file": "http://devnull-as-a-service.com/dev/null"},
        )
        assert result == f"src: url(path/to/remote/file?md5-by-cache-buster={EMPTY_MD5})"

    def test_two_urls_on_separate_lines(self, tmp_path):
        """Test: Two URLs get their own digests and keep their lines."""
        font = tmp_path / "a.woff"
        font.write_bytes(b"hello")
        css = "src: url(path/to/remote/file);\nsrc: url(path/to/local/file);"
        result = _transform(
            css,
            {
                "path/to/local/file": str(font),
                "path/to/remote/file": "http://devnull-as-a-service.com/dev/null",
            },
        )
        assert result == (
            f"src: url(path/to/remote/file?md5-by-cache-buster={EMPTY_MD5});\n"
            f"src: url(path/to/local/file?md5-by-cache-buster={HELLO_MD5});"
        )

    def test_empty_table_leaves_css_alone(self, no_hashing):
        """Test: An empty table changes nothing and hashes nothing."""
        assert transform_sync("src: url(path/to/file)", {}) == "src: url(path/to/file)"

    def test_streamed_input_is_rejected(self, no_hashing):
        """Test: Streams and iterators are refused before any hashing."""
        for streamed in (io.StringIO("src: url(a)"), io.BytesIO(b"src: url(a)"), iter(["src: url(a)"])):
            with pytest.raises(UnsupportedInputKind):
                transform_sync(streamed, {"a": "/dev/null"})

    def test_missing_local_file_fails_whole_transform(self, tmp_path):
        """Test: One unreadable resource fails the whole document."""
        font = tmp_path / "a.woff"
        font.write_bytes(b"hello")
        missing = str(tmp_path / "missing.woff")

        with pytest.raises(TransformFailure) as exc_info:
            _transform(
                "src: url(a.woff);\nsrc: url(missing.woff);",
                {"a.woff": str(font), "missing.woff": missing},
            )

        failure = exc_info.value
        assert failure.stage == "build_digest_map"
        assert isinstance(failure.cause, ResourceReadFailure)
        assert failure.cause.locator == missing
        assert failure.__cause__ is failure.cause

    def test_bytes_in_bytes_out(self, tmp_path):
        """Test: Bytes input gives bytes output."""
        font = tmp_path / "a.woff"
        font.write_bytes(b"hello")
        result = _transform("/* é */ src: url(a.woff)".encode("utf8"), {"a.woff": str(font)})
        assert isinstance(result, bytes)
        assert result.decode("utf8") == f"/* é */ src: url(a.woff?md5-by-cache-buster={HELLO_MD5})"

    def test_invalid_utf8_is_replaced_not_raised(self, tmp_path):
        """Test: Bytes that are not valid UTF-8 still get rewritten, with U+FFFD in place of the bad byte."""
        font = tmp_path / "a.woff"
        font.write_bytes(b"hello")
        result = transform_sync(b"/* \xff */ src: url(a.woff)", {"a.woff": str(font)})
        assert isinstance(result, bytes)
        assert result == f"/* \ufffd */ src: url(a.woff?md5-by-cache-buster={HELLO_MD5})".encode("utf8")

    def test_transform_sync_local_file(self, tmp_path):
        """Test: transform_sync keeps query and fragment of the URL."""
        font = tmp_path / "a.woff"
        font.write_bytes(b"hello")
        result = transform_sync("src: url('a.woff?v=2#f')", {"a.woff?v=2#f": str(font)})
        assert result == f"src: url('a.woff?v=2&md5-by-cache-buster={HELLO_MD5}#f')"


class TestBuildDigestMap:
    """Concurrent digest computation."""

    def test_empty_table(self, no_hashing):
        """Test: An empty table gives an empty map."""
        assert asyncio.run(build_digest_map({})) == {}

    def test_map_covers_every_key(self, monkeypatch):
        """Test: Every key is mapped and shared locators are hashed once."""
        calls = []

        async def _fake(locator, *, client, options):
            calls.append(locator)
            return f"digest-of-{locator}"

        monkeypatch.setattr(cache_buster, "hash_resource", _fake)
        table = {"a.woff": "fonts/a.woff", "b.woff": "fonts/b.woff", "a2.woff": "fonts/a.woff"}

        digest_map = asyncio.run(build_digest_map(table))

        assert digest_map == {
            "a.woff": "digest-of-fonts/a.woff",
            "b.woff": "digest-of-fonts/b.woff",
            "a2.woff": "digest-of-fonts/a.woff",
        }
        # Shared locators are hashed once.
        assert sorted(calls) == ["fonts/a.woff", "fonts/b.woff"]

    def test_hashes_run_concurrently(self, monkeypatch):
        """Test: Hashes run at the same time, not one after another."""
        started = []
        release = None

        async def _fake(locator, *, client, options):
            started.append(locator)
            if len(started) == 2:
                release.set()
            await release.wait()
            return locator

        async def _run():
            nonlocal release
            release = asyncio.Event()
            return await asyncio.wait_for(
                build_digest_map({"a": "x", "b": "y"}), timeout=5
            )

        monkeypatch.setattr(cache_buster, "hash_resource", _fake)
        assert asyncio.run(_run()) == {"a": "x", "b": "y"}

    def test_first_failure_cancels_the_rest(self, monkeypatch):
        """Test: The first failure cancels the other hashes."""
        cancelled = []

        async def _fake(locator, *, client, options):
            if locator == "bad":
                raise ResourceReadFailure("bad", FileNotFoundError("bad"))
            try:
                await asyncio.sleep(30)
            except asyncio.CancelledError:
                cancelled.append(locator)
                raise
            return "never"

        monkeypatch.setattr(cache_buster, "hash_resource", _fake)

        with pytest.raises(ResourceReadFailure) as exc_info:
            asyncio.run(build_digest_map({"a": "slow", "b": "bad"}))

        assert exc_info.value.locator == "bad"
        assert cancelled == ["slow"]

    def test_simultaneous_failures_are_all_retrieved(self, monkeypatch, caplog):
        """Test: When several hashes fail together, none is left unretrieved for asyncio to report."""

        async def _fake(locator, *, client, options):
            raise ResourceReadFailure(locator, FileNotFoundError(locator))

        monkeypatch.setattr(cache_buster, "hash_resource", _fake)

        with caplog.at_level(logging.ERROR, logger="asyncio"):
            with pytest.raises(ResourceReadFailure):
                asyncio.run(build_digest_map({"a": "missing-a", "b": "missing-b"}))
            gc.collect()

        assert "never retrieved" not in caplog.text

    def test_uses_callers_client(self):
        """Test: A client passed in is used and left open."""
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(str(request.url))
            return httpx.Response(200, content=b"hello")

        async def _run():
            async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
                digest_map = await build_digest_map({"a.woff": "https://example.com/a.woff"}, client=client)
                # Still usable: the caller owns the client.
                assert not client.is_closed
                return digest_map

        assert asyncio.run(_run()) == {"a.woff": HELLO_MD5}
        assert seen == ["https://example.com/a.woff"]
