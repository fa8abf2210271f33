"""
Cache-bust the resource URLs of one CSS document.

Every URL listed in the URL table gets a `md5-by-cache-buster=<md5>` query
parameter computed from the bytes of the resource it maps to, e.g. with

    {
        "local/rel/file.eot": "./local/rel/file.eot",
        "/remote/file.ttf": "https://example.com/remote/file.ttf",
    }

the stylesheet

    src: url('local/rel/file.eot') format('eot'),
         url('/remote/file.ttf') format('truetype');

becomes

    src: url('local/rel/file.eot?md5-by-cache-buster=dbbe284acff8af485a7513fc14d8cabd') format('eot'),
         url('/remote/file.ttf?md5-by-cache-buster=ee25807e36fcdcdf4ea55311f15e3f66') format('truetype');

All digests are computed concurrently before the document is rewritten; if
any resource cannot be hashed nothing is rewritten.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Mapping, Optional, Union

import httpx

from plugins.css_cache_buster.errors import ResourceError, TransformFailure, UnsupportedInputKind
from plugins.css_cache_buster.hasher import HashOptions, hash_resource, new_client
from plugins.css_cache_buster.rewriter import rewrite_css_urls

logger = logging.getLogger(f"mkdocs.plugins.{__name__}")

CssDocument = Union[str, bytes, bytearray]


@asynccontextmanager
async def _client_scope(
    client: Optional[httpx.AsyncClient], options: HashOptions
) -> AsyncIterator[httpx.AsyncClient]:
    """Yield the caller's client untouched, or a fresh one closed on exit."""
    if client is not None:
        yield client
        return
    async with new_client(options) as owned:
        yield owned


async def build_digest_map(
    url_table: Mapping[str, str],
    *,
    client: Optional[httpx.AsyncClient] = None,
    options: Optional[HashOptions] = None,
) -> Dict[str, str]:
    """Hash every resource of `url_table` concurrently and map CSS URLs to digests.

    Keys pointing at the same locator share one computation. The first failure
    cancels the hashes still running and is raised as is.
    """
    if not url_table:
        return {}

    options = options or HashOptions()
    locators = set(url_table.values())
    logger.debug("hashing %d resource(s) for %d url(s)", len(locators), len(url_table))

    async with _client_scope(client, options) as http:
        tasks = {
            locator: asyncio.ensure_future(hash_resource(locator, client=http, options=options))
            for locator in locators
        }
        try:
            done, _ = await asyncio.wait(
                tasks.values(), return_when=asyncio.FIRST_EXCEPTION
            )
        finally:
            # Also reached when the caller cancels us while waiting.
            unfinished = [task for task in tasks.values() if not task.done()]
            for task in unfinished:
                task.cancel()
            if unfinished:
                await asyncio.gather(*unfinished, return_exceptions=True)

        # Retrieve every failure so asyncio does not report the unraised ones.
        failures = [task.exception() for task in done if not task.cancelled()]
        failures = [exc for exc in failures if exc is not None]
        if failures:
            raise failures[0]

    digests = {locator: task.result() for locator, task in tasks.items()}
    return {url_on_css: digests[locator] for url_on_css, locator in url_table.items()}


async def transform(
    css: CssDocument,
    url_table: Mapping[str, str],
    *,
    client: Optional[httpx.AsyncClient] = None,
    options: Optional[HashOptions] = None,
) -> CssDocument:
    """Return `css` with every URL of `url_table` cache-busted.

    `css` must be fully in memory: text comes back as text and bytes (UTF-8)
    come back as bytes. File objects, iterators and other incremental bodies
    raise UnsupportedInputKind before anything is hashed.
    """
    if not isinstance(css, (str, bytes, bytearray)):
        raise UnsupportedInputKind(type(css))

    # Bytes are decoded up front, with U+FFFD for invalid sequences.
    text = css if isinstance(css, str) else bytes(css).decode("utf8", errors="replace")

    try:
        digest_map = await build_digest_map(url_table, client=client, options=options)
    except ResourceError as exc:
        raise TransformFailure("build_digest_map", exc) from exc

    rewritten = rewrite_css_urls(text, digest_map)
    if isinstance(css, str):
        return rewritten
    return rewritten.encode("utf8")


def transform_sync(
    css: CssDocument,
    url_table: Mapping[str, str],
    *,
    options: Optional[HashOptions] = None,
) -> CssDocument:
    """Run `transform` to completion on a new event loop."""
    return asyncio.run(transform(css, url_table, options=options))
