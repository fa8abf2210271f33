"""
Content digests for the resources listed in a cache-buster URL table.

A locator is either a local filesystem path or an absolute http(s) URL. Both
are streamed chunk by chunk into an MD5 accumulator so large fonts or images
never have to sit in memory at once.
"""

import asyncio
import hashlib
import logging
import re
import threading
from dataclasses import dataclass
from typing import Union

import httpx

from plugins.css_cache_buster.errors import ResourceFetchFailure, ResourceReadFailure

logger = logging.getLogger(f"mkdocs.plugins.{__name__}")

# Schemes fetched over the network; every other locator is a filesystem path.
REMOTE_SCHEMES = frozenset({"http", "https"})

SCHEME_PATTERN = re.compile(r"^([A-Za-z][A-Za-z0-9+.-]*):")

# Marks the end of a local file on the chunk queue.
_EOF = object()


@dataclass(frozen=True)
class HashOptions:
    """Timeouts (seconds) and read size used while hashing resources."""

    connect_timeout: float = 10.0
    read_timeout: float = 30.0
    chunk_size: int = 64 * 1024

    def http_timeout(self) -> httpx.Timeout:
        return httpx.Timeout(
            connect=self.connect_timeout,
            read=self.read_timeout,
            write=self.read_timeout,
            pool=self.connect_timeout,
        )


@dataclass(frozen=True)
class LocalResource:
    path: str


@dataclass(frozen=True)
class RemoteResource:
    url: str


Resource = Union[LocalResource, RemoteResource]


def classify_locator(locator: str) -> Resource:
    """Decide once whether `locator` is fetched over HTTP or read from disk."""
    # Scheme case is ignored, so "HTTP://" is remote too. Drive letters
    # ("C:\\fonts\\a.woff") read as one-letter schemes and stay local.
    m = SCHEME_PATTERN.match(locator)
    if m and m.group(1).lower() in REMOTE_SCHEMES:
        return RemoteResource(locator)
    return LocalResource(locator)


def new_client(options: HashOptions) -> httpx.AsyncClient:
    """HTTP client used for remote resources; redirects are followed like a browser would."""
    return httpx.AsyncClient(timeout=options.http_timeout(), follow_redirects=True)


def _pump_file(
    path: str,
    chunk_size: int,
    loop: asyncio.AbstractEventLoop,
    queue: asyncio.Queue,
    stop: threading.Event,
) -> None:
    """Read `path` on a worker thread and hand each chunk to `queue` on `loop`.

    The file is opened and closed on this thread, so a read stuck on a FIFO or
    a dead mount never holds up the event loop.
    """

    def _emit(item) -> bool:
        try:
            loop.call_soon_threadsafe(queue.put_nowait, item)
        except RuntimeError:
            # Loop already closed, nobody is listening.
            return False
        return True

    try:
        with open(path, "rb", buffering=0) as handle:
            while not stop.is_set():
                chunk = handle.read(chunk_size)
                if not chunk:
                    break
                if not _emit(chunk):
                    return
    except (OSError, ValueError) as exc:
        _emit(exc)
        return
    _emit(_EOF)


async def _digest_local(path: str, options: HashOptions) -> str:
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue = asyncio.Queue()
    stop = threading.Event()
    # Daemon thread: neither asyncio.run nor interpreter exit waits on a read that never returns.
    threading.Thread(
        target=_pump_file,
        args=(path, options.chunk_size, loop, queue, stop),
        name=f"css-cache-buster-read:{path}",
        daemon=True,
    ).start()

    md5sum = hashlib.md5()
    try:
        while True:
            try:
                item = await asyncio.wait_for(queue.get(), timeout=options.read_timeout)
            except asyncio.TimeoutError as exc:
                timeout = TimeoutError(f"no data within {options.read_timeout}s")
                raise ResourceReadFailure(path, timeout) from exc
            if item is _EOF:
                break
            if isinstance(item, Exception):
                raise ResourceReadFailure(path, item) from item
            md5sum.update(item)
    finally:
        stop.set()

    return md5sum.hexdigest()


async def _digest_remote(url: str, client: httpx.AsyncClient) -> str:
    md5sum = hashlib.md5()
    try:
        async with client.stream("GET", url) as response:
            # Status is not checked: an error page body is hashed like any other.
            logger.debug("GET %s -> %s", url, response.status_code)
            async for chunk in response.aiter_bytes():
                md5sum.update(chunk)
    except (httpx.HTTPError, httpx.InvalidURL) as exc:
        raise ResourceFetchFailure(url, exc) from exc

    return md5sum.hexdigest()


async def hash_resource(
    locator: str,
    *,
    client: httpx.AsyncClient,
    options: HashOptions = HashOptions(),
) -> str:
    """Return the lowercase hex MD5 of the bytes behind `locator`.

    Raises ResourceReadFailure for local paths and ResourceFetchFailure for
    remote URLs. Nothing is retried.
    """
    resource = classify_locator(locator)
    if isinstance(resource, RemoteResource):
        digest = await _digest_remote(resource.url, client)
    else:
        digest = await _digest_local(resource.path, options)

    logger.debug("%s %s -> %s", type(resource).__name__, locator, digest)
    return digest
