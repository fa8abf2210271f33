"""
Locate url(...) references in CSS text and add cache-buster query parameters.

Only the query of a matched URL is rebuilt; everything before the `?` and
after the `#` is copied through unchanged.
"""

import logging
import re
from typing import List, Mapping, Tuple
from urllib.parse import parse_qsl, quote, urlencode

logger = logging.getLogger(f"mkdocs.plugins.{__name__}")

# url( ... ) with optional whitespace and quotes. Opening and closing quotes are
# not required to match, so url("a.woff') and url(a.woff") are both accepted.
CSS_URL_PATTERN = re.compile(r"""(url\s*\(\s*['"]?)(.*?)(['"]?\s*\))""")

CACHE_BUSTER_PARAM = "md5-by-cache-buster"

# Characters left unescaped in query values, on top of urllib's "_.-~".
QUERY_SAFE = "!*'()"


def add_cache_buster(url: str, digest: str) -> str:
    """Return `url` with the md5-by-cache-buster query parameter set to `digest`.

    Other parameters keep their order and values, the fragment is kept, and an
    existing cache-buster parameter is overwritten where it stands. The query
    is always rebuilt from the parsed parameters, never from the raw text.
    """
    base, hash_mark, fragment = url.partition("#")
    path, _, raw_query = base.partition("?")

    params: List[Tuple[str, str]] = []
    replaced = False
    for key, value in parse_qsl(raw_query, keep_blank_values=True):
        if key == CACHE_BUSTER_PARAM:
            if replaced:
                continue
            value = digest
            replaced = True
        params.append((key, value))
    if not replaced:
        params.append((CACHE_BUSTER_PARAM, digest))

    query = urlencode(params, quote_via=quote, safe=QUERY_SAFE, errors="surrogatepass")
    return f"{path}?{query}{hash_mark}{fragment}"


def rewrite_css_urls(css_text: str, digest_map: Mapping[str, str]) -> str:
    """Append cache-buster digests to every url(...) whose body is in `digest_map`.

    URLs missing from the map are left exactly as written.
    """
    rewritten = 0

    def _sub(m: re.Match) -> str:
        nonlocal rewritten
        prefix, url, suffix = m.groups()
        digest = digest_map.get(url)
        if digest is None:
            return m.group(0)
        rewritten += 1
        return prefix + add_cache_buster(url, digest) + suffix

    out, found = CSS_URL_PATTERN.subn(_sub, css_text)
    logger.debug("url() found=%d rewritten=%d", found, rewritten)
    return out
