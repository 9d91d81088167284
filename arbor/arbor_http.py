import asyncio
import json
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urljoin

import httpx

from arbor.arbor_serialize import Buffer
from arbor.arbor_tree import is_tree


async def http_request(method: str, url: str, *, timeout: float = 5.0,
                       headers: Optional[Dict[str, str]] = None,
                       params: Optional[Dict[str, Any]] = None) -> Tuple[int, bytes, Dict[str, str], str]:
    """
    Issue one request and return (status, body, lower-cased headers, final url).

    No retries: transport errors propagate to the caller.
    """
    async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
        resp = await client.request(
            method.upper(),
            url,
            headers=dict(headers or {}),
            params=dict(params or {}),
            content=None,
        )
    headers_map = {str(k).lower(): v for k, v in resp.headers.items()}
    final_url = str(getattr(resp, "url", None) or url)
    return int(resp.status_code), resp.content, headers_map, final_url


async def http_get(url: str, timeout: float = 5.0) -> Tuple[int, bytes, Dict[str, str], str]:
    return await http_request('GET', url, timeout=timeout)


def parse_key_descriptors(descriptors) -> Dict[str, bool]:
    """["foo", "bar/"] -> {"foo": False, "bar": True}; True marks a subtree."""
    result = {}
    for descriptor in descriptors:
        descriptor = str(descriptor)
        if descriptor.endswith("/"):
            result[descriptor[:-1]] = True
        else:
            result[descriptor] = False
    return result


class SiteTree:
    """
    A web site as a tree of Buffers.

    A site that publishes a `.keys.json` route listing its keys can be
    enumerated, and routes ending in '/' on such a site are subtrees.
    """

    def __init__(self, href: str, timeout: float = 5.0, parent=None):
        if not href.endswith("/"):
            href += "/"
        self.href = href
        self.timeout = timeout
        self.parent = parent
        self._key_dictionary: Optional[asyncio.Future] = None

    def _child(self, href: str) -> 'SiteTree':
        return type(self)(href, timeout=self.timeout, parent=self)

    async def _load_key_dictionary(self) -> Optional[Dict[str, bool]]:
        status, body, _, _ = await http_get(urljoin(self.href, ".keys.json"), timeout=self.timeout)
        if not 200 <= status < 300:
            return None
        try:
            return parse_key_descriptors(json.loads(body.decode("utf-8", errors="replace")))
        except (ValueError, TypeError):
            # Probably a not-found page served with a success status
            return None

    async def key_dictionary(self) -> Optional[Dict[str, bool]]:
        if self._key_dictionary is None:
            self._key_dictionary = asyncio.ensure_future(self._load_key_dictionary())
        return await self._key_dictionary

    async def has_keys_json(self) -> bool:
        return await self.key_dictionary() is not None

    async def keys(self) -> list:
        dictionary = await self.key_dictionary()
        return list(dictionary) if dictionary else []

    async def is_key_for_subtree(self, key) -> bool:
        dictionary = await self.key_dictionary()
        if dictionary is not None:
            return bool(dictionary.get(str(key).rstrip("/"), False))
        return is_tree(await self.get(key))

    async def get(self, key):
        key = "" if key is None else str(key)
        if key == "" and await self.has_keys_json():
            key = "index.html"

        href = urljoin(self.href, key)
        if href.endswith("/") and await self.has_keys_json():
            return self._child(href)

        status, body, headers, final_url = await http_get(href, timeout=self.timeout)
        if not 200 <= status < 300:
            return None

        if final_url != href and final_url.endswith("/") and await self.has_keys_json():
            return self._child(final_url)

        return Buffer(body, name=key or None, content_type=headers.get("content-type"))

    def resolve(self, path: str) -> 'SiteTree':
        return self._child(urljoin(self.href, path))

    def __repr__(self):
        return f"SiteTree({self.href!r})"
