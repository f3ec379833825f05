"""Sitemap download + ``<loc>`` extraction."""

from __future__ import annotations

import logging
from typing import List
from xml.etree import ElementTree as ET

import httpx

LOGGER = logging.getLogger(__name__)

_DEFAULT_TIMEOUT = httpx.Timeout(connect=10.0, read=30.0, write=10.0, pool=10.0)


def _local(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def parse_sitemap(text: str) -> tuple[str, List[str]]:
    """Return ``(kind, locations)`` where kind is ``urlset`` or ``sitemapindex``."""

    text = text.strip()
    if not text:
        raise ValueError("Sitemap is empty")
    try:
        root = ET.fromstring(text)
    except ET.ParseError as exc:
        raise ValueError(f"Sitemap is not valid XML: {exc}") from exc
    kind = _local(root.tag)
    if kind not in {"urlset", "sitemapindex"}:
        raise ValueError(f"Unsupported sitemap root <{kind}>")
    entry_tag = "url" if kind == "urlset" else "sitemap"
    locations: List[str] = []
    for entry in root:
        if _local(entry.tag) != entry_tag:
            continue
        for child in entry:
            if _local(child.tag) == "loc" and child.text and child.text.strip():
                locations.append(child.text.strip())
    return kind, locations


async def fetch_sitemap_urls(
    url: str,
    *,
    client: httpx.AsyncClient | None = None,
    follow_index: bool = True,
) -> List[str]:
    """Download a sitemap and return its page URLs.

    A ``<sitemapindex>`` is followed one level deep; nested indexes are skipped.
    """

    owns_client = client is None
    http = client or httpx.AsyncClient(timeout=_DEFAULT_TIMEOUT, follow_redirects=True)
    try:
        kind, locations = await _fetch(http, url)
        if kind == "sitemapindex":
            if not follow_index:
                raise ValueError(f"{url} is a sitemap index")
            pages: List[str] = []
            for child_url in locations:
                child_kind, child_locations = await _fetch(http, child_url)
                if child_kind != "urlset":
                    LOGGER.warning("Skipping nested sitemap index %s", child_url)
                    continue
                pages.extend(child_locations)
            locations = pages
    finally:
        if owns_client:
            await http.aclose()
    if not locations:
        raise ValueError(f"No URLs found in sitemap {url}")
    LOGGER.info("Sitemap %s listed %d URL(s)", url, len(locations))
    return locations


async def _fetch(http: httpx.AsyncClient, url: str) -> tuple[str, List[str]]:
    response = await http.get(url)
    response.raise_for_status()
    return parse_sitemap(response.text)
