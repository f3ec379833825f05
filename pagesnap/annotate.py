"""Outbound-link highlighting for captured pages."""

from __future__ import annotations

from typing import Iterable
from urllib.parse import urlparse

from .automation import AutomationPage

LEGEND_TITLE = "URL Reference"

_COLLECT_SCRIPT = "() => Array.from(document.querySelectorAll('a[href]'), (a) => a.href)"

_DRAW_SCRIPT = """
(payload) => {
    const urls = payload.urls;
    const indexOf = new Map(urls.map((url, i) => [url, i + 1]));
    const doc = document.documentElement;
    let labelled = 0;
    document.querySelectorAll('a[href]').forEach((link) => {
        const index = indexOf.get(link.href);
        if (!index) {
            return;
        }
        link.style.border = '2px solid red';
        const rect = link.getBoundingClientRect();
        const label = document.createElement('div');
        label.textContent = String(index);
        label.setAttribute('data-pagesnap-label', String(index));
        Object.assign(label.style, {
            position: 'absolute',
            left: (rect.left + window.scrollX) + 'px',
            top: (rect.bottom + window.scrollY + 4) + 'px',
            backgroundColor: 'rgba(255, 0, 0, 0.7)',
            color: 'white',
            padding: '4px 8px',
            border: '2px solid white',
            borderRadius: '3px',
            fontSize: '18px',
            fontWeight: 'bold',
            fontFamily: 'Arial, sans-serif',
            zIndex: '2147483647',
        });
        document.body.appendChild(label);
        labelled += 1;
    });

    const legend = document.createElement('div');
    legend.setAttribute('data-pagesnap-legend', '');
    Object.assign(legend.style, {
        backgroundColor: 'white',
        color: 'black',
        padding: '15px',
        marginTop: '30px',
        fontFamily: 'Arial, sans-serif',
        position: 'relative',
        zIndex: '2147483646',
    });
    const title = document.createElement('h2');
    title.textContent = payload.title;
    title.style.margin = '0 0 10px 0';
    legend.appendChild(title);
    const list = document.createElement('ul');
    list.style.paddingLeft = '20px';
    list.style.margin = '0';
    urls.forEach((url, i) => {
        const item = document.createElement('li');
        item.style.marginBottom = '5px';
        item.style.wordBreak = 'break-all';
        const badge = document.createElement('span');
        badge.textContent = String(i + 1);
        Object.assign(badge.style, {
            backgroundColor: 'rgba(255, 0, 0, 0.7)',
            color: 'white',
            padding: '2px 5px',
            borderRadius: '3px',
            fontSize: '12px',
            fontWeight: 'bold',
            marginRight: '5px',
        });
        const text = document.createElement('span');
        text.textContent = url;
        text.style.color = 'rgba(255, 0, 0, 0.7)';
        item.appendChild(badge);
        item.appendChild(text);
        list.appendChild(item);
    });
    legend.appendChild(list);
    document.body.appendChild(legend);
    return labelled;
}
"""


def _bare_host(value: str) -> str:
    host = (value or "").lower()
    if host.startswith("www."):
        host = host[4:]
    return host


def outbound_links(hrefs: Iterable[str], page_url: str) -> list[str]:
    """Distinct http(s) links leaving the page's host, in first-seen order.

    A leading ``www.`` is ignored on both sides. The list position (1-based)
    is the number drawn next to each link.
    """

    own_host = _bare_host(urlparse(page_url).hostname or "")
    seen: dict[str, None] = {}
    for href in hrefs:
        if not href:
            continue
        parsed = urlparse(href)
        if parsed.scheme.lower() not in {"http", "https"}:
            continue
        if _bare_host(parsed.hostname or "") == own_host:
            continue
        seen.setdefault(href, None)
    return list(seen)


async def annotate_outbound_links(page: AutomationPage, page_url: str) -> list[str]:
    """Outline outbound links, number them and append a legend.

    Returns the numbered URLs; nothing is drawn when there are none.
    """

    hrefs = await page.evaluate(_COLLECT_SCRIPT)
    urls = outbound_links(hrefs or [], page_url)
    if urls:
        await page.evaluate(_DRAW_SCRIPT, {"urls": urls, "title": LEGEND_TITLE})
    return urls
