#!/usr/bin/env python3
"""
Find the latest Apple OS release announced on the developer releases feed.

Usage:
  python -m tools.release_feed --os-name iOS --release-line 26
  python -m tools.release_feed --feed-url https://developer.apple.com/news/releases/rss/releases.rss

Exit codes:
  0 = a matching release title was found (printed to stdout)
  1 = no title matched, or the feed could not be fetched or parsed
"""

from __future__ import annotations

import argparse
import re
from typing import Iterable, List, Optional
from xml.etree import ElementTree as ET

import requests
from rich.console import Console
from rich.markup import escape

console = Console()

DEFAULT_FEED_URL = "https://developer.apple.com/news/releases/rss/releases.rss"
DEFAULT_TIMEOUT = 30

# Characters XML 1.0 does not allow; the feed occasionally ships them.
CONTROL_CHARS_RE = re.compile(rb"[\x00-\x08\x0b\x0c\x0e-\x1f]")


def fetch_feed(url: str = DEFAULT_FEED_URL, session: Optional[requests.Session] = None,
               timeout: float = DEFAULT_TIMEOUT) -> bytes:
    if session is None:
        with requests.Session() as http:
            resp = http.get(url, timeout=timeout)
    else:
        resp = session.get(url, timeout=timeout)
    resp.raise_for_status()
    return resp.content


def sanitize_feed(raw: bytes) -> bytes:
    return CONTROL_CHARS_RE.sub(b"", raw)


def parse_titles(raw: bytes) -> List[str]:
    """Return every item title in feed order (newest first for Apple's feed)."""
    root = ET.fromstring(sanitize_feed(raw))
    titles: List[str] = []
    for item in root.iter("item"):
        title = item.findtext("title")
        if title:
            titles.append(title.strip())
    return titles


def filter_titles(titles: Iterable[str], os_name: str, release_line: str,
                  exclude: str = "Beta") -> List[str]:
    """Keep titles naming the OS and release line. `exclude` ignores case (Apple writes "beta")."""
    skip = exclude.lower()
    return [
        t for t in titles
        if os_name in t and release_line in t and not (skip and skip in t.lower())
    ]


def latest_release_title(os_name: str = "iOS", release_line: str = "26", exclude: str = "Beta",
                         url: str = DEFAULT_FEED_URL, session: Optional[requests.Session] = None,
                         timeout: float = DEFAULT_TIMEOUT) -> Optional[str]:
    titles = parse_titles(fetch_feed(url, session=session, timeout=timeout))
    matches = filter_titles(titles, os_name, release_line, exclude)
    return matches[0] if matches else None


def main() -> int:
    ap = argparse.ArgumentParser()
    ap.add_argument("--feed-url", default=DEFAULT_FEED_URL)
    ap.add_argument("--os-name", default="iOS")
    ap.add_argument("--release-line", default="26")
    ap.add_argument("--exclude", default="Beta", help="Skip titles containing this substring (any case)")
    ap.add_argument("--timeout", type=float, default=DEFAULT_TIMEOUT)
    args = ap.parse_args()

    try:
        title = latest_release_title(
            os_name=args.os_name,
            release_line=args.release_line,
            exclude=args.exclude,
            url=args.feed_url,
            timeout=args.timeout,
        )
    except requests.RequestException as e:
        console.print(f"[red]FAIL: could not fetch {escape(args.feed_url)}: {escape(str(e))}[/red]")
        return 1
    except ET.ParseError as e:
        console.print(f"[red]FAIL: release feed is not valid XML: {e}[/red]")
        return 1

    if title is None:
        console.print(f"[yellow]No release found for {args.os_name} {args.release_line}[/yellow]")
        return 1
    console.print(escape(title), highlight=False)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
