from unittest.mock import MagicMock

import pytest


FEED_TEMPLATE = """<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0">
  <channel>
    <title>Releases - Apple Developer</title>
    {items}
  </channel>
</rss>
"""


def make_feed(titles):
    items = "\n".join(f"<item><title>{t}</title><link>https://developer.apple.com/news/releases/</link></item>" for t in titles)
    return FEED_TEMPLATE.format(items=items).encode("utf-8")


def make_response(content=b"", json_body=None):
    resp = MagicMock()
    resp.content = content
    resp.json.return_value = json_body
    resp.raise_for_status.return_value = None
    return resp


@pytest.fixture
def feed_session():
    """Session whose GET returns whatever feed the test sets via `.serve(titles)`."""
    session = MagicMock()

    def serve(titles):
        session.get.return_value = make_response(content=make_feed(titles))

    session.serve = serve
    return session


@pytest.fixture
def graph_session():
    session = MagicMock()
    session.patch.return_value = make_response()
    return session
