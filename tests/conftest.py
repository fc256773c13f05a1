"""
Shared fixtures: a fake HTTP client that records requests instead of sending them, and a local debug bot wired to it with the Wikipedia plugin loaded.
"""
import json
import logging
from collections import namedtuple

import pytest

from async_http import HttpResponse
from bot import SlackDebugBot
from plugins.wiki import WikiPlugin

PendingRequest = namedtuple("PendingRequest", ["url", "params", "timeout", "callback"])


class FakeHttp:
    """Stands in for `AsyncHttp`; tests deliver responses explicitly with `respond`."""

    def __init__(self):
        self.requests = []

    def get(self, url, *, params=None, timeout=5, callback):
        self.requests.append(PendingRequest(url, dict(params or {}), timeout, callback))

    def respond(self, body=None, error=None, index=-1):
        request = self.requests[index]
        request.callback(HttpResponse(body=body, error=error))

    def process_completed(self):
        return 0

    def shutdown(self, wait=True):
        pass


def page_body(page_id, **page):
    """Build a query API response body holding a single page."""
    return json.dumps({"batchcomplete": "", "query": {"pages": {str(page_id): page}}})


@pytest.fixture
def http():
    return FakeHttp()


@pytest.fixture
def bot(http):
    botty = SlackDebugBot("", logger=logging.getLogger("TestBotty"), http=http)
    botty.register_plugin(WikiPlugin(botty))
    return botty


@pytest.fixture
def replies(bot):
    """Texts of everything the bot has said so far, oldest first."""
    def bot_replies():
        return [m["text"] for m in bot.messages if m["user"] == "UBotty"]
    return bot_replies
