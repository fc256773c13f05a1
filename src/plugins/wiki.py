#!/usr/bin/env python3

"""
Wikipedia lookup plugin for Botty.

Example invocations:

    #general    | Me: wiki fire
    #general    | Botty: *Fire*
                  > Fire is the rapid oxidation of a material in the exothermic chemical process of combustion, releasing heat, light, and various reaction products. (...)
    #general    | Me: wiki mercury
    #general    | Botty: *Mercury (disambiguation)*
                  > Mercury (planet): `wiki Mercury (planet)`
                  > Mercury (element): `wiki Mercury (element)`
                  > (...)
    #general    | Me: wiki asdfghjklqwerty
    #general    | Botty: Couldn't find a Wikipedia entry for *Asdfghjklqwerty*.
"""

import re, json
from collections import namedtuple
from functools import partial

from .utilities import BasePlugin

WIKIPEDIA_API_URL = "https://en.wikipedia.org/w/api.php"
REQUEST_TIMEOUT = 5 # seconds, for each request

MISSING_PAGE_ID = "-1" # page ID the API uses for pages that don't exist

WikiLink = namedtuple("WikiLink", ["title"])
WikiPage = namedtuple("WikiPage", ["title", "extract", "links"], defaults=["", ()])
WikiPage.__doc__ = """A Wikipedia page as returned by the query API: `title` is always present, `extract` is the plain text introduction (empty if not requested), and `links` is a tuple of `WikiLink` (empty if not requested)."""

class WikiLookupError(Exception):
    """Base class for everything that can go wrong while looking up a page. Subclasses provide `user_message`, plain text (with Slack bold markup at most) suitable for showing to the user."""

class TransportError(WikiLookupError):
    def __init__(self, error):
        super().__init__(error)
        self.error = error

    @property
    def user_message(self): return "There was an error getting data from Wikipedia: {}. Please try again later.".format(self.error)

class ParseError(WikiLookupError):
    user_message = "Unable to parse Wikipedia's reply."

class PageNotFound(WikiLookupError):
    def __init__(self, title):
        super().__init__(title)
        self.title = title

    @property
    def user_message(self): return "Couldn't find a Wikipedia entry for *{}*.".format(self.title)

def parse_response(response):
    """Returns the first page in the API response `response` (an `HttpResponse`) as a `WikiPage`, or raises a `WikiLookupError` subclass describing why that isn't possible."""
    if response.error is not None: raise TransportError(response.error)

    try:
        data = json.loads(response.body)
    except (TypeError, ValueError) as e:
        raise ParseError("invalid JSON: {}".format(e)) from e

    query = data.get("query") if isinstance(data, dict) else None
    pages = query.get("pages") if isinstance(query, dict) else None
    if not isinstance(pages, dict) or not pages: raise ParseError("response has no pages: {}".format(response.body[:200]))
    page_id, page = next(iter(pages.items())) # only one title is ever requested, so there's only one page
    if not isinstance(page, dict) or not isinstance(page.get("title"), str): raise ParseError("page {} has no title".format(page_id))

    if str(page_id) == MISSING_PAGE_ID: raise PageNotFound(page["title"])

    extract = page.get("extract", "")
    if not isinstance(extract, str): raise ParseError("page extract should be a string, but is {} instead".format(repr(extract)))
    links = page.get("links", [])
    if not isinstance(links, list) or not all(isinstance(link, dict) and isinstance(link.get("title"), str) for link in links):
        raise ParseError("page links should be a list of titled links, but are {} instead".format(repr(links)))
    return WikiPage(title=page["title"], extract=extract, links=tuple(WikiLink(title=link["title"]) for link in links))

def is_disambiguation(page):
    return re.search(r"may refer to:$", page.extract) is not None

def fix_sentence_spacing(text):
    """Returns `text` with a space inserted after sentence-ending periods that are directly followed by the next sentence, such as "test.Another" - the plain text extracts sometimes lose these."""
    return re.sub(r"([a-z0-9])\.([A-Z])", r"\1. \2", text)

class WikiPlugin(BasePlugin):
    def __init__(self, bot, *, api_url=WIKIPEDIA_API_URL, timeout=REQUEST_TIMEOUT):
        super().__init__(bot)
        self.api_url = api_url
        self.timeout = timeout

    def on_message(self, m):
        if not m.is_user_text_message: return False
        match = re.search(r"^\s*wiki\s+(\S.*)$", m.text, re.IGNORECASE | re.DOTALL)
        if not match: return False
        term = self.sendable_text_to_text(match.group(1).strip()) # get query as plain text in order to make things like < and > work (these are usually escaped)
        term = term.replace("&#39;", "'")
        self.lookup(term, self.reply_target(m))
        return True

    def lookup(self, term, reply_target):
        """Look up `term` on Wikipedia, eventually replying to `reply_target` (a `CommandReply`) with the page introduction or a list of pages it might refer to."""
        self.logger.info("looking up \"{}\"".format(term))
        query = {
            "format": "json",
            "action": "query",
            "prop": "extracts",
            "exintro": 1,
            "explaintext": 1,
            "redirects": 1,
            "titles": term,
        }
        self.http_get(self.api_url, params=query, timeout=self.timeout, callback=partial(self.handle_extract_response, reply_target=reply_target))

    def handle_extract_response(self, response, reply_target):
        page = self.parse_or_reply(response, reply_target)
        if page is None: return

        # the page doesn't describe a single thing, look up everything it links to and present that instead
        if is_disambiguation(page):
            self.logger.info("\"{}\" is a disambiguation page, requesting its links".format(page.title))
            query = {
                "format": "json",
                "action": "query",
                "prop": "links",
                "pllimit": "max",
                "redirects": 1,
                "plnamespace": 0,
                "titles": page.title,
            }
            self.http_get(self.api_url, params=query, timeout=self.timeout, callback=partial(self.handle_links_response, reply_target=reply_target))
            return

        extract = fix_sentence_spacing(page.extract)
        reply_target.reply(self.make_blob(page.title, self.text_to_sendable_text(extract)))

    def handle_links_response(self, response, reply_target):
        page = self.parse_or_reply(response, reply_target)
        if page is None: return

        commands = [self.make_chat_command(link.title, "wiki {}".format(link.title)) for link in page.links]
        reply_target.reply(self.make_blob("{} (disambiguation)".format(page.title), "\n".join(commands)))

    def parse_or_reply(self, response, reply_target):
        """Returns the page in `response`, or `None` after telling `reply_target` what went wrong."""
        try:
            return parse_response(response)
        except WikiLookupError as e:
            if isinstance(e, PageNotFound): self.logger.info("no page found for \"{}\"".format(e.title))
            else: self.logger.warning("lookup failed: {}".format(e))
            reply_target.reply(self.text_to_sendable_text(e.user_message)) # the only markup in these messages is bold, which survives escaping
            return None
