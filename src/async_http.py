#!/usr/bin/env python3

"""
Asynchronous HTTP client for Botty.

Requests run on a small worker thread pool so that the bot's main loop never blocks on the network. Completed requests are queued up, and their callbacks are only ever invoked from `AsyncHttp.process_completed`, which the bot calls from its main loop - plugin callbacks therefore always run on the main thread.
"""

import logging, queue
from collections import namedtuple
from concurrent.futures import ThreadPoolExecutor

import requests

USER_AGENT = "Botty/1.0 (Slack chat bot; https://github.com/Uberi/botty-bot-bot-bot) python-requests"

HttpResponse = namedtuple("HttpResponse", ["body", "error"])
HttpResponse.__doc__ = """Result of an HTTP request: `body` is the response text (or `None` on failure), `error` is a human readable error description (or `None` on success)."""

class AsyncHttp:
    def __init__(self, logger=None, max_workers=4):
        assert int(max_workers) > 0, "`max_workers` must be a positive integer rather than \"{}\"".format(max_workers)
        if logger is None: self.logger = logging.getLogger(self.__class__.__name__)
        else: self.logger = logger

        self.executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="AsyncHttp")
        self.completed = queue.Queue() # `(callback, response)` pairs, filled by worker threads and drained by the main loop

    def get(self, url, *, params=None, timeout=5, callback):
        """Start a GET request for `url` with query parameters `params`, giving up after `timeout` seconds. Once the request is complete, `callback` will be called with an `HttpResponse` during a later call to `process_completed`."""
        assert isinstance(url, str), "`url` must be a string rather than \"{}\"".format(url)
        assert float(timeout) > 0, "`timeout` must be a positive number rather than \"{}\"".format(timeout)
        assert callable(callback), "`callback` must be callable rather than \"{}\"".format(callback)
        self.logger.info("requesting {} with parameters {}".format(url, params))
        future = self.executor.submit(self.fetch, url, dict(params or {}), timeout)
        future.add_done_callback(lambda f: self.completed.put((callback, self.response_from_future(f, url))))
        return future

    def response_from_future(self, future, url):
        """Returns the `HttpResponse` of the finished `future`, turning anything `fetch` raised into an error response so the callback still gets called."""
        error = future.exception()
        if error is None: return future.result()
        self.logger.error("request to {} threw {}: {}".format(url, error.__class__.__name__, error))
        return HttpResponse(body=None, error=str(error) or error.__class__.__name__)

    def fetch(self, url, params, timeout):
        """Perform a blocking GET request, returning an `HttpResponse`. Never raises for network or HTTP errors."""
        try:
            response = requests.get(url, params=params, timeout=timeout, headers={"User-Agent": USER_AGENT})
            response.raise_for_status()
        except requests.Timeout:
            self.logger.warning("request to {} timed out after {} seconds".format(url, timeout))
            return HttpResponse(body=None, error="Request timed out after {} seconds".format(timeout))
        except requests.HTTPError as e:
            self.logger.warning("request to {} failed with status {}".format(url, e.response.status_code))
            return HttpResponse(body=None, error="HTTP status {}".format(e.response.status_code))
        except requests.RequestException as e:
            self.logger.warning("request to {} failed: {}".format(url, e))
            return HttpResponse(body=None, error=str(e))
        return HttpResponse(body=response.text, error=None)

    def process_completed(self):
        """Invoke the callbacks of all requests that completed since the last call, returning the number of callbacks invoked."""
        count = 0
        while True:
            try: callback, response = self.completed.get_nowait()
            except queue.Empty: break
            count += 1
            callback(response)
        return count

    def shutdown(self, wait=True):
        self.executor.shutdown(wait=wait)
