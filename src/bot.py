#!/usr/bin/env python3

import time, json, re
import traceback
import logging
from collections import deque
from functools import lru_cache

from slack_sdk.web import WebClient
from slack_sdk.rtm_v2 import RTMClient
from slack_sdk.errors import SlackApiError

from async_http import AsyncHttp

SPECIAL_MENTIONS = {"!channel": "@channel", "!group": "@group", "!everyone": "@everyone", "!here": "@here"}
MARKUP_LOOKALIKES = str.maketrans({"*": "＊", "_": "＿", "~": "～", "`": "｀"}) # fullwidth forms, which Slack doesn't treat as formatting

class SlackBot:
    """
    Slack bot that hosts Botty plugins.

    Every iteration of the main loop steps the plugins, delivers completed HTTP responses to their callbacks, and offers each newly received message to the plugins in registration order until one of them returns a truthy value to mark it handled. All of this happens on the main thread; the RTM client's thread only queues up incoming events, and the HTTP worker threads only queue up responses.
    """
    def __init__(self, token, logger=None, http=None):
        assert isinstance(token, str), "`token` must be a valid Slack API token"
        assert logger is None or isinstance(logger, logging.Logger), "`logger` must be `None` or a logger"

        self.logger = logging.getLogger(self.__class__.__name__) if logger is None else logger
        self.http = AsyncHttp(logger=self.logger.getChild("AsyncHttp")) if http is None else http
        self.plugins = []
        self.unprocessed_incoming_messages = deque() # appended to by the RTM client's thread, drained by the main loop
        self.last_say_time = 0 # for rate limiting outgoing messages
        self.bot_user_id = None

        self.client = WebClient(token=token)
        self.rtm = RTMClient(token=token, web_client=self.client, on_message_listeners=[self.enqueue_incoming_message])

        # Slack metadata rarely changes while the bot is running, so remember it instead of asking every time
        self.get_user_info_by_id_cached = lru_cache(maxsize=256)(self.get_user_info_by_id)
        self.get_channel_info_by_id_cached = lru_cache(maxsize=256)(self.get_channel_info_by_id)

    def register_plugin(self, plugin_instance):
        self.plugins.append(plugin_instance)

    def on_step(self):
        for plugin in self.plugins:
            if plugin.on_step(): break

    def on_message(self, message_dict):
        self.logger.debug("incoming event {}".format(message_dict))
        if self.is_from_bot(message_dict): return

        message = IncomingMessage(message_dict, is_bot_message=False)
        handler = next((plugin for plugin in self.plugins if plugin.on_message(message)), None)
        if handler is not None:
            self.logger.info("message handled by {}: {}".format(handler.__class__.__name__, message))

    def is_from_bot(self, message_dict):
        """Returns `True` if the event `message_dict` was sent by a bot (including this one), `False` otherwise."""
        if "bot_id" in message_dict or message_dict.get("subtype") == "bot_message": return True
        user_id = message_dict.get("user", message_dict.get("message", {}).get("user"))
        return isinstance(user_id, str) and self.get_user_is_bot(user_id)

    def enqueue_incoming_message(self, raw_message):
        """RTM listener - receives every event as a raw JSON string, on the RTM client's thread."""
        try:
            message_dict = json.loads(raw_message)
        except ValueError:
            self.logger.warning("ignoring malformed event: {}".format(raw_message))
            return
        if isinstance(message_dict, dict): self.unprocessed_incoming_messages.append(message_dict)

    def start_loop(self):
        while True:
            try: self.start()
            except KeyboardInterrupt: break
            except Exception:
                self.logger.error("connection loop failed:\n{}".format(traceback.format_exc()))
                self.logger.info("reconnecting in 5 seconds")
                time.sleep(5)
        self.http.shutdown(wait=False)
        self.logger.info("stopped")

    def start(self):
        self.logger.info("opening RTM connection")
        self.rtm.connect() # the RTM client pings and reconnects on its own from here on
        try:
            self.bot_user_id = self.client.auth_test()["user_id"]
            self.logger.info("RTM connection open, bot user is {}".format(self.bot_user_id))
            while True:
                self.process_events()
                time.sleep(0.01)
        finally:
            self.rtm.disconnect()

    def process_events(self):
        """Run one iteration of the main loop. Exceptions from plugins and HTTP callbacks are logged rather than raised, so one broken lookup can't take the whole bot down."""
        for description, handler in [("step processing", self.on_step), ("HTTP response processing", self.http.process_completed)]:
            try: handler()
            except Exception:
                self.logger.error("{} threw exception:\n{}".format(description, traceback.format_exc()))

        while self.unprocessed_incoming_messages:
            message_dict = self.unprocessed_incoming_messages.popleft()
            try: self.on_message(message_dict)
            except Exception:
                self.logger.error("dispatching event {} failed:\n{}".format(message_dict, traceback.format_exc()))

    def say(self, sendable_text, *, channel_id, thread_id=None):
        """Post `sendable_text` to the channel with ID `channel_id` (inside the thread with ID `thread_id`, if given), returning the timestamp of the new message."""
        assert isinstance(channel_id, str), "`channel_id` must be a valid channel ID rather than \"{}\"".format(channel_id)
        assert isinstance(thread_id, str) or thread_id is None, "`thread_id` must be a valid Slack timestamp or None, rather than \"{}\"".format(thread_id)
        assert isinstance(sendable_text, str), "`sendable_text` must be a string rather than \"{}\"".format(sendable_text)

        self.wait_for_send_slot()
        self.logger.info("sending message to channel {}{}: {}".format(self.get_channel_name_by_id(channel_id), "" if thread_id is None else " (in thread {})".format(thread_id), sendable_text))
        arguments = {"channel": channel_id, "text": sendable_text}
        if thread_id is not None: arguments["thread_ts"] = thread_id
        return self.client.chat_postMessage(**arguments)["ts"]

    def wait_for_send_slot(self):
        """Block until a second has passed since the previous message was sent, since Slack doesn't accept messages any faster."""
        delay = self.last_say_time + 1 - time.monotonic()
        if delay > 0: time.sleep(delay)
        self.last_say_time = time.monotonic()

    def get_channel_info_by_id(self, channel_id):
        """Returns the [conversation object](https://api.slack.com/types/conversation) for the channel with ID `channel_id`, or `None` if Slack doesn't know it."""
        try:
            return self.client.conversations_info(channel=channel_id)["channel"]
        except SlackApiError as e:
            self.logger.warning("channel info request for {} failed: {}".format(channel_id, e.response.get("error")))
            return None

    def get_channel_name_by_id(self, channel_id):
        """Returns the name of the channel with ID `channel_id`, or `None` if there is no such channel. Direct messages are named after the other user."""
        assert isinstance(channel_id, str), "`channel_id` must be a valid channel ID rather than \"{}\"".format(channel_id)
        channel_info = self.get_channel_info_by_id_cached(channel_id)
        if channel_info is None: return None
        if channel_info.get("is_im"): return self.get_user_name_by_id(channel_info["user"])
        return channel_info.get("name")

    def get_user_info_by_id(self, user_id):
        """Returns the [user object](https://api.slack.com/types/user) for the user with ID `user_id`."""
        self.logger.info("retrieving user info for user {}".format(user_id))
        return self.client.users_info(user=user_id)["user"]

    def get_user_name_by_id(self, user_id):
        """Returns the username of the user with ID `user_id`, or `None` if there is no such user."""
        assert isinstance(user_id, str), "`user_id` must be a valid user ID rather than \"{}\"".format(user_id)
        try:
            return self.get_user_info_by_id_cached(user_id).get("name")
        except SlackApiError:
            return None

    def get_user_is_bot(self, user_id):
        if user_id == "USLACKBOT": return True # Slackbot isn't flagged as a bot user
        return bool(self.get_user_info_by_id_cached(user_id).get("is_bot"))

    def text_to_sendable_text(self, text):
        """Returns plain text `text` escaped for sending to Slack."""
        assert isinstance(text, str), "`text` must be a string rather than \"{}\"".format(text)
        return text.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")

    def sendable_text_to_text(self, sendable_text):
        """Returns Slack message text `sendable_text` as plain text, with channel and user references replaced by their names. Link labels and unknown references are kept as they are."""
        assert isinstance(sendable_text, str), "`sendable_text` must be a string rather than \"{}\"".format(sendable_text)

        def replace_reference(match):
            target = match.group(1).split("|")[0]
            if target in SPECIAL_MENTIONS: return SPECIAL_MENTIONS[target]
            name = None
            if target.startswith("#"): name = self.get_channel_name_by_id(target[1:])
            elif target.startswith("@"): name = self.get_user_name_by_id(target[1:])
            return match.group(0) if name is None else target[0] + name
        plain_text = re.sub(r"<([^<>]*)>", replace_reference, sendable_text)
        return plain_text.replace("&lt;", "<").replace("&gt;", ">").replace("&amp;", "&")

    def make_blob(self, title, sendable_text):
        """Returns a sendable text message with plain text `title` as a bold heading and `sendable_text` as a block quote underneath. Slack collapses long messages behind a "Show more" link, so this is suitable for long bodies."""
        assert isinstance(title, str), "`title` must be a string rather than \"{}\"".format(title)
        assert isinstance(sendable_text, str), "`sendable_text` must be a string rather than \"{}\"".format(sendable_text)
        heading = "*{}*".format(self.text_to_sendable_text(title).translate(MARKUP_LOOKALIKES)) # formatting characters in the title would end the bold early
        if sendable_text.strip() == "": return heading
        return "{}\n>>> {}".format(heading, sendable_text)

    def make_chat_command(self, label, command):
        """Returns a sendable text snippet showing plain text `label` alongside plain text chat command `command`, formatted so it can be copied straight into the message box to run the command."""
        assert isinstance(label, str), "`label` must be a string rather than \"{}\"".format(label)
        assert isinstance(command, str), "`command` must be a string rather than \"{}\"".format(command)
        return "{}: `{}`".format(self.text_to_sendable_text(label), self.text_to_sendable_text(command))

class SlackDebugBot(SlackBot):
    """
    Console stand-in for `SlackBot`, for trying out plugins without a Slack workspace. Everything said in the console is posted to #general as user "Me"; `/reply OFFSET TEXT` posts TEXT in the thread of the message at index OFFSET instead.

    Messages are kept in `messages`, oldest first, so this also serves as the bot in plugin tests.
    """
    def __init__(self, token, logger=None, http=None):
        self.logger = logging.getLogger(self.__class__.__name__) if logger is None else logger
        self.http = AsyncHttp(logger=self.logger.getChild("AsyncHttp")) if http is None else http
        self.plugins = []
        self.unprocessed_incoming_messages = deque()
        self.bot_user_id = "UBotty"
        self.messages = []

    def start_loop(self):
        try: self.start()
        except KeyboardInterrupt: pass
        self.http.shutdown(wait=False)

    def start(self):
        import threading, queue
        import readline # this makes arrow keys work for input()

        print("Botty console - chat with Botty in #general, \"/reply OFFSET TEXT\" replies in the thread of a previous message, Ctrl-D quits.")
        lines = queue.Queue()
        def read_lines():
            while True:
                try: lines.put(input())
                except EOFError:
                    lines.put(None)
                    return
        threading.Thread(target=read_lines, daemon=True).start() # dies with the main thread

        while True:
            self.process_events() # keeps HTTP callbacks flowing while waiting for input
            try: line = lines.get(timeout=0.01)
            except queue.Empty: continue
            if line is None: break
            self.handle_user_input(line)

    def handle_user_input(self, text):
        match = re.match(r"/reply\s+(-?\d+)\s+(.*)$", text)
        if not match: return self.post_user_message(text)
        offset, body = int(match.group(1)), match.group(2)
        try:
            parent = self.messages[offset]
        except IndexError:
            print("[ERROR] Message offset {} is out of range".format(offset))
            return None
        return self.post_user_message(body, channel_id=parent["channel"], thread_id=parent.get("thread_ts", parent["ts"]))

    def post_user_message(self, text, *, channel_id="Cgeneral", thread_id=None):
        """Simulate the console user saying plain text `text`, dispatching it to the plugins right away. Returns the message event."""
        message = self.record_message("UMe", self.text_to_sendable_text(text), channel_id=channel_id, thread_id=thread_id)
        self.on_message(message)
        return message

    def record_message(self, user_id, sendable_text, *, channel_id, thread_id=None):
        message = {"type": "message", "channel": channel_id, "user": user_id, "text": sendable_text, "ts": "{}.000100".format(len(self.messages) + 1)}
        if thread_id is not None:
            assert any(m["ts"] == thread_id for m in self.messages), "Invalid thread ID - can't find message with timestamp \"{}\"".format(thread_id)
            message["thread_ts"] = thread_id
        self.messages.append(message)
        return message

    def say(self, sendable_text, *, channel_id, thread_id=None):
        assert isinstance(channel_id, str), "`channel_id` must be a valid channel ID rather than \"{}\"".format(channel_id)
        assert isinstance(sendable_text, str), "`sendable_text` must be a string rather than \"{}\"".format(sendable_text)
        message = self.record_message(self.bot_user_id, sendable_text, channel_id=channel_id, thread_id=thread_id)
        self.logger.info("sending message to channel {}: {}".format(self.get_channel_name_by_id(channel_id), sendable_text))
        print("#{} | Botty{}: {}".format(self.get_channel_name_by_id(channel_id), "" if thread_id is None else " (in thread)", sendable_text))
        return message["ts"]

    def get_channel_name_by_id(self, channel_id): return channel_id[1:]
    def get_user_name_by_id(self, user_id):       return user_id[1:]
    def get_user_is_bot(self, user_id):           return user_id == self.bot_user_id

class IncomingMessage:
    """A message event as offered to plugins. For edited messages (subtype `message_changed`), the fields of the new version are used."""
    def __init__(self, message_dict, is_bot_message):
        self.message_dict = message_dict
        self.is_bot_message = is_bot_message

    def __repr__(self): return "<Message {}>".format(self.message_dict)

    def get(self, field):
        """Returns the value of `field`, looking inside the edited message for fields the event itself doesn't have."""
        if field in self.message_dict: return self.message_dict[field]
        return self.message_dict.get("message", {}).get(field)

    def get_string(self, field):
        value = self.get(field)
        if not isinstance(value, str): raise ValueError("Message {} should be a string, but is {} instead".format(field, repr(value)))
        return value

    @property
    def is_user_text_message(self):
        """Returns `True` if the message is a text message sent by a real user (i.e., not a bot), `False` otherwise. If this returns `True`, `text` and `channel_id` are available."""
        if self.is_bot_message or self.message_dict.get("type") != "message": return False
        return all(isinstance(self.get(field), str) for field in ("ts", "channel", "user", "text"))

    @property
    def text(self): return self.get_string("text")

    @property
    def channel_id(self): return self.get_string("channel")

    @property
    def thread_id(self):
        """Returns the ID of the thread the message is in, or `None` if it isn't in one."""
        thread_id = self.get("thread_ts")
        if thread_id is not None and not isinstance(thread_id, str): raise ValueError("Message thread ID should be a string, but is {} instead".format(repr(thread_id)))
        return thread_id
