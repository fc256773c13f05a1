#!/usr/bin/env python3

"""
Utilities and classes for Botty plugins.

Should be imported by all Botty plugins.
"""

class BasePlugin:
    """Base class for Botty plugins. Should be imported from plugins using `from .utilities import BasePlugin`."""
    def __init__(self, bot):
        self.bot = bot
        self.logger = bot.logger.getChild(self.__class__.__name__)

    def on_step(self): return False
    def on_message(self, message): return False

    def http_get(self, url, *, params, timeout, callback):                return self.bot.http.get(url, params=params, timeout=timeout, callback=callback)
    def make_blob(self, title, sendable_text):                            return self.bot.make_blob(title, sendable_text)
    def make_chat_command(self, label, command):                          return self.bot.make_chat_command(label, command)
    def text_to_sendable_text(self, text):                                return self.bot.text_to_sendable_text(text)
    def sendable_text_to_text(self, sendable_text):                       return self.bot.sendable_text_to_text(sendable_text)
    def reply_target(self, message):                                      return CommandReply(self.bot, channel_id=message.channel_id, thread_id=message.thread_id)

class CommandReply:
    """
    Where to send the replies for a single command invocation.

    Plugins that answer asynchronously (for example, after an HTTP request completes) should capture one of these when the command arrives, since by the time the answer is ready the bot may have received any number of other messages.
    """
    def __init__(self, bot, *, channel_id, thread_id=None):
        assert isinstance(channel_id, str), "`channel_id` must be a valid channel ID rather than \"{}\"".format(channel_id)
        self.bot = bot
        self.channel_id = channel_id
        self.thread_id = thread_id

    def __repr__(self): return "<CommandReply channel={} thread={}>".format(self.channel_id, self.thread_id)

    def reply(self, sendable_text):
        """Say `sendable_text` where the command was issued, in the same thread if it was issued in one."""
        return self.bot.say(sendable_text, channel_id=self.channel_id, thread_id=self.thread_id)
