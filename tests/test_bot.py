"""
Tests for the bot host: text formatting, message parsing, plugin dispatch and the entry point
"""
import json
import logging
from unittest.mock import Mock, patch

import pytest

from slack_sdk.errors import SlackApiError

from bot import SlackBot, SlackDebugBot, IncomingMessage
from plugins.utilities import BasePlugin, CommandReply
from wikibot import main


class RecordingPlugin(BasePlugin):
    def __init__(self, bot, handles):
        super().__init__(bot)
        self.handles = handles
        self.seen = []

    def on_message(self, message):
        self.seen.append(message)
        return self.handles


class TestTextFormatting:

    def test_text_round_trip(self, bot):
        assert bot.text_to_sendable_text("a < b & c > d") == "a &lt; b &amp; c &gt; d"
        assert bot.sendable_text_to_text("a &lt; b &amp; c &gt; d") == "a < b & c > d"

    def test_references_become_names(self, bot):
        assert bot.sendable_text_to_text("hey <@UMe> see <#Cgeneral|general>") == "hey @Me see #general"
        assert bot.sendable_text_to_text("<!channel> wiki fire") == "@channel wiki fire"

    def test_blob(self, bot):
        assert bot.make_blob("Fire", "Fire is hot.") == "*Fire*\n>>> Fire is hot."
        assert bot.make_blob("A & B", "") == "*A &amp; B*"

    def test_blob_title_markup_is_neutralized(self, bot):
        assert bot.make_blob("C*-algebra", "x") == "*C\uFF0A-algebra*\n>>> x"
        assert bot.make_blob("__init__.py", "") == "*\uFF3F\uFF3Finit\uFF3F\uFF3F.py*"
        assert bot.make_blob("Tilde ~ and `tick`", "") == "*Tilde \uFF5E and \uFF40tick\uFF40*"

    def test_chat_command(self, bot):
        assert bot.make_chat_command("Mercury (planet)", "wiki Mercury (planet)") == "Mercury (planet): `wiki Mercury (planet)`"
        assert bot.make_chat_command("<Tag>", "wiki <Tag>") == "&lt;Tag&gt;: `wiki &lt;Tag&gt;`"


class TestIncomingMessage:

    def test_ordinary_message(self):
        message = IncomingMessage({"type": "message", "channel": "C1", "user": "U1", "text": "wiki fire", "ts": "12.5"}, is_bot_message=False)
        assert message.is_user_text_message
        assert message.text == "wiki fire"
        assert message.channel_id == "C1"
        assert message.thread_id is None

    def test_threaded_message(self):
        message = IncomingMessage({"type": "message", "channel": "C1", "user": "U1", "text": "hi", "ts": "13.0", "thread_ts": "12.5"}, is_bot_message=False)
        assert message.thread_id == "12.5"

    def test_edited_message(self):
        message = IncomingMessage({
            "type": "message", "subtype": "message_changed", "channel": "C1", "ts": "14.0",
            "message": {"user": "U1", "text": "wiki water", "ts": "12.5"},
        }, is_bot_message=False)
        assert message.is_user_text_message
        assert message.text == "wiki water"
        assert message.channel_id == "C1"

    def test_non_text_events(self):
        assert not IncomingMessage({"type": "user_typing", "channel": "C1", "user": "U1"}, is_bot_message=False).is_user_text_message
        assert not IncomingMessage({"type": "message", "channel": "C1", "user": "U1", "text": "hi", "ts": "1.0"}, is_bot_message=True).is_user_text_message
        with pytest.raises(ValueError):
            IncomingMessage({"type": "hello"}, is_bot_message=False).text


class TestDispatch:

    def test_first_handling_plugin_wins(self, http):
        botty = SlackDebugBot("", logger=logging.getLogger("TestBotty"), http=http)
        first, second = RecordingPlugin(botty, handles=True), RecordingPlugin(botty, handles=True)
        botty.register_plugin(first)
        botty.register_plugin(second)
        botty.handle_user_input("hello")
        assert len(first.seen) == 1
        assert second.seen == []

    def test_unhandled_messages_reach_every_plugin(self, http):
        botty = SlackDebugBot("", logger=logging.getLogger("TestBotty"), http=http)
        first, second = RecordingPlugin(botty, handles=False), RecordingPlugin(botty, handles=False)
        botty.register_plugin(first)
        botty.register_plugin(second)
        botty.handle_user_input("hello")
        assert len(first.seen) == len(second.seen) == 1

    def test_process_events_delivers_http_responses(self, bot):
        bot.http = Mock()
        bot.process_events()
        bot.http.process_completed.assert_called_once_with()

    def test_process_events_survives_callback_errors(self, bot, caplog):
        bot.http = Mock()
        bot.http.process_completed.side_effect = RuntimeError("callback blew up")
        with caplog.at_level(logging.ERROR):
            bot.process_events()
        assert "callback blew up" in caplog.text


class TestCommandReply:

    def test_reply_uses_captured_location(self, bot):
        bot.handle_user_input("first message")
        thread_id = bot.messages[0]["ts"]
        target = CommandReply(bot, channel_id="Cgeneral", thread_id=thread_id)
        bot.post_user_message("meanwhile", channel_id="Crandom")
        target.reply("*hi*")
        assert bot.messages[-1]["channel"] == "Cgeneral"
        assert bot.messages[-1]["thread_ts"] == thread_id
        assert bot.messages[-1]["text"] == "*hi*"

    def test_reply_target_from_message(self, bot):
        plugin = BasePlugin(bot)
        message = IncomingMessage({"type": "message", "channel": "Crandom", "user": "UMe", "text": "hi", "ts": "3.0"}, is_bot_message=False)
        target = plugin.reply_target(message)
        assert (target.channel_id, target.thread_id) == ("Crandom", None)


class TestDebugConsole:

    def test_reply_to_unknown_offset(self, bot, capsys):
        assert bot.handle_user_input("/reply 5 wiki Fire") is None
        assert "out of range" in capsys.readouterr().out
        assert bot.messages == []

    def test_reply_inside_thread_stays_in_thread(self, bot):
        bot.handle_user_input("hello")
        bot.handle_user_input("/reply 0 first")
        bot.handle_user_input("/reply -1 second")
        assert bot.messages[-1]["thread_ts"] == bot.messages[0]["ts"]


@pytest.fixture
def slack_bot(http):
    with patch("bot.WebClient"):
        botty = SlackBot("xoxb-test", logger=logging.getLogger("TestBotty"), http=http)
    botty.client.users_info.return_value = {"user": {"id": "U1", "name": "alice", "is_bot": False}}
    botty.client.conversations_info.return_value = {"channel": {"id": "C1", "name": "general"}}
    return botty


class TestSlackBot:

    def test_realtime_events_reach_plugins(self, slack_bot):
        plugin = RecordingPlugin(slack_bot, handles=True)
        slack_bot.register_plugin(plugin)
        event = {"type": "message", "channel": "C1", "user": "U1", "text": "wiki Fire", "ts": "1.0"}
        slack_bot.rtm.run_all_message_listeners(json.dumps(event))
        slack_bot.process_events()
        assert [message.text for message in plugin.seen] == ["wiki Fire"]
        assert plugin.seen[0].channel_id == "C1"

    def test_malformed_events_are_dropped(self, slack_bot):
        slack_bot.enqueue_incoming_message("{not json")
        slack_bot.enqueue_incoming_message("[1, 2]")
        assert len(slack_bot.unprocessed_incoming_messages) == 0

    def test_say_in_thread(self, slack_bot):
        slack_bot.client.chat_postMessage.return_value = {"ok": True, "ts": "2.0"}
        assert slack_bot.say("*Fire*", channel_id="C1", thread_id="1.0") == "2.0"
        slack_bot.client.chat_postMessage.assert_called_once_with(channel="C1", text="*Fire*", thread_ts="1.0")

    def test_say_outside_thread(self, slack_bot):
        slack_bot.client.chat_postMessage.return_value = {"ok": True, "ts": "2.0"}
        slack_bot.say("hi", channel_id="C1")
        slack_bot.client.chat_postMessage.assert_called_once_with(channel="C1", text="hi")

    def test_messages_from_bot_users_are_ignored(self, slack_bot):
        plugin = RecordingPlugin(slack_bot, handles=True)
        slack_bot.register_plugin(plugin)
        slack_bot.client.users_info.return_value = {"user": {"id": "U2", "name": "otherbot", "is_bot": True}}
        slack_bot.on_message({"type": "message", "channel": "C1", "user": "U2", "text": "wiki Fire", "ts": "1.0"})
        slack_bot.on_message({"type": "message", "subtype": "bot_message", "bot_id": "B1", "channel": "C1", "text": "wiki Fire", "ts": "1.1"})
        assert plugin.seen == []
        slack_bot.client.users_info.assert_called_once_with(user="U2")

    def test_user_info_is_cached(self, slack_bot):
        assert slack_bot.get_user_name_by_id("U1") == "alice"
        assert slack_bot.get_user_name_by_id("U1") == "alice"
        slack_bot.client.users_info.assert_called_once_with(user="U1")

    def test_direct_message_channel_is_named_after_user(self, slack_bot):
        slack_bot.client.conversations_info.return_value = {"channel": {"id": "D1", "is_im": True, "user": "U1"}}
        assert slack_bot.get_channel_name_by_id("D1") == "alice"

    def test_unknown_channel(self, slack_bot):
        slack_bot.client.conversations_info.side_effect = SlackApiError("channel_not_found", {"ok": False, "error": "channel_not_found"})
        assert slack_bot.get_channel_name_by_id("C404") is None
        assert slack_bot.sendable_text_to_text("see <#C404>") == "see <#C404>"


class TestEntryPoint:

    @pytest.mark.parametrize("argv", [["wikibot", "--help"], ["wikibot", "-h"], ["wikibot", "token", "extra"]])
    def test_usage(self, argv, capsys):
        assert main(argv) == 1
        assert "Usage:" in capsys.readouterr().out
