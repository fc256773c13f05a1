#!/usr/bin/env python3

import sys, logging

from bot import SlackBot, SlackDebugBot

def initialize_plugins(botty):
    """Import, register, and initialize Botty plugins. Edit the body of this function to change which plugins are loaded."""
    from plugins.wiki import WikiPlugin; botty.register_plugin(WikiPlugin(botty))

def main(argv=None):
    argv = sys.argv if argv is None else argv
    if len(argv) > 2 or (len(argv) == 2 and argv[1] in {"--help", "-h", "-?"}):
        print("Usage: {} --help".format(argv[0]))
        print("    Show this help message")
        print("Usage: {}".format(argv[0]))
        print("    Start the Botty chatbot for Slack in testing mode with a console chat interface")
        print("Usage: {} SLACK_BOT_TOKEN".format(argv[0]))
        print("    Start the Botty chatbot for the Slack chat associated with SLACK_BOT_TOKEN")
        print("    SLACK_BOT_TOKEN is a Slack API token (can be obtained from https://api.slack.com/)")
        return 1

    # process settings
    #logging.basicConfig(stream=sys.stdout, level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    logging.basicConfig(filename="botty.log", level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    if len(argv) < 2:
        print("No Slack API token specified in command line arguments; starting in local debug mode...")
        print()
        botty = SlackDebugBot("", logger=logging.getLogger("Botty"))
    else:
        botty = SlackBot(argv[1], logger=logging.getLogger("Botty"))
    initialize_plugins(botty)
    botty.start_loop()
    return 0

if __name__ == "__main__":
    sys.exit(main())
