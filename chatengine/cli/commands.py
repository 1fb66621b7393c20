"""Command implementations for the CLI interface."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from dataclasses import dataclass
from typing import Callable

from chatengine.assistant.client import AssistantBackend, AssistantClient
from chatengine.session.model import ConversationMessage, MessageStatus
from chatengine.session.session import ChatSession
from chatengine.settings import AppSettings
from chatengine.storage import open_store
from chatengine.util.time import format_ms

QUIT_COMMANDS = frozenset({"/quit", "/exit"})
CLEAR_COMMAND = "/clear"


@dataclass
class Command:
    """Describe a CLI command and its argument handler."""

    func: Callable[[argparse.Namespace], int | None]
    help: str
    add_arguments: Callable[[argparse.ArgumentParser], None]


def build_backend(settings: AppSettings) -> AssistantBackend:
    """Return the assistant backend used by CLI sessions."""
    return AssistantClient(settings.assistant)


def build_session(args: argparse.Namespace) -> ChatSession:
    """Create a session for ``args.identity`` from the loaded settings."""
    settings: AppSettings = args.app_settings
    return ChatSession(
        build_backend(settings),
        open_store(settings.storage),
        identity=args.identity,
        settings=settings.session,
    )


def format_message(message: ConversationMessage) -> str:
    """Render *message* as a single transcript line."""
    marker = ""
    if message.status is MessageStatus.PENDING:
        marker = " [pending]"
    elif message.status is MessageStatus.ERROR:
        marker = " [error]"
    stamp = format_ms(message.created_at)
    return f"[{stamp}] {message.role.value}{marker}: {message.content}"


def _no_arguments(p: argparse.ArgumentParser) -> None:
    return None


# ----------------------------------------------------------------------
def cmd_send(args: argparse.Namespace) -> int:
    """Send one prompt and print the assistant reply."""

    async def run() -> ConversationMessage | None:
        async with build_session(args) as session:
            # Settle any request recovered from a previous run first.
            await session.wait_idle()
            return await session.send_message(args.prompt)

    reply = asyncio.run(run())
    if reply is None:
        sys.stderr.write("nothing to send\n")
        return 2
    if reply.status is MessageStatus.ERROR:
        sys.stderr.write(f"{reply.content}\n")
        return 1
    sys.stdout.write(f"{reply.content}\n")
    return 0


def add_send_arguments(p: argparse.ArgumentParser) -> None:
    """Configure parser for the ``send`` command."""
    p.add_argument("prompt", help="prompt text to send")


# ----------------------------------------------------------------------
def cmd_chat(args: argparse.Namespace) -> int:
    """Run an interactive conversation until ``/quit`` or end of input."""

    async def run() -> None:
        async with build_session(args) as session:
            await session.wait_idle()
            print(f"Conversation for {session.identity}. Type /clear or /quit.")
            for message in session.messages:
                print(format_message(message))
            while True:
                try:
                    line = await asyncio.to_thread(input, "> ")
                except EOFError:
                    print()
                    return
                text = line.strip()
                if not text:
                    continue
                if text in QUIT_COMMANDS:
                    return
                if text == CLEAR_COMMAND:
                    if session.clear_history():
                        for message in session.messages:
                            print(format_message(message))
                    continue
                reply = await session.send_message(text)
                if reply is not None:
                    print(format_message(reply))

    asyncio.run(run())
    return 0


# ----------------------------------------------------------------------
def cmd_inspect(args: argparse.Namespace) -> int:
    """Print stored state and the pending reconciliation decision as JSON."""
    session = build_session(args)
    messages = session.load()
    marker = session.marker
    plan = session.preview_reconciliation()
    payload = {
        "identity": session.identity,
        "keys": {"messages": session.keys.messages, "marker": session.keys.marker},
        "messages": [message.to_dict() for message in messages],
        "marker": marker.to_dict() if marker is not None else None,
        "reconciliation": plan.to_dict(),
    }
    sys.stdout.write(json.dumps(payload, ensure_ascii=False, indent=2) + "\n")
    return 0


# ----------------------------------------------------------------------
def cmd_reset(args: argparse.Namespace) -> int:
    """Replace the stored conversation with the greeting message."""
    session = build_session(args)
    session.load()
    session.clear_history()
    sys.stdout.write(f"Conversation for {session.identity} reset.\n")
    return 0


COMMANDS: dict[str, Command] = {
    "chat": Command(cmd_chat, "start an interactive conversation", _no_arguments),
    "send": Command(cmd_send, "send one prompt and print the reply", add_send_arguments),
    "inspect": Command(cmd_inspect, "show stored conversation state", _no_arguments),
    "reset": Command(cmd_reset, "clear the stored conversation", _no_arguments),
}
