#!/usr/bin/env python3
"""
CLI Client for End-to-End Encrypted Chat

Provides a command-line interface for:
- Registration and prekey publication
- Private messages encrypted under pairwise session keys
- Group creation, membership changes and group messages
- Local key, session and group state between runs
"""

import sys
import getpass
import logging
from datetime import datetime
from typing import List
from prompt_toolkit import PromptSession
from prompt_toolkit.patch_stdout import patch_stdout

from crypto import CryptoError
from client.chat_client import ChatClient, ReceivedMessage, MessageStatus
from client.config import ClientSettings, open_storage
from client.sessions import ClientError
from client.storage import EncryptedStorage, StorageLocked
from client.transport import HttpTransport, RpcError

MENU = [
    ("register", "", "Register this user with the server"),
    ("uploadkey", "", "Generate and publish a new prekey"),
    ("send", "<user> <message>", "Send a private message"),
    ("fetch", "", "Fetch private messages"),
    ("create", "<group> [members...]", "Create a group"),
    ("add", "<group> <user>", "Add a user to a group"),
    ("remove", "<group> <user>", "Remove a user from a group (creator only)"),
    ("leave", "<group>", "Leave a group"),
    ("sync", "", "Sync group list with the server"),
    ("sendg", "<group> <message>", "Send a group message"),
    ("fetchg", "<group>", "Fetch group messages"),
    ("invites", "", "Join groups you were invited to"),
    ("groups", "", "List your groups"),
    ("menu", "", "Show this menu"),
    ("exit", "", "Quit"),
]


def format_message(message: ReceivedMessage) -> str:
    when = datetime.fromtimestamp(message.timestamp / 1000).strftime("%H:%M:%S")
    where = f"{message.group_id} v{message.group_version} " if message.group_id else ""
    if message.status is MessageStatus.DECRYPTED:
        return f"[{when}] {where}{message.sender}: {message.text}"
    if message.status is MessageStatus.SESSION_INVALIDATED:
        return f"[{when}] {where}{message.sender}: <could not decrypt, session reset>"
    if message.status is MessageStatus.NOT_ADDRESSED:
        return f"[{when}] {where}{message.sender}: <not addressed to you>"
    return f"[{when}] {where}{message.sender}: <{message.status.value}: {message.error}>"


class ChatCli:
    """
    Interactive front end over a ChatClient.
    """

    def __init__(self, client: ChatClient):
        self.client = client
        self.running = False

    def print_menu(self):
        print("\nCommands:")
        for name, args, help_text in MENU:
            print(f"  {(name + ' ' + args).strip():<28} - {help_text}")
        print()

    def _print_messages(self, messages: List[ReceivedMessage]):
        if not messages:
            print("No new messages")
        for message in messages:
            print(format_message(message))

    def handle_command(self, line: str) -> bool:
        """
        Run one command line.

        Returns:
            False once the user asked to quit
        """
        parts = line.strip().split(maxsplit=2)
        if not parts:
            return True
        cmd = parts[0].lower().lstrip("/")
        args = parts[1:]

        try:
            return self._dispatch(cmd, args, line)
        except RpcError as e:
            print(f"Server error: {e.code}: {e.detail}")
        except (ClientError, CryptoError) as e:
            print(f"Error: {e}")
        return True

    def _dispatch(self, cmd: str, args: List[str], line: str) -> bool:
        client = self.client

        if cmd == "register":
            joined = client.register()
            print(f"Registered as {client.username}")
            if joined:
                print(f"Joined groups: {', '.join(joined)}")
        elif cmd == "uploadkey":
            client.upload_prekey()
            print("New prekey published; existing sessions cleared")
        elif cmd == "send" and len(args) == 2:
            client.send_private(args[0], args[1])
            print(f"Sent to {args[0]}")
        elif cmd == "fetch":
            self._print_messages(client.fetch_private())
        elif cmd == "create" and args:
            members = line.split()[2:]
            result = client.create_group(args[0], members)
            print(f"Created {args[0]} (v{result['version']}) members: {', '.join(result['members'])}")
            if result['pending_members']:
                print(f"Invited: {', '.join(result['pending_members'])}")
        elif cmd == "add" and len(args) == 2:
            result = client.force_add(args[0], args[1])
            print(f"Added {args[1]} to {args[0]} (v{result['version']})")
        elif cmd == "remove" and len(args) == 2:
            result = client.remove_member(args[0], args[1])
            if result['group_deleted']:
                print(f"Group {args[0]} deleted")
            else:
                print(f"Removed {args[1]} from {args[0]} (v{result['version']})")
        elif cmd == "leave" and len(args) == 1:
            client.leave_group(args[0])
            print(f"Left {args[0]}")
        elif cmd == "sync":
            groups = client.sync_groups()
            print(f"In {len(groups)} group(s)")
        elif cmd == "sendg" and len(args) == 2:
            report = client.send_group(args[0], args[1])
            if report.refreshed:
                print(f"Group membership changed, now v{report.version}")
            print(f"Delivered to: {', '.join(report.delivered) or 'nobody'}")
            for member, reason in report.failed.items():
                print(f"  not delivered to {member}: {reason}")
        elif cmd == "fetchg" and len(args) == 1:
            self._print_messages(client.fetch_group(args[0]))
        elif cmd == "invites":
            joined = client.check_invites()
            print(f"Joined: {', '.join(joined)}" if joined else "No pending invites")
        elif cmd == "groups":
            if not client.groups:
                print("Not in any groups")
            for group_id, info in sorted(client.groups.items()):
                print(f"  - {group_id} (v{info['version']})")
        elif cmd in ("menu", "help"):
            self.print_menu()
        elif cmd in ("exit", "quit"):
            return False
        else:
            print("Unknown command or wrong arguments. Type menu for help.")
        return True

    def run_interactive(self):
        """Run interactive chat session"""
        self.running = True
        session = PromptSession()
        self.print_menu()

        try:
            while self.running:
                try:
                    with patch_stdout():
                        user_input = session.prompt(f"[{self.client.username}] > ")
                except (KeyboardInterrupt, EOFError):
                    break
                self.running = self.handle_command(user_input)
        finally:
            self.client.close()


def main():
    """Main entry point"""
    settings = ClientSettings()
    logging.basicConfig(level=settings.log_level.upper())

    print("=" * 50)
    print("End-to-End Encrypted Chat Client")
    print("=" * 50)
    print()

    username = sys.argv[1] if len(sys.argv) > 1 else input("Username: ").strip()
    if not username:
        print("A username is required")
        return

    storage = open_storage(settings, username)
    if isinstance(storage, EncryptedStorage):
        try:
            storage.unlock(getpass.getpass("Storage password: "))
        except StorageLocked as e:
            print(e)
            return

    client = ChatClient(username, HttpTransport(settings.server_url), storage)
    ChatCli(client).run_interactive()
    print("\nGoodbye!")


if __name__ == "__main__":
    try:
        main()
    except KeyboardInterrupt:
        print("\nInterrupted")
        sys.exit(0)
