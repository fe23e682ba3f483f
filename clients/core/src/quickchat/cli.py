"""Command line client for a quickchat backend."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import List, Optional, Set, TextIO

from . import timeline
from .auth import build_identifier, sign_in_with_otp, sign_out
from .config import ClientConfig, load_client_config_from_env
from .directory import ChatDirectory, filter_users
from .errors import ChatError
from .http_backend import HttpBackend
from .kv_store import JsonFileStore
from .models import Conversation, Message
from .profile import AvatarUpload, ProfileDraft, ProfileStore
from .session import SessionContext, SessionManager
from .sync import MessageSynchronizer

logger = logging.getLogger(__name__)


class CliError(RuntimeError):
    pass


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="quickchat", description="Two-party chat client")
    parser.add_argument("--base-url", default=None, help="Backend base URL (default: QUICKCHAT_BASE_URL)")
    parser.add_argument("--home", default=None, help="Directory for device-local state (default: QUICKCHAT_HOME)")
    parser.add_argument("--polling", action="store_true", help="Never use the realtime channel")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log debug output to stderr")
    subparsers = parser.add_subparsers(dest="command", required=True)

    login = subparsers.add_parser("login", help="Sign in with a phone number, creating the account if needed")
    login.add_argument("--dial-code", required=True, help="Country dial code such as +44 (required)")
    login.add_argument("--phone", required=True, help="Local phone number (required)")
    login.add_argument("--otp", required=True, help="Four digit one-time code (required)")

    subparsers.add_parser("logout", help="Sign out and forget the saved credential")
    subparsers.add_parser("whoami", help="Show the signed-in identity")

    profile = subparsers.add_parser("profile", help="Show or edit your profile")
    profile.add_argument("--name", help="Display name")
    profile.add_argument("--bio", help="Bio; pass an empty string to clear it")
    profile.add_argument("--avatar", help="Path to an image to upload as avatar")

    contacts = subparsers.add_parser("contacts", help="List other users")
    contacts.add_argument("--search", default="", help="Filter by name or phone")

    chats = subparsers.add_parser("chats", help="List your conversations, most recent first")
    chats.add_argument("--search", default="", help="Filter by the other participant's name or phone")

    new_chat = subparsers.add_parser("new-chat", help="Open (or create) a conversation with a user")
    new_chat.add_argument("user_id", help="The other user's id")

    delete_chat = subparsers.add_parser("delete-chat", help="Delete a conversation")
    delete_chat.add_argument("conversation_id", help="Conversation id")

    send = subparsers.add_parser("send", help="Send a message")
    send.add_argument("conversation_id", help="Conversation id")
    send.add_argument("text", help="Message text")

    tail = subparsers.add_parser("tail", help="Print a conversation and follow new messages")
    tail.add_argument("conversation_id", help="Conversation id")
    tail.add_argument("--max-events", type=int, default=None, help="Stop after this many new messages")
    tail.add_argument("--seconds", type=float, default=None, help="Stop after this many seconds")
    return parser


def _resolve_config(args: argparse.Namespace) -> ClientConfig:
    config = load_client_config_from_env()
    return ClientConfig(
        base_url=args.base_url or config.base_url,
        home=Path(args.home).expanduser() if args.home else config.home,
        poll_interval_s=config.poll_interval_s,
        realtime=config.realtime and not args.polling,
        http_timeout_s=config.http_timeout_s,
        account_secret=config.account_secret,
    )


def _format_message(message: Message, user_id: str) -> str:
    who = "me" if timeline.is_own(message, user_id) else (message.sender.label if message.sender else message.sender_id)
    return f"[{timeline.format_time(message.created_at)}] {who}: {message.text}"


def _format_conversation(conversation: Conversation, user_id: str) -> str:
    return f"{conversation.id}  {conversation.title(user_id)}  {conversation.preview()}"


async def _require_session(context: SessionContext) -> None:
    user = await context.sessions.restore_user()
    if user is None:
        raise CliError("not signed in; run `quickchat login` first")
    context.user = user


async def _cmd_login(args: argparse.Namespace, context: SessionContext, output: TextIO) -> int:
    identifier = build_identifier(args.dial_code, args.phone)
    result = await sign_in_with_otp(
        context, identifier, args.otp, account_secret=_resolve_config(args).account_secret
    )
    verb = "created account" if result.created else "signed in"
    output.write(f"{verb} {result.user.identifier} ({result.user.id})\n")
    if result.needs_profile:
        output.write("finish setup with: quickchat profile --name NAME\n")
    return 0


async def _cmd_logout(args: argparse.Namespace, context: SessionContext, output: TextIO) -> int:
    await context.sessions.restore_user()
    await sign_out(context)
    output.write("signed out\n")
    return 0


async def _cmd_whoami(args: argparse.Namespace, context: SessionContext, output: TextIO) -> int:
    await _require_session(context)
    user = context.require_user()
    output.write(f"{user.id} {user.identifier} {user.label}\n")
    return 0


async def _cmd_profile(args: argparse.Namespace, context: SessionContext, output: TextIO) -> int:
    await _require_session(context)
    store = ProfileStore(context)
    profile = await store.load_profile()
    if args.name is None and args.bio is None and args.avatar is None:
        output.write(f"name: {profile.name}\nphone: {profile.identifier}\nbio: {profile.bio}\n")
        output.write(f"avatar: {profile.avatar_url or '-'}\n")
        return 0

    avatar = None
    if args.avatar:
        path = Path(args.avatar).expanduser()
        try:
            avatar = AvatarUpload(data=path.read_bytes(), filename=path.name)
        except OSError as exc:
            raise CliError(f"cannot read avatar {path}: {exc}") from exc
    draft = ProfileDraft(
        name=args.name if args.name is not None else profile.name,
        bio=args.bio if args.bio is not None else profile.bio,
        avatar=avatar,
    )
    if not draft.has_changes(profile) and profile.is_registered:
        output.write("nothing to save\n")
        return 0
    result = await store.save_profile(draft, complete_registration=not profile.is_registered)
    if result.avatar_failed:
        output.write("avatar upload failed; other changes were saved\n")
    output.write(f"saved {', '.join(result.changed) or 'profile'}\n")
    return 0


async def _cmd_contacts(args: argparse.Namespace, context: SessionContext, output: TextIO) -> int:
    await _require_session(context)
    users = filter_users(await ChatDirectory(context).list_contacts(), args.search)
    for user in users:
        output.write(f"{user.id}  {user.label}  {user.identifier}\n")
    return 0


async def _cmd_chats(args: argparse.Namespace, context: SessionContext, output: TextIO) -> int:
    await _require_session(context)
    directory = ChatDirectory(context)
    user_id = context.require_user().id
    for conversation in directory.filter(await directory.list_conversations(), args.search):
        output.write(_format_conversation(conversation, user_id) + "\n")
    return 0


async def _cmd_new_chat(args: argparse.Namespace, context: SessionContext, output: TextIO) -> int:
    await _require_session(context)
    user_id = context.require_user().id
    conversation = await ChatDirectory(context).create_or_get_conversation(user_id, args.user_id)
    output.write(_format_conversation(conversation, user_id) + "\n")
    return 0


async def _cmd_delete_chat(args: argparse.Namespace, context: SessionContext, output: TextIO) -> int:
    await _require_session(context)
    await ChatDirectory(context).delete_conversation(args.conversation_id)
    output.write(f"deleted {args.conversation_id}\n")
    return 0


async def _cmd_send(args: argparse.Namespace, context: SessionContext, output: TextIO) -> int:
    await _require_session(context)
    sync = MessageSynchronizer(context, realtime=False)
    message = await sync.send(args.conversation_id, context.require_user().id, args.text)
    if message is None:
        raise CliError("message is empty")
    output.write(f"sent {message.id}\n")
    return 0


async def _cmd_tail(
    args: argparse.Namespace, context: SessionContext, output: TextIO, config: ClientConfig
) -> int:
    await _require_session(context)
    user_id = context.require_user().id
    printed: Set[str] = set()
    last_day: List[str] = []
    new_count = 0
    done = asyncio.Event()
    history_loaded = False

    def emit(messages: List[Message]) -> None:
        nonlocal new_count
        for message in messages:
            if not message.confirmed or message.id in printed:
                continue
            printed.add(message.id or "")
            day = timeline.format_day(message.created_at)
            if not last_day or last_day[-1] != day:
                last_day.append(day)
                output.write(f"-- {day} --\n")
            output.write(_format_message(message, user_id) + "\n")
            if history_loaded:
                new_count += 1
        output.flush()
        if args.max_events is not None and new_count >= args.max_events:
            done.set()

    sync = MessageSynchronizer(
        context, realtime=config.realtime, poll_interval_s=config.poll_interval_s, on_change=emit
    )
    await sync.open(args.conversation_id)
    history_loaded = True
    logger.debug("tailing %s via %s", args.conversation_id, sync.feed_kind)
    try:
        if args.seconds is None:
            await done.wait()
        else:
            await asyncio.wait_for(done.wait(), timeout=args.seconds)
    except asyncio.TimeoutError:
        pass
    finally:
        await sync.close()
    return 0


async def _dispatch(args: argparse.Namespace, output: TextIO) -> int:
    config = _resolve_config(args)
    backend = HttpBackend(config.base_url, timeout_s=config.http_timeout_s, realtime=config.realtime)
    context = SessionContext(backend=backend, sessions=SessionManager(backend, JsonFileStore(config.store_path)))
    handlers = {
        "login": _cmd_login,
        "logout": _cmd_logout,
        "whoami": _cmd_whoami,
        "profile": _cmd_profile,
        "contacts": _cmd_contacts,
        "chats": _cmd_chats,
        "new-chat": _cmd_new_chat,
        "delete-chat": _cmd_delete_chat,
        "send": _cmd_send,
    }
    try:
        if args.command == "tail":
            return await _cmd_tail(args, context, output, config)
        return await handlers[args.command](args, context, output)
    finally:
        await backend.close()


def main(argv: Optional[List[str]] = None, output: Optional[TextIO] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        return asyncio.run(_dispatch(args, output or sys.stdout))
    except (ChatError, CliError, ValueError) as exc:  # user-facing errors
        sys.stderr.write(f"Error: {exc}\n")
        return 1
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
