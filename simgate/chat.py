#!/usr/bin/python3.9
# Copyright (c) 2021 MobileCoin Inc.
# Copyright (c) 2021 The Forest Team
"""
Where people read and answer SMS: Slack threads, one per conversation.
"""
import asyncio
import itertools
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

import aiohttp

from simgate import utils
from simgate.tables import Conversation

SLACK_API = "https://slack.com/api"
SLACK_TIMEOUT = 10
SPAM_THREAD_WINDOW = 24 * 60 * 60
RULE = "━" * 42

STEP_EMOJI = {
    "ready": ":white_check_mark:",
    "switching": ":arrows_counterclockwise:",
    "waiting": ":hourglass_flowing_sand:",
    "sending": ":outbox_tray:",
}


class ChatError(Exception):
    pass


@dataclass(frozen=True)
class ChatRef:
    """A posted message. A thread is referenced by its parent."""

    channel: str
    ts: str


def clip(content: str, limit: int = 500) -> str:
    return content if len(content) <= limit else content[:limit] + "..."


def sms_text(conversation: Conversation, content: str) -> str:
    text = (
        f":incoming_envelope: *{utils.format_phone_display(conversation.sender_phone)}*"
        f" → {utils.format_phone_display(conversation.recipient_phone)}"
    )
    if conversation.bank_id:
        text += f"  ·  Bank {conversation.bank_id}"
    if conversation.sim_port:
        text += f"  ·  Slot {conversation.sim_port}"
    if conversation.iccid:
        text += f"  ·  ICCID {conversation.iccid}"
    return f"{text}\n{RULE}\n{clip(content, 3000)}\n{RULE}"


class ChatNotifier:
    """Primitive operations are post, update and react. Subclasses provide them."""

    default_channel = ""

    async def post(
        self, channel: str, text: str, thread_ts: Optional[str] = None
    ) -> ChatRef:
        raise NotImplementedError

    async def update(self, ref: ChatRef, text: str) -> None:
        raise NotImplementedError

    async def react(self, ref: ChatRef, emoji: str) -> None:
        raise NotImplementedError

    async def post_new_thread(
        self, conversation: Conversation, content: str, channel: Optional[str] = None
    ) -> ChatRef:
        return await self.post(channel or self.default_channel, sms_text(conversation, content))

    async def post_to_thread(self, thread: ChatRef, content: str) -> ChatRef:
        return await self.post(thread.channel, content, thread_ts=thread.ts)

    def thread_of(self, conversation: Conversation) -> Optional[ChatRef]:
        if not conversation.thread_ref:
            return None
        return ChatRef(conversation.chat_channel or self.default_channel, conversation.thread_ref)


class LogNotifier(ChatNotifier):
    """For running without a chat workspace: everything goes to the log"""

    def __init__(self, default_channel: str = "log") -> None:
        self.default_channel = default_channel
        self.counter = itertools.count(1)

    async def post(
        self, channel: str, text: str, thread_ts: Optional[str] = None
    ) -> ChatRef:
        ts = f"{time.time():.6f}.{next(self.counter)}"
        logging.info("[%s%s] %s", channel, f"/{thread_ts}" if thread_ts else "", text)
        return ChatRef(channel, ts)

    async def update(self, ref: ChatRef, text: str) -> None:
        logging.info("[%s edit %s] %s", ref.channel, ref.ts, text)

    async def react(self, ref: ChatRef, emoji: str) -> None:
        logging.info("[%s react %s] :%s:", ref.channel, ref.ts, emoji)


class SlackNotifier(ChatNotifier):
    def __init__(
        self,
        session: aiohttp.ClientSession,
        token: str,
        default_channel: str,
        api_url: str = SLACK_API,
    ) -> None:
        self.session = session
        self.token = token
        self.default_channel = default_channel
        self.api_url = api_url

    async def api(self, method: str, payload: dict[str, Any]) -> dict[str, Any]:
        try:
            async with self.session.post(
                f"{self.api_url}/{method}",
                json=payload,
                headers={"Authorization": f"Bearer {self.token}"},
                timeout=aiohttp.ClientTimeout(total=SLACK_TIMEOUT),
            ) as resp:
                blob = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise ChatError(f"{method} failed: {e!r}") from e
        if not blob.get("ok"):
            raise ChatError(f"{method}: {blob.get('error', 'unknown error')}")
        return blob

    async def post(
        self, channel: str, text: str, thread_ts: Optional[str] = None
    ) -> ChatRef:
        payload = {
            "channel": channel,
            "text": text,
            "unfurl_links": False,
            "unfurl_media": False,
        }
        if thread_ts:
            payload["thread_ts"] = thread_ts
        blob = await self.api("chat.postMessage", payload)
        return ChatRef(blob.get("channel") or channel, blob["ts"])

    async def update(self, ref: ChatRef, text: str) -> None:
        await self.api("chat.update", {"channel": ref.channel, "ts": ref.ts, "text": text})

    async def react(self, ref: ChatRef, emoji: str) -> None:
        try:
            await self.api(
                "reactions.add",
                {"channel": ref.channel, "timestamp": ref.ts, "name": emoji},
            )
        except ChatError as e:
            if "already_reacted" not in str(e):
                raise


class ProgressMessage:
    """A progress sink that keeps one message in a thread up to date"""

    def __init__(self, notifier: ChatNotifier, thread: ChatRef) -> None:
        self.notifier = notifier
        self.thread = thread
        self.ref: Optional[ChatRef] = None
        self.log: list[str] = []

    async def __call__(self, step: str, text: str) -> None:
        line = f"{STEP_EMOJI.get(step, ':gear:')} {text}"
        self.log.append(line)
        if self.ref:
            await self.notifier.update(self.ref, line)
        else:
            self.ref = await self.notifier.post_to_thread(self.thread, line)

    async def finish(self, text: str) -> None:
        try:
            if self.ref:
                await self.notifier.update(self.ref, text)
        except ChatError as e:
            logging.warning("couldn't finish progress message: %s", e)


@dataclass
class SpamThread:
    ref: ChatRef
    recipients: set[str]
    category: Optional[str]
    count: int = 1
    last_seen: float = field(default=0.0)


class SpamThreads:
    """One spam channel thread per (sender, opening text) per day"""

    def __init__(
        self,
        window: float = SPAM_THREAD_WINDOW,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.window = window
        self.clock = clock
        self.threads: dict[str, SpamThread] = {}

    @staticmethod
    def key(sender: str, content: str) -> str:
        return f"{sender}|{content[:100].lower()}"

    def sweep(self) -> None:
        now = self.clock()
        for key in [k for k, t in self.threads.items() if now - t.last_seen > self.window]:
            del self.threads[key]

    def get(self, sender: str, content: str) -> Optional[SpamThread]:
        self.sweep()
        return self.threads.get(self.key(sender, content))

    def start(
        self, sender: str, content: str, recipient: str, ref: ChatRef, category: Optional[str]
    ) -> SpamThread:
        thread = SpamThread(ref, {recipient}, category, last_seen=self.clock())
        self.threads[self.key(sender, content)] = thread
        return thread

    def touch(self, thread: SpamThread) -> None:
        thread.last_seen = self.clock()


def spam_text(
    sender: str,
    content: str,
    category: Optional[str],
    bank_id: Optional[str] = None,
    recipient: Optional[str] = None,
    count: int = 1,
) -> str:
    text = f":no_entry_sign: *SPAM*  ·  {utils.format_phone_display(sender)}"
    if recipient:
        text += f" → {utils.format_phone_display(recipient)}"
    if bank_id:
        text += f"  ·  Bank {bank_id}"
    text += f"  ·  {category or 'Spam'}"
    if count > 1:
        text += f"  ·  _{count} recipients_"
    return f"{text}\n{RULE}\n{clip(content)}\n{RULE}"


async def report_spam(
    notifier: ChatNotifier,
    threads: SpamThreads,
    channel: str,
    sender: str,
    recipient: str,
    content: str,
    category: Optional[str],
    bank_id: Optional[str] = None,
) -> Optional[ChatRef]:
    """Post spam, grouping repeats of the same text into one thread"""
    thread = threads.get(sender, content)
    if not thread:
        ref = await notifier.post(
            channel, spam_text(sender, content, category, bank_id, recipient)
        )
        threads.start(sender, content, recipient, ref, category)
        return ref
    if recipient in thread.recipients:
        logging.info("spam from %s to %s already reported", sender, recipient)
        return None
    thread.recipients.add(recipient)
    thread.count += 1
    threads.touch(thread)
    reply = await notifier.post_to_thread(
        thread.ref, f"Also sent to: {utils.format_phone_display(recipient)}"
    )
    try:
        await notifier.update(
            thread.ref,
            spam_text(sender, content, thread.category, bank_id, count=thread.count),
        )
    except ChatError as e:
        logging.error("failed to update spam parent message: %s", e)
    return reply
