#!/usr/bin/python3.9
# Copyright (c) 2021 MobileCoin Inc.
# Copyright (c) 2021 The Forest Team
"""
What happens to one inbound SMS. Each step either ends processing with a
status token or hands on to the next; notification failures never change
the outcome.
"""
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping, Optional, Union

from prometheus_client import Counter

from simgate import utils
from simgate.chat import ChatError, ChatNotifier, SpamThreads, report_spam, sms_text
from simgate.classify import SpamClassifier, SpamVerdict, is_verification_code
from simgate.dedup import DeduplicationWindow
from simgate.simbank import BankRegistry, SimBankClient, TransportError
from simgate.tables import Blocklist, Conversation, ConversationStore
from simgate.tasks import notify
from simgate.tracking import ActivationWatches, DeliveryTracker, LastKnownSlots

OK = "ok"
DUPLICATE = "duplicate_skipped"
BLOCKED = "blocked"
SPAM = "spam_filtered"
DELIVERY_REPORT = "delivery_report_processed"

METADATA_PREFIXES = ("Sender:", "Receiver:", "SMSC:", "SCTS:", "Slot:")
RECEIVER_SLOT = re.compile(r'Receiver:\s*"([^"]+)"')
REPORT_PHONE = re.compile(r"(\d{10,15})")

webhook_outcomes = Counter("webhook_outcomes", "Inbound SMS by routing outcome", ["status"])

# observer(kind, bank_id, slot); kind is sms, verification or spam
Observer = Callable[[str, str, Optional[str]], Union[None, Awaitable[None]]]


class ParseError(ValueError):
    pass


def parse_ejoin_body(body: str) -> tuple[Optional[str], Optional[str]]:
    """
    Split the bank's text body into (content, slot).
    The slot is quoted on the Receiver line: Receiver: "4.07" 15135559999
    """
    slot = None
    content_lines = []
    for line in body.splitlines():
        stripped = line.strip()
        if not stripped:
            continue
        if stripped.startswith("Receiver:"):
            match = RECEIVER_SLOT.search(stripped)
            if match:
                slot = match.group(1)
            continue
        if not stripped.startswith(METADATA_PREFIXES):
            content_lines.append(stripped)
    return "\n".join(content_lines).strip() or None, slot


def parse_bank_id(raw: Optional[str]) -> str:
    # some firmware appends a second query string to the bank id
    bank = raw or "unknown"
    return bank.split("?", 1)[0]


@dataclass
class InboundSms:
    bank_id: str
    sender: str
    recipient: str
    content: str
    slot: Optional[str] = None


def parse_inbound(query: Mapping[str, str], body: Union[str, Mapping[str, Any]]) -> InboundSms:
    """Raises ParseError on missing fields or numbers that don't normalize"""
    content: Optional[str] = query.get("content")
    slot = None
    sender = query.get("sender")
    receiver = query.get("receiver")
    if isinstance(body, str):
        if body.strip():
            content, slot = parse_ejoin_body(body)
    elif not isinstance(body, Mapping):
        raise ParseError("Body must be text or an object")
    elif body:
        content = content or body.get("content")
        sender = sender or body.get("sender")
        receiver = receiver or body.get("receiver")
        slot = body.get("slot")
    if not (sender and receiver and content):
        raise ParseError("Missing required fields")
    sender_phone = utils.normalize_phone(str(sender))
    recipient_phone = utils.normalize_phone(str(receiver))
    if not (sender_phone and recipient_phone):
        raise ParseError("Invalid phone numbers")
    return InboundSms(parse_bank_id(query.get("bank")), sender_phone, recipient_phone, content, slot)


@dataclass
class Channels:
    chat: str = utils.CHAT_CHANNEL
    spam: str = utils.SPAM_CHANNEL
    verification: str = utils.VERIFICATION_CHANNEL


@dataclass
class RouteResult:
    status: str
    category: Optional[str] = None
    conversation_id: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        blob: dict[str, Any] = {"status": self.status}
        if self.category:
            blob["category"] = self.category
        if self.conversation_id is not None:
            blob["conversation_id"] = self.conversation_id
        return blob


@dataclass
class InboundRouter:
    store: ConversationStore
    blocklist: Blocklist
    classifier: SpamClassifier
    notifier: ChatNotifier
    channels: Channels = field(default_factory=Channels)
    dedup: DeduplicationWindow = field(default_factory=DeduplicationWindow)
    spam_threads: SpamThreads = field(default_factory=SpamThreads)
    deliveries: DeliveryTracker = field(default_factory=DeliveryTracker)
    watches: ActivationWatches = field(default_factory=ActivationWatches)
    last_slots: LastKnownSlots = field(default_factory=LastKnownSlots)
    registry: Optional[BankRegistry] = None
    client: Optional[SimBankClient] = None
    observers: list[Observer] = field(default_factory=list)

    async def route(self, sms: InboundSms) -> RouteResult:
        result = await self.decide(sms)
        webhook_outcomes.labels(result.status).inc()
        return result

    async def decide(self, sms: InboundSms) -> RouteResult:
        if sms.slot:
            self.last_slots.record(sms.bank_id, sms.slot)
        if sms.content.startswith("DRPT:"):
            await self.delivery_report(sms.content)
            return RouteResult(DELIVERY_REPORT)
        if self.dedup.is_duplicate(sms.sender, sms.recipient, sms.content):
            logging.info("duplicate message from %s to %s", sms.sender, sms.recipient)
            return RouteResult(DUPLICATE)
        if await self.blocklist.is_blocked(sms.sender):
            logging.info("dropping message from blocked %s", sms.sender)
            return RouteResult(BLOCKED)
        verification = is_verification_code(sms.content)
        if verification:
            logging.info("verification code for %s, skipping spam filter", sms.recipient)
        else:
            verdict = await self.spam_verdict(sms)
            if verdict.spam:
                await self.report_spam(sms, verdict)
                await self.observe("spam", sms)
                return RouteResult(SPAM, category=verdict.category)
        conversation = await self.deliver(sms, verification)
        await self.observe("verification" if verification else "sms", sms)
        await self.mirror_to_watch(sms)
        return RouteResult(OK, conversation_id=conversation.id)

    async def delivery_report(self, content: str) -> None:
        # DRPT: 0 9295551234\nSms Send to 9295551234 Success
        match = REPORT_PHONE.search(content)
        if not match:
            logging.warning("delivery report without a number: %s", content)
            return
        ref = self.deliveries.resolve(match.group(1))
        if not ref:
            return
        emoji = "white_check_mark" if "success" in content.lower() else "x"
        try:
            await self.notifier.react(ref, emoji)
        except ChatError as e:
            logging.error("failed to add delivery reaction: %s", e)

    async def spam_verdict(self, sms: InboundSms) -> SpamVerdict:
        if utils.is_short_code(sms.sender):
            return SpamVerdict(spam=True, category="Short Code", confidence="high")
        return await self.classifier.classify(sms.content, sms.sender)

    async def report_spam(self, sms: InboundSms, verdict: SpamVerdict) -> None:
        logging.info("spam from %s: %s (%s)", sms.sender, verdict.category, verdict.confidence)
        if not self.channels.spam:
            return
        try:
            await report_spam(
                self.notifier,
                self.spam_threads,
                self.channels.spam,
                sms.sender,
                sms.recipient,
                sms.content,
                verdict.category,
                sms.bank_id,
            )
        except ChatError as e:
            logging.error("failed to post spam: %s", e)

    async def lookup_iccid(self, sms: InboundSms) -> Optional[str]:
        if not (self.registry and self.client and sms.slot):
            return None
        bank = self.registry.get(sms.bank_id)
        if not bank:
            return None
        try:
            status = await self.client.get_slot_status(bank, sms.slot)
        except TransportError as e:
            logging.warning("couldn't get ICCID for %s/%s: %s", sms.bank_id, sms.slot, e)
            return None
        return status.iccid

    async def deliver(self, sms: InboundSms, verification: bool) -> Conversation:
        iccid = await self.lookup_iccid(sms)
        conversation = await self.store.find_or_create(
            sms.sender, sms.recipient, sms.bank_id, sms.slot or "unknown", iccid
        )
        if iccid and conversation.iccid != iccid:
            await self.store.update_iccid(conversation.id, iccid)
            conversation.iccid = iccid
        await self.store.add_message(conversation.id, "inbound", sms.content)
        thread = self.notifier.thread_of(conversation)
        try:
            if not thread:
                channel = self.channels.chat
                if verification and self.channels.verification:
                    channel = self.channels.verification
                ref = await self.notifier.post_new_thread(conversation, sms.content, channel)
                await self.store.update_thread_reference(conversation.id, ref.ts, ref.channel)
                conversation.thread_ref, conversation.chat_channel = ref.ts, ref.channel
            else:
                await self.notifier.post_to_thread(
                    thread,
                    f":incoming_envelope: *{utils.format_phone_display(sms.sender)}:* {sms.content}",
                )
                if verification and self.channels.verification:
                    await self.notifier.post(
                        self.channels.verification, sms_text(conversation, sms.content)
                    )
        except ChatError as e:
            logging.error("couldn't post message %s to chat: %s", conversation, e)
        await self.store.touch_timestamp(conversation.id)
        return conversation

    async def observe(self, kind: str, sms: InboundSms) -> None:
        for observer in self.observers:
            await notify(observer, kind, sms.bank_id, sms.slot)

    async def mirror_to_watch(self, sms: InboundSms) -> None:
        watch = self.watches.get(sms.recipient)
        if not watch:
            return
        try:
            await self.notifier.post_to_thread(
                watch.thread,
                f":incoming_envelope: SMS to {utils.format_phone_display(sms.recipient)}"
                f" from {utils.format_phone_display(sms.sender)}:\n{sms.content}",
            )
        except ChatError as e:
            logging.error("couldn't mirror SMS to activation thread: %s", e)
