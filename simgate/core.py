#!/usr/bin/python3.9
# Copyright (c) 2021 MobileCoin Inc.
# Copyright (c) 2021 The Forest Team
"""
The gateway: wiring, operator workflows, and the aiohttp app
"""
import asyncio
import datetime
import logging
from typing import Any, Optional

import aiohttp
import asyncpg
import termcolor
from aiohttp import web
from prometheus_async import aio

from simgate import pghelp, utils
from simgate.chat import (
    ChatError,
    ChatNotifier,
    ChatRef,
    LogNotifier,
    ProgressMessage,
    SlackNotifier,
)
from simgate.classify import AnthropicClassifier, SpamClassifier
from simgate.diagnostics import SlotScan, SweepTest, WorkflowBusy
from simgate.outbound import OutboundSender
from simgate.readiness import SlotReadinessController
from simgate.router import Channels, InboundRouter, ParseError, parse_inbound
from simgate.simbank import (
    BankNotFound,
    BankRegistry,
    SimBankClient,
    SimBankError,
    SlotTimeout,
    TransportError,
    VendorError,
)
from simgate.tables import (
    BlockedManager,
    Blocklist,
    Conversation,
    ConversationManager,
    ConversationStore,
    MessageManager,
)
from simgate.tasks import create_handled_task
from simgate.tracking import ActivationWatch, ActivationWatches, DeliveryTracker, LastKnownSlots


VERSION = "0.1.0"


class ConversationNotFound(LookupError):
    pass


class ProgressLog:
    """Progress sink for callers with no chat thread to update"""

    def __init__(self) -> None:
        self.log: list[str] = []

    async def __call__(self, step: str, text: str) -> None:
        self.log.append(f"{step}: {text}")


class Gateway:
    def __init__(
        self,
        registry: BankRegistry,
        client: SimBankClient,
        store: ConversationStore,
        blocklist: Blocklist,
        notifier: ChatNotifier,
        classifier: SpamClassifier,
        channels: Optional[Channels] = None,
        readiness: Optional[SlotReadinessController] = None,
        watches: Optional[ActivationWatches] = None,
    ) -> None:
        self.registry = registry
        self.client = client
        self.store = store
        self.blocklist = blocklist
        self.notifier = notifier
        self.readiness = readiness or SlotReadinessController(client)
        self.sender = OutboundSender(registry, client, self.readiness)
        self.deliveries = DeliveryTracker()
        self.watches = watches or ActivationWatches()
        self.last_slots = LastKnownSlots()
        self.router = InboundRouter(
            store,
            blocklist,
            classifier,
            notifier,
            channels=channels or Channels(),
            deliveries=self.deliveries,
            watches=self.watches,
            last_slots=self.last_slots,
            registry=registry,
            client=client,
        )
        self.sweep = SweepTest(client, registry, notifier)
        self.scan = SlotScan(client, registry, notifier)
        self.sweep.rivals = [self.scan]
        self.scan.rivals = [self.sweep]
        self.router.observers.extend([self.sweep.record_arrival, self.scan.record_arrival])
        self.watch_timers: set[asyncio.Task] = set()

    async def create_tables(self) -> None:
        await self.store.create_tables()
        await self.blocklist.manager.create_tables()

    async def close(self) -> None:
        await self.sweep.stop()
        await self.scan.stop()
        for timer in list(self.watch_timers):
            timer.cancel()

    async def send(self, bank_id: str, slot: str, to: str, message: str) -> dict[str, Any]:
        progress = ProgressLog()
        result = await self.sender.send(bank_id, slot, to, message, progress)
        return result | {"progress": progress.log}

    async def reply(
        self,
        conversation_id: int,
        message: str,
        user: str = "api",
        bank_id: Optional[str] = None,
        slot: Optional[str] = None,
    ) -> dict[str, Any]:
        conversation = await self.store.find_by_id(conversation_id)
        if not conversation:
            raise ConversationNotFound(f"conversation {conversation_id} not found")
        return await self.reply_to(conversation, message, user, bank_id, slot)

    async def reply_in_thread(
        self,
        thread_ref: str,
        message: str,
        user: str,
        bank_id: Optional[str] = None,
        slot: Optional[str] = None,
    ) -> dict[str, Any]:
        conversation = await self.store.find_by_thread(thread_ref)
        if not conversation:
            raise ConversationNotFound(f"no conversation for thread {thread_ref}")
        return await self.reply_to(conversation, message, user, bank_id, slot)

    async def reply_to(
        self,
        conversation: Conversation,
        message: str,
        user: str,
        bank_id: Optional[str] = None,
        slot: Optional[str] = None,
    ) -> dict[str, Any]:
        """
        Send `message` back to whoever started `conversation`, from its own
        bank and slot unless told otherwise. Progress shows up in the thread.
        """
        bank_id = bank_id or conversation.bank_id
        slot = slot or conversation.sim_port
        if not bank_id or not slot or slot == "unknown":
            raise ValueError(f"no bank/slot known for conversation {conversation.id}")
        thread = self.notifier.thread_of(conversation)
        progress: Any = ProgressMessage(self.notifier, thread) if thread else ProgressLog()
        if thread and bank_id != conversation.bank_id:
            await self.say(
                thread,
                f":warning: Sending from bank {bank_id}, but this conversation "
                f"came in on bank {conversation.bank_id}",
            )
        try:
            result = await self.sender.send(
                bank_id, slot, conversation.sender_phone, message, progress
            )
        except SimBankError as e:
            logging.error(termcolor.colored(f"reply to {conversation} failed: {e}", "red"))
            if thread:
                await self.say(thread, f":x: Failed to send: {e}")
            raise
        if isinstance(progress, ProgressMessage):
            await progress.finish(f":outbox_tray: SMS sent from bank {bank_id} slot {slot}")
        await self.store.add_message(conversation.id, "outbound", message, user, "sent")
        await self.store.touch_timestamp(conversation.id)
        if thread:
            confirmation = await self.say(thread, f":outbox_tray: *{user}:* {message}")
            if confirmation:
                self.deliveries.track(conversation.sender_phone, confirmation)
        return result | {"conversation_id": conversation.id, "progress": progress.log}

    async def say(self, thread: ChatRef, text: str) -> Optional[ChatRef]:
        try:
            return await self.notifier.post_to_thread(thread, text)
        except ChatError as e:
            logging.error("couldn't post to %s: %s", thread, e)
            return None

    async def activate(self, phone: str, thread: ChatRef) -> dict[str, Any]:
        """Put the SIM holding `phone` on air and mirror its SMS into `thread` for a while"""
        found = await self.client.find_slot_by_phone(self.registry, phone)
        if not found:
            raise LookupError(f"No slot found with phone number {phone}")
        bank, status = found
        await self.client.switch_slot(bank, status.port)
        watch = self.watches.open(phone, thread, bank.bank_id, status.port)
        timer = create_handled_task(
            self.expire_watch(watch),
            message="activation watch for %s failed",
            message_args=(phone,),
        )
        self.watch_timers.add(timer)
        timer.add_done_callback(self.watch_timers.discard)
        await self.say(
            thread,
            f":arrows_counterclockwise: Switched bank {bank.bank_id} to slot {status.port} "
            f"for {utils.format_phone_display(phone)}. Watching for SMS for "
            f"{round(self.watches.window / 60)} minutes.",
        )
        return {"bank_id": bank.bank_id, "slot": status.port, "status": status.to_dict()}

    async def expire_watch(self, watch: ActivationWatch) -> None:
        await asyncio.sleep(max(0.0, watch.expires - self.watches.clock()))
        if self.watches.expire(watch):
            await self.say(
                watch.thread,
                f":hourglass: Watch ended for {utils.format_phone_display(watch.phone)}",
            )

    async def end_watch(self, phone: str) -> dict[str, Any]:
        """Stop mirroring SMS for `phone` before its window runs out"""
        watch = self.watches.complete(phone)
        if not watch:
            raise LookupError(f"No activation watch for {phone}")
        await self.say(
            watch.thread,
            f":checkered_flag: Activation done for {utils.format_phone_display(watch.phone)}, "
            "no longer watching",
        )
        return {"bank_id": watch.bank_id, "slot": watch.slot}

    async def stats(self) -> dict[str, Any]:
        blob: dict[str, Any] = {
            "messages_24h": await self.store.count_recent_messages(),
            "conversations": await self.store.count_conversations(),
            "blocked": await self.blocklist.count(),
        }
        ready, total = await self.client.count_active_sims(self.registry)
        blob["active_sims"] = {"ready": ready, "total": total}
        return blob


def error_response(e: Exception) -> web.Response:
    if isinstance(e, (BankNotFound, LookupError)):
        status = 404
    elif isinstance(e, SlotTimeout):
        status = 504
    elif isinstance(e, (VendorError, TransportError, ChatError)):
        status = 502
    elif isinstance(e, WorkflowBusy):
        status = 409
    elif isinstance(e, (SimBankError, ValueError)):
        status = 400
    else:
        raise e
    return web.json_response({"error": str(e)}, status=status)


def get_gateway(request: web.Request) -> Optional[Gateway]:
    return request.app.get("gateway")


def no_workers() -> web.Response:
    return web.Response(status=504, text="Sorry, no live workers.")


async def read_body(request: web.Request) -> Any:
    if request.content_type == "application/json":
        try:
            return await request.json()
        except ValueError as e:
            raise ParseError("Invalid JSON body") from e
    if request.content_type in ("application/x-www-form-urlencoded", "multipart/form-data"):
        return dict(await request.post())
    raw = await request.read()
    try:
        return raw.decode(request.charset or "utf-8")
    except (UnicodeDecodeError, LookupError) as e:
        raise ParseError("Body is not valid text") from e


async def json_body(request: web.Request) -> dict[str, Any]:
    body = await read_body(request)
    if not isinstance(body, dict):
        raise ParseError("Expected a JSON object")
    return body


async def inbound_sms_handler(request: web.Request) -> web.Response:
    gateway = get_gateway(request)
    if not gateway:
        return no_workers()
    try:
        sms = parse_inbound(request.query, await read_body(request))
    except ParseError as e:
        logging.warning("rejected webhook %s: %s", dict(request.query), e)
        return web.json_response({"error": str(e)}, status=400)
    try:
        result = await gateway.router.route(sms)
    except Exception:  # pylint: disable=broad-except
        logging.exception("webhook error")
        return web.json_response({"error": "Internal server error"}, status=500)
    return web.json_response(result.to_dict())


async def health_handler(request: web.Request) -> web.Response:
    now = datetime.datetime.now(datetime.timezone.utc).isoformat()
    return web.json_response({"status": "ok", "timestamp": now})


async def index_handler(request: web.Request) -> web.Response:
    return web.json_response(
        {
            "name": "simgate",
            "version": VERSION,
            "endpoints": sorted(
                {
                    resource.canonical
                    for resource in request.app.router.resources()
                }
            ),
        }
    )


async def send_handler(request: web.Request) -> web.Response:
    gateway = get_gateway(request)
    if not gateway:
        return no_workers()
    try:
        body = await json_body(request)
        missing = [key for key in ("bank", "slot", "to", "message") if not body.get(key)]
        if missing:
            raise ParseError(f"Missing required fields: {', '.join(missing)}")
        to = utils.normalize_phone(str(body["to"]))
        if not to:
            raise ParseError("Invalid phone number")
        result = await gateway.send(str(body["bank"]), str(body["slot"]), to, body["message"])
    except (SimBankError, ValueError, ChatError) as e:
        return error_response(e)
    return web.json_response({"status": "sent"} | result)


def conversation_id(request: web.Request) -> int:
    try:
        return int(request.match_info["id"])
    except ValueError as e:
        raise ParseError("conversation id must be a number") from e


async def reply_handler(request: web.Request) -> web.Response:
    gateway = get_gateway(request)
    if not gateway:
        return no_workers()
    try:
        body = await json_body(request)
        if not body.get("message"):
            raise ParseError("Missing message")
        result = await gateway.reply(
            conversation_id(request),
            body["message"],
            body.get("user") or "api",
            body.get("bank"),
            body.get("slot"),
        )
    except (SimBankError, ValueError, LookupError, ChatError) as e:
        return error_response(e)
    return web.json_response({"status": "sent"} | result)


async def messages_handler(request: web.Request) -> web.Response:
    gateway = get_gateway(request)
    if not gateway:
        return no_workers()
    try:
        limit = int(request.query.get("limit", 50))
        conversation = await gateway.store.find_by_id(conversation_id(request))
        if not conversation:
            raise ConversationNotFound("conversation not found")
    except (ValueError, LookupError) as e:
        return error_response(e)
    messages = await gateway.store.recent_messages(conversation.id, limit)
    return web.json_response({"conversation": conversation.to_dict(), "messages": messages})


async def list_blocked_handler(request: web.Request) -> web.Response:
    gateway = get_gateway(request)
    if not gateway:
        return no_workers()
    return web.json_response({"blocked": await gateway.blocklist.list()})


async def block_handler(request: web.Request) -> web.Response:
    gateway = get_gateway(request)
    if not gateway:
        return no_workers()
    try:
        body = await json_body(request)
        phone = utils.normalize_phone(str(body.get("phone", "")))
        if not phone:
            raise ParseError("Invalid phone number")
    except ValueError as e:
        return error_response(e)
    await gateway.blocklist.block(phone, body.get("blocked_by") or "api", body.get("reason"))
    return web.json_response({"status": "blocked", "phone": phone})


async def unblock_handler(request: web.Request) -> web.Response:
    gateway = get_gateway(request)
    if not gateway:
        return no_workers()
    phone = utils.normalize_phone(request.match_info["phone"])
    if not phone:
        return web.json_response({"error": "Invalid phone number"}, status=400)
    if not await gateway.blocklist.unblock(phone):
        return web.json_response({"error": f"{phone} is not blocked"}, status=404)
    return web.json_response({"status": "unblocked", "phone": phone})


async def stats_handler(request: web.Request) -> web.Response:
    gateway = get_gateway(request)
    if not gateway:
        return no_workers()
    return web.json_response(await gateway.stats())


async def banks_status_handler(request: web.Request) -> web.Response:
    gateway = get_gateway(request)
    if not gateway:
        return no_workers()
    statuses = await gateway.client.all_banks_status(gateway.registry)
    return web.json_response(
        {
            "banks": [
                {
                    "bank_id": status.bank_id,
                    "online": status.online,
                    "ready": status.ready_count,
                    "ports": status.ports,
                    "error": status.error,
                }
                for status in statuses
            ]
        }
    )


async def slot_status_handler(request: web.Request) -> web.Response:
    gateway = get_gateway(request)
    if not gateway:
        return no_workers()
    try:
        bank = gateway.registry.require(request.match_info["bank"])
        status = await gateway.client.get_slot_status(bank, request.match_info["slot"])
    except SimBankError as e:
        return error_response(e)
    return web.json_response(status.to_dict() | {"ready": status.ready})


async def activate_handler(request: web.Request) -> web.Response:
    gateway = get_gateway(request)
    if not gateway:
        return no_workers()
    try:
        body = await json_body(request)
        phone = utils.normalize_phone(str(body.get("phone", "")))
        if not phone:
            raise ParseError("Invalid phone number")
        channel = body.get("channel") or gateway.notifier.default_channel
        if not body.get("thread"):
            raise ParseError("Missing thread")
        result = await gateway.activate(phone, ChatRef(channel, str(body["thread"])))
    except (SimBankError, ValueError, LookupError) as e:
        return error_response(e)
    return web.json_response({"status": "switching"} | result)


async def end_watch_handler(request: web.Request) -> web.Response:
    gateway = get_gateway(request)
    if not gateway:
        return no_workers()
    phone = utils.normalize_phone(request.match_info["phone"])
    if not phone:
        return web.json_response({"error": "Invalid phone number"}, status=400)
    try:
        result = await gateway.end_watch(phone)
    except LookupError as e:
        return error_response(e)
    return web.json_response({"status": "stopped"} | result)


async def sweep_handler(request: web.Request) -> web.Response:
    gateway = get_gateway(request)
    if not gateway:
        return no_workers()
    try:
        body = await json_body(request)
        if not body.get("bank"):
            raise ParseError("Missing bank")
        gateway.sweep.start(str(body["bank"]))
    except (SimBankError, ValueError, WorkflowBusy) as e:
        return error_response(e)
    return web.json_response({"status": "started"}, status=202)


async def start_scan_handler(request: web.Request) -> web.Response:
    gateway = get_gateway(request)
    if not gateway:
        return no_workers()
    try:
        gateway.scan.start()
    except (SimBankError, WorkflowBusy) as e:
        return error_response(e)
    return web.json_response({"status": "started"}, status=202)


async def stop_scan_handler(request: web.Request) -> web.Response:
    gateway = get_gateway(request)
    if not gateway:
        return no_workers()
    stopped = await gateway.scan.stop()
    return web.json_response({"status": "stopped" if stopped else "not_running"})


async def start_gateway(app: web.Application) -> None:
    """Build the gateway from configuration"""
    session = aiohttp.ClientSession()
    app["session"] = session
    database = utils.get_secret("DATABASE_URL")
    pool = await asyncpg.create_pool(database)
    pghelp.pools.append(pool)
    token = utils.get_secret("SLACK_BOT_TOKEN")
    notifier: ChatNotifier = (
        SlackNotifier(session, token, utils.CHAT_CHANNEL) if token else LogNotifier()
    )
    if not token:
        logging.warning("SLACK_BOT_TOKEN not set, chat messages only go to the log")
    api_key = utils.get_secret("ANTHROPIC_API_KEY")
    classifier = AnthropicClassifier(session, api_key) if api_key else SpamClassifier()
    gateway = Gateway(
        registry=BankRegistry.from_env(),
        client=SimBankClient(session),
        store=ConversationStore(
            ConversationManager(database=database, pool=pool),
            MessageManager(database=database, pool=pool),
        ),
        blocklist=Blocklist(BlockedManager(database=database, pool=pool)),
        notifier=notifier,
        classifier=classifier,
    )
    await gateway.create_tables()
    app["gateway"] = gateway
    logging.info("gateway up with %s SIM bank(s)", len(gateway.registry))


async def stop_gateway(app: web.Application) -> None:
    gateway = app.get("gateway")
    if gateway:
        await gateway.close()
    session = app.get("session")
    if session:
        await session.close()
    await pghelp.close_pools()


def make_app(gateway: Optional[Gateway] = None) -> web.Application:
    app = web.Application()
    app.add_routes(
        [
            web.get("/", index_handler),
            web.post("/webhook/sms", inbound_sms_handler),
            web.get("/webhook/health", health_handler),
            web.post("/send", send_handler),
            web.post("/conversations/{id}/reply", reply_handler),
            web.get("/conversations/{id}/messages", messages_handler),
            web.get("/blocked", list_blocked_handler),
            web.post("/blocked", block_handler),
            web.delete("/blocked/{phone}", unblock_handler),
            web.get("/stats", stats_handler),
            web.get("/banks/status", banks_status_handler),
            web.get("/banks/{bank}/slots/{slot}", slot_status_handler),
            web.post("/activate", activate_handler),
            web.delete("/activate/{phone}", end_watch_handler),
            web.post("/diagnostics/sweep", sweep_handler),
            web.post("/diagnostics/scan", start_scan_handler),
            web.delete("/diagnostics/scan", stop_scan_handler),
            web.get("/metrics", aio.web.server_stats),
        ]
    )
    if gateway:
        app["gateway"] = gateway
    else:
        app.on_startup.append(start_gateway)
    app.on_cleanup.append(stop_gateway)
    return app


def run_gateway() -> None:
    web.run_app(make_app(), port=utils.PORT, host="0.0.0.0", access_log=None)


if __name__ == "__main__":
    run_gateway()
