#!/usr/bin/python3.9
# Copyright (c) 2021 MobileCoin Inc.
# Copyright (c) 2021 The Forest Team
"""
Hardware diagnostics: switch a lot of slots at once, then count what comes in.
Each runs as a background task, one at a time, and watches inbound traffic
through the router's observer hook.
"""
import asyncio
import logging
import time
from collections import Counter
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional

from simgate import utils
from simgate.chat import ChatError, ChatNotifier, ChatRef
from simgate.simbank import (
    PORTS_PER_BANK,
    BankRegistry,
    SimBank,
    SimBankClient,
    SimBankError,
    TransportError,
)
from simgate.tasks import create_handled_task

DWELL = 3 * 60
SWEEP_POSITION = 3
SCAN_POSITIONS = 8
SCAN_BATCH = 16
BATCH_PAUSE = 0.5


class WorkflowBusy(Exception):
    pass


@dataclass
class Arrival:
    kind: str
    bank_id: str
    slot: Optional[str]
    at: float
    position: int = 0


def minutes_seconds(seconds: float) -> str:
    whole = round(seconds)
    return f"{whole // 60}m {whole % 60}s"


class Diagnostic:
    name = "diagnostic"

    def __init__(
        self,
        client: SimBankClient,
        registry: BankRegistry,
        notifier: ChatNotifier,
        channel: str = utils.TEST_CHANNEL,
        dwell: float = DWELL,
        ports: int = PORTS_PER_BANK,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.client = client
        self.registry = registry
        self.notifier = notifier
        self.channel = channel or notifier.default_channel
        self.dwell = dwell
        self.ports = ports
        self.clock = clock
        self.task: Optional[asyncio.Task] = None
        self.arrivals: list[Arrival] = []
        self.rivals: list["Diagnostic"] = []

    @property
    def running(self) -> bool:
        return bool(self.task and not self.task.done())

    def check_idle(self) -> None:
        if self.running:
            raise WorkflowBusy(f"A {self.name} is already in progress")
        for rival in self.rivals:
            if rival.running:
                raise WorkflowBusy(f"A {rival.name} is in progress")

    def launch(self, coroutine: Any) -> asyncio.Task:
        self.arrivals = []
        self.task = create_handled_task(
            coroutine, message="%s failed", message_args=(self.name,), name=self.name
        )
        return self.task

    async def stop(self) -> bool:
        if not self.running:
            return False
        assert self.task
        self.task.cancel()
        try:
            await self.task
        except asyncio.CancelledError:
            pass
        return True

    def current_position(self) -> int:
        return 0

    def record_arrival(self, kind: str, bank_id: str, slot: Optional[str]) -> None:
        if not self.running:
            return
        self.arrivals.append(
            Arrival(kind, bank_id, slot, self.clock(), self.current_position())
        )
        logging.info("%s: %s message from %s/%s", self.name, kind, bank_id, slot)

    async def say(self, text: str, thread: Optional[ChatRef] = None) -> Optional[ChatRef]:
        try:
            if thread:
                return await self.notifier.post_to_thread(thread, text)
            return await self.notifier.post(self.channel, text)
        except ChatError as e:
            logging.error("%s couldn't post: %s", self.name, e)
            return None

    async def switch_all(self, bank: SimBank, slots: Iterable[str]) -> tuple[int, int]:
        results = await asyncio.gather(
            *(self.client.switch_slot(bank, slot) for slot in slots),
            return_exceptions=True,
        )
        failed = 0
        for result in results:
            if isinstance(result, TransportError):
                failed += 1
            elif isinstance(result, BaseException):
                raise result
        return len(results) - failed, failed


class SweepTest(Diagnostic):
    """Every port of one bank to the same position, then see how long the traffic takes"""

    name = "sweep test"

    def __init__(self, *args: Any, position: int = SWEEP_POSITION, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.position = position
        self.switched_at = 0.0

    def start(self, bank_id: str) -> asyncio.Task:
        self.check_idle()
        bank = self.registry.require(bank_id)
        return self.launch(self.run(bank))

    async def run(self, bank: SimBank) -> dict[str, Any]:
        suffix = f"{self.position:02d}"
        await self.say(f":test_tube: Starting sweep test - switching all ports to slot {suffix}")
        self.switched_at = self.clock()
        ok, failed = await self.switch_all(
            bank, (f"{port}.{suffix}" for port in range(1, self.ports + 1))
        )
        logging.info("sweep switch commands: %s ok, %s failed", ok, failed)
        await asyncio.sleep(self.dwell)
        kinds = Counter(arrival.kind for arrival in self.arrivals)
        last = max((arrival.at for arrival in self.arrivals), default=None)
        report = {
            "bank_id": bank.bank_id,
            "total": len(self.arrivals),
            "sms": kinds["sms"],
            "spam": kinds["spam"],
            "verification": kinds["verification"],
            "time_to_last": minutes_seconds(last - self.switched_at) if last else "N/A",
            "switch_ok": ok,
            "switch_failed": failed,
        }
        await self.say(
            ":test_tube: *Sweep Test Results*\n\n"
            f"*Total messages received:* {report['total']}\n"
            f"*Time from switch to last message:* {report['time_to_last']}\n\n"
            f"*Channel breakdown:*\n• sms: {report['sms']}\n• spam: {report['spam']}\n"
            f"• verification: {report['verification']}\n\n"
            f"*Switch commands:* {ok}/{self.ports} successful"
        )
        return report


class SlotScan(Diagnostic):
    """Walk every bank through positions 01..08, dwelling on each"""

    name = "slot scan"

    def __init__(
        self,
        *args: Any,
        positions: int = SCAN_POSITIONS,
        batch_size: int = SCAN_BATCH,
        batch_pause: float = BATCH_PAUSE,
        **kwargs: Any,
    ) -> None:
        super().__init__(*args, **kwargs)
        self.positions = positions
        self.batch_size = batch_size
        self.batch_pause = batch_pause
        self.position = 0

    def current_position(self) -> int:
        return self.position

    def start(self) -> asyncio.Task:
        self.check_idle()
        banks = self.registry.all()
        if not banks:
            raise SimBankError("No SIM banks configured")
        return self.launch(self.run(banks))

    async def switch_bank(self, bank: SimBank, position: int) -> tuple[int, int]:
        slots = [f"{port}.{position:02d}" for port in range(1, self.ports + 1)]
        ok = failed = 0
        for i in range(0, len(slots), self.batch_size):
            batch_ok, batch_failed = await self.switch_all(bank, slots[i : i + self.batch_size])
            ok, failed = ok + batch_ok, failed + batch_failed
            if i + self.batch_size < len(slots):
                await asyncio.sleep(self.batch_pause)
        return ok, failed

    async def run(self, banks: list[SimBank]) -> dict[str, Any]:
        started = self.clock()
        names = ", ".join(bank.bank_id for bank in banks)
        thread = await self.say(
            f":arrows_counterclockwise: *Slot Scan Starting*\n\nScanning {len(banks)} bank(s): "
            f"{names}\nCycling through slots 01-{self.positions:02d}"
        )
        per_position: dict[str, int] = {}
        try:
            for position in range(1, self.positions + 1):
                self.position = position
                ok = failed = 0
                for bank in banks:
                    bank_ok, bank_failed = await self.switch_bank(bank, position)
                    logging.info(
                        "scan bank %s slot %02d: %s ok, %s failed",
                        bank.bank_id,
                        position,
                        bank_ok,
                        bank_failed,
                    )
                    ok, failed = ok + bank_ok, failed + bank_failed
                await self.say(
                    f"*Slot {position:02d}* switched. Commands: {ok} success, {failed} failed",
                    thread,
                )
                await asyncio.sleep(self.dwell)
                per_position[f"{position:02d}"] = sum(
                    1 for arrival in self.arrivals if arrival.position == position
                )
        except asyncio.CancelledError:
            await self.say(":octagonal_sign: Slot scan stopped", thread)
            raise
        finally:
            self.position = 0
        kinds = Counter(arrival.kind for arrival in self.arrivals)
        report = {
            "minutes": round((self.clock() - started) / 60),
            "total": len(self.arrivals),
            "by_position": per_position,
            "by_kind": dict(kinds),
        }
        lines = "\n".join(f"• Slot {pos}: {count} messages" for pos, count in per_position.items())
        await self.say(
            ":arrows_counterclockwise: *Slot Scan Complete*\n\n"
            f"*Duration:* {report['minutes']} minutes\n"
            f"*Total messages:* {report['total']}\n\n*Results by slot:*\n{lines}"
        )
        return report
