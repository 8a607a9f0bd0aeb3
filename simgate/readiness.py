#!/usr/bin/python3.9
# Copyright (c) 2021 MobileCoin Inc.
# Copyright (c) 2021 The Forest Team
"""
Getting a slot on the air before anything is sent through it.

A switched slot registers with the network on the carrier's schedule, not
ours. All we control is how long we wait and what the operator sees meanwhile.
"""
import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional, Union

from prometheus_client import Histogram

from simgate import utils
from simgate.simbank import SimBank, SimBankClient, SlotTimeout, TransportError
from simgate.tasks import notify

SLOT_READY_TIMEOUT = utils.get_float("SLOT_READY_TIMEOUT", 90)
SLOT_POLL_INTERVAL = utils.get_float("SLOT_POLL_INTERVAL", 10)

readiness_wait = Histogram(
    "slot_readiness_seconds", "Time spent waiting for a slot to register"
)

# on_progress(step, text); step is one of ready, switching, waiting, sending
Progress = Optional[Callable[[str, str], Union[None, Awaitable[None]]]]


class SlotReadinessController:
    def __init__(
        self,
        client: SimBankClient,
        timeout: float = SLOT_READY_TIMEOUT,
        poll_interval: float = SLOT_POLL_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.client = client
        self.timeout = timeout
        self.poll_interval = poll_interval
        self.clock = clock

    async def ensure_ready(
        self, bank: SimBank, slot: str, on_progress: Progress = None
    ) -> None:
        """
        Returns once `slot` is active and registered.
        Raises TransportError if the first status query fails,
        and SlotTimeout if the slot isn't ready within self.timeout.
        """
        if "." not in slot:
            # a bare channel has no radio position to switch to
            logging.info("slot %s has no position, skipping readiness check", slot)
            return
        started = self.clock()
        with readiness_wait.time():
            logging.info("checking slot %s on bank %s", slot, bank.bank_id)
            status = await self.client.get_slot_status(bank, slot)
            if status.ready:
                await notify(on_progress, "ready", f"Slot {slot} is ready")
                return
            await notify(
                on_progress,
                "switching",
                f"Slot {slot} not ready ({status.status_text}), switching...",
            )
            try:
                await self.client.switch_slot(bank, slot)
            except TransportError as e:
                # some firmware answers the switch late or with an error and does it anyway
                logging.warning("switch to %s failed: %s, polling anyway", slot, e)
                await notify(
                    on_progress, "switching", f"Switch command failed ({e}), waiting anyway"
                )
            last_status = status.status_text
            while True:
                elapsed = self.clock() - started
                remaining = self.timeout - elapsed
                if remaining <= 0:
                    raise SlotTimeout(slot, elapsed, last_status)
                await notify(
                    on_progress,
                    "waiting",
                    f"Waiting for slot {slot} to register... ({round(remaining)}s remaining)",
                )
                await asyncio.sleep(min(self.poll_interval, remaining))
                try:
                    status = await self.client.get_slot_status(bank, slot)
                except TransportError as e:
                    logging.warning("status poll for %s failed: %s", slot, e)
                    continue
                last_status = status.status_text
                logging.debug("slot %s: %s", slot, status.describe())
                if status.ready:
                    await notify(on_progress, "ready", f"Slot {slot} is ready")
                    return
