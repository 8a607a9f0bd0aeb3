#!/usr/bin/python3.9
# Copyright (c) 2021 MobileCoin Inc.
# Copyright (c) 2021 The Forest Team
import logging
import re
import time
from typing import Any, Optional

import termcolor
from prometheus_client import Counter, Histogram

from simgate import utils
from simgate.readiness import Progress, SlotReadinessController
from simgate.retry import with_retry
from simgate.simbank import (
    SMS_ERROR_CODES,
    BankRegistry,
    SimBankClient,
    TransportError,
    VendorError,
    slot_channel,
)
from simgate.tasks import notify

SEND_ATTEMPTS = 2
SEND_BASE_DELAY = 1.0

send_outcomes = Counter("outbound_sends", "Outbound send attempts by outcome", ["outcome"])
send_latency = Histogram("outbound_send_seconds", "Time from send request to vendor ack")


def vendor_error_text(code: Any) -> str:
    try:
        return SMS_ERROR_CODES.get(int(code), "Unknown error")
    except (TypeError, ValueError):
        return "Unknown error"


def check_send_response(response: dict) -> None:
    """Both the top-level code and the task's own status have to say yes"""
    code = response.get("code")
    if str(code) != "200":
        raise VendorError(
            response.get("reason") or vendor_error_text(code), code=code
        )
    tasks = response.get("status")
    if isinstance(tasks, list) and tasks:
        task_status = str(tasks[0].get("status", "") if isinstance(tasks[0], dict) else "")
        if not task_status.startswith("0"):
            leading = re.match(r"\d+", task_status)
            task_code = leading.group() if leading else task_status
            raise VendorError(vendor_error_text(task_code), code=task_code)


class OutboundSender:
    def __init__(
        self,
        registry: BankRegistry,
        client: SimBankClient,
        readiness: SlotReadinessController,
        attempts: int = SEND_ATTEMPTS,
        base_delay: float = SEND_BASE_DELAY,
    ) -> None:
        self.registry = registry
        self.client = client
        self.readiness = readiness
        self.attempts = attempts
        self.base_delay = base_delay
        self.last_tid = 0

    def next_tid(self) -> int:
        # vendor wants a fresh integer per task, millisecond clock unless that repeats
        self.last_tid = max(int(time.time() * 1000), self.last_tid + 1)
        return self.last_tid

    async def send(
        self,
        bank_id: str,
        slot: str,
        to: str,
        message: str,
        on_progress: Progress = None,
    ) -> dict[str, Any]:
        """
        Send `message` to `to` from `slot` on `bank_id`.
        Raises BankNotFound, SlotTimeout, TransportError or VendorError.
        Returns {"transaction_id": tid} once the bank accepted the task.
        """
        bank = self.registry.require(bank_id)
        await self.readiness.ensure_ready(bank, slot, on_progress)
        to_digits = utils.digits_only(to)
        channel = int(slot_channel(slot))
        await notify(on_progress, "sending", f"Sending to {utils.format_phone_display(to)}...")
        tid: Optional[int] = None

        async def attempt() -> dict:
            nonlocal tid
            tid = self.next_tid()
            return await self.client.post_sms(bank, channel, to_digits, message, tid)

        def on_retry(attempt_number: int, error: BaseException) -> None:
            # a new tid means the bank can't spot a repeat; an unacked success gets sent twice
            logging.warning(
                "retrying send of tid %s to %s after %s, may deliver twice",
                tid,
                to_digits,
                error,
            )

        with send_latency.time():
            try:
                response = await with_retry(
                    attempt,
                    attempts=self.attempts,
                    base_delay=self.base_delay,
                    retry_on=(TransportError,),
                    on_retry=on_retry,
                )
                check_send_response(response)
            except VendorError as e:
                send_outcomes.labels("rejected").inc()
                logging.error(termcolor.colored(f"bank {bank_id} rejected send: {e}", "red"))
                raise
            except TransportError:
                send_outcomes.labels("transport").inc()
                raise
        send_outcomes.labels("sent").inc()
        logging.info("sent tid %s via %s/%s to %s", tid, bank_id, slot, to_digits)
        return {"transaction_id": tid}
