#!/usr/bin/python3.9
# Copyright (c) 2021 MobileCoin Inc.
# Copyright (c) 2021 The Forest Team
"""
SIM banks: configuration, the vendor (Ejoin/GoIP-style) HTTP API, and how to
read what it reports about slots.
"""
import asyncio
import json
import logging
import os
import re
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Optional

import aiohttp
import termcolor

from simgate import utils

BANK_REQUEST_TIMEOUT = utils.get_float("BANK_REQUEST_TIMEOUT", 10)
OVERVIEW_TIMEOUT = 5
PORTS_PER_BANK = 64

STATUS_PATH = "goip_get_status.html"
COMMAND_PATH = "goip_send_cmd.html"
SEND_PATH = "goip_post_sms.html"


class RegistrationState(IntEnum):
    NO_SIM = 0
    IDLE = 1
    REGISTERING = 2
    READY = 3
    CALL_ACTIVE = 4
    REG_FAILED = 5
    LOW_BALANCE = 6
    LOCKED_DEVICE = 7
    LOCKED_OPERATOR = 8
    SIM_ERROR = 9


PORT_STATUS = {
    0: "No SIM card",
    1: "Idle SIM present",
    2: "Registering",
    3: "Registered - Ready",
    4: "Call connected",
    5: "Register failed",
    6: "Low balance",
    7: "Locked by device",
    8: "Locked by operator",
    9: "SIM card error",
}

SMS_ERROR_CODES = {
    0: "OK",
    1: "Invalid User",
    2: "Invalid Port",
    3: "USSD Expected",
    4: "Pending USSD",
    5: "SIM Unregistered",
    6: "Timeout",
    7: "Server Error",
    8: "SMS expected",
    9: "TO expected (recipients missed)",
    10: "Pending Transaction",
    11: "TID Expected",
    12: "FROM Expected",
    13: "Duplicated TaskId",
    14: "Unauthorized",
    15: "Invalid CMD",
    16: "Too Many Task",
}


class SimBankError(Exception):
    pass


class BankNotFound(SimBankError):
    def __init__(self, bank_id: str) -> None:
        self.bank_id = bank_id
        super().__init__(f"SIM bank {bank_id} not found")


class TransportError(SimBankError):
    """Timeouts, refused connections, non-2xx, unparseable bodies"""


class SlotTimeout(SimBankError):
    def __init__(self, slot: str, waited: float, last_status: str) -> None:
        self.slot = slot
        self.last_status = last_status
        super().__init__(
            f"Slot {slot} did not become ready within {round(waited)} seconds "
            f"(last status: {last_status})"
        )


class VendorError(SimBankError):
    """The bank answered, and the answer was no"""

    def __init__(self, text: str, code: Any = None) -> None:
        self.code = code
        self.text = text
        super().__init__(f"{text} (code: {code})" if code is not None else text)


@dataclass(frozen=True)
class SimBank:
    bank_id: str
    ip_address: str
    port: int = 80
    username: str = "root"
    password: str = "root"

    def url(self, path: str) -> str:
        return f"http://{self.ip_address}:{self.port}/{path}"

    @property
    def credentials(self) -> dict[str, str]:
        return {"username": self.username, "password": self.password}


class BankRegistry:
    """Configured banks by id. Written at startup, read afterwards."""

    def __init__(self, banks: Optional[list[SimBank]] = None) -> None:
        self.banks: dict[str, SimBank] = {}
        for bank in banks or []:
            self.add(bank)

    def add(self, bank: SimBank) -> None:
        if bank.bank_id in self.banks:
            logging.info("replacing config for SIM bank %s", bank.bank_id)
        self.banks[bank.bank_id] = bank

    def get(self, bank_id: str) -> Optional[SimBank]:
        return self.banks.get(bank_id)

    def require(self, bank_id: str) -> SimBank:
        bank = self.banks.get(bank_id)
        if not bank:
            raise BankNotFound(bank_id)
        return bank

    def all(self) -> list[SimBank]:
        return list(self.banks.values())

    def __len__(self) -> int:
        return len(self.banks)

    @classmethod
    def from_env(cls) -> "BankRegistry":
        """SIMBANK_<n>_ID / _IP / _PORT / _USER / _PASS for any n"""
        utils.load_secrets()
        indexes = sorted(
            int(match.group(1))
            for key in os.environ
            if (match := re.fullmatch(r"SIMBANK_(\d+)_ID", key))
        )
        registry = cls()
        for i in indexes:
            bank_id = utils.get_secret(f"SIMBANK_{i}_ID")
            ip_address = utils.get_secret(f"SIMBANK_{i}_IP")
            if not (bank_id and ip_address):
                continue
            registry.add(
                SimBank(
                    bank_id=bank_id,
                    ip_address=ip_address,
                    port=int(utils.get_secret(f"SIMBANK_{i}_PORT") or 80),
                    username=utils.get_secret(f"SIMBANK_{i}_USER") or "root",
                    password=utils.get_secret(f"SIMBANK_{i}_PASS") or "root",
                )
            )
            logging.info("configured SIM bank %s at %s", bank_id, ip_address)
        if not registry:
            logging.warning("no SIM banks configured, check SIMBANK_1_ID etc")
        return registry


def slot_channel(slot: str) -> str:
    """'4.07' -> '4'. A slot without a position is already a channel."""
    return slot.split(".", 1)[0] if "." in slot else slot


def status_entries(data: Any) -> list[dict]:
    """The status endpoint answers with a bare list, or the list under "status" """
    if isinstance(data, dict):
        data = data.get("status", [])
    if not isinstance(data, list):
        return []
    return [entry for entry in data if isinstance(entry, dict)]


class SlotStatus:
    """One slot as the bank reports it. Never cached past a readiness check."""

    def __init__(self, blob: dict) -> None:
        self.blob = blob
        self.port = str(blob.get("port", ""))
        self.active = blob.get("active") in (1, "1", True)
        try:
            self.state = int(blob.get("st"))  # type: ignore
        except (TypeError, ValueError):
            self.state = -1
        self.status_text = PORT_STATUS.get(self.state, "Unknown")
        self.signal = blob.get("sig")
        self.balance = blob.get("bal") or "N/A"
        self.operator = blob.get("opr") or "N/A"
        self.phone_number = blob.get("sn") or "N/A"
        self.iccid: Optional[str] = blob.get("iccid") or None

    @property
    def registration_state(self) -> Optional[RegistrationState]:
        try:
            return RegistrationState(self.state)
        except ValueError:
            return None

    @property
    def ready(self) -> bool:
        return self.active and self.state == RegistrationState.READY

    def describe(self) -> str:
        return f"active={int(self.active)}, st={self.state} ({self.status_text})"

    def to_dict(self) -> dict[str, Any]:
        return {
            "port": self.port,
            "active": self.active,
            "st": self.state,
            "status_text": self.status_text,
            "signal": self.signal,
            "balance": self.balance,
            "operator": self.operator,
            "phone_number": self.phone_number,
            "iccid": self.iccid,
        }

    def __repr__(self) -> str:
        return f"<SlotStatus {self.port}: {self.describe()}>"


def index_to_port(index: int) -> str:
    """0 -> 1A, 1 -> 1B, 2 -> 2A"""
    return f"{index // 2 + 1}{'A' if index % 2 == 0 else 'B'}"


def status_code(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return -1


def port_entry(port: str, code: int) -> dict[str, Any]:
    return {"port": port, "status": code, "status_text": PORT_STATUS.get(code, "Unknown")}


def parse_port_status(data: Any) -> list[dict[str, Any]]:
    """
    Per-port registration codes from any of the shapes banks answer with:
    a bare list of codes (index 0 is port 1A), a {port: code} object,
    or per-slot entries, bare or under "status".
    """
    if isinstance(data, dict) and isinstance(data.get("status"), list):
        data = data["status"]
    if isinstance(data, list):
        return [
            port_entry(str(entry.get("port", index_to_port(index))), status_code(entry.get("st")))
            if isinstance(entry, dict)
            else port_entry(index_to_port(index), status_code(entry))
            for index, entry in enumerate(data)
        ]
    if isinstance(data, dict):
        return [port_entry(str(port), status_code(code)) for port, code in data.items()]
    return []


@dataclass
class BankStatus:
    bank_id: str
    online: bool
    ports: list[dict[str, Any]]
    error: Optional[str] = None

    @property
    def ready_count(self) -> int:
        return sum(1 for port in self.ports if port["status"] == RegistrationState.READY)


def same_phone(left: str, right: str) -> bool:
    """Compare digits with and without a leading US country code"""
    left_digits, right_digits = utils.digits_only(left), utils.digits_only(right)
    if not (left_digits and right_digits):
        return False
    return left_digits == right_digits or utils.ten_digits(left) == utils.ten_digits(
        right
    )


class SimBankClient:
    """Talks to SIM banks over HTTP. Every call carries its own short timeout."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        request_timeout: float = BANK_REQUEST_TIMEOUT,
    ) -> None:
        self.session = session
        self.request_timeout = request_timeout

    async def request_json(
        self,
        method: str,
        bank: SimBank,
        path: str,
        params: Optional[dict[str, str]] = None,
        body: Optional[dict] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        query = bank.credentials | (params or {})
        try:
            async with self.session.request(
                method,
                bank.url(path),
                params=query,
                json=body,
                timeout=aiohttp.ClientTimeout(total=timeout or self.request_timeout),
            ) as resp:
                raw_text = await resp.text()
                if resp.status >= 300:
                    raise TransportError(f"HTTP {resp.status}: {resp.reason}")
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransportError(
                f"{method} {path} on bank {bank.bank_id} failed: {e!r}"
            ) from e
        logging.debug("bank %s %s -> %s", bank.bank_id, path, raw_text[:256])
        try:
            return json.loads(raw_text) if raw_text.strip() else {}
        except json.JSONDecodeError as e:
            raise TransportError(f"Invalid JSON response: {raw_text[:200]}") from e

    async def all_slots(self, bank: SimBank) -> list[SlotStatus]:
        data = await self.request_json(
            "GET", bank, STATUS_PATH, params={"all_slots": "1"}
        )
        return [SlotStatus(entry) for entry in status_entries(data)]

    async def get_slot_status(self, bank: SimBank, slot: str) -> SlotStatus:
        for status in await self.all_slots(bank):
            if status.port == slot:
                return status
        raise TransportError(f"Slot {slot} not found in bank {bank.bank_id}")

    async def switch_slot(self, bank: SimBank, slot: str) -> None:
        """Ask the bank to put the SIM at `slot` ("channel.position") on air"""
        logging.info("switching bank %s to slot %s", bank.bank_id, slot)
        await self.request_json(
            "POST",
            bank,
            COMMAND_PATH,
            body={"type": "command", "op": "switch", "ports": slot},
        )

    async def post_sms(
        self, bank: SimBank, channel: int, to_digits: str, message: str, tid: int
    ) -> dict:
        body = {
            "type": "send-sms",
            "task_num": 1,
            "tasks": [{"tid": tid, "from": channel, "to": to_digits, "sms": message}],
        }
        response = await self.request_json("POST", bank, SEND_PATH, body=body)
        if not isinstance(response, dict):
            raise TransportError(f"unexpected send response: {response}")
        return response

    async def bank_status(self, bank: SimBank) -> BankStatus:
        """Overview of one bank. Offline banks are reported, not raised."""
        try:
            data = await self.request_json(
                "GET", bank, STATUS_PATH, timeout=OVERVIEW_TIMEOUT
            )
        except TransportError as e:
            logging.warning(termcolor.colored(f"bank {bank.bank_id} offline: {e}", "red"))
            return BankStatus(bank.bank_id, online=False, ports=[], error=str(e))
        return BankStatus(bank.bank_id, online=True, ports=parse_port_status(data))

    async def all_banks_status(self, registry: BankRegistry) -> list[BankStatus]:
        return list(
            await asyncio.gather(*(self.bank_status(bank) for bank in registry.all()))
        )

    async def count_active_sims(self, registry: BankRegistry) -> tuple[int, int]:
        """(ready, total) across every bank"""
        statuses = await self.all_banks_status(registry)
        total = sum(len(status.ports) for status in statuses)
        ready = sum(status.ready_count for status in statuses)
        return ready, total

    async def find_slot_by_phone(
        self, registry: BankRegistry, phone: str
    ) -> Optional[tuple[SimBank, SlotStatus]]:
        for bank in registry.all():
            try:
                slots = await self.all_slots(bank)
            except TransportError as e:
                logging.error("error querying bank %s: %s", bank.bank_id, e)
                continue
            for status in slots:
                if same_phone(status.phone_number, phone):
                    return bank, status
        return None
