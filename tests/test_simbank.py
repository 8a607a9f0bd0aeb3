# pylint: disable=redefined-outer-name
import os

import pytest

os.environ["ENV"] = "test"

from simgate.simbank import (
    BankNotFound,
    BankRegistry,
    RegistrationState,
    SimBank,
    SlotStatus,
    TransportError,
    parse_port_status,
    slot_channel,
    status_entries,
)
from tests.mockbank import BANK_ID


def test_registry_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SIMBANK_1_ID", "50001")
    monkeypatch.setenv("SIMBANK_1_IP", "10.0.0.1")
    monkeypatch.setenv("SIMBANK_7_ID", "50007")
    monkeypatch.setenv("SIMBANK_7_IP", "10.0.0.7")
    monkeypatch.setenv("SIMBANK_7_PORT", "8080")
    monkeypatch.setenv("SIMBANK_7_USER", "admin")
    monkeypatch.setenv("SIMBANK_9_ID", "no-ip")
    registry = BankRegistry.from_env()
    assert [bank.bank_id for bank in registry.all()] == ["50001", "50007"]
    assert registry.require("50001") == SimBank("50001", "10.0.0.1", 80, "root", "root")
    assert registry.require("50007").port == 8080
    assert registry.require("50007").username == "admin"
    with pytest.raises(BankNotFound):
        registry.require("no-ip")


def test_slot_status_parsing() -> None:
    status = SlotStatus({"port": "4.07", "active": "1", "st": "3", "sn": "15135559999"})
    assert status.ready
    assert status.registration_state is RegistrationState.READY
    assert status.status_text == "Registered - Ready"
    assert status.operator == "N/A"
    assert not SlotStatus({"port": "4.07", "active": 0, "st": 3}).ready
    assert not SlotStatus({"port": "4.07", "active": 1, "st": 2}).ready
    odd = SlotStatus({"port": "4.07", "st": "??"})
    assert odd.registration_state is None and odd.status_text == "Unknown"


def test_both_response_shapes() -> None:
    entries = [{"port": "1.01", "st": 3}, {"port": "1.02", "st": 0}]
    assert status_entries({"status": entries}) == entries
    assert status_entries(entries) == entries
    assert status_entries({"unexpected": True}) == []
    assert status_entries("nope") == []


def test_parse_port_status() -> None:
    assert parse_port_status([3, 0, 1]) == [
        {"port": "1A", "status": 3, "status_text": "Registered - Ready"},
        {"port": "1B", "status": 0, "status_text": "No SIM card"},
        {"port": "2A", "status": 1, "status_text": "Idle SIM present"},
    ]
    assert parse_port_status({"1A": "3"})[0]["status"] == 3
    assert parse_port_status({"status": [{"port": "4.07", "st": 3}]})[0]["port"] == "4.07"


def test_slot_channel() -> None:
    assert slot_channel("4.07") == "4"
    assert slot_channel("12") == "12"


@pytest.mark.asyncio
async def test_get_slot_status(fake_bank, client) -> None:
    status = await client.get_slot_status(fake_bank.bank(), "4.07")
    assert status.ready
    assert status.iccid == "8901260000000000001"
    fake_bank.wrap = False
    status = await client.get_slot_status(fake_bank.bank(), "4.01")
    assert not status.ready and status.state == RegistrationState.IDLE


@pytest.mark.asyncio
async def test_transport_errors(fake_bank, client) -> None:
    with pytest.raises(TransportError):
        await client.get_slot_status(fake_bank.bank(), "9.09")
    bad_password = SimBank(BANK_ID, "127.0.0.1", fake_bank.server.port, "root", "wrong")
    with pytest.raises(TransportError, match="401"):
        await client.get_slot_status(bad_password, "4.07")
    fake_bank.status_failures = 1
    with pytest.raises(TransportError, match="503"):
        await client.get_slot_status(fake_bank.bank(), "4.07")


@pytest.mark.asyncio
async def test_unreachable_bank_is_offline(client, unused_tcp_port) -> None:
    gone = SimBank("50099", "127.0.0.1", unused_tcp_port)
    with pytest.raises(TransportError):
        await client.get_slot_status(gone, "1.01")
    status = await client.bank_status(gone)
    assert not status.online and status.ports == [] and status.error


@pytest.mark.asyncio
async def test_overview(fake_bank, client, registry) -> None:
    [status] = await client.all_banks_status(registry)
    assert status.online
    assert status.ready_count == 1
    assert await client.count_active_sims(registry) == (1, 3)


@pytest.mark.asyncio
async def test_find_slot_by_phone(client, registry) -> None:
    found = await client.find_slot_by_phone(registry, "+15135550001")
    assert found
    bank, status = found
    assert bank.bank_id == BANK_ID and status.port == "4.01"
    assert await client.find_slot_by_phone(registry, "5135550001")
    assert await client.find_slot_by_phone(registry, "+15550000000") is None


@pytest.mark.asyncio
async def test_switch_slot(fake_bank, client) -> None:
    await client.switch_slot(fake_bank.bank(), "5.02")
    assert fake_bank.switches == ["5.02"]
