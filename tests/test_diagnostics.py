# pylint: disable=redefined-outer-name
import asyncio
import os

import pytest

os.environ["ENV"] = "test"

from simgate.diagnostics import SlotScan, SweepTest, WorkflowBusy, minutes_seconds
from simgate.simbank import BankNotFound, BankRegistry, SimBankError
from tests.mockbank import BANK_ID


@pytest.fixture()
def sweep(client, registry, notifier) -> SweepTest:
    return SweepTest(client, registry, notifier, channel="C-TEST", dwell=0.2, ports=3)


@pytest.fixture()
def scan(client, registry, notifier, sweep) -> SlotScan:
    scan = SlotScan(
        client,
        registry,
        notifier,
        channel="C-TEST",
        dwell=0.1,
        ports=4,
        positions=2,
        batch_size=3,
        batch_pause=0.01,
    )
    scan.rivals = [sweep]
    sweep.rivals = [scan]
    return scan


def test_minutes_seconds() -> None:
    assert minutes_seconds(0) == "0m 0s"
    assert minutes_seconds(125.4) == "2m 5s"


@pytest.mark.asyncio
async def test_sweep_counts_arrivals(sweep, fake_bank, notifier) -> None:
    sweep.record_arrival("sms", BANK_ID, "1.03")
    assert sweep.arrivals == []
    task = sweep.start(BANK_ID)
    await asyncio.sleep(0.05)
    sweep.record_arrival("sms", BANK_ID, "1.03")
    sweep.record_arrival("spam", BANK_ID, "2.03")
    report = await task
    assert sorted(fake_bank.switches) == ["1.03", "2.03", "3.03"]
    assert report["total"] == 2
    assert (report["sms"], report["spam"], report["verification"]) == (1, 1, 0)
    assert (report["switch_ok"], report["switch_failed"]) == (3, 0)
    assert report["time_to_last"] == "0m 0s"
    posts = notifier.in_channel("C-TEST")
    assert "Starting sweep test" in posts[0]
    assert "Sweep Test Results" in posts[-1]
    assert not sweep.running


@pytest.mark.asyncio
async def test_sweep_counts_failed_switches(sweep, fake_bank) -> None:
    fake_bank.switch_status = 500
    report = await sweep.start(BANK_ID)
    assert (report["switch_ok"], report["switch_failed"]) == (0, 3)
    assert report["time_to_last"] == "N/A"


@pytest.mark.asyncio
async def test_sweep_unknown_bank(sweep) -> None:
    with pytest.raises(BankNotFound):
        sweep.start("99999")
    assert not sweep.running


@pytest.mark.asyncio
async def test_one_diagnostic_at_a_time(sweep, scan) -> None:
    sweep.dwell = 5
    sweep.start(BANK_ID)
    with pytest.raises(WorkflowBusy):
        sweep.start(BANK_ID)
    with pytest.raises(WorkflowBusy, match="sweep test"):
        scan.start()
    assert await sweep.stop()
    assert not await sweep.stop()
    scan.dwell = 5
    scan.start()
    with pytest.raises(WorkflowBusy, match="slot scan"):
        sweep.start(BANK_ID)
    assert await scan.stop()


@pytest.mark.asyncio
async def test_scan_attributes_arrivals_to_positions(scan, fake_bank, notifier) -> None:
    task = scan.start()
    for _ in range(200):
        if scan.current_position() == 2:
            break
        await asyncio.sleep(0.005)
    scan.record_arrival("verification", BANK_ID, "3.02")
    report = await task
    assert report["by_position"] == {"01": 0, "02": 1}
    assert report["total"] == 1
    assert report["by_kind"] == {"verification": 1}
    assert len(fake_bank.switches) == 8
    assert {slot.split(".")[1] for slot in fake_bank.switches} == {"01", "02"}
    assert scan.current_position() == 0
    assert "Slot Scan Complete" in notifier.in_channel("C-TEST")[-1]


@pytest.mark.asyncio
async def test_scan_stop_posts_in_thread(scan, notifier) -> None:
    scan.dwell = 5
    scan.start()
    await asyncio.sleep(0.1)
    assert await scan.stop()
    [start] = [ts for channel, text, ts in notifier.posts if "Starting" in text]
    assert start is None
    assert any("stopped" in text for text in notifier.in_thread("1.000"))
    assert scan.current_position() == 0


@pytest.mark.asyncio
async def test_scan_needs_banks(client, notifier) -> None:
    scan = SlotScan(client, BankRegistry(), notifier, channel="C-TEST")
    with pytest.raises(SimBankError, match="No SIM banks"):
        scan.start()
