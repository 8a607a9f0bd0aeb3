# pylint: disable=redefined-outer-name
import os

import aiohttp
import pytest
import pytest_asyncio

os.environ["ENV"] = "test"

from simgate.core import Gateway
from simgate.readiness import SlotReadinessController
from simgate.router import Channels
from simgate.simbank import BankRegistry, SimBankClient
from simgate.tables import (
    BlockedManager,
    Blocklist,
    ConversationManager,
    ConversationStore,
    MessageManager,
)
from tests.mockbank import (
    FakeBank,
    MemoryDatabase,
    RecordingNotifier,
    StubClassifier,
    slot_blob,
)

OUR_SIM = "+15135559999"


@pytest_asyncio.fixture()
async def fake_bank():
    bank = FakeBank(
        [
            slot_blob("4.07", active=1, st=3, sn="15135559999", iccid="8901260000000000001"),
            slot_blob("4.01", active=0, st=1, sn="15135550001"),
            slot_blob("5.02", active=0, st=0),
        ]
    )
    await bank.start()
    yield bank
    await bank.close()


@pytest_asyncio.fixture()
async def session():
    async with aiohttp.ClientSession() as client_session:
        yield client_session


@pytest.fixture()
def registry(fake_bank) -> BankRegistry:
    return BankRegistry([fake_bank.bank()])


@pytest.fixture()
def client(session) -> SimBankClient:
    return SimBankClient(session, request_timeout=2)


@pytest.fixture()
def db() -> MemoryDatabase:
    return MemoryDatabase()


@pytest.fixture()
def store(db) -> ConversationStore:
    return ConversationStore(
        ConversationManager(database=db.conversation_handlers()),
        MessageManager(database=db.message_handlers()),
    )


@pytest.fixture()
def blocklist(db) -> Blocklist:
    return Blocklist(BlockedManager(database=db.blocked_handlers()))


@pytest.fixture()
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture()
def classifier() -> StubClassifier:
    return StubClassifier()


@pytest.fixture()
def channels() -> Channels:
    return Channels(chat="C-SMS", spam="C-SPAM", verification="C-VERIFY")


@pytest_asyncio.fixture()
async def gateway(registry, client, store, blocklist, notifier, classifier, channels):
    gw = Gateway(
        registry,
        client,
        store,
        blocklist,
        notifier,
        classifier,
        channels=channels,
        readiness=SlotReadinessController(client, timeout=1, poll_interval=0.05),
    )
    gw.sender.base_delay = 0.01
    yield gw
    await gw.close()
