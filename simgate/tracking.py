"""Short-lived in-memory state. Each holder owns its map and its clock."""
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from simgate import utils
from simgate.chat import ChatRef
from simgate.simbank import slot_channel

DELIVERY_WINDOW = 5 * 60
ACTIVATION_WINDOW = 10 * 60

Clock = Callable[[], float]


class DeliveryTracker:
    """Outbound replies waiting on a delivery report, by destination number"""

    def __init__(self, window: float = DELIVERY_WINDOW, clock: Clock = time.monotonic) -> None:
        self.window = window
        self.clock = clock
        self.pending: dict[str, tuple[ChatRef, float]] = {}

    def track(self, phone: str, ref: ChatRef) -> None:
        now = self.clock()
        for key in [k for k, (_, ts) in self.pending.items() if now - ts > self.window]:
            del self.pending[key]
        self.pending[utils.ten_digits(phone)] = (ref, now)

    def resolve(self, phone: str) -> Optional[ChatRef]:
        """Pop the tracked message for `phone`, if it hasn't expired"""
        entry = self.pending.pop(utils.ten_digits(phone), None)
        if not entry:
            return None
        ref, ts = entry
        if self.clock() - ts > self.window:
            return None
        return ref


@dataclass
class ActivationWatch:
    phone: str
    thread: ChatRef
    bank_id: str
    slot: str
    expires: float


class ActivationWatches:
    """Provisioning in progress: inbound SMS to these numbers get mirrored to a thread"""

    def __init__(self, window: float = ACTIVATION_WINDOW, clock: Clock = time.monotonic) -> None:
        self.window = window
        self.clock = clock
        self.watches: dict[str, ActivationWatch] = {}

    def open(self, phone: str, thread: ChatRef, bank_id: str, slot: str) -> ActivationWatch:
        watch = ActivationWatch(phone, thread, bank_id, slot, self.clock() + self.window)
        self.watches[utils.ten_digits(phone)] = watch
        logging.info("watching %s for %ss", phone, self.window)
        return watch

    def get(self, phone: str) -> Optional[ActivationWatch]:
        key = utils.ten_digits(phone)
        watch = self.watches.get(key)
        if watch and self.clock() >= watch.expires:
            # left in place for expire() to close out
            return None
        return watch

    def complete(self, phone: str) -> Optional[ActivationWatch]:
        """Close the watch on `phone` early, returning it if one was open"""
        watch = self.get(phone)
        if watch:
            del self.watches[utils.ten_digits(phone)]
        return watch

    def expire(self, watch: ActivationWatch) -> bool:
        """Drop `watch` unless it was already completed or replaced"""
        key = utils.ten_digits(watch.phone)
        if self.watches.get(key) is watch:
            del self.watches[key]
            return True
        return False


class LastKnownSlots:
    """(bank, channel) -> the position last seen receiving"""

    def __init__(self) -> None:
        self.slots: dict[tuple[str, str], str] = {}

    def record(self, bank_id: str, slot: str) -> None:
        if "." in slot:
            self.slots[(bank_id, slot_channel(slot))] = slot

    def get(self, bank_id: str, channel: str) -> Optional[str]:
        return self.slots.get((bank_id, channel))
