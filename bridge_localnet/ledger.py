"""Per-chain queues of deposits waiting to be withdrawn."""

import enum
import logging
from collections import deque

from bridge_localnet.engine.base import DepositReceipt

logger = logging.getLogger(__name__)


class NoQueuedDeposits(LookupError):
    """Nothing to withdraw from this chain's queue."""


class WithdrawalOrder(enum.Enum):
    """Which queued deposit a withdrawal consumes."""

    #: Most recent deposit first
    lifo = "lifo"

    #: Oldest deposit first
    fifo = "fifo"


class DepositLedger:
    """Deposit receipts keyed by the chain slot they were made on.

    A receipt is only ever queued under its origin chain.
    """

    def __init__(self, slots: list[str], order: WithdrawalOrder = WithdrawalOrder.lifo):
        self.order = order
        self.queues: dict[str, deque[DepositReceipt]] = {slot: deque() for slot in slots}

    def __len__(self) -> int:
        return sum(len(q) for q in self.queues.values())

    def count(self, slot: str) -> int:
        return len(self.queues[slot])

    def push(self, slot: str, receipt: DepositReceipt):
        self.queues[slot].append(receipt)
        logger.debug("Queued deposit %s under %s, %d queued", receipt.commitment.hex(), slot, len(self.queues[slot]))

    def pop(self, slot: str) -> DepositReceipt:
        """Take the next receipt according to :py:attr:`order`.

        :raise NoQueuedDeposits:
            The queue is empty
        """
        queue = self.queues[slot]
        if not queue:
            raise NoQueuedDeposits(f"No deposits queued on chain {slot}")
        if self.order == WithdrawalOrder.lifo:
            return queue.pop()
        return queue.popleft()
