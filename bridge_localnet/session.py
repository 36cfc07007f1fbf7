"""Live harness state and its teardown.

- :py:class:`SessionState` holds both chains, their wallets and
  anchors, the deposit queues and the deployed bridge

- :py:class:`ShutdownCoordinator` stops every chain at most once, no
  matter whether the ``exit`` command or a signal got there first
"""

import logging
import signal
import threading
from dataclasses import dataclass

from eth_account.signers.local import LocalAccount
from eth_typing import HexAddress

from bridge_localnet.engine.base import AnchorHandle, DepositReceipt
from bridge_localnet.ledger import DepositLedger

logger = logging.getLogger(__name__)

#: Signals that tear the harness down
SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class ShutdownFailure(Exception):
    """A chain refused to stop."""


@dataclass(slots=True)
class ChainSlot:
    """Everything the harness keeps for one of the two chains."""

    #: Command letter, ``a`` or ``b``
    slot: str

    #: :py:class:`bridge_localnet.chain.LocalChain` or compatible
    chain: object

    #: Signs deposits and withdrawals on this chain
    wallet: LocalAccount

    #: Fixed deposit anchor of this chain
    anchor: AnchorHandle


class ShutdownCoordinator:
    """Stop chains exactly once.

    Safe to call from the command loop and from a signal path at the
    same time.
    """

    def __init__(self, chains: list):
        self.chains = list(chains)
        self.failures: list[ShutdownFailure] = []
        self._stopped: set[int] = set()
        self._lock = threading.Lock()

    @property
    def done(self) -> bool:
        return len(self._stopped) == len(self.chains)

    def shutdown(self, reason: str) -> list:
        """Stop every chain not stopped yet.

        SIGINT and SIGTERM are ignored while this runs, so an interrupt
        cannot abort the teardown halfway. Stop errors are logged and do
        not prevent stopping the rest. A chain is marked done only after
        its ``stop()`` has returned or raised an error.

        :return:
            Chains stopped by this call
        """
        stopped_now = []
        previous = ignore_signals()
        try:
            for chain in self.chains:
                with self._lock:
                    if id(chain) in self._stopped:
                        continue

                    logger.info("Stopping chain %s: %s", chain.name, reason)
                    try:
                        chain.stop()
                        stopped_now.append(chain)
                    except Exception as e:
                        failure = ShutdownFailure(f"Could not stop chain {chain.name}: {e}")
                        self.failures.append(failure)
                        logger.error("%s", failure, exc_info=e)

                    # A failed stop is not retried. An interrupt escaping
                    # stop() skips this, so the next caller tries again.
                    self._stopped.add(id(chain))
        finally:
            restore_signal_handlers(previous)

        return stopped_now


def _raise_keyboard_interrupt(signum, frame):
    raise KeyboardInterrupt(f"Received signal {signum}")


def install_signal_handlers() -> dict:
    """Turn SIGINT and SIGTERM into :py:class:`KeyboardInterrupt`.

    The interrupt aborts whatever command is running and unwinds to
    the harness ``finally`` block, which runs the same shutdown as
    the ``exit`` command.

    Must be called from the main thread.

    :return:
        Previous handlers, for :py:func:`restore_signal_handlers`
    """
    previous = {}
    for signum in SHUTDOWN_SIGNALS:
        previous[signum] = signal.signal(signum, _raise_keyboard_interrupt)
    return previous


def ignore_signals() -> dict:
    """Ignore SIGINT and SIGTERM until :py:func:`restore_signal_handlers`.

    Does nothing outside the main thread, where handlers cannot be changed.

    :return:
        Previous handlers
    """
    if threading.current_thread() is not threading.main_thread():
        return {}
    previous = {}
    for signum in SHUTDOWN_SIGNALS:
        previous[signum] = signal.signal(signum, signal.SIG_IGN)
    return previous


def restore_signal_handlers(previous: dict):
    for signum, handler in previous.items():
        signal.signal(signum, handler)


class SessionState:
    """Process-wide mutable state of a running harness."""

    def __init__(
        self,
        slots: list[ChainSlot],
        deployment,
        ledger: DepositLedger,
        recipient: HexAddress | str,
        denomination: int,
    ):
        assert len(slots) == 2, f"Harness runs exactly two chains, got {len(slots)}"
        self.slots = {s.slot: s for s in slots}
        self.deployment = deployment
        self.ledger = ledger
        self.recipient = recipient
        self.denomination = denomination
        self.shutdown_coordinator = ShutdownCoordinator([s.chain for s in slots])

    def get_slot(self, slot: str) -> ChainSlot:
        return self.slots[slot]

    def get_other_slot(self, slot: str) -> ChainSlot:
        (other,) = [s for name, s in self.slots.items() if name != slot]
        return other

    def deposit(self, slot: str) -> DepositReceipt:
        """Deposit on ``slot`` towards the other chain and queue the receipt."""
        source = self.get_slot(slot)
        destination = self.get_other_slot(slot)
        receipt = source.anchor.deposit(destination.chain.chain_id)
        self.ledger.push(slot, receipt)
        return receipt

    def withdraw(self, slot: str) -> bool:
        """Withdraw on ``slot`` a deposit that was made on the other chain.

        :raise bridge_localnet.ledger.NoQueuedDeposits:
            Other chain has no deposits queued
        """
        destination = self.get_slot(slot)
        origin = self.get_other_slot(slot)
        receipt = self.ledger.pop(origin.slot)
        assert receipt.origin_chain_id == origin.chain.chain_id, f"Receipt from chain {receipt.origin_chain_id} queued under {origin.slot}"
        return self.deployment.bridge.withdraw(
            receipt,
            self.denomination,
            self.recipient,
            destination.wallet.address,
            destination.wallet,
        )
