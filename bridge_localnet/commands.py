"""Interactive command loop.

Reads one command per line and runs it to completion before reading
the next one. A command that fails is reported and the loop goes on;
only ``exit`` (or the end of input) stops it.

Recognised commands::

    deposit on chain a|b
    relay from a to b | relay from b to a
    withdraw on chain a|b
    root on chain a|b
    spam chain a|b <txs>
    exit

Every handler returns a :py:class:`CommandResult`, which the loop prints.
"""

import enum
import logging
import re
import sys
from dataclasses import dataclass
from typing import Any, Iterable, TextIO

from bridge_localnet.engine.base import BridgeEngineError
from bridge_localnet.ledger import NoQueuedDeposits
from bridge_localnet.session import SessionState

logger = logging.getLogger(__name__)


class CommandParseFailure(Exception):
    """Input line is not a command we know."""


class OperationFailure(Exception):
    """A command was rejected by a chain or the bridge."""


class RelayPartialFailure(OperationFailure):
    """Source anchor was resynced but the root was not propagated."""


class CommandVerb(enum.Enum):
    deposit = "deposit"
    relay = "relay"
    withdraw = "withdraw"
    root = "root"
    spam = "spam"
    exit = "exit"


@dataclass(slots=True, frozen=True)
class ParsedCommand:
    verb: CommandVerb

    #: Chain slot the command runs on, or relays from
    slot: str | None = None

    #: Relay destination slot
    target_slot: str | None = None

    #: Spam transaction count
    count: int | None = None


@dataclass(slots=True)
class CommandResult:
    """Outcome of one command."""

    success: bool
    message: str

    #: Whatever the command produced, e.g. receipts
    payload: Any = None

    #: Stop the command loop after this command
    stop: bool = False

    #: Some of the command's steps were applied before it failed
    partial: bool = False

    #: Print the command menu after the message
    show_menu: bool = False


@dataclass(slots=True)
class CommandGrammar:
    """Command words the interpreter understands.

    Matching is case-sensitive. All commands but ``spam`` match on prefix,
    ``spam`` must match the whole line.
    """

    #: Letters naming the two chains, first is chain A
    slots: tuple[str, str] = ("a", "b")

    deposit_prefix: str = "deposit on chain {slot}"
    relay_prefix: str = "relay from {slot} to {target}"
    withdraw_prefix: str = "withdraw on chain {slot}"
    root_prefix: str = "root on chain {slot}"
    spam_pattern: str = r"^spam chain {slot} (\d+)$"
    exit_word: str = "exit"

    def other(self, slot: str) -> str:
        a, b = self.slots
        return b if slot == a else a

    def parse(self, line: str) -> ParsedCommand:
        """Turn an input line into a command.

        :raise CommandParseFailure:
            Unknown command
        """
        cmd = line.strip()

        if cmd == self.exit_word:
            return ParsedCommand(CommandVerb.exit)

        for slot in self.slots:
            if cmd.startswith(self.deposit_prefix.format(slot=slot)):
                return ParsedCommand(CommandVerb.deposit, slot=slot)

            if cmd.startswith(self.relay_prefix.format(slot=slot, target=self.other(slot))):
                return ParsedCommand(CommandVerb.relay, slot=slot, target_slot=self.other(slot))

            if cmd.startswith(self.withdraw_prefix.format(slot=slot)):
                return ParsedCommand(CommandVerb.withdraw, slot=slot)

            if cmd.startswith(self.root_prefix.format(slot=slot)):
                return ParsedCommand(CommandVerb.root, slot=slot)

            match = re.match(self.spam_pattern.format(slot=re.escape(slot)), cmd)
            if match:
                return ParsedCommand(CommandVerb.spam, slot=slot, count=int(match.group(1)))

        raise CommandParseFailure(f"Unknown command: {cmd}")

    def format_menu(self) -> list[str]:
        a, b = self.slots
        lines = []
        for slot in self.slots:
            lines.append(self.deposit_prefix.format(slot=slot))
        lines.append(self.relay_prefix.format(slot=a, target=b))
        lines.append(self.relay_prefix.format(slot=b, target=a))
        for slot in self.slots:
            lines.append(self.withdraw_prefix.format(slot=slot))
        for slot in self.slots:
            lines.append(self.root_prefix.format(slot=slot))
        for slot in self.slots:
            lines.append(f"spam chain {slot} <txs>")
        lines.append(self.exit_word)
        return lines


def print_available_commands(grammar: CommandGrammar, out: TextIO = sys.stdout):
    print("Available commands:", file=out)
    for line in grammar.format_menu():
        print(f"  {line}", file=out)


class CommandInterpreter:
    """Runs commands against a session, one at a time, in input order."""

    def __init__(self, session: SessionState, grammar: CommandGrammar | None = None, out: TextIO = sys.stdout):
        self.session = session
        self.grammar = grammar or CommandGrammar()
        self.out = out
        self.handlers = {
            CommandVerb.deposit: self.handle_deposit,
            CommandVerb.relay: self.handle_relay,
            CommandVerb.withdraw: self.handle_withdraw,
            CommandVerb.root: self.handle_root,
            CommandVerb.spam: self.handle_spam,
            CommandVerb.exit: self.handle_exit,
        }

    def _print(self, *args):
        print(*args, file=self.out)

    def execute(self, line: str) -> CommandResult:
        """Run one input line.

        Never raises for parse or operation failures.
        """
        try:
            command = self.grammar.parse(line)
        except CommandParseFailure as e:
            logger.info("%s", e)
            return CommandResult(False, str(e), show_menu=True)

        handler = self.handlers[command.verb]
        try:
            return handler(command)
        except RelayPartialFailure as e:
            logger.error("Relay partially applied: %s", e)
            return CommandResult(False, str(e), partial=True)
        except (OperationFailure, BridgeEngineError, NoQueuedDeposits) as e:
            logger.error("Command %r failed: %s", line.strip(), e)
            return CommandResult(False, str(e))
        except Exception as e:
            # Chain RPC errors and the like
            logger.exception("Command %r crashed", line.strip())
            return CommandResult(False, f"{e.__class__.__name__}: {e}")

    def report(self, result: CommandResult):
        if result.success:
            if result.message:
                self._print(result.message)
            return

        self._print(f"ERROR: {result.message}")
        if result.show_menu:
            print_available_commands(self.grammar, self.out)

    def run(self, lines: Iterable[str]) -> int:
        """Process lines until ``exit`` or end of input.

        :return:
            Number of commands processed
        """
        processed = 0
        for line in lines:
            if not line.strip():
                continue
            result = self.execute(line)
            self.report(result)
            processed += 1
            if result.stop:
                break
        return processed

    def handle_deposit(self, command: ParsedCommand) -> CommandResult:
        slot = self.session.get_slot(command.slot)
        self._print(f"Depositing Chain {command.slot.upper()}, please wait...")
        receipt = self.session.deposit(command.slot)
        return CommandResult(True, f"Deposit on chain {command.slot.upper()} ({slot.chain.name}): {receipt}", payload=receipt)

    def handle_relay(self, command: ParsedCommand) -> CommandResult:
        source = self.session.get_slot(command.slot)
        anchor = source.anchor

        anchor.update(anchor.latest_synced_block)

        try:
            self.session.deployment.bridge.update_linked_anchors(anchor)
        except Exception as e:
            raise RelayPartialFailure(f"Anchor on chain {command.slot.upper()} resynced to block {anchor.latest_synced_block} but root was not relayed to chain {command.target_slot.upper()}: {e}") from e

        root = anchor.get_last_root()
        return CommandResult(True, f"Relayed root {root.hex()} from chain {command.slot.upper()} to chain {command.target_slot.upper()}", payload=root)

    def handle_withdraw(self, command: ParsedCommand) -> CommandResult:
        try:
            result = self.session.withdraw(command.slot)
        except (NoQueuedDeposits, BridgeEngineError) as e:
            logger.error("Withdraw on chain %s rejected: %s", command.slot, e)
            return CommandResult(False, f"withdraw failure: {e}", payload=False)

        return CommandResult(result, "withdraw success" if result else "withdraw failure", payload=result)

    def handle_root(self, command: ParsedCommand) -> CommandResult:
        slot = self.session.get_slot(command.slot)
        self._print(f"Root on chain {command.slot.upper()} (signature), please wait...")
        root = slot.anchor.get_last_root()
        neighbor_roots = slot.anchor.get_latest_neighbor_roots()
        lines = [
            f"Root on chain {command.slot.upper()} (signature): {root.hex()}",
            f"Latest neighbor roots on chain {command.slot.upper()} (signature): {[r.hex() for r in neighbor_roots]}",
        ]
        return CommandResult(True, "\n".join(lines), payload=(root, neighbor_roots))

    def handle_spam(self, command: ParsedCommand) -> CommandResult:
        self._print(f"Spamming Chain {command.slot.upper()} with {command.count} Tx, please wait...")
        receipts = []
        for _ in range(command.count):
            receipt = self.session.deposit(command.slot)
            receipts.append(receipt)
            self._print(f"Deposit on chain {command.slot.upper()} (signature): {receipt}")
        return CommandResult(True, f"Made {len(receipts)} deposits on chain {command.slot.upper()}", payload=receipts)

    def handle_exit(self, command: ParsedCommand) -> CommandResult:
        self.session.shutdown_coordinator.shutdown("exit command")
        return CommandResult(True, "Bye", stop=True)
