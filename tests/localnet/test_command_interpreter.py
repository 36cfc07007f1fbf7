"""Command loop against a simulated bridge on in-memory chains."""

import io

import pytest

from bridge_localnet.commands import CommandGrammar, CommandInterpreter, CommandParseFailure, CommandVerb
from bridge_localnet.config import DEFAULT_RECIPIENT, ETHER
from bridge_localnet.session import SessionState


@pytest.fixture()
def out() -> io.StringIO:
    return io.StringIO()


@pytest.fixture()
def interpreter(session: SessionState, out) -> CommandInterpreter:
    return CommandInterpreter(session, CommandGrammar(), out=out)


def _recipient_balance(session: SessionState, slot: str) -> int:
    chain_id = session.get_slot(slot).chain.chain_id
    return session.deployment.webb_tokens[chain_id].balance_of(DEFAULT_RECIPIENT)


@pytest.mark.parametrize(
    "line,verb,slot,target,count",
    [
        ("deposit on chain a", CommandVerb.deposit, "a", None, None),
        ("deposit on chain b please", CommandVerb.deposit, "b", None, None),
        ("relay from a to b", CommandVerb.relay, "a", "b", None),
        ("relay from b to a", CommandVerb.relay, "b", "a", None),
        ("withdraw on chain b", CommandVerb.withdraw, "b", None, None),
        ("root on chain a", CommandVerb.root, "a", None, None),
        ("spam chain b 12", CommandVerb.spam, "b", None, 12),
        ("exit", CommandVerb.exit, None, None, None),
        ("  exit  \n", CommandVerb.exit, None, None, None),
    ],
)
def test_parse_commands(line, verb, slot, target, count):
    command = CommandGrammar().parse(line)
    assert command.verb == verb
    assert command.slot == slot
    assert command.target_slot == target
    assert command.count == count


@pytest.mark.parametrize(
    "line",
    [
        "deposit on chain c",
        "Deposit on chain a",
        "relay from a to a",
        "spam chain a",
        "spam chain a 5 now",
        "spam chain a -1",
        "exit now",
        "hello",
    ],
)
def test_parse_rejects(line):
    with pytest.raises(CommandParseFailure):
        CommandGrammar().parse(line)


def test_menu_lists_every_command():
    menu = CommandGrammar().format_menu()
    assert "deposit on chain a" in menu
    assert "relay from b to a" in menu
    assert "spam chain b <txs>" in menu
    assert menu[-1] == "exit"


def test_deposit_changes_root(session: SessionState, interpreter: CommandInterpreter, out):
    anchor = session.get_slot("a").anchor
    root_before = anchor.get_last_root()

    result = interpreter.execute("deposit on chain a")

    assert result.success
    assert anchor.get_last_root() != root_before
    assert session.ledger.count("a") == 1
    assert session.ledger.count("b") == 0
    assert "Depositing Chain A, please wait..." in out.getvalue()


def test_deposit_relay_withdraw(session: SessionState, interpreter: CommandInterpreter):
    assert interpreter.execute("deposit on chain a").success
    assert interpreter.execute("relay from a to b").success

    result = interpreter.execute("withdraw on chain b")
    assert result.success
    assert result.message == "withdraw success"
    assert _recipient_balance(session, "b") == 1 * ETHER
    assert len(session.ledger) == 0


def test_withdraw_without_relay_fails(session: SessionState, interpreter: CommandInterpreter):
    interpreter.execute("deposit on chain a")

    result = interpreter.execute("withdraw on chain b")
    assert not result.success
    assert result.message == "withdraw failure"
    assert _recipient_balance(session, "b") == 0


def test_withdraw_with_empty_queue_continues(session: SessionState, interpreter: CommandInterpreter, out):
    processed = interpreter.run(["withdraw on chain a", "deposit on chain b", "root on chain b"])
    assert processed == 3

    output = out.getvalue()
    assert "ERROR: withdraw failure" in output
    assert "Root on chain B (signature):" in output
    assert session.ledger.count("b") == 1


def test_spam_queues_distinct_deposits(session: SessionState, interpreter: CommandInterpreter, out):
    result = interpreter.execute("spam chain a 5")

    assert result.success
    receipts = result.payload
    assert len(receipts) == 5
    assert len({r.commitment for r in receipts}) == 5
    assert [r.leaf_index for r in receipts] == [0, 1, 2, 3, 4]
    assert session.ledger.count("a") == 5

    output = out.getvalue()
    assert "Spamming Chain A with 5 Tx, please wait..." in output
    printed = [line for line in output.splitlines() if line.startswith("Deposit on chain A (signature):")]
    assert len(printed) == 5
    assert len(set(printed)) == 5
    for receipt in receipts:
        assert any(receipt.commitment.hex() in line for line in printed)


def test_unknown_command_prints_menu(interpreter: CommandInterpreter, out):
    interpreter.run(["fly to the moon"])
    output = out.getvalue()
    assert "ERROR: Unknown command: fly to the moon" in output
    assert "Available commands:" in output
    assert "  withdraw on chain a" in output


def test_root_shows_relayed_neighbor_root(session: SessionState, interpreter: CommandInterpreter):
    interpreter.execute("deposit on chain b")
    interpreter.execute("relay from b to a")

    result = interpreter.execute("root on chain a")
    _, neighbor_roots = result.payload
    assert neighbor_roots == [session.get_slot("b").anchor.get_last_root()]


def test_exit_stops_chains_once(session: SessionState, interpreter: CommandInterpreter, chain_a, chain_b):
    processed = interpreter.run(["exit", "deposit on chain a"])

    assert processed == 1
    assert session.ledger.count("a") == 0

    # Harness teardown runs the same shutdown again
    session.shutdown_coordinator.shutdown("harness exit")
    assert chain_a.stop_calls == 1
    assert chain_b.stop_calls == 1


def test_relay_failure_is_partial(session: SessionState, interpreter: CommandInterpreter, monkeypatch, out):
    anchor = session.get_slot("a").anchor
    synced_before = anchor.latest_synced_block

    def broken_update(anchor):
        raise RuntimeError("governor offline")

    monkeypatch.setattr(session.deployment.bridge, "update_linked_anchors", broken_update)

    interpreter.execute("deposit on chain a")
    result = interpreter.execute("relay from a to b")

    assert not result.success
    assert result.partial
    assert "governor offline" in result.message
    # Resync went through
    assert anchor.latest_synced_block > synced_before
    assert session.get_slot("b").anchor.get_latest_neighbor_roots() != [anchor.get_last_root()]


def test_lifo_withdraws_latest_deposit(session: SessionState, interpreter: CommandInterpreter):
    interpreter.execute("deposit on chain a")
    interpreter.execute("relay from a to b")
    second = interpreter.execute("deposit on chain a").payload

    # Newest deposit is not yet covered by a relayed root
    assert interpreter.execute("withdraw on chain b").message == "withdraw failure"
    assert second.leaf_index == 1
    assert session.ledger.count("a") == 1


def test_two_chain_scenario(session: SessionState, interpreter: CommandInterpreter, out):
    """Deposits both ways, relays both ways, withdraws both ways."""
    interpreter.run(
        [
            "deposit on chain a",
            "deposit on chain b",
            "relay from a to b",
            "relay from b to a",
            "withdraw on chain b",
            "withdraw on chain a",
            "withdraw on chain a",
        ]
    )

    output = out.getvalue()
    assert output.count("withdraw success") == 2
    assert "ERROR: withdraw failure: No deposits queued" in output
    assert _recipient_balance(session, "a") == 1 * ETHER
    assert _recipient_balance(session, "b") == 1 * ETHER
