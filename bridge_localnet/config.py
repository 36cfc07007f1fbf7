"""Harness configuration.

Values are looked up in this order:

1. Process environment
2. ``.env`` file in the working directory
3. Built-in defaults

Environment variables
---------------------

``RELAYER_PRIVATE_KEY``
    Key of the wallet that deploys, governs and signs on both chains.

``SENDER_PRIVATE_KEY``, ``EXTRA_PRIVATE_KEY``
    Other accounts funded at chain creation.

``RECIPIENT``
    Address withdrawals are paid to.

``CHAIN_A_PORT``, ``CHAIN_B_PORT``
    JSON-RPC ports. Default to the chain network ids 5001 and 5002.

``BLOCK_TIME``
    Seconds between blocks. Default ``1``.

``CIRCUIT_FIXTURES``
    Folder holding ``anchor/2/`` circuit files.
    Default ``protocol-solidity-fixtures/fixtures``.

``WITHDRAWAL_ORDER``
    ``lifo`` (default) or ``fifo``.

``ANVIL_CMD``
    Anvil binary. Default ``anvil``.

``LOG_LEVEL``
    Console log level, e.g. ``debug``. Read at logging setup.

.. warning::

    The default keys are well-known test keys. Never use them
    on a network holding anything of value.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import dotenv_values
from eth_account import Account
from web3 import Web3

from bridge_localnet.chain import LedgerAccount
from bridge_localnet.commands import CommandGrammar
from bridge_localnet.ledger import WithdrawalOrder

logger = logging.getLogger(__name__)

#: 1 ether in wei
ETHER = 10**18

DEFAULT_RELAYER_PRIVATE_KEY = "0x0000000000000000000000000000000000000000000000000000000000000001"
DEFAULT_SENDER_PRIVATE_KEY = "0x0000000000000000000000000000000000000000000000000000000000000002"
DEFAULT_EXTRA_PRIVATE_KEY = "0xc0d375903fd6f6ad3edafc2c5428900c0757ce1da10e5dd864fe387b32b91d7e"

#: Where withdrawals go unless ``RECIPIENT`` is set
DEFAULT_RECIPIENT = "0xd644f5331a6F26A7943CEEbB772e505cDDd21700"

DEFAULT_FIXTURES_DIR = Path("protocol-solidity-fixtures") / "fixtures"


@dataclass(slots=True)
class ChainConfig:
    """One of the two harness chains."""

    name: str
    evm_id: int

    #: JSON-RPC port
    port: int

    #: Token deployed on the chain before the bridge
    token_name: str
    token_symbol: str

    #: Addresses that get wrapped tokens minted after deployment
    extra_mint_recipients: list[str] = field(default_factory=list)


def _default_chain_a() -> ChainConfig:
    return ChainConfig("Hermes", 5001, 5001, "ChainA", "webbA", ["0x510C6297cC30A058F41eb4AF1BFC9953EaD8b577"])


def _default_chain_b() -> ChainConfig:
    return ChainConfig("Athena", 5002, 5002, "ChainB", "webbB", ["0x7758F98C1c487E5653795470eEab6C4698bE541b"])


@dataclass(slots=True)
class LocalnetConfig:
    """Everything the harness needs to boot."""

    chain_a: ChainConfig = field(default_factory=_default_chain_a)
    chain_b: ChainConfig = field(default_factory=_default_chain_b)

    relayer_private_key: str = DEFAULT_RELAYER_PRIVATE_KEY
    sender_private_key: str = DEFAULT_SENDER_PRIVATE_KEY
    extra_private_key: str = DEFAULT_EXTRA_PRIVATE_KEY

    recipient: str = DEFAULT_RECIPIENT

    #: Native balance of every seeded account
    initial_balance: int = 1000 * ETHER

    #: Anchor size, also the withdrawal amount
    denomination: int = 1 * ETHER

    #: Wrapped tokens minted to each wallet and extra recipient
    mint_amount: int = 1000 * ETHER

    #: Value of the nonce priming transfer on chain A
    priming_transfer: int = ETHER // 1000

    block_time: int = 1
    launch_wait_seconds: float = 20.0
    anvil_cmd: str = "anvil"

    fixtures_dir: Path = DEFAULT_FIXTURES_DIR
    withdrawal_order: WithdrawalOrder = WithdrawalOrder.lifo
    grammar: CommandGrammar = field(default_factory=CommandGrammar)

    def get_initial_accounts(self) -> list[LedgerAccount]:
        return [
            LedgerAccount(self.relayer_private_key, self.initial_balance),
            LedgerAccount(self.sender_private_key, self.initial_balance),
            LedgerAccount(self.extra_private_key, self.initial_balance),
        ]

    def get_chain_configs(self) -> dict[str, ChainConfig]:
        """Chain configs keyed by command slot letter."""
        a, b = self.grammar.slots
        return {a: self.chain_a, b: self.chain_b}


def load_config(environ: dict | None = None, dotenv_path: str | Path | None = ".env") -> LocalnetConfig:
    """Read the harness configuration.

    :param environ:
        Use instead of ``os.environ``

    :param dotenv_path:
        ``.env`` file to read, ``None`` to skip

    :raise AssertionError:
        Malformed value
    """
    values = {}
    if dotenv_path is not None and Path(dotenv_path).exists():
        values.update({k: v for k, v in dotenv_values(dotenv_path).items() if v is not None})
    values.update(os.environ if environ is None else environ)

    config = LocalnetConfig()

    for key, attr in (
        ("RELAYER_PRIVATE_KEY", "relayer_private_key"),
        ("SENDER_PRIVATE_KEY", "sender_private_key"),
        ("EXTRA_PRIVATE_KEY", "extra_private_key"),
    ):
        if values.get(key):
            private_key = values[key]
            try:
                Account.from_key(private_key)
            except Exception as e:
                raise AssertionError(f"{key} is not a valid private key") from e
            setattr(config, attr, private_key)

    if values.get("RECIPIENT"):
        recipient = values["RECIPIENT"]
        assert Web3.is_address(recipient), f"RECIPIENT is not an address: {recipient}"
        config.recipient = Web3.to_checksum_address(recipient)

    for key, chain in (("CHAIN_A_PORT", config.chain_a), ("CHAIN_B_PORT", config.chain_b)):
        if values.get(key):
            assert values[key].isdigit(), f"{key} must be a port number, got {values[key]}"
            chain.port = int(values[key])

    assert config.chain_a.port != config.chain_b.port, f"Both chains configured on port {config.chain_a.port}"

    if values.get("BLOCK_TIME"):
        assert values["BLOCK_TIME"].isdigit() and int(values["BLOCK_TIME"]) > 0, f"BLOCK_TIME must be a positive integer, got {values['BLOCK_TIME']}"
        config.block_time = int(values["BLOCK_TIME"])

    if values.get("CIRCUIT_FIXTURES"):
        config.fixtures_dir = Path(values["CIRCUIT_FIXTURES"]).expanduser()

    if values.get("WITHDRAWAL_ORDER"):
        order = values["WITHDRAWAL_ORDER"].lower()
        assert order in ("lifo", "fifo"), f"WITHDRAWAL_ORDER must be 'lifo' or 'fifo', got '{order}'"
        config.withdrawal_order = WithdrawalOrder(order)

    if values.get("ANVIL_CMD"):
        config.anvil_cmd = values["ANVIL_CMD"]

    logger.info(
        "Config: chain A %s:%d, chain B %s:%d, fixtures %s, withdrawal order %s",
        config.chain_a.name,
        config.chain_a.port,
        config.chain_b.name,
        config.chain_b.port,
        config.fixtures_dir,
        config.withdrawal_order.value,
    )
    return config
