"""Local chains of the harness.

A :py:class:`LocalChain` is one ephemeral network: an Anvil process,
a JSON-RPC connection to it, and the typed chain id the bridge
protocol uses to address it.

Use :py:func:`create_local_chain` to get one. It does not return
before the backend answers JSON-RPC, so the first transaction
never races an unbound port.
"""

import enum
import logging
from dataclasses import dataclass

from eth_typing import HexAddress
from web3 import HTTPProvider, Web3

from bridge_localnet.provider.anvil import (
    DEFAULT_LAUNCH_WAIT_SECONDS,
    LedgerLaunch,
    LedgerLaunchFailed,
    launch_ledger,
    seed_accounts,
)

logger = logging.getLogger(__name__)


class StartupFailure(Exception):
    """A chain backend could not be started or reached.

    Fatal for the harness.
    """


class ChainType(enum.IntEnum):
    """Chain type prefixes of typed chain ids."""

    evm = 0x0100
    substrate = 0x0200
    polkadot_relay_chain = 0x0301
    kusama_relay_chain = 0x0302
    cosmos = 0x0400
    solana = 0x0500


def get_chain_id_type(chain_id: int, chain_type: ChainType = ChainType.evm) -> int:
    """Compute the typed chain id the bridge uses for a network.

    The typed id is 6 bytes: 2 bytes of chain type followed by
    the 4 byte network id.

    .. code-block:: python

        assert get_chain_id_type(5001) == 0x010000001389

    :param chain_id:
        EVM chain id / network identity. Must fit in 32 bits.

    :return:
        Typed chain id as an integer
    """
    assert type(chain_id) == int, f"Got {type(chain_id)}: {chain_id}"
    assert 0 <= chain_id < 2**32, f"Chain id does not fit in 4 bytes: {chain_id}"
    return (int(chain_type) << 32) | chain_id


@dataclass(slots=True, frozen=True)
class LedgerAccount:
    """An account the chain is seeded with at creation."""

    #: Hex encoded private key
    secret_key: str

    #: Initial native balance in wei
    balance: int


class LocalChain:
    """One running local network.

    The identity (name, ``evm_id``) is fixed at creation.
    :py:attr:`chain_id` is always derived from ``evm_id``.
    """

    def __init__(self, name: str, evm_id: int, launch: LedgerLaunch, web3: Web3):
        self.name = name
        self.evm_id = evm_id
        self.launch = launch
        self.web3 = web3
        self._stopped = False

    def __repr__(self) -> str:
        return f"<LocalChain {self.name} evm id:{self.evm_id} at {self.endpoint}>"

    @property
    def chain_id(self) -> int:
        """Typed chain id the bridge addresses this chain with."""
        return get_chain_id_type(self.evm_id)

    @property
    def endpoint(self) -> str:
        return self.launch.json_rpc_url

    @property
    def stopped(self) -> bool:
        return self._stopped

    def get_block_number(self) -> int:
        return self.web3.eth.block_number

    def get_balance(self, address: HexAddress | str) -> int:
        return self.web3.eth.get_balance(Web3.to_checksum_address(address))

    def stop(self, log_level: int | None = None):
        """Shut down the backend.

        Calling this again after it has returned does nothing.
        If the close was interrupted, the next call retries it.
        """
        if self._stopped:
            return
        logger.info("Stopping chain %s", self.name)
        self.launch.close(log_level=log_level)
        self._stopped = True


def create_local_chain(
    name: str,
    evm_id: int,
    initial_accounts: list[LedgerAccount],
    port: int | None = None,
    block_time: int = 1,
    anvil_cmd: str = "anvil",
    launch_wait_seconds: float = DEFAULT_LAUNCH_WAIT_SECONDS,
) -> LocalChain:
    """Start a new local chain and wait until it is ready.

    :param name:
        Human readable name, e.g. ``Hermes``

    :param evm_id:
        Network identity, used as the EVM chain id

    :param initial_accounts:
        Accounts to fund on the fresh chain

    :param port:
        JSON-RPC port. Defaults to ``evm_id``.

    :param block_time:
        Seconds between blocks

    :raise StartupFailure:
        Port taken, Anvil missing or not answering, or seeding failed.
        No retry is attempted.
    """
    if port is None:
        port = evm_id

    try:
        launch = launch_ledger(
            port=port,
            chain_id=evm_id,
            cmd=anvil_cmd,
            block_time=block_time,
            launch_wait_seconds=launch_wait_seconds,
        )
    except LedgerLaunchFailed as e:
        raise StartupFailure(f"Could not start chain {name} ({evm_id}): {e}") from e

    web3 = Web3(HTTPProvider(launch.json_rpc_url, request_kwargs={"timeout": 60}))
    chain = LocalChain(name, evm_id, launch, web3)

    try:
        seed_accounts(web3, [(a.secret_key, a.balance) for a in initial_accounts])
    except Exception as e:
        chain.stop(log_level=logging.ERROR)
        raise StartupFailure(f"Could not seed accounts on chain {name} ({evm_id}): {e}") from e
    except BaseException:
        # Interrupted, the caller never sees this chain
        launch.close(log_level=logging.ERROR, block=False)
        raise

    logger.info("Anvil started on %s, chain %s, typed chain id %d", chain.endpoint, name, chain.chain_id)
    return chain
