"""Anvil as the backend ledger.

Each harness chain is one Anvil process bound to its own port and
chain id, mining on a fixed block interval whether or not anyone
is talking to it.

- Unlike a fork launcher, we do not pick a random port: a port that
  is already taken is a startup failure, not something to retry

- :py:func:`launch_ledger` returns only after the JSON-RPC endpoint
  answers ``eth_blockNumber``

Example:

.. code-block:: python

    launch = launch_ledger(port=5001, chain_id=5001)
    try:
        web3 = Web3(HTTPProvider(launch.json_rpc_url))
        print(web3.eth.block_number)
    finally:
        launch.close()
"""

import logging
import time
from dataclasses import dataclass
from shutil import which
from subprocess import DEVNULL, PIPE

import psutil
import requests
from eth_account import Account
from web3 import HTTPProvider, Web3

from bridge_localnet.utils import is_localhost_port_listening, shutdown_hard

logger = logging.getLogger(__name__)


#: How long we wait for Anvil to start answering JSON-RPC
DEFAULT_LAUNCH_WAIT_SECONDS = 20.0


class LedgerLaunchFailed(Exception):
    """Anvil did not come up."""


@dataclass(slots=True)
class LedgerLaunch:
    """Control a running Anvil process.

    Returned by :py:func:`launch_ledger`.
    """

    #: Which port we bound
    port: int

    #: Used command-line to spin up Anvil
    cmd: list[str]

    #: Where does Anvil listen to JSON-RPC
    json_rpc_url: str

    #: UNIX process that we opened
    process: psutil.Popen

    def close(self, log_level: int | None = None, block=True, block_timeout=30) -> tuple[bytes, bytes]:
        """Close the background Anvil process.

        :param log_level:
            Dump Anvil messages to logging

        :param block:
            Block the execution until Anvil is gone

        :param block_timeout:
            How long time we try to kill Anvil until giving up.

        :return:
            Anvil stdout, stderr as tuple
        """
        stdout, stderr = shutdown_hard(
            self.process,
            log_level=log_level,
            block=block,
            block_timeout=block_timeout,
            check_port=self.port,
        )
        logger.info("Anvil shutdown %s", self.json_rpc_url)
        return stdout, stderr


def make_anvil_custom_rpc_request(web3: Web3, method: str, args: list | None = None) -> dict:
    """Make a request to Anvil custom RPC endpoints.

    Raises an exception if the JSON-RPC response carries an error.
    """
    if args is None:
        args = []
    response = web3.provider.make_request(method, args)
    if "error" in response:
        raise LedgerLaunchFailed(f"Anvil {method} failed: {response['error']}")
    return response


def launch_ledger(
    port: int,
    chain_id: int,
    cmd="anvil",
    block_time: int = 1,
    launch_wait_seconds: float = DEFAULT_LAUNCH_WAIT_SECONDS,
    test_request_timeout: float = 3.0,
) -> LedgerLaunch:
    """Start an Anvil process and wait until it answers JSON-RPC.

    :param port:
        Localhost port to bind. Must be free.

    :param chain_id:
        ``--chain-id`` of the new chain.

    :param cmd:
        Override ``anvil`` command. If not given, we look up from `PATH`.

    :param block_time:
        Mine a block every this many seconds, independent of transactions.

    :param launch_wait_seconds:
        How long we poll ``eth_blockNumber`` before giving up.

    :param test_request_timeout:
        HTTP timeout of a single readiness check.

    :return:
        Running Anvil handle. Remember to close it.

    :raise LedgerLaunchFailed:
        Port already bound, binary missing, or Anvil did not answer in time.
    """

    assert type(port) == int, f"Bad port: {port}"
    assert type(block_time) == int and block_time > 0, f"Bad block time: {block_time}"

    if is_localhost_port_listening(port):
        raise LedgerLaunchFailed(f"Port {port} is already in use, cannot start chain id {chain_id}")

    anvil = which(cmd)
    if anvil is None:
        raise LedgerLaunchFailed(f"No {cmd} command in path, needed to run the local chains")

    cmd_line = [
        anvil,
        "--port",
        str(port),
        "--chain-id",
        str(chain_id),
        "--block-time",
        str(block_time),
    ]

    logger.info("Launching anvil: %s", " ".join(cmd_line))
    process = psutil.Popen(cmd_line, stdin=DEVNULL, stdout=PIPE, stderr=PIPE)

    url = f"http://127.0.0.1:{port}"
    launch = LedgerLaunch(port, cmd_line, url, process)

    try:
        current_block = _wait_ready(launch, launch_wait_seconds, test_request_timeout)
    except BaseException:
        # Also on KeyboardInterrupt, nobody else holds the process yet
        launch.close(log_level=logging.ERROR, block=False)
        raise

    logger.info("anvil ready at %s, chain id %d, current block %d", url, chain_id, current_block)
    return launch


def _wait_ready(launch: LedgerLaunch, launch_wait_seconds: float, test_request_timeout: float) -> int:
    """Poll ``eth_blockNumber`` until Anvil answers.

    :return:
        Current block number

    :raise LedgerLaunchFailed:
        Anvil exited or did not answer in time
    """
    process = launch.process
    deadline = time.time() + launch_wait_seconds
    while time.time() < deadline:
        if process.poll() is not None:
            raise LedgerLaunchFailed(f"Anvil exited with code {process.returncode} before becoming ready on port {launch.port}")

        try:
            web3 = Web3(HTTPProvider(launch.json_rpc_url, request_kwargs={"timeout": test_request_timeout}))
            return web3.eth.block_number
        except requests.exceptions.ConnectionError:
            time.sleep(0.1)

    raise LedgerLaunchFailed(f"Could not read block number from Anvil after the launch {launch.cmd}: at {launch.json_rpc_url}, waited {launch_wait_seconds} seconds")


def seed_accounts(web3: Web3, accounts: list[tuple[str, int]]):
    """Give the chain its initial balances.

    :param accounts:
        List of (private key, balance in wei) tuples.
    """
    for secret_key, balance in accounts:
        address = Account.from_key(secret_key).address
        make_anvil_custom_rpc_request(web3, "anvil_setBalance", [address, hex(balance)])
        logger.info("Seeded %s with %d wei", address, balance)
