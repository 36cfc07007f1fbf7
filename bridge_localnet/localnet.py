"""Start two local chains, deploy the bridge and run the command loop.

.. code-block:: shell

    CIRCUIT_FIXTURES=~/protocol-solidity-fixtures/fixtures \\
    python scripts/localnet/run-localnet.py

Exit codes:

- ``0`` after ``exit`` or end of input
- ``1`` when a chain could not be started or the deployment failed
- ``130`` when interrupted with SIGINT or SIGTERM

Both chains are stopped on every exit path.
"""

import logging
import sys
from typing import Iterable, TextIO

from eth_account import Account

from bridge_localnet.chain import LocalChain, StartupFailure, create_local_chain
from bridge_localnet.commands import CommandInterpreter, print_available_commands
from bridge_localnet.config import LocalnetConfig, load_config
from bridge_localnet.deployment import DeploymentFailure, deploy_localnet, format_deployment_summary
from bridge_localnet.engine.base import BridgeEngine
from bridge_localnet.engine.simulated import SimulatedBridgeEngine
from bridge_localnet.ledger import DepositLedger
from bridge_localnet.session import ChainSlot, SessionState, ShutdownCoordinator, ignore_signals, install_signal_handlers, restore_signal_handlers
from bridge_localnet.utils import setup_console_logging

logger = logging.getLogger(__name__)


def start_chains(config: LocalnetConfig, started: list) -> list[LocalChain]:
    """Start chain A, then chain B.

    :param started:
        Every chain that came up is appended here, so the caller
        can stop it even if a later chain fails.

    :raise StartupFailure:
        A chain did not come up
    """
    accounts = config.get_initial_accounts()
    for chain_config in config.get_chain_configs().values():
        chain = create_local_chain(
            chain_config.name,
            chain_config.evm_id,
            accounts,
            port=chain_config.port,
            block_time=config.block_time,
            anvil_cmd=config.anvil_cmd,
            launch_wait_seconds=config.launch_wait_seconds,
        )
        started.append(chain)
    return started


def build_session(
    config: LocalnetConfig,
    chains: list,
    engine: BridgeEngine,
    priming_transfer: int | None = None,
    zk_components=None,
    out: TextIO = sys.stdout,
) -> SessionState:
    """Deploy on running chains and set up the session.

    Both chains use the relayer wallet.

    :raise DeploymentFailure:
        Deployment did not go through
    """
    if priming_transfer is None:
        priming_transfer = config.priming_transfer

    wallets = [Account.from_key(config.relayer_private_key) for _ in chains]
    chain_configs = list(config.get_chain_configs().values())

    deployment = deploy_localnet(
        engine,
        chains,
        wallets,
        chain_configs,
        fixtures_dir=config.fixtures_dir,
        denomination=config.denomination,
        mint_amount=config.mint_amount,
        priming_transfer=priming_transfer,
        zk_components=zk_components,
    )

    print(format_deployment_summary(deployment, chains), file=out)
    print(file=out)

    slots = [ChainSlot(slot=letter, chain=chain, wallet=wallet, anchor=deployment.get_anchor(chain.chain_id)) for letter, chain, wallet in zip(config.grammar.slots, chains, wallets)]

    return SessionState(
        slots,
        deployment,
        DepositLedger(list(config.grammar.slots), order=config.withdrawal_order),
        recipient=config.recipient,
        denomination=config.denomination,
    )


def run_localnet(
    config: LocalnetConfig,
    lines: Iterable[str] | None = None,
    engine: BridgeEngine | None = None,
    out: TextIO = sys.stdout,
) -> int:
    """Run the harness until ``exit``, end of input or a signal.

    :param lines:
        Command input. Defaults to stdin.

    :return:
        Process exit code
    """
    if engine is None:
        engine = SimulatedBridgeEngine()

    if lines is None:
        lines = sys.stdin

    previous_handlers = install_signal_handlers()
    chains: list = []
    session = None

    try:
        try:
            start_chains(config, chains)
            session = build_session(config, chains, engine, out=out)
        except (StartupFailure, DeploymentFailure) as e:
            logger.error("Harness could not start: %s", e)
            print(f"ERROR: {e}", file=out)
            return 1

        print_available_commands(config.grammar, out)
        interpreter = CommandInterpreter(session, config.grammar, out=out)
        interpreter.run(lines)
        return 0

    except KeyboardInterrupt:
        print("Interrupted, shutting down", file=out)
        return 130

    finally:
        # No interrupts during teardown
        ignore_signals()
        coordinator = session.shutdown_coordinator if session is not None else ShutdownCoordinator(chains)
        coordinator.shutdown("harness exit")
        restore_signal_handlers(previous_handlers)


def main() -> int:
    setup_console_logging("info", simplified_logging=True)
    config = load_config()
    return run_localnet(config)


if __name__ == "__main__":
    sys.exit(main())
