"""Deploy tokens and the signature bridge on the two local chains.

The sequence is always the same and always from scratch:

1. Prime chain A deployer nonce with a tiny transfer
2. Deploy one token per chain
3. Deploy the fixed deposit signature bridge spanning both chains
4. Bind each anchor's signer to the chain wallet
5. Approve anchors to spend the wrapped tokens and mint test balances

Any failure is raised as :py:class:`DeploymentFailure`.
"""

import logging
from dataclasses import dataclass
from pathlib import Path

from eth_account.signers.local import LocalAccount
from eth_typing import HexAddress
from hexbytes import HexBytes
from tabulate import tabulate
from web3 import Web3

from bridge_localnet.circuits import CircuitArtifacts, load_anchor_circuit
from bridge_localnet.config import ChainConfig
from bridge_localnet.engine.base import AnchorHandle, BridgeDeployment, BridgeEngine, BridgeInput, TokenHandle

logger = logging.getLogger(__name__)

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


class DeploymentFailure(Exception):
    """Tokens or bridge could not be deployed.

    Fatal for the harness.
    """


@dataclass(slots=True)
class LocalnetDeployment:
    """Deployed contracts, keyed by typed chain id."""

    bridge: BridgeDeployment

    #: Tokens deployed before the bridge
    tokens: dict[int, TokenHandle]

    #: Wrapped tokens the anchors take deposits in
    webb_tokens: dict[int, TokenHandle]

    bridge_sides: dict[int, object]
    anchors: dict[int, AnchorHandle]
    handlers: dict[int, HexAddress]

    #: Anchor size
    denomination: int

    def get_anchor(self, chain_id: int) -> AnchorHandle:
        return self.anchors[chain_id]


def prime_wallet_nonce(web3: Web3, wallet: LocalAccount, value: int, to: HexAddress | str = ZERO_ADDRESS, timeout: float = 60.0) -> HexBytes:
    """Send a plain transfer and wait for it.

    Makes the wallet nonce differ between the chains, so contracts
    do not end up at the same addresses on both.
    Also the first real transaction against a fresh chain.
    """
    chain_id = web3.eth.chain_id
    tx = {
        "to": Web3.to_checksum_address(to),
        "value": value,
        "gas": 21_000,
        "gasPrice": web3.eth.gas_price,
        "nonce": web3.eth.get_transaction_count(wallet.address),
        "chainId": chain_id,
    }
    signed = wallet.sign_transaction(tx)
    tx_hash = web3.eth.send_raw_transaction(signed.raw_transaction)
    receipt = web3.eth.wait_for_transaction_receipt(tx_hash, timeout=timeout)
    assert receipt["status"] == 1, f"Priming transfer failed on chain {chain_id}: {tx_hash.hex()}"
    logger.info("Primed %s nonce on chain %d with tx %s", wallet.address, chain_id, tx_hash.hex())
    return tx_hash


def deploy_token(engine: BridgeEngine, chain, name: str, symbol: str, signer: LocalAccount) -> TokenHandle:
    token = engine.deploy_token(chain, name, symbol, signer)
    logger.info("Token %s deployed on %s at %s", symbol, chain.name, token.address)
    return token


def deploy_signature_bridge(
    engine: BridgeEngine,
    chains: list,
    tokens: list[TokenHandle],
    wallets: list[LocalAccount],
    zk_components: CircuitArtifacts,
    denomination: int,
) -> BridgeDeployment:
    """Deploy a fixed deposit signature bridge over the chains.

    Each chain's wallet is both the deployer and the governor of its side.

    :param chains:
        Chains in the same order as ``tokens`` and ``wallets``
    """
    assert len(chains) == len(tokens) == len(wallets), "Need one token and one wallet per chain"

    bridge_input = BridgeInput(
        asset={chain.chain_id: [token.address] for chain, token in zip(chains, tokens)},
        anchor_sizes=[denomination],
        chain_ids=[chain.chain_id for chain in chains],
    )
    deployer_config = {chain.chain_id: wallet for chain, wallet in zip(chains, wallets)}
    governor_config = {chain.chain_id: wallet for chain, wallet in zip(chains, wallets)}

    return engine.deploy_fixed_deposit_bridge(bridge_input, deployer_config, governor_config, zk_components)


def deploy_localnet(
    engine: BridgeEngine,
    chains: list,
    wallets: list[LocalAccount],
    chain_configs: list[ChainConfig],
    fixtures_dir: Path | None = None,
    denomination: int = 10**18,
    mint_amount: int = 1000 * 10**18,
    priming_transfer: int = 0,
    zk_components: CircuitArtifacts | None = None,
) -> LocalnetDeployment:
    """Run the full deployment sequence.

    :param chains:
        Chain A and chain B, in this order

    :param fixtures_dir:
        Where circuit artifacts are loaded from, unless ``zk_components`` is given

    :param priming_transfer:
        Value of the chain A nonce priming transfer. ``0`` skips priming.

    :raise DeploymentFailure:
        On any error. Nothing is reused from earlier runs.
    """
    assert len(chains) == len(wallets) == len(chain_configs) == 2, "Need exactly two chains"

    try:
        if priming_transfer:
            prime_wallet_nonce(chains[0].web3, wallets[0], priming_transfer)

        tokens = [deploy_token(engine, chain, cfg.token_name, cfg.token_symbol, wallet) for chain, cfg, wallet in zip(chains, chain_configs, wallets)]

        if zk_components is None:
            assert fixtures_dir is not None, "Give fixtures_dir or zk_components"
            zk_components = load_anchor_circuit(fixtures_dir)

        bridge = deploy_signature_bridge(engine, chains, tokens, wallets, zk_components, denomination)

        deployment = LocalnetDeployment(
            bridge=bridge,
            tokens={},
            webb_tokens={},
            bridge_sides={},
            anchors={},
            handlers={},
            denomination=denomination,
        )

        for chain, wallet, cfg, token in zip(chains, wallets, chain_configs, tokens):
            chain_id = chain.chain_id
            side = bridge.get_bridge_side(chain_id)
            anchor = bridge.get_anchor(chain_id, denomination)
            assert side is not None and anchor is not None, f"Bridge has no side or anchor on {chain.name}"

            anchor.set_signer(wallet)
            handler = anchor.get_handler()
            logger.info("Chain %s handler address: %s", chain.name, handler)

            webb_token_address = bridge.get_webb_token_address(chain_id)
            assert webb_token_address, f"No wrapped token on {chain.name}"
            webb_token = engine.token_from_address(chain_id, webb_token_address)
            webb_token.approve_spending(wallet, anchor.address)
            webb_token.mint_tokens(wallet.address, mint_amount)
            for recipient in cfg.extra_mint_recipients:
                webb_token.mint_tokens(recipient, mint_amount)

            deployment.tokens[chain_id] = token
            deployment.webb_tokens[chain_id] = webb_token
            deployment.bridge_sides[chain_id] = side
            deployment.anchors[chain_id] = anchor
            deployment.handlers[chain_id] = handler

    except Exception as e:
        raise DeploymentFailure(f"Localnet deployment failed: {e}") from e

    return deployment


def format_deployment_summary(deployment: LocalnetDeployment, chains: list) -> str:
    """Deployed addresses as a table, one row per chain."""
    rows = []
    for chain in chains:
        chain_id = chain.chain_id
        rows.append(
            [
                f"{chain.name} ({chain.evm_id})",
                deployment.bridge_sides[chain_id].address,
                deployment.anchors[chain_id].address,
                deployment.handlers[chain_id],
                deployment.tokens[chain_id].address,
                deployment.webb_tokens[chain_id].address,
            ]
        )
    return tabulate(rows, headers=["Chain", "Signature bridge", "Anchor", "Handler", "Token", "Webb token"], tablefmt="simple")
