"""In-process bridge engine.

Models the signature bridge, its fixed deposit anchors and their
tokens in Python memory, while reading block numbers from the real
local chains. Lets the harness exercise the full deposit, relay and
withdraw cycle without contract bytecode or a prover.

What is modelled:

- Tokens keep balances and allowances. Deposits pull the anchor
  denomination from the signer, withdrawals mint it to the recipient.

- Anchors keep a keccak Merkle tree of commitments and, for every
  linked chain, a bounded history of that chain's roots.

- A withdrawal proof is a Merkle path of the commitment against a
  neighbor root the destination anchor has seen, bound to the circuit
  artifacts loaded at deployment and to a nullifier hash that can only
  be spent once.

- Privileged anchor calls are rejected until a signer is bound.

Example:

.. code-block:: python

    engine = SimulatedBridgeEngine()
    token_a = engine.deploy_token(chain_a, "ChainA", "webbA", wallet_a)
    token_b = engine.deploy_token(chain_b, "ChainB", "webbB", wallet_b)
    bridge = engine.deploy_fixed_deposit_bridge(bridge_input, deployers, governors, circuit)
"""

import logging
import secrets
from dataclasses import dataclass

from eth_account.signers.local import LocalAccount
from eth_typing import HexAddress
from eth_utils import keccak
from hexbytes import HexBytes
from web3 import Web3

from bridge_localnet.circuits import CircuitArtifacts
from bridge_localnet.engine.base import (
    AnchorHandle,
    BridgeDeployment,
    BridgeEngine,
    BridgeEngineError,
    BridgeInput,
    DepositReceipt,
    ProofRejected,
    SignerNotBound,
    TokenHandle,
)
from bridge_localnet.engine.merkle import DEFAULT_LEVELS, MerklePath, MerkleTree

logger = logging.getLogger(__name__)

#: Unlimited ERC-20 approval
MAX_UINT256 = 2**256 - 1

#: How many relayed roots of each linked chain an anchor still accepts
ROOT_HISTORY_SIZE = 30


def _derive_address(chain_id: int, kind: str, nonce: int) -> HexAddress:
    return Web3.to_checksum_address(keccak(text=f"{chain_id}:{kind}:{nonce}")[-20:])


def _normalise(address: HexAddress | str) -> HexAddress:
    return Web3.to_checksum_address(address)


class SimulatedToken(TokenHandle):
    """Mintable ERC-20 balance sheet."""

    def __init__(self, chain_id: int, address: HexAddress, name: str, symbol: str, minters: set[HexAddress]):
        self.chain_id = chain_id
        self.address = address
        self.name = name
        self.symbol = symbol
        self.minters = set(minters)
        self.balances: dict[HexAddress, int] = {}
        self.allowances: dict[tuple[HexAddress, HexAddress], int] = {}

    def __repr__(self) -> str:
        return f"<Token {self.symbol} at {self.address} chain:{self.chain_id}>"

    def balance_of(self, address: HexAddress | str) -> int:
        return self.balances.get(_normalise(address), 0)

    def approve_spending(self, owner: LocalAccount, spender: HexAddress | str, amount: int | None = None):
        if amount is None:
            amount = MAX_UINT256
        self.allowances[(owner.address, _normalise(spender))] = amount
        logger.info("%s: %s approved %s for %d", self.symbol, owner.address, spender, amount)

    def mint_tokens(self, to: HexAddress | str, amount: int):
        assert amount >= 0, f"Bad amount {amount}"
        to = _normalise(to)
        self.balances[to] = self.balances.get(to, 0) + amount

    def transfer_from(self, spender: HexAddress, owner: HexAddress, to: HexAddress, amount: int):
        allowance = self.allowances.get((owner, spender), 0)
        if allowance < amount:
            raise BridgeEngineError(f"{self.symbol}: insufficient allowance for {spender} to spend {amount} from {owner}, has {allowance}")
        balance = self.balance_of(owner)
        if balance < amount:
            raise BridgeEngineError(f"{self.symbol}: {owner} has balance {balance}, needs {amount}")
        if allowance != MAX_UINT256:
            self.allowances[(owner, spender)] = allowance - amount
        self.balances[owner] = balance - amount
        self.balances[to] = self.balance_of(to) + amount


@dataclass(slots=True)
class SignatureBridgeSide:
    """Governed bridge endpoint on one chain."""

    chain_id: int
    address: HexAddress

    #: Account allowed to push roots and bind resources
    governor: LocalAccount

    #: Account that deployed the side
    admin: LocalAccount

    def get_governor(self) -> HexAddress:
        return self.governor.address


@dataclass(slots=True, frozen=True)
class AnchorProof:
    """Withdrawal proof as verified by the destination anchor."""

    path: MerklePath
    origin_chain_id: int
    nullifier_hash: HexBytes
    recipient: HexAddress
    relayer: HexAddress
    verifying_key_digest: bytes


class SimulatedAnchor(AnchorHandle):
    """Fixed deposit pool with linked neighbor roots."""

    def __init__(
        self,
        chain,
        address: HexAddress,
        handler: HexAddress,
        token: SimulatedToken,
        denomination: int,
        linked_chain_ids: list[int],
        verifying_key_digest: bytes,
        levels: int = DEFAULT_LEVELS,
    ):
        self.chain = chain
        self.chain_id = chain.chain_id
        self.address = address
        self.handler = handler
        self.token = token
        self.denomination = denomination
        self.linked_chain_ids = list(linked_chain_ids)
        self.verifying_key_digest = verifying_key_digest
        self.tree = MerkleTree(levels)
        self.signer: LocalAccount | None = None
        self.latest_synced_block = chain.get_block_number()
        self.nullifier_hashes: set[bytes] = set()
        empty_root = self.tree.root
        self.neighbor_root_history: dict[int, list[HexBytes]] = {chain_id: [empty_root] for chain_id in self.linked_chain_ids}

    def __repr__(self) -> str:
        return f"<Anchor {self.address} chain:{self.chain_id} size:{self.denomination}>"

    def require_signer(self):
        if self.signer is None:
            raise SignerNotBound(f"Anchor {self.address} on chain {self.chain_id} has no signer, call set_signer() first")

    def set_signer(self, wallet: LocalAccount):
        self.signer = wallet
        logger.info("Anchor %s signer set to %s", self.address, wallet.address)

    def deposit(self, destination_chain_id: int) -> DepositReceipt:
        self.require_signer()
        if destination_chain_id not in self.linked_chain_ids:
            raise BridgeEngineError(f"Chain {destination_chain_id} is not linked to anchor {self.address}")

        nullifier = HexBytes(secrets.token_bytes(31))
        secret = HexBytes(secrets.token_bytes(31))
        commitment = HexBytes(keccak(destination_chain_id.to_bytes(32, "big") + nullifier + secret))

        self.token.transfer_from(self.address, self.signer.address, self.address, self.denomination)
        leaf_index = self.tree.insert(commitment)
        block_number = self.chain.get_block_number()

        logger.info("Deposit %s at index %d on chain %d, block %d", commitment.hex(), leaf_index, self.chain_id, block_number)

        return DepositReceipt(
            origin_chain_id=self.chain_id,
            destination_chain_id=destination_chain_id,
            commitment=commitment,
            leaf_index=leaf_index,
            block_number=block_number,
            nullifier=nullifier,
            secret=secret,
        )

    def update(self, block_number: int):
        """Resync from ``block_number`` up to the chain head."""
        head = self.chain.get_block_number()
        assert block_number <= head, f"Cannot sync from block {block_number}, head is {head}"
        logger.info("Anchor %s synced blocks %d - %d, %d leaves", self.address, block_number, head, len(self.tree))
        self.latest_synced_block = head

    def get_handler(self) -> HexAddress:
        return self.handler

    def get_last_root(self) -> HexBytes:
        return self.tree.root

    def get_latest_neighbor_roots(self) -> list[HexBytes]:
        return [self.neighbor_root_history[chain_id][-1] for chain_id in self.linked_chain_ids]

    def is_known_neighbor_root(self, chain_id: int, root: bytes) -> bool:
        return HexBytes(root) in self.neighbor_root_history.get(chain_id, [])

    def update_edge(self, chain_id: int, root: HexBytes):
        """Record a new root of a linked anchor."""
        history = self.neighbor_root_history[chain_id]
        if history[-1] == root:
            return
        history.append(root)
        if len(history) > ROOT_HISTORY_SIZE:
            history.pop(0)

    def verify_and_release(self, proof: AnchorProof, amount: int):
        self.require_signer()

        if proof.verifying_key_digest != self.verifying_key_digest:
            raise ProofRejected("Proof was made with a different circuit")

        if not self.is_known_neighbor_root(proof.origin_chain_id, proof.path.root):
            raise ProofRejected(f"Root {proof.path.root.hex()} of chain {proof.origin_chain_id} is not known")

        if proof.path.compute_root() != proof.path.root:
            raise ProofRejected("Merkle path does not match the root")

        if bytes(proof.nullifier_hash) in self.nullifier_hashes:
            raise ProofRejected(f"Nullifier {proof.nullifier_hash.hex()} already spent")

        self.nullifier_hashes.add(bytes(proof.nullifier_hash))
        self.token.mint_tokens(proof.recipient, amount)


class SimulatedSignatureBridge(BridgeDeployment):
    """Signature bridge spanning the local chains."""

    def __init__(
        self,
        sides: dict[int, SignatureBridgeSide],
        anchors: dict[tuple[int, int], SimulatedAnchor],
        webb_tokens: dict[int, SimulatedToken],
        zk_components: CircuitArtifacts,
    ):
        self.sides = sides
        self.anchors = anchors
        self.webb_tokens = webb_tokens
        self.zk_components = zk_components

    def get_bridge_side(self, chain_id: int) -> SignatureBridgeSide | None:
        return self.sides.get(chain_id)

    def get_anchor(self, chain_id: int, denomination: int) -> SimulatedAnchor | None:
        return self.anchors.get((chain_id, denomination))

    def get_webb_token_address(self, chain_id: int) -> HexAddress | None:
        token = self.webb_tokens.get(chain_id)
        return token.address if token else None

    def update_linked_anchors(self, anchor: SimulatedAnchor):
        anchor.require_signer()
        root = anchor.get_last_root()
        for chain_id in anchor.linked_chain_ids:
            side = self.sides[chain_id]
            linked = self.anchors[(chain_id, anchor.denomination)]
            linked.update_edge(anchor.chain_id, root)
            logger.info("Governor %s set root %s of chain %d on anchor %s", side.get_governor(), root.hex(), anchor.chain_id, linked.address)

    def withdraw(
        self,
        receipt: DepositReceipt,
        amount: int,
        recipient: HexAddress | str,
        relayer_address: HexAddress | str,
        signer: LocalAccount,
    ) -> bool:
        destination = self.get_anchor(receipt.destination_chain_id, amount)
        if destination is None:
            raise BridgeEngineError(f"No anchor of size {amount} on chain {receipt.destination_chain_id}")

        origin = self.get_anchor(receipt.origin_chain_id, amount)
        if origin is None:
            raise BridgeEngineError(f"No anchor of size {amount} on chain {receipt.origin_chain_id}")

        destination.require_signer()

        # Newest relayed root that already contains the deposit
        tree_size = None
        for root in reversed(destination.neighbor_root_history[receipt.origin_chain_id]):
            size = origin.tree.get_size_at_root(root)
            if size is not None and receipt.leaf_index < size:
                tree_size = size
                break

        if tree_size is None:
            logger.warning("No root of chain %d known on chain %d covers deposit index %d", receipt.origin_chain_id, receipt.destination_chain_id, receipt.leaf_index)
            return False

        path = origin.tree.snapshot(tree_size).get_path(receipt.leaf_index)
        if path.leaf != receipt.commitment:
            raise ProofRejected(f"Commitment {receipt.commitment.hex()} is not at index {receipt.leaf_index}")

        proof = AnchorProof(
            path=path,
            origin_chain_id=receipt.origin_chain_id,
            nullifier_hash=HexBytes(keccak(receipt.nullifier)),
            recipient=_normalise(recipient),
            relayer=_normalise(relayer_address),
            verifying_key_digest=self.zk_components.get_verifying_key_digest(),
        )
        destination.verify_and_release(proof, amount)
        logger.info("Withdrew %d to %s on chain %d, signed by %s", amount, proof.recipient, destination.chain_id, signer.address)
        return True


class SimulatedBridgeEngine(BridgeEngine):
    """Deploys simulated tokens and bridges on registered chains."""

    def __init__(self, levels: int = DEFAULT_LEVELS):
        self.levels = levels
        self.chains: dict[int, object] = {}
        self.tokens: dict[tuple[int, HexAddress], SimulatedToken] = {}
        self._nonces: dict[int, int] = {}

    def _next_address(self, chain_id: int, kind: str) -> HexAddress:
        nonce = self._nonces.get(chain_id, 0)
        self._nonces[chain_id] = nonce + 1
        return _derive_address(chain_id, kind, nonce)

    def _register_token(self, token: SimulatedToken) -> SimulatedToken:
        self.tokens[(token.chain_id, token.address)] = token
        return token

    def deploy_token(self, chain, name: str, symbol: str, signer: LocalAccount) -> SimulatedToken:
        self.chains[chain.chain_id] = chain
        address = self._next_address(chain.chain_id, "token")
        token = SimulatedToken(chain.chain_id, address, name, symbol, minters={signer.address})
        logger.info("Deployed token %s (%s) at %s on chain %d", name, symbol, address, chain.chain_id)
        return self._register_token(token)

    def token_from_address(self, chain_id: int, address: HexAddress | str) -> SimulatedToken:
        token = self.tokens.get((chain_id, _normalise(address)))
        if token is None:
            raise BridgeEngineError(f"No token at {address} on chain {chain_id}")
        return token

    def deploy_fixed_deposit_bridge(
        self,
        bridge_input: BridgeInput,
        deployer_config: dict[int, LocalAccount],
        governor_config: dict[int, LocalAccount],
        zk_components: CircuitArtifacts,
    ) -> SimulatedSignatureBridge:
        assert isinstance(zk_components, CircuitArtifacts), f"Expected circuit artifacts, got {zk_components}"
        assert len(bridge_input.anchor_sizes) > 0, "No anchor sizes given"

        for chain_id in bridge_input.chain_ids:
            if chain_id not in self.chains:
                raise BridgeEngineError(f"Chain {chain_id} has no deployed tokens")
            if chain_id not in deployer_config or chain_id not in governor_config:
                raise BridgeEngineError(f"Missing deployer or governor for chain {chain_id}")
            for asset in bridge_input.asset.get(chain_id, []):
                self.token_from_address(chain_id, asset)

        vk_digest = zk_components.get_verifying_key_digest()
        sides = {}
        anchors = {}
        webb_tokens = {}

        for chain_id in bridge_input.chain_ids:
            chain = self.chains[chain_id]
            deployer = deployer_config[chain_id]
            linked = [c for c in bridge_input.chain_ids if c != chain_id]

            side = SignatureBridgeSide(
                chain_id=chain_id,
                address=self._next_address(chain_id, "bridge"),
                governor=governor_config[chain_id],
                admin=deployer,
            )
            sides[chain_id] = side

            webb_token = SimulatedToken(
                chain_id,
                self._next_address(chain_id, "webb-token"),
                name=f"webbWrapped{chain_id}",
                symbol="webbWETH",
                minters={deployer.address},
            )
            self._register_token(webb_token)
            webb_tokens[chain_id] = webb_token

            for size in bridge_input.anchor_sizes:
                anchor = SimulatedAnchor(
                    chain,
                    address=self._next_address(chain_id, "anchor"),
                    handler=self._next_address(chain_id, "anchor-handler"),
                    token=webb_token,
                    denomination=size,
                    linked_chain_ids=linked,
                    verifying_key_digest=vk_digest,
                    levels=self.levels,
                )
                webb_token.minters.add(anchor.address)
                anchors[(chain_id, size)] = anchor

            logger.info("Deployed signature bridge side %s on chain %d, governor %s", side.address, chain_id, side.get_governor())

        return SimulatedSignatureBridge(sides, anchors, webb_tokens, zk_components)
