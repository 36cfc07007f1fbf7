"""Bridge engine contract.

The harness never looks inside the bridge contracts or the proof
system. It talks to them through the handles defined here:

- :py:class:`BridgeEngine` deploys tokens and the bridge
- :py:class:`BridgeDeployment` is the deployed bridge spanning all chains
- :py:class:`AnchorHandle` is one fixed deposit pool on one chain
- :py:class:`TokenHandle` is a mintable ERC-20

Typed chain ids (see :py:func:`bridge_localnet.chain.get_chain_id_type`)
are used everywhere a chain is addressed.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from eth_account.signers.local import LocalAccount
from eth_typing import HexAddress
from hexbytes import HexBytes


class BridgeEngineError(Exception):
    """The bridge rejected a call."""


class SignerNotBound(BridgeEngineError):
    """Privileged anchor call before :py:meth:`AnchorHandle.set_signer`."""


class ProofRejected(BridgeEngineError):
    """Withdrawal proof did not verify."""


@dataclass(slots=True, frozen=True)
class DepositReceipt:
    """A committed deposit.

    Everything needed to later build a withdrawal proof on the
    destination chain. Immutable.
    """

    #: Typed chain id of the anchor the deposit was made to
    origin_chain_id: int

    #: Typed chain id the deposit can be withdrawn on
    destination_chain_id: int

    #: Leaf inserted into the origin anchor tree
    commitment: HexBytes

    #: Position of the commitment in the origin anchor tree
    leaf_index: int

    #: Origin chain block number when the deposit was made
    block_number: int

    #: Deposit note secrets
    nullifier: HexBytes = field(repr=False)
    secret: HexBytes = field(repr=False)

    def __str__(self) -> str:
        return f"<Deposit {self.commitment.hex()} index:{self.leaf_index} chain:{self.origin_chain_id} -> {self.destination_chain_id} block:{self.block_number}>"


@dataclass(slots=True)
class BridgeInput:
    """What to deploy."""

    #: Typed chain id -> token addresses the anchors accept
    asset: dict[int, list[HexAddress]]

    #: Fixed deposit sizes, one anchor per size per chain
    anchor_sizes: list[int]

    #: Typed chain ids the bridge spans
    chain_ids: list[int]


class TokenHandle(ABC):
    """Mintable ERC-20 on one chain."""

    address: HexAddress
    chain_id: int
    name: str
    symbol: str

    @abstractmethod
    def balance_of(self, address: HexAddress | str) -> int:
        pass

    @abstractmethod
    def approve_spending(self, owner: LocalAccount, spender: HexAddress | str, amount: int | None = None):
        """Approve ``spender``. Unlimited when ``amount`` is not given."""

    @abstractmethod
    def mint_tokens(self, to: HexAddress | str, amount: int):
        pass


class AnchorHandle(ABC):
    """Fixed denomination deposit pool on one chain."""

    address: HexAddress
    chain_id: int
    denomination: int

    #: Block the anchor state was last synced at
    latest_synced_block: int

    @abstractmethod
    def set_signer(self, wallet: LocalAccount):
        """Bind the account privileged calls are signed with."""

    @abstractmethod
    def deposit(self, destination_chain_id: int) -> DepositReceipt:
        pass

    @abstractmethod
    def update(self, block_number: int):
        """Resync the anchor state starting from ``block_number``."""

    @abstractmethod
    def get_handler(self) -> HexAddress:
        pass

    @abstractmethod
    def get_last_root(self) -> HexBytes:
        pass

    @abstractmethod
    def get_latest_neighbor_roots(self) -> list[HexBytes]:
        """Cached roots of the linked anchors, in linked chain order."""


class BridgeDeployment(ABC):
    """A deployed bridge spanning several chains."""

    @abstractmethod
    def get_bridge_side(self, chain_id: int):
        pass

    @abstractmethod
    def get_anchor(self, chain_id: int, denomination: int) -> AnchorHandle | None:
        pass

    @abstractmethod
    def get_webb_token_address(self, chain_id: int) -> HexAddress | None:
        pass

    @abstractmethod
    def update_linked_anchors(self, anchor: AnchorHandle):
        """Propagate the anchor's current root to its linked anchors."""

    @abstractmethod
    def withdraw(
        self,
        receipt: DepositReceipt,
        amount: int,
        recipient: HexAddress | str,
        relayer_address: HexAddress | str,
        signer: LocalAccount,
    ) -> bool:
        """Release a deposit on its destination chain.

        :return:
            True if the withdrawal went through
        """


class BridgeEngine(ABC):
    """Deploys tokens and bridges."""

    @abstractmethod
    def deploy_token(self, chain, name: str, symbol: str, signer: LocalAccount) -> TokenHandle:
        pass

    @abstractmethod
    def token_from_address(self, chain_id: int, address: HexAddress | str) -> TokenHandle:
        pass

    @abstractmethod
    def deploy_fixed_deposit_bridge(
        self,
        bridge_input: BridgeInput,
        deployer_config: dict[int, LocalAccount],
        governor_config: dict[int, LocalAccount],
        zk_components,
    ) -> BridgeDeployment:
        pass
