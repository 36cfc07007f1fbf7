"""Two-chain local testnet harness for a shielded cross-chain bridge.

Boots two ephemeral Anvil chains, deploys tokens and a signature bridge
spanning both, and drives deposits, relays and withdrawals from an
interactive command loop.

See :py:mod:`bridge_localnet.localnet` for the entry point.
"""
