"""Bridge engine collaborators.

- :py:mod:`bridge_localnet.engine.base` defines the receipts, errors and
  the abstract contract the harness consumes

- :py:mod:`bridge_localnet.engine.simulated` is the in-process engine
  shipped with the harness
"""
