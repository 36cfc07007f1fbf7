"""Run the two-chain bridge localnet.

Boots chains Hermes (5001) and Athena (5002) on Anvil, deploys the
tokens and the signature bridge, and reads commands from stdin.

Needs ``anvil`` from `Foundry <https://book.getfoundry.sh/>`__ on ``PATH``
and the anchor circuit fixtures.

Environment variables
---------------------

See :py:mod:`bridge_localnet.config` for the full list.

``CIRCUIT_FIXTURES``
    Folder with ``anchor/2/poseidon_anchor_2.wasm``, ``witness_calculator.js``
    and ``circuit_final.zkey``.

``LOG_LEVEL``
    Python logging level. Defaults to ``info``.

Example
-------

.. code-block:: shell

    CIRCUIT_FIXTURES=./protocol-solidity-fixtures/fixtures \\
    python scripts/localnet/run-localnet.py

Then type e.g.::

    deposit on chain a
    relay from a to b
    withdraw on chain b
    exit
"""

import sys

from bridge_localnet.localnet import main

if __name__ == "__main__":
    sys.exit(main())
