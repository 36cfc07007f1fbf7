"""Zero-knowledge circuit artifacts for the anchors.

The fixed deposit anchor circuit is shipped as three files:
the circuit WASM, the witness calculator and the proving key.
They are read once when the bridge is deployed.
"""

import logging
from dataclasses import dataclass
from pathlib import Path

from eth_utils import keccak

logger = logging.getLogger(__name__)

#: Where the anchor circuit lives inside a fixtures checkout
ANCHOR_CIRCUIT_SUBPATH = Path("anchor") / "2"

#: Files of the 2-edge anchor circuit
ANCHOR_WASM = "poseidon_anchor_2.wasm"
ANCHOR_WITNESS_CALCULATOR = "witness_calculator.js"
ANCHOR_ZKEY = "circuit_final.zkey"


class CircuitArtifactsMissing(Exception):
    """Circuit fixture files could not be read."""


@dataclass(slots=True, frozen=True)
class CircuitArtifacts:
    """Loaded proving artifacts."""

    #: Circuit WASM bytes
    wasm: bytes

    #: Witness calculator source
    witness_calculator: str

    #: Proving key bytes
    zkey: bytes

    def get_verifying_key_digest(self) -> bytes:
        """Identify the circuit the proofs are bound to."""
        return keccak(self.wasm + self.zkey)


def _read_bytes(path: Path) -> bytes:
    try:
        data = path.read_bytes()
    except OSError as e:
        raise CircuitArtifactsMissing(f"Cannot read circuit artifact {path}: {e}") from e
    if len(data) == 0:
        raise CircuitArtifactsMissing(f"Circuit artifact is empty: {path}")
    return data


def fetch_components_from_file_paths(wasm_path: Path, witness_calculator_path: Path, zkey_path: Path) -> CircuitArtifacts:
    """Load circuit artifacts from explicit paths.

    :raise CircuitArtifactsMissing:
        Any of the files is missing or empty
    """
    artifacts = CircuitArtifacts(
        wasm=_read_bytes(wasm_path),
        witness_calculator=_read_bytes(witness_calculator_path).decode("utf-8"),
        zkey=_read_bytes(zkey_path),
    )
    logger.info("Loaded circuit %s, zkey %d bytes", wasm_path.name, len(artifacts.zkey))
    return artifacts


def load_anchor_circuit(fixtures_dir: Path) -> CircuitArtifacts:
    """Load the anchor circuit from a fixtures checkout.

    :param fixtures_dir:
        E.g. ``protocol-solidity-fixtures/fixtures``
    """
    base = Path(fixtures_dir) / ANCHOR_CIRCUIT_SUBPATH
    return fetch_components_from_file_paths(
        base / ANCHOR_WASM,
        base / ANCHOR_WITNESS_CALCULATOR,
        base / ANCHOR_ZKEY,
    )
