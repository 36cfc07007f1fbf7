"""Shared fixtures.

Most tests run the harness against :py:class:`InMemoryChain`, which
stands in for an Anvil chain: it has an identity, a block counter that
moves forward on every read, and counts how often it was stopped.
"""

import io
from pathlib import Path

import pytest

from bridge_localnet.chain import get_chain_id_type
from bridge_localnet.circuits import ANCHOR_CIRCUIT_SUBPATH, ANCHOR_WASM, ANCHOR_WITNESS_CALCULATOR, ANCHOR_ZKEY, CircuitArtifacts
from bridge_localnet.config import LocalnetConfig
from bridge_localnet.engine.simulated import SimulatedBridgeEngine
from bridge_localnet.localnet import build_session
from bridge_localnet.session import SessionState


class InMemoryChain:
    """Chain without a backend process."""

    def __init__(self, name: str, evm_id: int):
        self.name = name
        self.evm_id = evm_id
        self.block_number = 0
        self.stop_calls = 0

    def __repr__(self) -> str:
        return f"<InMemoryChain {self.name}>"

    @property
    def chain_id(self) -> int:
        return get_chain_id_type(self.evm_id)

    def get_block_number(self) -> int:
        # Blocks keep coming whether or not anyone transacts
        self.block_number += 1
        return self.block_number

    def stop(self):
        self.stop_calls += 1


def write_circuit_fixtures(fixtures_dir: Path) -> Path:
    """Write placeholder anchor circuit files."""
    base = fixtures_dir / ANCHOR_CIRCUIT_SUBPATH
    base.mkdir(parents=True, exist_ok=True)
    (base / ANCHOR_WASM).write_bytes(b"\x00asm-test-circuit")
    (base / ANCHOR_WITNESS_CALCULATOR).write_text("module.exports = async function builder() {}")
    (base / ANCHOR_ZKEY).write_bytes(b"zkey-test-proving-key")
    return fixtures_dir


@pytest.fixture()
def circuit() -> CircuitArtifacts:
    return CircuitArtifacts(wasm=b"\x00asm", witness_calculator="// witness", zkey=b"zkey")


@pytest.fixture()
def circuit_fixtures_dir(tmp_path) -> Path:
    return write_circuit_fixtures(tmp_path / "fixtures")


@pytest.fixture()
def chain_a() -> InMemoryChain:
    return InMemoryChain("Hermes", 5001)


@pytest.fixture()
def chain_b() -> InMemoryChain:
    return InMemoryChain("Athena", 5002)


@pytest.fixture()
def config(circuit_fixtures_dir) -> LocalnetConfig:
    config = LocalnetConfig()
    config.fixtures_dir = circuit_fixtures_dir
    config.priming_transfer = 0
    return config


@pytest.fixture()
def engine() -> SimulatedBridgeEngine:
    # Shallow trees keep proof snapshots cheap
    return SimulatedBridgeEngine(levels=8)


@pytest.fixture()
def session(config, chain_a, chain_b, engine, circuit) -> SessionState:
    return build_session(config, [chain_a, chain_b], engine, zk_components=circuit, out=io.StringIO())
