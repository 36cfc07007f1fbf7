"""Teardown on every exit path."""

import io
import logging
import os
import signal
import threading
import time

import pytest

from bridge_localnet import localnet
from bridge_localnet.chain import StartupFailure
from bridge_localnet.engine.simulated import SimulatedBridgeEngine
from bridge_localnet.localnet import run_localnet
from bridge_localnet.session import ShutdownCoordinator

from conftest import InMemoryChain


class SlowChain(InMemoryChain):
    """Takes a while to stop, so concurrent shutdowns overlap."""

    def stop(self):
        time.sleep(0.05)
        super().stop()


class BrokenChain(InMemoryChain):
    def stop(self):
        super().stop()
        raise RuntimeError("process already gone")


def _fake_start(chains: list):
    def start_chains(config, started):
        started.extend(chains)
        return started

    return start_chains


def test_concurrent_shutdown_stops_each_chain_once():
    chains = [SlowChain("Hermes", 5001), SlowChain("Athena", 5002)]
    coordinator = ShutdownCoordinator(chains)

    threads = [threading.Thread(target=coordinator.shutdown, args=(reason,)) for reason in ("exit command", "signal", "harness exit")]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert [c.stop_calls for c in chains] == [1, 1]
    assert coordinator.done


def test_failing_stop_does_not_block_other_chain(caplog):
    broken = BrokenChain("Hermes", 5001)
    healthy = InMemoryChain("Athena", 5002)
    coordinator = ShutdownCoordinator([broken, healthy])

    with caplog.at_level(logging.ERROR):
        stopped = coordinator.shutdown("exit command")

    assert stopped == [healthy]
    assert healthy.stop_calls == 1
    assert len(coordinator.failures) == 1
    assert "Could not stop chain Hermes" in caplog.text

    # Not retried
    coordinator.shutdown("harness exit")
    assert broken.stop_calls == 1


def test_startup_failure_stops_started_chain(config, monkeypatch):
    chain_a = InMemoryChain("Hermes", 5001)

    def start_chains(config, started):
        started.append(chain_a)
        raise StartupFailure("Could not start chain Athena (5002): port 5002 is already in use")

    monkeypatch.setattr(localnet, "start_chains", start_chains)

    out = io.StringIO()
    exit_code = run_localnet(config, lines=[], engine=SimulatedBridgeEngine(levels=8), out=out)

    assert exit_code == 1
    assert chain_a.stop_calls == 1
    assert "ERROR: Could not start chain Athena" in out.getvalue()


def test_deployment_failure_stops_both_chains(config, monkeypatch, tmp_path):
    chains = [InMemoryChain("Hermes", 5001), InMemoryChain("Athena", 5002)]
    monkeypatch.setattr(localnet, "start_chains", _fake_start(chains))
    config.fixtures_dir = tmp_path / "no-fixtures-here"

    exit_code = run_localnet(config, lines=[], engine=SimulatedBridgeEngine(levels=8), out=io.StringIO())

    assert exit_code == 1
    assert [c.stop_calls for c in chains] == [1, 1]


def test_exit_command(config, monkeypatch):
    chains = [InMemoryChain("Hermes", 5001), InMemoryChain("Athena", 5002)]
    monkeypatch.setattr(localnet, "start_chains", _fake_start(chains))

    out = io.StringIO()
    exit_code = run_localnet(
        config,
        lines=["deposit on chain a", "relay from a to b", "withdraw on chain b", "exit"],
        engine=SimulatedBridgeEngine(levels=8),
        out=out,
    )

    assert exit_code == 0
    assert [c.stop_calls for c in chains] == [1, 1]
    output = out.getvalue()
    assert "Available commands:" in output
    assert "withdraw success" in output
    assert "Bye" in output


def test_end_of_input(config, monkeypatch):
    chains = [InMemoryChain("Hermes", 5001), InMemoryChain("Athena", 5002)]
    monkeypatch.setattr(localnet, "start_chains", _fake_start(chains))

    exit_code = run_localnet(config, lines=["deposit on chain b"], engine=SimulatedBridgeEngine(levels=8), out=io.StringIO())

    assert exit_code == 0
    assert [c.stop_calls for c in chains] == [1, 1]


def test_sigterm_during_loop(config, monkeypatch):
    chains = [InMemoryChain("Hermes", 5001), InMemoryChain("Athena", 5002)]
    monkeypatch.setattr(localnet, "start_chains", _fake_start(chains))
    previous = signal.getsignal(signal.SIGTERM)

    def lines():
        yield "deposit on chain a"
        os.kill(os.getpid(), signal.SIGTERM)
        # Handler runs on the main thread before the next line is read
        time.sleep(1)
        yield "deposit on chain a"

    out = io.StringIO()
    exit_code = run_localnet(config, lines=lines(), engine=SimulatedBridgeEngine(levels=8), out=out)

    assert exit_code == 130
    assert [c.stop_calls for c in chains] == [1, 1]
    assert "Interrupted, shutting down" in out.getvalue()
    assert signal.getsignal(signal.SIGTERM) == previous


class SignalDuringStopChain(InMemoryChain):
    """Sends the process a real signal while it is being stopped."""

    def __init__(self, name: str, evm_id: int, signum: int):
        super().__init__(name, evm_id)
        self.signum = signum

    def stop(self):
        os.kill(os.getpid(), self.signum)
        time.sleep(0.2)
        super().stop()


class InterruptedOnceChain(InMemoryChain):
    """First stop is cut short by Ctrl+C."""

    def __init__(self, name: str, evm_id: int):
        super().__init__(name, evm_id)
        self.interrupted = False

    def stop(self):
        if not self.interrupted:
            self.interrupted = True
            raise KeyboardInterrupt()
        super().stop()


@pytest.mark.parametrize("signum", [signal.SIGINT, signal.SIGTERM])
def test_signal_during_exit_stops_each_chain_once(config, monkeypatch, signum):
    chains = [SignalDuringStopChain("Hermes", 5001, signum), SignalDuringStopChain("Athena", 5002, signum)]
    monkeypatch.setattr(localnet, "start_chains", _fake_start(chains))
    previous = signal.getsignal(signum)

    out = io.StringIO()
    exit_code = run_localnet(config, lines=["deposit on chain a", "exit"], engine=SimulatedBridgeEngine(levels=8), out=out)

    assert [c.stop_calls for c in chains] == [1, 1]
    assert exit_code == 0
    assert "Bye" in out.getvalue()
    assert signal.getsignal(signum) == previous


def test_interrupted_stop_is_retried():
    interrupted = InterruptedOnceChain("Hermes", 5001)
    healthy = InMemoryChain("Athena", 5002)
    coordinator = ShutdownCoordinator([interrupted, healthy])

    with pytest.raises(KeyboardInterrupt):
        coordinator.shutdown("exit command")

    assert not coordinator.done
    assert interrupted.stop_calls == 0

    stopped = coordinator.shutdown("harness exit")
    assert stopped == [interrupted, healthy]
    assert [interrupted.stop_calls, healthy.stop_calls] == [1, 1]
    assert coordinator.done
