"""Process and console helpers shared by the harness."""

import logging
import os
import socket
import time

import psutil

logger = logging.getLogger(__name__)


def is_localhost_port_listening(port: int, host="127.0.0.1") -> bool:
    """Is something already accepting TCP connections on ``port``.

    Used before launching a chain, and after killing one to see the
    port was released.
    """
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        return sock.connect_ex((host, port)) == 0


def _drain(stream, name: str, log_level: int | None) -> bytes:
    if stream is None or stream.closed:
        # Already drained by an earlier close
        return b""
    data = b""
    for line in stream.readlines():
        data += line
        if log_level is not None:
            logger.log(log_level, "anvil %s: %s", name, line.decode("utf-8", errors="replace").rstrip())
    stream.close()
    return data


def shutdown_hard(
    process: psutil.Popen,
    log_level: int | None = None,
    block=True,
    block_timeout=30,
    check_port: int | None = None,
) -> tuple[bytes, bytes]:
    """SIGKILL a ledger process and collect what it printed.

    Safe to call on a process that is already dead, or twice.

    :param log_level:
        Dump the process stdout and stderr to logging at this level

    :param block:
        Wait until ``check_port`` is no longer listening

    :param block_timeout:
        Seconds to wait for the port

    :return:
        stdout, stderr
    """
    if process.poll() is None:
        process.kill()

    # Pipes are read before wait(), a full pipe would keep the process around
    stdout = _drain(process.stdout, "stdout", log_level)
    stderr = _drain(process.stderr, "stderr", log_level)

    if process.poll() is None:
        process.wait()

    if not block:
        return stdout, stderr

    assert check_port is not None, "Give check_port to block the execution"
    deadline = time.time() + block_timeout
    while time.time() < deadline:
        if not is_localhost_port_listening(check_port):
            return stdout, stderr
        time.sleep(0.1)

    raise AssertionError(f"Port {check_port} still listening {block_timeout} seconds after killing pid {process.pid}")


def setup_console_logging(default_log_level="warning", simplified_logging=False) -> logging.Logger:
    """Set up coloured log output.

    - Helper function to have nicer logging output in the harness console
    - Tune down some noisy dependency library logging

    :param default_log_level:
        Used unless ``LOG_LEVEL`` environment variable is set.

    :param simplified_logging:
        Only print the message, no timestamps or logger names.

    :return:
        Root logger
    """

    level = os.environ.get("LOG_LEVEL", default_log_level).upper()
    numeric_level = getattr(logging, level, None)
    assert numeric_level, f"No level: {level}"

    if simplified_logging:
        fmt = "%(message)s"
        date_fmt = "%H:%M:%S"
    else:
        fmt = "%(asctime)s %(name)-44s %(message)s"
        date_fmt = "%Y-%m-%d %H:%M:%S"

    try:
        # Optional dev dependency
        import coloredlogs

        coloredlogs.install(level=numeric_level, fmt=fmt, date_fmt=date_fmt)
    except ImportError:
        # non-ANSI e.g. Docker
        logging.basicConfig(level=numeric_level, format=fmt, datefmt=date_fmt)

    # Mute noise
    logging.getLogger("web3.providers.HTTPProvider").setLevel(logging.WARNING)
    logging.getLogger("web3.RequestManager").setLevel(logging.WARNING)
    logging.getLogger("web3.manager.RequestManager").setLevel(logging.WARNING)
    logging.getLogger("urllib3.connectionpool").setLevel(logging.WARNING)
    return logging.getLogger()
