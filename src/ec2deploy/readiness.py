"""
Wait for a provisioned host to accept TCP connections.

This only proves the host is reachable on the given port. It says nothing
about whether the application deployed onto it is serving yet.
"""

import socket
import time
from logging import getLogger
from typing import Callable

from tenacity import Retrying, retry_if_exception_type

from .errors import ReadinessTimeout

logger = getLogger(__name__)

MIN_CONNECT_TIMEOUT = 0.1


class ReadinessGate:
    """
    Poll host:port until a connection is accepted or the deadline passes.

    Sleeps between attempts never cross the deadline and each connection
    attempt is clamped to the time remaining, so an endpoint that never
    answers fails at the deadline plus at most MIN_CONNECT_TIMEOUT.
    """

    def __init__(
        self,
        timeout: float = 30.0,
        interval: float = 2.0,
        connect_timeout: float = 3.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        connector: Callable = socket.create_connection,
    ):
        if timeout <= 0:
            raise ValueError("timeout must be positive")
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.timeout = timeout
        self.interval = interval
        self.connect_timeout = connect_timeout
        self.clock = clock
        self.sleep = sleep
        self.connector = connector

    def wait(self, host: str, port: int = 22) -> int:
        """Block until host:port accepts a connection. Returns the number of attempts."""
        deadline = self.clock() + self.timeout

        def remaining() -> float:
            return deadline - self.clock()

        logger.info(f"Waiting up to {self.timeout:g}s for {host}:{port}")
        try:
            for attempt in Retrying(
                stop=lambda retry_state: remaining() <= 0,
                wait=lambda retry_state: max(0.0, min(self.interval, remaining())),
                retry=retry_if_exception_type(OSError),
                sleep=self.sleep,
                reraise=True,
            ):
                with attempt:
                    connect_timeout = max(
                        min(self.connect_timeout, remaining()), MIN_CONNECT_TIMEOUT
                    )
                    with self.connector((host, port), timeout=connect_timeout):
                        pass
        except OSError as e:
            logger.warning(f"{host}:{port} still unreachable: {e}")
            raise ReadinessTimeout(host, port, self.timeout) from e

        attempts = attempt.retry_state.attempt_number
        logger.info(f"{host}:{port} accepted a connection after {attempts} attempt(s)")
        return attempts
