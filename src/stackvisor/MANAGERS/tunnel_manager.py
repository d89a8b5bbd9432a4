# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Tunnel lifecycle management: keeps the outbound tunnel connected, backs off
exponentially on transient failures and gives up immediately on a rejected
credential.
"""
import threading
from typing import List, Optional

from loguru import logger
from tenacity import RetryCallState, wait_exponential

from ..MODELS.tunnel_config import TunnelConfig, TunnelState, TunnelStatus
from ..RUNNERS.tunnel_client import TunnelClient
from ..exceptions import TunnelAuthError, TunnelTransientError


class TunnelManager:
    """
    State machine around a TunnelClient, run on its own thread.

    disconnected -> connecting -> connected -> (reconnecting <-> connected)
    -> disconnected on stop() or on an authentication failure.
    """

    def __init__(
        self,
        client: TunnelClient,
        config: TunnelConfig,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
    ):
        """
        Initializes the tunnel manager.

        :param client: Connector that owns the actual connection.
        :param config: Token and hostname routes.
        :param base_delay: Seconds to wait after the first failed attempt.
        :param max_delay: Cap on the wait between attempts.
        """
        if base_delay <= 0 or max_delay < base_delay:
            raise ValueError("backoff needs 0 < base_delay <= max_delay")
        self.client = client
        self.config = config
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._wait = wait_exponential(multiplier=base_delay, min=base_delay, max=max_delay)

        self._lock = threading.Lock()
        self._state = TunnelState.DISCONNECTED
        self._attempt = 0
        self._last_error: Optional[str] = None
        self._fatal = False
        self.delays: List[float] = []

        self._stop = threading.Event()
        self._wake = threading.Event()
        self._reconnect = False
        self.thread: Optional[threading.Thread] = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Starts supervising the tunnel in the background. No-op if already running."""
        if self.thread is not None and self.thread.is_alive():
            return
        self._stop.clear()
        self._wake.clear()
        self._fatal = False
        self.thread = threading.Thread(target=self._run, name="tunnel-manager", daemon=True)
        self.thread.start()

    def stop(self, timeout: float = 15.0) -> None:
        """
        Disconnects and ends supervision. Interrupts any backoff wait immediately.
        """
        self._stop.set()
        self._wake.set()
        if self.thread is not None:
            self.thread.join(timeout=timeout)
        self.client.disconnect()
        self._set(TunnelState.DISCONNECTED)

    def join(self, timeout: Optional[float] = None) -> None:
        if self.thread is not None:
            self.thread.join(timeout=timeout)

    def status(self) -> TunnelStatus:
        with self._lock:
            return TunnelStatus(
                state=self._state,
                attempt=self._attempt,
                last_error=self._last_error,
                fatal=self._fatal,
                routes=list(self.config.routes),
            )

    @property
    def state(self) -> TunnelState:
        with self._lock:
            return self._state

    def backoff(self, attempt: int) -> float:
        """
        Seconds to wait before retry number ``attempt`` (1-based): doubles
        from base_delay and never exceeds max_delay.
        """
        retry_state = RetryCallState(retry_object=None, fn=None, args=(), kwargs={})
        retry_state.attempt_number = attempt
        return float(self._wait(retry_state))

    def add_route(self, hostname: str, target: str) -> None:
        """Publishes ``hostname``, replacing any target it had before."""
        self._apply_routes(self.config.with_route(hostname, target))

    def remove_route(self, hostname: str) -> None:
        self._apply_routes(self.config.without_route(hostname))

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _apply_routes(self, config: TunnelConfig) -> None:
        with self._lock:
            self.config = config
            connected = self._state == TunnelState.CONNECTED
        if connected:
            self._publish(config)

    def _publish(self, config: TunnelConfig) -> None:
        if self.client.supports_incremental_routes:
            logger.info("Updating tunnel routes in place: {}", ", ".join(r.hostname for r in config.routes))
            self.client.update_routes(config.routes)
            return
        logger.info("Tunnel routes changed, reconnecting")
        self._reconnect = True
        self._wake.set()

    def _set(self, state: TunnelState, **fields) -> None:
        with self._lock:
            self._state = state
            for key, value in fields.items():
                setattr(self, f"_{key}", value)

    def _log_failure(self, attempt: int, error: Exception, delay: float) -> None:
        """Louder for the first failures, quieter as an outage drags on."""
        if attempt <= 3:
            level = "WARNING"
        elif attempt <= 9:
            level = "INFO"
        else:
            level = "DEBUG"
        logger.log(level, "{} (attempt {}, retrying in {:.1f}s)", error, attempt, delay)

    def _run(self) -> None:
        state = TunnelState.CONNECTING
        while not self._stop.is_set():
            self._set(state)
            with self._lock:
                config = self.config
            try:
                self.client.connect(config, self._stop)
            except TunnelAuthError as e:
                logger.error("{}", e)
                self._set(TunnelState.DISCONNECTED, last_error=str(e), fatal=True)
                return
            except TunnelTransientError as e:
                with self._lock:
                    self._attempt += 1
                    attempt = self._attempt
                    self._last_error = str(e)
                delay = self.backoff(attempt)
                self.delays.append(delay)
                self._log_failure(attempt, e, delay)
                if self._stop.wait(delay):
                    break
                continue

            if self._stop.is_set():
                self.client.disconnect()
                break

            self._set(TunnelState.CONNECTED, attempt=0, last_error=None)
            logger.info("Tunnel connected: {}", ", ".join(r.hostname for r in config.routes) or "remote routes")
            with self._lock:
                current = self.config
            if current.routes != config.routes:
                # Routes changed while connecting
                self._publish(current)

            try:
                self.client.wait(self._wake)
            except TunnelTransientError as e:
                logger.warning("{}", e)
                self._set(TunnelState.RECONNECTING, last_error=str(e))
                self.client.disconnect()
                state = TunnelState.RECONNECTING
                continue

            # Woken up: either stop() or a route change that needs a reconnect
            self._wake.clear()
            self.client.disconnect()
            if self._reconnect:
                self._reconnect = False
                state = TunnelState.RECONNECTING

        self._set(TunnelState.DISCONNECTED)
