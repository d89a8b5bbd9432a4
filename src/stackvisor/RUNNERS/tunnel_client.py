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
Tunnel clients: the outbound connector processes the tunnel manager supervises.
"""
import os
import queue
import shutil
import subprocess
import threading
import time
from abc import ABC, abstractmethod
from typing import List, Optional

from jinja2 import Template
from loguru import logger

from ..MODELS.tunnel_config import TunnelConfig, TunnelRoute
from ..exceptions import TunnelAuthError, TunnelTransientError

INGRESS_TEMPLATE = """\
# Generated by stackvisor; edit TUNNEL_HOSTNAMES or x-tunnel instead.
{% if tunnel_id %}tunnel: {{ tunnel_id }}
{% endif %}ingress:
{% for route in routes %}  - hostname: {{ route.hostname }}
    service: {{ route.target }}
{% endfor %}  - service: http_status:404
"""

_CONNECTED_MARKERS = ("Registered tunnel connection", "Connection registered")
_AUTH_MARKERS = ("Unauthorized", "Invalid tunnel secret", "token is not valid", "Provided Tunnel token is not valid")


class TunnelClient(ABC):
    """
    One outbound tunnel connection.
    """

    #: Whether routes can change on a live connection without reconnecting.
    supports_incremental_routes = False

    @abstractmethod
    def connect(self, config: TunnelConfig, interrupt: Optional[threading.Event] = None) -> None:
        """
        Establishes the connection. Returns early, without raising, once
        ``interrupt`` is set; the caller then disconnects.

        :raises TunnelAuthError: If the credential is rejected.
        :raises TunnelTransientError: For anything that may succeed on retry.
        """

    @abstractmethod
    def wait(self, interrupt: threading.Event) -> None:
        """
        Blocks while connected. Returns when ``interrupt`` is set.

        :raises TunnelTransientError: If the connection drops.
        """

    @abstractmethod
    def disconnect(self) -> None:
        """Tears the connection down; a no-op when not connected."""

    def update_routes(self, routes: List[TunnelRoute]) -> None:
        """Applies a new route set on a live connection."""
        raise NotImplementedError(f"{type(self).__name__} cannot update routes in place")


def render_ingress(routes: List[TunnelRoute], tunnel_id: Optional[str] = None) -> str:
    """
    Renders an ingress configuration: one rule per hostname, then a catch-all 404.
    """
    return Template(INGRESS_TEMPLATE).render(routes=routes, tunnel_id=tunnel_id)


class CloudflaredClient(TunnelClient):
    """
    Runs ``cloudflared tunnel run`` as a child process and reads its log to
    learn whether the connection registered.
    """

    def __init__(self, config_dir: str = ".stackvisor/tunnel", binary: str = "cloudflared",
                 connect_timeout: float = 30.0):
        """
        :param config_dir: Where the rendered ingress config is written.
        :param binary: cloudflared executable.
        :param connect_timeout: Seconds to wait for the first registered connection.
        """
        self.config_dir = config_dir
        self.binary = binary
        self.connect_timeout = connect_timeout
        self.process: Optional[subprocess.Popen] = None
        self._lines: "queue.Queue[Optional[str]]" = queue.Queue()
        self._reader: Optional[threading.Thread] = None

    def write_config(self, config: TunnelConfig) -> str:
        os.makedirs(self.config_dir, exist_ok=True)
        path = os.path.join(self.config_dir, "config.yml")
        with open(path, "w") as f:
            f.write(render_ingress(config.routes))
        return path

    def build_command(self, config_path: str) -> List[str]:
        return [self.binary, "tunnel", "--no-autoupdate", "--config", config_path, "run"]

    def connect(self, config: TunnelConfig, interrupt: Optional[threading.Event] = None) -> None:
        interrupt = interrupt or threading.Event()
        if not config.token:
            raise TunnelAuthError("no tunnel token configured")
        if shutil.which(self.binary) is None:
            raise TunnelTransientError(f"{self.binary} not found on PATH")

        config_path = self.write_config(config)
        # The token travels in the environment, never on the command line.
        env = {**os.environ, "TUNNEL_TOKEN": config.token}
        try:
            process = subprocess.Popen(
                self.build_command(config_path),
                env=env,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
            )
        except OSError as e:
            raise TunnelTransientError(str(e))
        self.process = process

        self._lines = queue.Queue()
        self._reader = threading.Thread(target=self._read_output, args=(process, self._lines),
                                        name="cloudflared-log", daemon=True)
        self._reader.start()

        deadline = time.monotonic() + self.connect_timeout
        tail: List[str] = []
        while not interrupt.is_set():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                self.disconnect()
                raise TunnelTransientError(f"no connection registered within {self.connect_timeout:.0f}s")
            try:
                line = self._lines.get(timeout=min(remaining, 0.2))
            except queue.Empty:
                continue
            if line is None:
                code = process.wait()
                if self.process is process:
                    self.process = None
                detail = tail[-1] if tail else "no output"
                raise TunnelTransientError(f"cloudflared exited with code {code}: {detail}")
            tail = (tail + [line])[-5:]
            if any(marker in line for marker in _AUTH_MARKERS):
                self.disconnect()
                raise TunnelAuthError(line.strip())
            if any(marker in line for marker in _CONNECTED_MARKERS):
                logger.debug("cloudflared: {}", line.strip())
                return

    @staticmethod
    def _read_output(process: subprocess.Popen, lines: "queue.Queue[Optional[str]]") -> None:
        for line in process.stdout:
            lines.put(line.rstrip("\n"))
        lines.put(None)

    def wait(self, interrupt: threading.Event) -> None:
        while not interrupt.wait(0.5):
            self._drain_log()
            process = self.process
            if process is None:
                raise TunnelTransientError("tunnel process is not running")
            code = process.poll()
            if code is not None:
                if self.process is process:
                    self.process = None
                raise TunnelTransientError(f"cloudflared exited with code {code}")

    def _drain_log(self) -> None:
        while True:
            try:
                line = self._lines.get_nowait()
            except queue.Empty:
                return
            if line:
                logger.debug("cloudflared: {}", line.strip())

    def disconnect(self) -> None:
        process, self.process = self.process, None
        if process is None:
            return
        if process.poll() is None:
            process.terminate()
            try:
                process.wait(timeout=10)
            except subprocess.TimeoutExpired:
                process.kill()
                process.wait()
