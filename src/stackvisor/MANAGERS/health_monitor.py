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
Health probing for services: command and HTTP probes, plus a background
monitor that reports health drift and process exits once the stack is up.
"""
import threading
import time
from typing import Callable, Dict, Optional

import httpx
from loguru import logger

from ..MODELS.service_definition import ServiceDefinition
from ..RUNNERS.base_runtime import ProbeResult, ServiceRuntime


class HealthProber:
    """
    Runs a single health probe for a service.
    """

    def __init__(self, runtime: ServiceRuntime):
        self.runtime = runtime

    def probe(self, service: ServiceDefinition) -> ProbeResult:
        """
        Runs the service's health check once.

        Services without a health check (or with ``NONE``) are healthy as
        long as the runtime reports them running.

        Args:
            service: The service to probe.

        Returns:
            ProbeResult with success flag and truncated output.
        """
        hc = service.health_check
        if hc is None or hc.disabled:
            if self.runtime.is_running(service):
                return ProbeResult(True, "running")
            return ProbeResult(False, f"not running (exit code {self.runtime.exit_code(service)})")

        if hc.http:
            return self._probe_http(hc.http, hc.timeout)

        cmd = hc.test
        if cmd[0] == "CMD":
            return self.runtime.exec_probe(service, cmd[1:], shell=False, timeout=hc.timeout)
        if cmd[0] == "CMD-SHELL":
            return self.runtime.exec_probe(service, cmd[1] if len(cmd) > 1 else "", shell=True,
                                           timeout=hc.timeout)
        return self.runtime.exec_probe(service, cmd, shell=False, timeout=hc.timeout)

    @staticmethod
    def _probe_http(url: str, timeout: float) -> ProbeResult:
        try:
            with httpx.Client(timeout=timeout, follow_redirects=True, trust_env=False) as client:
                response = client.get(url)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            return ProbeResult(False, str(e) or type(e).__name__)
        return ProbeResult(not response.is_error, f"HTTP {response.status_code}")


class HealthMonitor:
    """
    Periodically probes running services and reports each result.

    The monitor never changes service state itself; it hands every result to
    ``on_result`` (service name, result, exit code if the process is gone) and
    the owner of the state table decides what the result means.
    """

    def __init__(
        self,
        services: Dict[str, ServiceDefinition],
        prober: HealthProber,
        on_result: Callable[[str, ProbeResult, Optional[int]], None],
        interval: float = 5.0,
    ):
        """
        Initializes the health monitor.

        :param services: Services to monitor, by name.
        :param prober: Probe runner.
        :param on_result: Called with each probe result.
        :param interval: Seconds between rounds when a service has no interval of its own.
        """
        self.services = services
        self.prober = prober
        self.on_result = on_result
        self.interval = interval
        self._stop = threading.Event()
        self._watched: Dict[str, float] = {}
        self._lock = threading.Lock()
        self.thread: Optional[threading.Thread] = None

    def watch(self, name: str) -> None:
        """Starts probing ``name`` on the next round."""
        with self._lock:
            self._watched.setdefault(name, 0.0)

    def unwatch(self, name: str) -> None:
        with self._lock:
            self._watched.pop(name, None)

    def start(self):
        """
        Starts the health monitoring thread.
        """
        self._stop.clear()
        self.thread = threading.Thread(target=self._monitor_loop, name="health-monitor", daemon=True)
        self.thread.start()

    def stop(self):
        """
        Stops the health monitoring thread.
        """
        self._stop.set()
        if self.thread:
            self.thread.join(timeout=5)

    def _monitor_loop(self):
        while not self._stop.is_set():
            now = time.monotonic()
            with self._lock:
                due = [name for name, next_at in self._watched.items() if next_at <= now]

            for name in due:
                service = self.services[name]
                result = self.prober.probe(service)
                exit_code = None
                if not result.success and not self.prober.runtime.is_running(service):
                    exit_code = self.prober.runtime.exit_code(service)
                try:
                    self.on_result(name, result, exit_code)
                except Exception as e:
                    logger.error("Health result handler failed for {}: {}", name, e)

                hc = service.health_check
                interval = hc.interval if hc is not None else self.interval
                with self._lock:
                    if name in self._watched:
                        self._watched[name] = time.monotonic() + interval

            self._stop.wait(min(self.interval, 0.5))
