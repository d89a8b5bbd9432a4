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
Shared fakes: an in-memory runtime, a scripted health prober and a scripted
tunnel client, so sequencing and reconnect logic can be tested without
containers or network access.
"""
import threading
import time
from collections import Counter
from typing import Dict, Iterable, List, Optional

from stackvisor.MODELS.service_definition import HealthCheck, ServiceDefinition
from stackvisor.MODELS.stack_config import StackConfig
from stackvisor.RUNNERS.base_runtime import ProbeResult, ServiceRuntime
from stackvisor.RUNNERS.tunnel_client import TunnelClient


class FakeRuntime(ServiceRuntime):
    """Records start/stop calls instead of launching anything."""

    name = "fake"

    def __init__(self):
        self.running = set()
        self.calls: List[tuple] = []
        self.envs: Dict[str, Dict[str, str]] = {}
        self.exit_codes: Dict[str, int] = {}
        self.exit_on_start: Dict[str, int] = {}
        self.fail_start: Dict[str, Exception] = {}
        self.logs: Dict[str, List[str]] = {}
        self.prepared = 0
        self._lock = threading.Lock()

    def prepare(self, config):
        self.prepared += 1

    def start(self, service, env):
        if service.name in self.fail_start:
            raise self.fail_start[service.name]
        with self._lock:
            self.calls.append(("start", service.name))
            self.envs[service.name] = env
            if service.name in self.exit_on_start:
                self.exit_codes[service.name] = self.exit_on_start[service.name]
            else:
                self.exit_codes.pop(service.name, None)
                self.running.add(service.name)

    def stop(self, service, timeout=10.0):
        with self._lock:
            self.calls.append(("stop", service.name))
            self.running.discard(service.name)

    def is_running(self, service):
        with self._lock:
            return service.name in self.running

    def exit_code(self, service):
        with self._lock:
            return self.exit_codes.get(service.name)

    def exec_probe(self, service, command, shell, timeout):
        return ProbeResult(False, "no probes in the fake runtime")

    def stream_logs(self, service, follow=True, stop_event=None):
        for line in self.logs.get(service.name, []):
            yield line

    def started(self) -> List[str]:
        return [name for action, name in self.calls if action == "start"]

    def stopped(self) -> List[str]:
        return [name for action, name in self.calls if action == "stop"]


class ScriptedProber:
    """
    Healthy after a configured number of failed probes; services in
    ``never`` never pass.
    """

    def __init__(self, runtime: FakeRuntime, healthy_after: Optional[Dict[str, int]] = None,
                 never: Iterable[str] = ()):
        self.runtime = runtime
        self.healthy_after = dict(healthy_after or {})
        self.never = set(never)
        self.calls: Counter = Counter()
        self._lock = threading.Lock()

    def probe(self, service):
        with self._lock:
            self.calls[service.name] += 1
            count = self.calls[service.name]
        if not self.runtime.is_running(service):
            return ProbeResult(False, "not running")
        if service.name in self.never:
            return ProbeResult(False, "connection refused")
        if count > self.healthy_after.get(service.name, 0):
            return ProbeResult(True, "ok")
        return ProbeResult(False, "starting")


class FakeTunnelClient(TunnelClient):
    """
    Each connect() consumes the next scripted outcome: an exception to raise,
    or None for a successful connection. ``connect_delay`` makes every
    connect take that long unless interrupted.
    """

    def __init__(self, script: Iterable[Optional[Exception]] = (), incremental: bool = False,
                 drops: Iterable[Exception] = (), connect_delay: float = 0.0):
        self.script = list(script)
        self.connect_delay = connect_delay
        self.drops = list(drops)
        self.supports_incremental_routes = incremental
        self.configs = []
        self.route_updates = []
        self.disconnects = 0
        self.connected = threading.Event()
        self._lock = threading.Lock()

    @property
    def connects(self) -> int:
        return len(self.configs)

    def connect(self, config, interrupt=None):
        with self._lock:
            self.configs.append(config)
            outcome = self.script.pop(0) if self.script else None
        if self.connect_delay and (interrupt or threading.Event()).wait(self.connect_delay):
            return
        if outcome is not None:
            raise outcome
        self.connected.set()

    def wait(self, interrupt):
        with self._lock:
            drop = self.drops.pop(0) if self.drops else None
        if drop is not None:
            self.connected.clear()
            raise drop
        interrupt.wait()

    def disconnect(self):
        self.disconnects += 1

    def update_routes(self, routes):
        self.route_updates.append(list(routes))


def make_service(name: str, depends_on: Iterable[str] = (), ports: Optional[Dict[int, int]] = None,
                 start_period: float = 0.0, interval: float = 0.01, retries: int = 3,
                 **kwargs) -> ServiceDefinition:
    return ServiceDefinition(
        name=name,
        image_name=f"example/{name}:1.0",
        depends_on=list(depends_on),
        ports=ports or {},
        health_check=HealthCheck(test=["CMD", "true"], interval=interval, retries=retries,
                                 start_period=start_period),
        **kwargs,
    )


def make_stack(*services: ServiceDefinition) -> StackConfig:
    return StackConfig(services={svc.name: svc for svc in services})


def wait_for(predicate, timeout: float = 5.0, interval: float = 0.01) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()
