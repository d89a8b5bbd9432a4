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
Health-gated startup sequencing.

One coordinating thread (whichever thread calls start/stop/restart or
process_events) owns the state table and is the only writer. Health probes run
on worker threads and report back through a queue, so a slow probe for one
service never holds up independent branches of the dependency graph.
"""
import queue
import subprocess
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Set, Tuple

from loguru import logger

from ..MODELS.runtime_state import ACTIVE_STATES, ServiceState, ServiceStatus
from ..MODELS.service_definition import ServiceDefinition
from ..MODELS.stack_config import StackConfig
from ..MANAGERS.health_monitor import HealthProber
from ..exceptions import (
    DependencyNotHealthyError,
    HealthCheckTimeout,
    ServiceStartError,
    StackvisorError,
    StartupFailedError,
    UnknownServiceError,
)
from .base_runtime import ProbeResult, ServiceRuntime
from .dependency_resolver import DependencyResolver

# (kind, service, generation, payload)
Event = Tuple[str, str, int, object]


def _now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class StartupSequencer:
    """
    Drives services from Pending to Healthy in dependency order and tears
    them down in reverse.
    """

    def __init__(
        self,
        config: StackConfig,
        runtime: ServiceRuntime,
        prober: Optional[HealthProber] = None,
        env_provider: Optional[Callable[[ServiceDefinition], Dict[str, str]]] = None,
        port_checker: Optional[Callable[[ServiceDefinition], None]] = None,
        on_change: Optional[Callable[[Dict[str, ServiceStatus]], None]] = None,
        poll_interval: float = 0.05,
        default_start_timeout: float = 30.0,
        stop_timeout: float = 10.0,
        max_probe_workers: int = 8,
    ):
        """
        :param config: Services to manage.
        :param runtime: Backend that launches and stops services.
        :param prober: Health probe runner; defaults to one over ``runtime``.
        :param env_provider: Builds the environment a service is started with.
        :param port_checker: Raises PortConflictError when a host port is taken.
        :param on_change: Receives a snapshot after every state transition.
        :param poll_interval: Seconds between checks for services without a health check.
        :param default_start_timeout: Start deadline for services without a health check.
        :param stop_timeout: Grace period given to each service on stop.
        :param max_probe_workers: Upper bound on concurrent probe threads.
        """
        self.config = config
        self.runtime = runtime
        self.prober = prober or HealthProber(runtime)
        self.env_provider = env_provider or (lambda svc: dict(svc.environment))
        self.port_checker = port_checker
        self.on_change = on_change
        self.poll_interval = poll_interval
        self.default_start_timeout = default_start_timeout
        self.stop_timeout = stop_timeout
        self.max_probe_workers = max_probe_workers

        self.resolver = DependencyResolver()
        self._graph = self.resolver.build_graph(config)

        self._states: Dict[str, ServiceStatus] = {name: ServiceStatus() for name in config.services}
        self._healthy_order: List[str] = []
        self._errors: Dict[str, StackvisorError] = {}
        self._events: "queue.Queue[Event]" = queue.Queue()
        self._lock = threading.Lock()
        self._op_lock = threading.RLock()
        self._cancel = threading.Event()

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    def snapshot(self) -> Dict[str, ServiceStatus]:
        """A consistent copy of every service's status."""
        with self._lock:
            return {name: status.copy() for name, status in self._states.items()}

    def state(self, name: str) -> ServiceState:
        with self._lock:
            return self._states[name].state

    @property
    def healthy_order(self) -> List[str]:
        with self._lock:
            return list(self._healthy_order)

    def stop_order(self) -> List[str]:
        """
        Services that are up, in the order stop() will take them down:
        services that never became healthy first, then the rest in reverse of
        the order they last reached Healthy.
        """
        with self._lock:
            never_healthy = [
                name for name in reversed(self.resolver.resolve_order(self.config))
                if self._states[name].state in ACTIVE_STATES and name not in self._healthy_order
            ]
            return never_healthy + list(reversed(self._healthy_order))

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def start(self, names: Optional[List[str]] = None) -> List[str]:
        """
        Brings services (default: all) and their dependencies up.

        Services already Healthy are left alone, so calling start twice in a
        row changes nothing the second time.

        :param names: Services to start; their dependencies are included.
        :return: The services that became healthy during this call, in order.
        :raises CyclicDependencyError: Before any state changes.
        :raises StartupFailedError: If any service failed; blocked dependents stay Pending.
        """
        with self._op_lock:
            for name in names or []:
                if name not in self.config.services:
                    raise UnknownServiceError(name, self.config.services)
            targets = self.resolver.closure(self.config, names) if names else self.resolver.resolve_order(self.config)

            if all(self.state(name) == ServiceState.HEALTHY for name in targets):
                logger.debug("All requested services already healthy")
                return []

            try:
                self.runtime.prepare(self.config)
            except (OSError, subprocess.SubprocessError) as e:
                raise ServiceStartError("stack", f"could not prepare runtime: {e}")

            for name in targets:
                state = self.state(name)
                if state == ServiceState.HEALTHY:
                    continue
                if state in ACTIVE_STATES:
                    self._stop_one(name)
                if state != ServiceState.PENDING:
                    self._set_state(name, ServiceState.PENDING, last_error=None)

            logger.info("Starting services in order: {}", ", ".join(targets))
            return self._run(targets)

    def stop(self) -> List[str]:
        """
        Stops every service that is up, dependents before their dependencies.

        Interrupts a start in progress on another thread: in-flight probes and
        waits are cancelled and Starting services end up Stopped.

        :return: The services that were stopped, in order.
        """
        self._cancel.set()
        with self._op_lock:
            try:
                stopped = []
                for name in self.stop_order():
                    if self._stop_one(name):
                        stopped.append(name)
                for name, status in self.snapshot().items():
                    if status.state == ServiceState.PENDING:
                        self._set_state(name, ServiceState.STOPPED)
                return stopped
            finally:
                self._cancel.clear()

    def restart(self, name: str) -> None:
        """
        Stops a single service and starts it again once its dependencies are
        confirmed Healthy.

        :raises UnknownServiceError: If the service is not declared.
        :raises DependencyNotHealthyError: The service is left Stopped.
        :raises StartupFailedError: If it does not become healthy again.
        """
        if name not in self.config.services:
            raise UnknownServiceError(name, self.config.services)

        with self._op_lock:
            self._stop_one(name)
            self._set_state(name, ServiceState.STOPPED)

            snapshot = self.snapshot()
            not_healthy = {
                dep: snapshot[dep].state.value for dep in self._graph[name]
                if snapshot[dep].state != ServiceState.HEALTHY
            }
            if not_healthy:
                raise DependencyNotHealthyError(name, not_healthy)

            self._set_state(name, ServiceState.PENDING, last_error=None)
            logger.info("Restarting service {}", name)
            self._run([name])

    def cancel(self) -> None:
        """
        Interrupts a start in progress without taking the operation lock, so
        it can be called from a signal handler. Cleared by the next stop().
        """
        self._cancel.set()

    def report_health(self, name: str, result: ProbeResult, exit_code: Optional[int] = None) -> None:
        """
        Queues a post-startup probe result; applied by process_events.
        Safe to call from any thread.
        """
        with self._lock:
            generation = self._states[name].generation
        self._events.put(("monitor", name, generation, (result, exit_code)))

    def process_events(self, timeout: float = 0.5) -> int:
        """
        Applies queued monitor results. Called by the coordinating thread
        while the stack is running in the foreground.

        :return: Number of events applied.
        """
        if not self._op_lock.acquire(timeout=timeout):
            return 0
        try:
            applied = 0
            deadline = time.monotonic() + timeout
            while True:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                try:
                    event = self._events.get(timeout=remaining)
                except queue.Empty:
                    break
                self._apply(event, set())
                applied += 1
            return applied
        finally:
            self._op_lock.release()

    # ------------------------------------------------------------------
    # Coordinator internals
    # ------------------------------------------------------------------

    def _run(self, targets: List[str]) -> List[str]:
        became_healthy: List[str] = []
        in_flight: Set[str] = set()
        failed: Dict[str, StackvisorError] = {}
        workers = max(1, min(self.max_probe_workers, len(targets)))
        executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="probe")
        cancelled = False

        try:
            while True:
                if self._cancel.is_set():
                    cancelled = True
                    self._cancel_starting(in_flight)
                    break

                for name in targets:
                    if self.state(name) != ServiceState.PENDING:
                        continue
                    if all(self.state(dep) == ServiceState.HEALTHY for dep in self._graph[name]):
                        if self._launch(name, executor):
                            in_flight.add(name)
                        else:
                            failed[name] = self._errors[name]

                if not in_flight:
                    break

                try:
                    event = self._events.get(timeout=self.poll_interval)
                except queue.Empty:
                    continue

                kind, name = event[0], event[1]
                outcome = self._apply(event, in_flight)
                if outcome == ServiceState.HEALTHY and name in targets:
                    became_healthy.append(name)
                elif outcome == ServiceState.FAILED and kind != "monitor":
                    failed[name] = self._errors[name]
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        if cancelled:
            logger.warning("Start interrupted by stop request")
            return became_healthy

        blocked = [name for name in targets if self.state(name) == ServiceState.PENDING]
        if failed or blocked:
            if blocked:
                logger.error("Services blocked by failed dependencies: {}", ", ".join(blocked))
            raise StartupFailedError(failed, blocked)
        return became_healthy

    def _launch(self, name: str, executor: ThreadPoolExecutor) -> bool:
        service = self.config.services[name]
        with self._lock:
            generation = self._states[name].generation + 1
        self._set_state(name, ServiceState.STARTING, generation=generation,
                        last_error=None, failing_streak=0, last_output="")
        try:
            if self.port_checker is not None and not self.runtime.is_running(service):
                self.port_checker(service)
            env = self.env_provider(service)
            logger.info("Starting service: {}", name)
            logger.debug("[{}] environment: {}", name, service.redacted_environment())
            self.runtime.start(service, env)
        except StackvisorError as e:
            self._fail(name, e)
            return False
        except (OSError, subprocess.SubprocessError) as e:
            self._fail(name, ServiceStartError(name, str(e)))
            return False

        executor.submit(self._probe_until_healthy, name, generation)
        return True

    def _probe_until_healthy(self, name: str, generation: int) -> None:
        """
        Worker: probes until success, deadline, process exit or cancellation,
        then posts exactly one terminal event.
        """
        service = self.config.services[name]
        hc = service.health_check
        if hc is not None and not hc.disabled:
            deadline, interval = hc.startup_deadline, hc.interval
        else:
            deadline, interval = self.default_start_timeout, self.poll_interval

        started = time.monotonic()
        last_output = ""
        while True:
            if self._cancel.is_set():
                self._events.put(("cancelled", name, generation, None))
                return
            try:
                result = self.prober.probe(service)
            except Exception as e:
                result = ProbeResult(False, f"probe error: {e}")

            if result.success:
                self._events.put(("healthy", name, generation, result.output))
                return
            last_output = result.output

            if not self.runtime.is_running(service):
                code = self.runtime.exit_code(service)
                if code is not None:
                    self._events.put(("failed", name, generation,
                                      ServiceStartError(name, f"exited with code {code} before becoming healthy")))
                    return

            elapsed = time.monotonic() - started
            if elapsed >= deadline:
                self._events.put(("failed", name, generation, HealthCheckTimeout(name, deadline, last_output)))
                return
            self._events.put(("progress", name, generation, last_output))

            if self._cancel.wait(min(interval, deadline - elapsed)):
                self._events.put(("cancelled", name, generation, None))
                return

    def _apply(self, event: Event, in_flight: Set[str]) -> Optional[ServiceState]:
        kind, name, generation, payload = event
        with self._lock:
            status = self._states[name]
            if generation != status.generation:
                return None
            current = status.state

        if kind == "healthy" and current == ServiceState.STARTING:
            in_flight.discard(name)
            self._mark_healthy(name, str(payload or ""))
            logger.info("Service {} is healthy", name)
            return ServiceState.HEALTHY

        if kind == "progress" and current == ServiceState.STARTING:
            with self._lock:
                self._states[name].failing_streak += 1
                self._states[name].last_output = str(payload or "")
            return None

        if kind == "failed" and current == ServiceState.STARTING:
            in_flight.discard(name)
            self._fail(name, payload)  # type: ignore[arg-type]
            return ServiceState.FAILED

        if kind == "cancelled":
            in_flight.discard(name)
            return None

        if kind == "monitor" and current in (ServiceState.HEALTHY, ServiceState.UNHEALTHY):
            result, exit_code = payload  # type: ignore[misc]
            return self._apply_monitor(name, current, result, exit_code)
        return None

    def _apply_monitor(self, name: str, current: ServiceState, result: ProbeResult,
                       exit_code: Optional[int]) -> Optional[ServiceState]:
        service = self.config.services[name]
        if exit_code is not None:
            self._fail(name, ServiceStartError(name, f"exited unexpectedly with code {exit_code}"))
            with self._lock:
                if name in self._healthy_order:
                    self._healthy_order.remove(name)
            return ServiceState.FAILED

        if result.success:
            if current == ServiceState.UNHEALTHY:
                logger.info("Service {} recovered", name)
                self._set_state(name, ServiceState.HEALTHY, failing_streak=0, last_output=result.output)
                return ServiceState.HEALTHY
            with self._lock:
                self._states[name].failing_streak = 0
            return None

        retries = service.health_check.retries if service.health_check else 1
        with self._lock:
            self._states[name].failing_streak += 1
            self._states[name].last_output = result.output
            streak = self._states[name].failing_streak
        if current == ServiceState.HEALTHY and streak >= retries:
            logger.warning("Service {} is unhealthy after {} failed checks: {}", name, streak, result.output)
            self._set_state(name, ServiceState.UNHEALTHY, last_error=result.output)
            return ServiceState.UNHEALTHY
        return None

    def _mark_healthy(self, name: str, output: str) -> None:
        with self._lock:
            if name in self._healthy_order:
                self._healthy_order.remove(name)
            # Keep dependencies ahead of anything that depends on them, so a
            # restarted service is still stopped after its dependents.
            dependents = set(self.config.dependents_of(name))
            position = next(
                (i for i, other in enumerate(self._healthy_order) if other in dependents),
                len(self._healthy_order),
            )
            self._healthy_order.insert(position, name)
        self._errors.pop(name, None)
        self._set_state(name, ServiceState.HEALTHY, healthy_since=_now(), failing_streak=0,
                        last_output=output, last_error=None)

    def _fail(self, name: str, error: StackvisorError) -> None:
        logger.error("{}", error)
        self._errors[name] = error
        self._set_state(name, ServiceState.FAILED, last_error=str(error))

    def _cancel_starting(self, in_flight: Set[str]) -> None:
        for name in list(in_flight):
            self._stop_one(name)
            self._set_state(name, ServiceState.STOPPED)
        in_flight.clear()

    def _stop_one(self, name: str) -> bool:
        """Stops a service if it is up. Returns False when there was nothing to stop."""
        state = self.state(name)
        if state not in ACTIVE_STATES:
            return False
        logger.info("Stopping service: {}", name)
        self.runtime.stop(self.config.services[name], timeout=self.stop_timeout)
        with self._lock:
            if name in self._healthy_order:
                self._healthy_order.remove(name)
        self._set_state(name, ServiceState.STOPPED)
        return True

    def _set_state(self, name: str, state: ServiceState, **fields) -> None:
        with self._lock:
            status = self._states[name]
            previous = status.state
            status.state = state
            for key, value in fields.items():
                setattr(status, key, value)
        if previous != state:
            logger.debug("{}: {} -> {}", name, previous.value, state.value)
        if self.on_change is not None:
            self.on_change(self.snapshot())

    def restore(self, statuses: Dict[str, ServiceStatus], healthy_order: List[str]) -> None:
        """
        Seeds the table from a snapshot persisted by another supervisor
        process. Only services the runtime still reports running are adopted;
        anything else recorded as up becomes Stopped.
        """
        with self._op_lock:
            adopted = []
            for name, status in statuses.items():
                if name not in self._states or status.state not in ACTIVE_STATES:
                    continue
                if self.runtime.is_running(self.config.services[name]):
                    with self._lock:
                        self._states[name] = status.copy()
                    adopted.append(name)
                else:
                    self._set_state(name, ServiceState.STOPPED)
            with self._lock:
                self._healthy_order = [
                    name for name in healthy_order
                    if name in adopted and self._states[name].state in (ServiceState.HEALTHY, ServiceState.UNHEALTHY)
                ]
            if adopted:
                logger.debug("Adopted running services: {}", ", ".join(adopted))
