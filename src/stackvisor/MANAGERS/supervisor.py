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
Supervisor for the whole stack: wires configuration, runtime, sequencer,
health monitor and tunnel together behind start/stop/status/logs/restart.
"""
import os
import threading
from typing import Callable, Dict, List, Optional

from loguru import logger

from ..MODELS.runtime_state import ACTIVE_STATES, ServiceState, ServiceStatus
from ..MODELS.service_definition import ServiceDefinition
from ..MODELS.stack_config import StackConfig
from ..MODELS.stack_settings import StackSettings
from ..MODELS.tunnel_config import TunnelConfig, TunnelStatus
from ..PARSERS.manifest_parser import ManifestParser
from ..RUNNERS.base_runtime import ServiceRuntime
from ..RUNNERS.docker_runtime import DockerRuntime
from ..RUNNERS.process_runtime import ProcessRuntime
from ..RUNNERS.startup_sequencer import StartupSequencer
from ..RUNNERS.tunnel_client import CloudflaredClient, TunnelClient
from ..exceptions import (
    MissingConfigurationError,
    StackvisorError,
    StartupFailedError,
    UnknownServiceError,
)
from .environment_manager import EnvironmentManager, TUNNEL_REQUIRED
from .health_monitor import HealthMonitor
from .log_aggregator import LogAggregator
from .network_manager import NetworkManager
from .state_store import StateStore
from .tunnel_manager import TunnelManager
from .volume_manager import NamedVolume, VolumeManager


class Supervisor:
    """
    Runs a stack of services described by a StackConfig.
    """
    def __init__(self, config: StackConfig, settings: StackSettings, base_dir: str = ".",
                 runtime: Optional[ServiceRuntime] = None,
                 tunnel_client: Optional[TunnelClient] = None,
                 **sequencer_options):
        """
        Initializes the supervisor.

        :param config: Services and tunnel routes from the manifest.
        :param settings: Resolved settings.
        :param base_dir: Project directory.
        :param runtime: Runtime backend; built from settings.runtime when omitted.
        :param tunnel_client: Tunnel connector; cloudflared when omitted.
        :param sequencer_options: Passed through to StartupSequencer.
        """
        self.config = config
        self.settings = settings
        self.base_dir = base_dir
        self.state_dir = os.path.join(base_dir, settings.state_dir)

        self.volume_manager = VolumeManager(base_dir, os.path.join(settings.state_dir, "volumes"))
        self.runtime = runtime or self._make_runtime()
        self.network_manager = NetworkManager(config)
        self.env_manager = EnvironmentManager(base_dir)
        self.state_store = StateStore(self.state_dir)

        self.sequencer = StartupSequencer(
            config,
            self.runtime,
            env_provider=self._service_env,
            port_checker=self.network_manager.check_ports,
            on_change=self._persist,
            **sequencer_options,
        )
        self.health_monitor = HealthMonitor(config.services, self.sequencer.prober,
                                            on_result=self.sequencer.report_health)

        self.tunnel_config = self._merge_tunnel_config()
        self.tunnel: Optional[TunnelManager] = None
        if self.tunnel_config.enabled:
            client = tunnel_client or CloudflaredClient(config_dir=os.path.join(self.state_dir, "tunnel"))
            self.tunnel = TunnelManager(client, self.tunnel_config)

        self._shutdown = threading.Event()
        self._restored = False
        self._tunnel_fatal_reported = False

    @classmethod
    def from_project(cls, base_dir: str = ".", manifest: Optional[str] = None,
                     env_file: str = ".env", require_tunnel: bool = False,
                     **kwargs) -> "Supervisor":
        """
        Loads settings (defaults < .env < environment) and the manifest.

        :raises MissingConfigurationError: Listing every unset required key.
        """
        settings, context = EnvironmentManager(base_dir, env_file).load(require_tunnel=require_tunnel)
        manifest_path = manifest or os.path.join(base_dir, settings.manifest)
        config = ManifestParser(context).parse(manifest_path)
        if config.tunnel.routes and not (settings.tunnel_token or config.tunnel.token):
            raise MissingConfigurationError(dict(TUNNEL_REQUIRED))
        return cls(config, settings, base_dir, **kwargs)

    def _make_runtime(self) -> ServiceRuntime:
        if self.settings.runtime == "process":
            return ProcessRuntime(self.base_dir, self.settings.state_dir, volume_manager=self.volume_manager)
        return DockerRuntime(self.volume_manager)

    def _merge_tunnel_config(self) -> TunnelConfig:
        merged = TunnelConfig(token=self.settings.tunnel_token or self.config.tunnel.token,
                              routes=list(self.config.tunnel.routes))
        # Routes from the environment win over the manifest for the same hostname
        for route in self.settings.tunnel_routes:
            merged = merged.with_route(route.hostname, route.target)
        return merged

    def _service_env(self, service: ServiceDefinition) -> Dict[str, str]:
        native = isinstance(self.runtime, ProcessRuntime)
        env = self.env_manager.get_merged_environment(service.environment, service.environment_files,
                                                      inherit=native)
        if native:
            env.update(self.network_manager.get_service_discovery_env(self.network_manager.peers(service.name)))
        return env

    def _persist(self, snapshot: Dict[str, ServiceStatus]) -> None:
        tunnel = self.tunnel.status().model_dump(mode="json") if self.tunnel is not None else None
        self.state_store.save(snapshot, self.sequencer.healthy_order, tunnel)

    def _restore(self) -> None:
        """Adopts services a previous supervisor process left running."""
        if self._restored:
            return
        self._restored = True
        statuses, healthy_order, _ = self.state_store.load()
        if statuses:
            self.sequencer.restore(statuses, healthy_order)

    def _service(self, name: str) -> ServiceDefinition:
        if name not in self.config.services:
            raise UnknownServiceError(name, self.config.services)
        return self.config.services[name]

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def start(self, services: Optional[List[str]] = None) -> List[str]:
        """
        Starts services in dependency order, each once its dependencies are healthy.

        :return: Services that became healthy, in order.
        """
        self._restore()
        return self.sequencer.start(services)

    def run(self, services: Optional[List[str]] = None) -> None:
        """
        Starts the stack and keeps supervising it in the foreground (health
        drift, tunnel) until request_shutdown() is called, then stops it.
        """
        self._shutdown.clear()
        failure: Optional[StartupFailedError] = None
        try:
            self.start(services)
        except StartupFailedError as e:
            failure = e
            running = [name for name, status in self.sequencer.snapshot().items()
                       if status.state in (ServiceState.HEALTHY, ServiceState.UNHEALTHY)]
            if not running:
                self.stop()
                raise
            logger.error("{}", e)
            logger.warning("Continuing with the services that did start: {}", ", ".join(running))

        try:
            for name, status in self.sequencer.snapshot().items():
                if status.state in (ServiceState.HEALTHY, ServiceState.UNHEALTHY):
                    self.health_monitor.watch(name)
            self.health_monitor.start()
            if self.tunnel is not None:
                self.tunnel.start()

            while not self._shutdown.is_set():
                self.sequencer.process_events(timeout=0.5)
                self._check_tunnel()
        finally:
            self.stop()
        if failure is not None:
            raise failure

    def request_shutdown(self) -> None:
        """Asks a running run() loop to stop the stack. Safe from signal handlers."""
        self._shutdown.set()
        self.sequencer.cancel()

    def run_tunnel(self) -> TunnelStatus:
        """
        Runs only the tunnel manager in the foreground until shutdown is
        requested or the credential is rejected.
        """
        if self.tunnel is None:
            raise MissingConfigurationError(dict(TUNNEL_REQUIRED))
        self._shutdown.clear()
        self.tunnel.start()
        try:
            while not self._shutdown.wait(0.5):
                if self.tunnel.status().fatal:
                    break
        finally:
            status = self.tunnel.status()
            self.tunnel.stop()
        return status

    def _check_tunnel(self) -> None:
        if self.tunnel is None or self._tunnel_fatal_reported:
            return
        status = self.tunnel.status()
        if status.fatal:
            self._tunnel_fatal_reported = True
            logger.error("Tunnel stopped: {}. Local services keep running.", status.last_error)

    def stop(self) -> List[str]:
        """
        Stops the tunnel, then all services in reverse dependency order.

        :return: The services that were stopped.
        """
        self._restore()
        if self.tunnel is not None:
            self.tunnel.stop()
        self.health_monitor.stop()
        stopped = self.sequencer.stop()
        for name in stopped:
            self.network_manager.release_ports(name)
        if stopped:
            logger.info("Stopped: {}", ", ".join(stopped))
        return stopped

    def restart(self, name: str) -> None:
        self._service(name)
        self._restore()
        self.health_monitor.unwatch(name)
        self.sequencer.restart(name)
        self.health_monitor.watch(name)

    def status(self) -> Dict[str, ServiceStatus]:
        """
        Per-service status snapshot, including services adopted from a
        supervisor running in another process.
        """
        self._restore()
        return self.sequencer.snapshot()

    def tunnel_status(self) -> Optional[TunnelStatus]:
        if self.tunnel is not None and self.tunnel.thread is not None:
            return self.tunnel.status()
        _, _, recorded = self.state_store.load()
        if recorded:
            return TunnelStatus.model_validate(recorded)
        return None

    def logs(self, names: List[str], follow: bool = True,
             echo: Callable[[str], None] = print) -> None:
        """
        Writes the output of the given services (all when empty), prefixed
        with the service name, until interrupted or every stream ends.
        """
        services = [self._service(n) for n in names] if names else list(self.config.services.values())
        LogAggregator(self.runtime).tail_logs(services, follow=follow, echo=echo)

    # ------------------------------------------------------------------
    # Volumes
    # ------------------------------------------------------------------

    def volumes(self) -> List[NamedVolume]:
        return self.volume_manager.list_volumes()

    def _require_volume_idle(self, name: str) -> None:
        self._restore()
        snapshot = self.sequencer.snapshot()
        users = [
            svc.name for svc in self.config.services.values()
            if any(m.is_named and m.source == name for m in svc.volumes)
            and snapshot[svc.name].state in ACTIVE_STATES
        ]
        if users:
            raise StackvisorError(
                f"Volume {name} is in use by {', '.join(users)}",
                service=users[0],
                hint="run 'stackvisor stop' before backing up, restoring or wiping volumes",
            )

    def backup_volume(self, name: str, destination: str) -> str:
        self._require_volume_idle(name)
        return self.volume_manager.backup_volume(name, destination)

    def restore_volume(self, name: str, archive: str) -> NamedVolume:
        self._require_volume_idle(name)
        return self.volume_manager.restore_volume(name, archive)

    def wipe_volume(self, name: str) -> bool:
        self._require_volume_idle(name)
        return self.volume_manager.remove_volume(name)
