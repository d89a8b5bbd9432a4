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
Runtime that drives the Docker CLI: one detached container per service,
attached to the stack's networks, with named volumes bind-mounted from
their host backing paths.
"""
import os
import shutil
import subprocess
import threading
from typing import Dict, Iterator, List, Optional, Union

from loguru import logger

from ..MODELS.service_definition import ServiceDefinition
from ..MODELS.stack_config import StackConfig
from ..MANAGERS.volume_manager import VolumeManager
from ..exceptions import ServiceStartError
from .base_runtime import ProbeResult, ServiceRuntime

DEFAULT_NETWORK = "stackvisor"


class DockerRuntime(ServiceRuntime):
    """
    Runs services as Docker containers.
    """

    name = "docker"

    def __init__(self, volume_manager: VolumeManager, docker_bin: str = "docker",
                 project: str = "stackvisor"):
        """
        :param volume_manager: Provides the host paths behind named volumes.
        :param docker_bin: Docker CLI executable.
        :param project: Label value identifying containers of this stack.
        """
        self.volume_manager = volume_manager
        self.docker_bin = docker_bin
        self.project = project

    def _docker(self, *args: str, env: Optional[Dict[str, str]] = None,
                timeout: Optional[float] = 60, check: bool = False) -> subprocess.CompletedProcess:
        if shutil.which(self.docker_bin) is None:
            raise FileNotFoundError(f"{self.docker_bin} executable not found on PATH")
        return subprocess.run(
            [self.docker_bin, *args],
            env=env,
            capture_output=True,
            text=True,
            timeout=timeout,
            check=check,
        )

    def prepare(self, config: StackConfig) -> None:
        networks = config.networks or [DEFAULT_NETWORK]
        for network in networks:
            if self._docker("network", "inspect", network).returncode != 0:
                logger.info("Creating network {}", network)
                self._docker("network", "create", "--label", f"stackvisor.project={self.project}",
                             network, check=True)

    def build_run_command(self, service: ServiceDefinition, env: Dict[str, str]) -> List[str]:
        """
        Assembles ``docker run`` arguments for a service.

        Environment values are not placed on the command line; each key is
        passed bare so docker reads the value from its own environment.
        """
        args = ["run", "-d", "--name", service.runtime_name,
                "--label", f"stackvisor.project={self.project}",
                "--label", f"stackvisor.service={service.name}"]

        networks = service.networks or [DEFAULT_NETWORK]
        args += ["--network", networks[0], "--network-alias", service.name]

        for container_port, host_port in sorted(service.ports.items()):
            args += ["-p", f"{host_port}:{container_port}" if host_port else str(container_port)]

        for target, source in self.volume_manager.ensure_service_volumes(service.name, service.volumes).items():
            read_only = any(m.target == target and m.read_only for m in service.volumes)
            args += ["-v", f"{source}:{target}{':ro' if read_only else ''}"]

        for key in sorted(env):
            args += ["-e", key]
        for key, value in sorted(service.labels.items()):
            args += ["--label", f"{key}={value}"]
        if service.working_dir:
            args += ["-w", service.working_dir]
        if service.entrypoint:
            args += ["--entrypoint", service.entrypoint[0]]

        args.append(service.image_name)
        args += service.entrypoint[1:] + service.cmd
        return args

    def start(self, service: ServiceDefinition, env: Dict[str, str]) -> None:
        if not service.image_name:
            raise ServiceStartError(service.name, "the docker runtime needs an image")
        try:
            if self.is_running(service):
                logger.debug("Container {} already running, adopting it", service.runtime_name)
                return
            # Leftover exited container with the same name
            self._docker("rm", "-f", service.runtime_name)

            result = self._docker(*self.build_run_command(service, env),
                                  env={**os.environ, **env}, timeout=None)
            if result.returncode != 0:
                raise ServiceStartError(service.name, result.stderr.strip() or "docker run failed")

            for network in service.networks[1:]:
                self._docker("network", "connect", "--alias", service.name, network, service.runtime_name)
        except (OSError, subprocess.SubprocessError) as e:
            raise ServiceStartError(service.name, str(e))

    def stop(self, service: ServiceDefinition, timeout: float = 10.0) -> None:
        try:
            self._docker("stop", "-t", str(int(timeout)), service.runtime_name, timeout=timeout + 30)
            self._docker("rm", "-f", service.runtime_name)
        except (OSError, subprocess.SubprocessError) as e:
            logger.warning("Could not stop container {}: {}", service.runtime_name, e)

    def _inspect(self, service: ServiceDefinition, template: str) -> Optional[str]:
        try:
            result = self._docker("inspect", "-f", template, service.runtime_name, timeout=30)
        except (OSError, subprocess.SubprocessError):
            return None
        if result.returncode != 0:
            return None
        return result.stdout.strip()

    def is_running(self, service: ServiceDefinition) -> bool:
        return self._inspect(service, "{{.State.Running}}") == "true"

    def exit_code(self, service: ServiceDefinition) -> Optional[int]:
        if self._inspect(service, "{{.State.Status}}") != "exited":
            return None
        code = self._inspect(service, "{{.State.ExitCode}}")
        return int(code) if code and code.lstrip("-").isdigit() else None

    def exec_probe(self, service: ServiceDefinition, command: Union[List[str], str],
                   shell: bool, timeout: float) -> ProbeResult:
        argv = ["exec", service.runtime_name]
        argv += ["sh", "-c", command] if shell else list(command)
        try:
            result = self._docker(*argv, timeout=timeout)
        except subprocess.TimeoutExpired:
            return ProbeResult(False, "Health check timed out")
        except OSError as e:
            return ProbeResult(False, str(e))
        if result.returncode == 0:
            return ProbeResult(True, result.stdout[:500])
        return ProbeResult(False, result.stderr[:500] or f"Exit code: {result.returncode}")

    def stream_logs(self, service: ServiceDefinition, follow: bool = True,
                    stop_event: Optional[threading.Event] = None) -> Iterator[str]:
        args = [self.docker_bin, "logs", "--tail", "100"]
        if follow:
            args.append("-f")
        args.append(service.runtime_name)

        proc = subprocess.Popen(args, stdout=subprocess.PIPE, stderr=subprocess.STDOUT, text=True)
        try:
            for line in proc.stdout:
                if stop_event is not None and stop_event.is_set():
                    break
                yield line.rstrip("\n")
        finally:
            proc.terminate()
            proc.wait(timeout=5)
