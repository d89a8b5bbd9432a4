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
Runtime that runs each service's command as a native process.

Volumes are mapped with symlinks, output goes to one log file per service,
and health check commands run on the host with the service's environment.
"""
import os
import subprocess
import threading
import time
from collections import deque
from typing import Dict, Iterator, List, Optional, Union

from ..MODELS.service_definition import ServiceDefinition
from ..MANAGERS.volume_manager import VolumeManager
from ..exceptions import ServiceStartError
from .base_runtime import ProbeResult, ServiceRuntime
from .process_runner import ProcessRunner

# Lines shown for a log that was not started by this runtime, like `docker logs --tail`
TAIL_LINES = 100


class ProcessRuntime(ServiceRuntime):
    """
    Runs services as local processes instead of containers.
    """

    name = "process"

    def __init__(self, base_dir: str = ".", state_dir: str = ".stackvisor",
                 volume_manager: Optional[VolumeManager] = None):
        """
        :param base_dir: Project directory.
        :param state_dir: Directory for logs and volumes, relative to base_dir.
        :param volume_manager: Shared volume manager.
        """
        self.base_dir = base_dir
        self.log_dir = os.path.join(base_dir, state_dir, "logs")
        self.volume_manager = volume_manager or VolumeManager(base_dir, os.path.join(state_dir, "volumes"))
        self._runners: Dict[str, ProcessRunner] = {}
        self._envs: Dict[str, Dict[str, str]] = {}
        self._log_offsets: Dict[str, int] = {}

    def log_path(self, service: ServiceDefinition) -> str:
        return os.path.join(self.log_dir, f"{service.name}.log")

    def _runner(self, service: ServiceDefinition) -> ProcessRunner:
        if service.name not in self._runners:
            self._runners[service.name] = ProcessRunner(service.name, log_file=self.log_path(service))
        return self._runners[service.name]

    def start(self, service: ServiceDefinition, env: Dict[str, str]) -> None:
        command = service.entrypoint + service.cmd
        if not command:
            raise ServiceStartError(service.name, "no command to run with the process runtime")

        runner = self._runner(service)
        if runner.is_running():
            return

        self.volume_manager.prepare_volumes(service.name, service.volumes, service.working_dir)
        path = self.log_path(service)
        self._log_offsets[service.name] = os.path.getsize(path) if os.path.exists(path) else 0
        try:
            runner.start(command, env=env, working_dir=service.working_dir)
        except OSError as e:
            raise ServiceStartError(service.name, str(e))
        self._envs[service.name] = env

    def stop(self, service: ServiceDefinition, timeout: float = 10.0) -> None:
        runner = self._runners.get(service.name)
        if runner is not None:
            runner.stop(timeout=timeout)

    def is_running(self, service: ServiceDefinition) -> bool:
        runner = self._runners.get(service.name)
        return runner is not None and runner.is_running()

    def exit_code(self, service: ServiceDefinition) -> Optional[int]:
        runner = self._runners.get(service.name)
        return runner.get_exit_code() if runner is not None else None

    def exec_probe(self, service: ServiceDefinition, command: Union[List[str], str],
                   shell: bool, timeout: float) -> ProbeResult:
        env = self._envs.get(service.name) or dict(os.environ)
        try:
            result = subprocess.run(
                command,
                shell=shell,
                env=env,
                cwd=service.working_dir,
                capture_output=True,
                timeout=timeout,
                text=True,
            )
        except subprocess.TimeoutExpired:
            return ProbeResult(False, "Health check timed out")
        except OSError as e:
            return ProbeResult(False, str(e))

        if result.returncode == 0:
            return ProbeResult(True, (result.stdout or "")[:500])
        return ProbeResult(False, (result.stderr or "")[:500] or f"Exit code: {result.returncode}")

    def stream_logs(self, service: ServiceDefinition, follow: bool = True,
                    stop_event: Optional[threading.Event] = None) -> Iterator[str]:
        """
        Yields lines from the service's log file, then waits for new ones
        while ``follow`` is set. The log is appended to across runs: only the
        current run is shown when this runtime started the service, otherwise
        the last TAIL_LINES lines.
        """
        path = self.log_path(service)
        stop_event = stop_event or threading.Event()
        while not os.path.exists(path):
            if not follow or stop_event.wait(0.1):
                return

        with open(path, 'r') as f:
            offset = self._log_offsets.get(service.name)
            if offset is not None:
                f.seek(offset)
            else:
                for line in deque(f, maxlen=TAIL_LINES):
                    yield line.rstrip("\n")
            while not stop_event.is_set():
                line = f.readline()
                if line:
                    yield line.rstrip("\n")
                elif not follow:
                    return
                else:
                    time.sleep(0.1)
