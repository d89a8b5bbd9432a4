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
Interface every service runtime backend implements.
"""
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Union

from ..MODELS.service_definition import ServiceDefinition
from ..MODELS.stack_config import StackConfig


@dataclass
class ProbeResult:
    """Outcome of a single health probe."""

    success: bool
    output: str = ""


class ServiceRuntime(ABC):
    """
    Launches, stops and inspects the workload behind a service.
    """

    name = "abstract"

    def prepare(self, config: StackConfig) -> None:
        """
        Creates shared resources (networks) before any service starts.
        """

    @abstractmethod
    def start(self, service: ServiceDefinition, env: Dict[str, str]) -> None:
        """
        Launches the service. Must not block until it is healthy.

        :raises ServiceStartError: If the workload could not be launched.
        """

    @abstractmethod
    def stop(self, service: ServiceDefinition, timeout: float = 10.0) -> None:
        """Stops the service; a no-op when it is not running."""

    @abstractmethod
    def is_running(self, service: ServiceDefinition) -> bool:
        """Whether the workload is currently running."""

    @abstractmethod
    def exit_code(self, service: ServiceDefinition) -> Optional[int]:
        """Exit code of the workload once it has exited, otherwise None."""

    @abstractmethod
    def exec_probe(self, service: ServiceDefinition, command: Union[List[str], str],
                   shell: bool, timeout: float) -> ProbeResult:
        """Runs a health check command in the service's context."""

    @abstractmethod
    def stream_logs(self, service: ServiceDefinition, follow: bool = True,
                    stop_event: Optional[threading.Event] = None) -> Iterator[str]:
        """Yields the service's output line by line."""
