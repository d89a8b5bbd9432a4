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
Models for defining services, including health checks, mounts and ports.
"""
from typing import List, Dict, Optional
from pydantic import BaseModel, field_validator, model_validator

from ..REGISTRY.image_reference import ImageReference

SECRET_MARKERS = ("PASSWORD", "SECRET", "TOKEN", "KEY")


class HealthCheck(BaseModel):
    """
    Defines how to probe a service for readiness.

    Either a command (``["CMD", ...]``, ``["CMD-SHELL", "..."]``, ``["NONE"]``)
    or an HTTP URL that must answer with a non-error status.
    """
    test: List[str] = []
    http: Optional[str] = None
    interval: float = 10.0
    timeout: float = 5.0
    retries: int = 3
    start_period: float = 0.0

    @model_validator(mode="after")
    def _has_probe(self) -> "HealthCheck":
        if not self.test and not self.http:
            raise ValueError("healthcheck needs either 'test' or 'http'")
        if self.interval <= 0:
            raise ValueError("healthcheck interval must be positive")
        return self

    @property
    def disabled(self) -> bool:
        return bool(self.test) and self.test[0] == "NONE"

    @property
    def startup_deadline(self) -> float:
        """
        Seconds a service may spend in Starting before it is considered failed.

        The start period when one is configured, otherwise the time the
        configured retries take at the probe interval.
        """
        if self.start_period > 0:
            return self.start_period
        return self.interval * max(self.retries, 1)


class VolumeMount(BaseModel):
    """
    Defines a mapping between a named volume (or host path) and a service path.
    """
    source: str
    target: str
    read_only: bool = False

    @property
    def is_named(self) -> bool:
        """Named volumes have no path separators and do not start with a dot."""
        return not (self.source.startswith(("/", ".", "~")) or "/" in self.source)


class ServiceDefinition(BaseModel):
    """
    The full declarative description of a single service in the stack.
    """
    name: str
    image_name: str = ""
    container_name: Optional[str] = None

    # Execution
    cmd: List[str] = []
    entrypoint: List[str] = []
    working_dir: Optional[str] = None
    restart: str = "no"

    # Environment
    environment: Dict[str, str] = {}
    environment_files: List[str] = []
    secret_keys: List[str] = []

    # Networking
    ports: Dict[int, Optional[int]] = {}  # {container: host}
    networks: List[str] = []

    # Storage
    volumes: List[VolumeMount] = []

    # Lifecycle
    health_check: Optional[HealthCheck] = None
    depends_on: List[str] = []

    labels: Dict[str, str] = {}

    @field_validator("image_name")
    @classmethod
    def _valid_image(cls, value: str) -> str:
        if value:
            ImageReference.parse(value)
        return value

    @model_validator(mode="after")
    def _runnable(self) -> "ServiceDefinition":
        if not self.image_name and not self.cmd and not self.entrypoint:
            raise ValueError(f"service {self.name} needs an image or a command")
        if self.name in self.depends_on:
            raise ValueError(f"service {self.name} cannot depend on itself")
        return self

    @property
    def runtime_name(self) -> str:
        """Name of the container or process the runtime manages for this service."""
        return self.container_name or f"stackvisor-{self.name}"

    def is_secret(self, key: str) -> bool:
        """Whether an environment key holds a credential that must not be logged."""
        if key in self.secret_keys:
            return True
        upper = key.upper()
        return any(marker in upper for marker in SECRET_MARKERS)

    def redacted_environment(self) -> Dict[str, str]:
        """
        Environment with secret values masked, safe to log or print.
        """
        return {
            key: ("***" if self.is_secret(key) and value else value)
            for key, value in self.environment.items()
        }
