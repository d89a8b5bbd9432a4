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
Runtime state of services as tracked by the startup sequencer.
"""
from typing import Dict, Optional
from dataclasses import dataclass, replace
from enum import Enum


class ServiceState(str, Enum):
    """Lifecycle state of a service."""

    PENDING = "pending"
    STARTING = "starting"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    STOPPED = "stopped"
    FAILED = "failed"


# States in which the runtime may have something running for the service.
ACTIVE_STATES = (ServiceState.STARTING, ServiceState.HEALTHY, ServiceState.UNHEALTHY, ServiceState.FAILED)


@dataclass
class ServiceStatus:
    """Runtime information for a service."""

    state: ServiceState = ServiceState.PENDING
    last_error: Optional[str] = None
    healthy_since: Optional[str] = None
    failing_streak: int = 0
    last_output: str = ""
    generation: int = 0

    def copy(self) -> "ServiceStatus":
        return replace(self)

    def to_dict(self) -> Dict[str, object]:
        return {
            "state": self.state.value,
            "last_error": self.last_error,
            "healthy_since": self.healthy_since,
            "failing_streak": self.failing_streak,
            "last_output": self.last_output,
            "generation": self.generation,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, object]) -> "ServiceStatus":
        return cls(
            state=ServiceState(data.get("state", ServiceState.PENDING.value)),
            last_error=data.get("last_error"),  # type: ignore[arg-type]
            healthy_since=data.get("healthy_since"),  # type: ignore[arg-type]
            failing_streak=int(data.get("failing_streak", 0) or 0),  # type: ignore[arg-type]
            last_output=str(data.get("last_output", "") or ""),
            generation=int(data.get("generation", 0) or 0),  # type: ignore[arg-type]
        )
