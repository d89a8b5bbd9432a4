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
Models for the outbound tunnel: credentials and public hostname routes.
"""
from typing import List, Optional
from enum import Enum
from pydantic import BaseModel, field_validator


class TunnelState(str, Enum):
    """Lifecycle states of the tunnel connection."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


class TunnelRoute(BaseModel):
    """
    Publishes one internal service under a public hostname.
    """
    hostname: str
    target: str  # e.g. http://n8n:5678

    @field_validator("hostname")
    @classmethod
    def _lower(cls, value: str) -> str:
        value = value.strip().lower()
        if not value or "/" in value or " " in value:
            raise ValueError(f"invalid public hostname '{value}'")
        return value


class TunnelConfig(BaseModel):
    """
    Credential plus the set of hostname -> target routes.
    Each hostname maps to exactly one target.
    """
    token: Optional[str] = None
    routes: List[TunnelRoute] = []

    @field_validator("routes")
    @classmethod
    def _unique_hostnames(cls, routes: List[TunnelRoute]) -> List[TunnelRoute]:
        seen = set()
        for route in routes:
            if route.hostname in seen:
                raise ValueError(f"hostname '{route.hostname}' is routed more than once")
            seen.add(route.hostname)
        return routes

    @property
    def enabled(self) -> bool:
        return bool(self.token) or bool(self.routes)

    def with_route(self, hostname: str, target: str) -> "TunnelConfig":
        """Returns a copy where ``hostname`` points at ``target``, replacing any previous target."""
        route = TunnelRoute(hostname=hostname, target=target)
        routes = [r for r in self.routes if r.hostname != route.hostname]
        routes.append(route)
        return TunnelConfig(token=self.token, routes=routes)

    def without_route(self, hostname: str) -> "TunnelConfig":
        hostname = hostname.strip().lower()
        return TunnelConfig(token=self.token, routes=[r for r in self.routes if r.hostname != hostname])

    def target_for(self, hostname: str) -> Optional[str]:
        hostname = hostname.strip().lower()
        for route in self.routes:
            if route.hostname == hostname:
                return route.target
        return None


class TunnelStatus(BaseModel):
    """Point-in-time view of the tunnel manager, for status reporting."""
    state: TunnelState = TunnelState.DISCONNECTED
    attempt: int = 0
    last_error: Optional[str] = None
    fatal: bool = False
    routes: List[TunnelRoute] = []
