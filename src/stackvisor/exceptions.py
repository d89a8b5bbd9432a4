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
Error taxonomy for the supervisor.

Every error carries the failing service (where there is one), a remediation
hint, and a distinct process exit code used by the CLI.
"""
from typing import Dict, Iterable, List, Optional


class StackvisorError(Exception):
    """
    Base exception for all supervisor errors.

    Attributes:
        message: Human-readable error message.
        service: Name of the affected service, if any.
        hint: What the operator can do about it.
    """

    exit_code = 1

    def __init__(self, message: str, service: Optional[str] = None, hint: Optional[str] = None):
        self.message = message
        self.service = service
        self.hint = hint
        super().__init__(message)

    def __str__(self) -> str:
        text = self.message
        if self.service and self.service not in text:
            text = f"[{self.service}] {text}"
        if self.hint:
            text = f"{text} (hint: {self.hint})"
        return text


# ============================================================================
# Pre-flight errors: abort start before any service is touched
# ============================================================================

class ConfigurationError(StackvisorError):
    """A required setting is missing or invalid."""

    exit_code = 10


class MissingConfigurationError(ConfigurationError):
    """One or more required settings are unset or empty."""

    def __init__(self, missing: Dict[str, str]):
        self.missing = dict(missing)
        keys = ", ".join(sorted(self.missing))
        hints = "; ".join(f"{key}: {hint}" for key, hint in sorted(self.missing.items()))
        super().__init__(
            f"Missing required configuration: {keys}",
            hint=f"set these in the environment or the project .env file ({hints})",
        )


class CyclicDependencyError(StackvisorError):
    """The depends_on graph contains a cycle."""

    exit_code = 11

    def __init__(self, cycle: List[str]):
        self.cycle = list(cycle)
        super().__init__(
            f"Circular dependency detected: {' -> '.join(self.cycle)}",
            service=self.cycle[0] if self.cycle else None,
            hint="remove one of the depends_on entries along this path",
        )


class UnknownServiceError(StackvisorError):
    """A service name that is not declared in the manifest."""

    exit_code = 18

    def __init__(self, name: str, known: Iterable[str] = ()):
        known = sorted(known)
        super().__init__(
            f"Unknown service '{name}'",
            service=name,
            hint=f"declared services are: {', '.join(known)}" if known else "check the manifest",
        )


# ============================================================================
# Per-service runtime errors: isolated to the service and its dependents
# ============================================================================

class HealthCheckTimeout(StackvisorError):
    """A service did not pass its health check within its start period."""

    exit_code = 12

    def __init__(self, service: str, waited: float, last_output: str = ""):
        self.waited = waited
        self.last_output = last_output
        detail = f": {last_output}" if last_output else ""
        super().__init__(
            f"Service {service} did not become healthy within {waited:.1f}s{detail}",
            service=service,
            hint=f"inspect 'stackvisor logs {service}' or raise its healthcheck start_period",
        )


class PortConflictError(StackvisorError):
    """A host port a service publishes is already bound."""

    exit_code = 15

    def __init__(self, service: str, port: int, owner: Optional[str] = None):
        self.port = port
        self.owner = owner
        held_by = f" by {owner}" if owner else ""
        super().__init__(
            f"Port {port} is already in use{held_by}, cannot start service {service}",
            service=service,
            hint=f"stop whatever listens on {port} or change the host port in the manifest",
        )


class ServiceStartError(StackvisorError):
    """The runtime could not launch a service."""

    exit_code = 17

    def __init__(self, service: str, reason: str):
        self.reason = reason
        super().__init__(
            f"Failed to start {service}: {reason}",
            service=service,
            hint="check the image name, command and runtime installation",
        )


class DependencyNotHealthyError(StackvisorError):
    """A restart was requested while a dependency is not healthy."""

    exit_code = 16

    def __init__(self, service: str, dependencies: Dict[str, str]):
        self.dependencies = dict(dependencies)
        states = ", ".join(f"{name}={state}" for name, state in sorted(self.dependencies.items()))
        super().__init__(
            f"Cannot restart {service}: dependencies not healthy ({states})",
            service=service,
            hint="start the stack first with 'stackvisor start'",
        )


class StartupFailedError(StackvisorError):
    """
    Aggregated result of a start that left services Failed.

    Holds the root failures (services that failed themselves) and the services
    that stayed Pending because something they depend on failed.
    """

    def __init__(self, failures: Dict[str, StackvisorError], blocked: Iterable[str] = ()):
        self.failures = dict(failures)
        self.blocked = sorted(blocked)
        names = ", ".join(self.failures)
        message = f"Stack start failed: {names}"
        if self.blocked:
            message += f"; blocked: {', '.join(self.blocked)}"
        first = next(iter(self.failures.values()), None)
        super().__init__(
            message,
            service=next(iter(self.failures), None),
            hint=first.hint if first is not None else None,
        )

    @property
    def exit_code(self) -> int:  # type: ignore[override]
        first = next(iter(self.failures.values()), None)
        return first.exit_code if first is not None else 1


# ============================================================================
# Tunnel errors: never affect the other services
# ============================================================================

class TunnelError(StackvisorError):
    """Base class for tunnel client errors."""

    exit_code = 14


class TunnelAuthError(TunnelError):
    """The tunnel credential was rejected. Retrying cannot fix it."""

    exit_code = 13

    def __init__(self, reason: str = "tunnel token rejected"):
        super().__init__(
            f"Tunnel authentication failed: {reason}",
            service="tunnel",
            hint="set a valid TUNNEL_TOKEN",
        )


class TunnelTransientError(TunnelError):
    """A connection attempt failed for a reason that may go away."""

    exit_code = 14

    def __init__(self, reason: str):
        super().__init__(
            f"Tunnel connection failed: {reason}",
            service="tunnel",
            hint="check network connectivity; the tunnel retries automatically",
        )
