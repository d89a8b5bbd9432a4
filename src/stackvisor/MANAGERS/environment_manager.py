"""
Configuration loading: built-in defaults, the project .env file and process
environment overrides, merged in that order of precedence.
"""
import os
from typing import Dict, List, Mapping, Optional, Tuple

from dotenv import dotenv_values
from loguru import logger

from ..MODELS.stack_settings import StackSettings
from ..MODELS.tunnel_config import TunnelRoute
from ..exceptions import ConfigurationError, MissingConfigurationError

DEFAULTS: Dict[str, str] = {
    "POSTGRES_DB": "n8n",
    "GENERIC_TIMEZONE": "UTC",
    "N8N_PROTOCOL": "http",
    "N8N_HOST": "localhost",
    "N8N_PORT": "5678",
    "N8N_PROXY_HOPS": "0",
    "STACKVISOR_RUNTIME": "docker",
    "STACKVISOR_MANIFEST": "stack.yml",
    "STACKVISOR_STATE_DIR": ".stackvisor",
    "STACKVISOR_LOG_LEVEL": "INFO",
}

# Required key -> remediation hint
REQUIRED: Dict[str, str] = {
    "POSTGRES_USER": "database user the workflow engine connects as",
    "POSTGRES_PASSWORD": "password for POSTGRES_USER",
    "POSTGRES_DB": "database name",
    "N8N_BASIC_AUTH_USER": "login for the workflow editor",
    "N8N_BASIC_AUTH_PASSWORD": "password for N8N_BASIC_AUTH_USER",
    "WEBUI_SECRET_KEY": "random string used to sign chat UI sessions",
}

TUNNEL_REQUIRED: Dict[str, str] = {
    "TUNNEL_TOKEN": "token of the tunnel created in the provider dashboard",
}

RUNTIMES = ("docker", "process")


class EnvironmentManager:
    """
    Resolves stack settings and merges per-service environments.
    """
    def __init__(self, base_dir: str = ".", env_file: str = ".env",
                 environ: Optional[Mapping[str, str]] = None):
        """
        Initializes the environment manager.

        :param base_dir: Project directory containing the .env file.
        :param env_file: Name of the project-level env file, relative to base_dir.
        :param environ: Process environment; defaults to os.environ.
        """
        self.base_dir = base_dir
        self.env_file = env_file
        self.environ = os.environ if environ is None else environ

    def resolve_context(self) -> Dict[str, str]:
        """
        Merges defaults < project .env file < process environment.

        :return: All resolved variables, used for manifest interpolation.
        """
        context = dict(DEFAULTS)
        file_path = os.path.join(self.base_dir, self.env_file)
        if os.path.exists(file_path):
            file_values = {k: v for k, v in dotenv_values(file_path).items() if v is not None}
            logger.debug("Loaded {} variables from {}", len(file_values), file_path)
            context.update(file_values)
        context.update(self.environ)
        return context

    def load(self, require_tunnel: bool = False) -> Tuple[StackSettings, Dict[str, str]]:
        """
        Resolves and validates the stack settings.

        :param require_tunnel: Also require the tunnel credential.
        :return: The typed settings and the raw merged context.
        :raises MissingConfigurationError: Listing every unset required key.
        :raises ConfigurationError: If a value cannot be parsed.
        """
        context = self.resolve_context()
        routes = self.parse_routes(context.get("TUNNEL_HOSTNAMES", ""))

        required = dict(REQUIRED)
        if require_tunnel or routes:
            required.update(TUNNEL_REQUIRED)
        self.validate_required(context, required)

        runtime = context.get("STACKVISOR_RUNTIME", "docker").strip().lower()
        if runtime not in RUNTIMES:
            raise ConfigurationError(
                f"Unknown runtime '{runtime}'",
                hint=f"set STACKVISOR_RUNTIME to one of: {', '.join(RUNTIMES)}",
            )

        settings = StackSettings(
            postgres_user=context["POSTGRES_USER"],
            postgres_password=context["POSTGRES_PASSWORD"],
            postgres_db=context["POSTGRES_DB"],
            n8n_basic_auth_user=context["N8N_BASIC_AUTH_USER"],
            n8n_basic_auth_password=context["N8N_BASIC_AUTH_PASSWORD"],
            n8n_protocol=context.get("N8N_PROTOCOL", "http"),
            n8n_host=context.get("N8N_HOST", "localhost"),
            n8n_port=self._int(context, "N8N_PORT"),
            n8n_proxy_hops=self._int(context, "N8N_PROXY_HOPS"),
            webhook_url=context.get("WEBHOOK_URL") or None,
            webui_secret_key=context["WEBUI_SECRET_KEY"],
            timezone=context.get("TZ") or context.get("GENERIC_TIMEZONE", "UTC"),
            tunnel_token=context.get("TUNNEL_TOKEN") or None,
            tunnel_routes=routes,
            runtime=runtime,
            manifest=context.get("STACKVISOR_MANIFEST", "stack.yml"),
            state_dir=context.get("STACKVISOR_STATE_DIR", ".stackvisor"),
            log_level=context.get("STACKVISOR_LOG_LEVEL", "INFO"),
        )
        # Derived values the manifest can reference
        context.setdefault("WEBHOOK_URL", settings.public_base_url)
        context.setdefault("TZ", settings.timezone)
        return settings, context

    @staticmethod
    def validate_required(context: Mapping[str, str], required: Mapping[str, str]) -> None:
        """
        Checks that every required key is set and non-empty.

        :raises MissingConfigurationError: With all missing keys, not just the first.
        """
        missing = {
            key: hint for key, hint in required.items()
            if not str(context.get(key, "") or "").strip()
        }
        if missing:
            raise MissingConfigurationError(missing)

    @staticmethod
    def parse_routes(value: str) -> List[TunnelRoute]:
        """
        Parses ``host=target`` pairs separated by commas.

        A target without a scheme is taken as plain HTTP, so
        ``n8n.example.com=n8n:5678`` routes to ``http://n8n:5678``.
        """
        routes: List[TunnelRoute] = []
        seen = set()
        for item in (value or "").split(","):
            item = item.strip()
            if not item:
                continue
            hostname, sep, target = item.partition("=")
            if not sep or not hostname.strip() or not target.strip():
                raise ConfigurationError(
                    f"Invalid tunnel route '{item}'",
                    service="tunnel",
                    hint="use TUNNEL_HOSTNAMES=public.host=service:port[,...]",
                )
            target = target.strip()
            if "://" not in target:
                target = f"http://{target}"
            try:
                route = TunnelRoute(hostname=hostname, target=target)
            except ValueError as e:
                raise ConfigurationError(f"Invalid tunnel route '{item}': {e}", service="tunnel",
                                         hint="hostnames must not contain spaces or paths")
            if route.hostname in seen:
                raise ConfigurationError(f"Hostname {route.hostname} is routed more than once",
                                         service="tunnel", hint="each hostname maps to one target")
            seen.add(route.hostname)
            routes.append(route)
        return routes

    @staticmethod
    def _int(context: Mapping[str, str], key: str) -> int:
        try:
            return int(str(context.get(key, DEFAULTS.get(key, "0"))).strip())
        except ValueError:
            raise ConfigurationError(f"{key} must be an integer, got '{context.get(key)}'",
                                     hint=f"set {key} to a whole number")

    def get_merged_environment(self,
                               explicit_env: Dict[str, str],
                               env_files: List[str],
                               inherit: bool = True) -> Dict[str, str]:
        """
        Merges the process environment, the service's env files and its
        explicit environment, later sources overriding earlier ones.

        :param explicit_env: Environment declared on the service.
        :param env_files: Paths to env files, relative to base_dir.
        :param inherit: Start from the supervisor's own environment.
        :return: The merged environment.
        """
        merged_env = dict(self.environ) if inherit else {}

        for env_file in env_files:
            file_path = os.path.join(self.base_dir, env_file)
            if os.path.exists(file_path):
                merged_env.update({k: v for k, v in dotenv_values(file_path).items() if v is not None})
            else:
                logger.warning("env_file {} not found, skipping", file_path)

        merged_env.update(explicit_env)
        return merged_env
