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
Typed settings consumed by the stack and the supervisor itself.
"""
from typing import List, Optional
from pydantic import BaseModel

from .tunnel_config import TunnelRoute


class StackSettings(BaseModel):
    """
    Resolved configuration, after defaults, the project .env file and the
    process environment have been merged.
    """
    # Database
    postgres_user: str = ""
    postgres_password: str = ""
    postgres_db: str = ""

    # Workflow engine
    n8n_basic_auth_user: str = ""
    n8n_basic_auth_password: str = ""
    n8n_protocol: str = "http"
    n8n_host: str = "localhost"
    n8n_port: int = 5678
    n8n_proxy_hops: int = 0
    webhook_url: Optional[str] = None

    # Chat UI
    webui_secret_key: str = ""

    timezone: str = "UTC"

    # Tunnel
    tunnel_token: Optional[str] = None
    tunnel_routes: List[TunnelRoute] = []

    # Supervisor
    runtime: str = "docker"
    manifest: str = "stack.yml"
    state_dir: str = ".stackvisor"
    log_level: str = "INFO"

    @property
    def tunnel_enabled(self) -> bool:
        return bool(self.tunnel_token) or bool(self.tunnel_routes)

    @property
    def public_base_url(self) -> str:
        """
        Externally visible base URL of the workflow engine, used to build
        webhook URLs.
        """
        if self.webhook_url:
            return self.webhook_url if self.webhook_url.endswith("/") else self.webhook_url + "/"
        default_port = {"http": 80, "https": 443}.get(self.n8n_protocol)
        port = "" if default_port == self.n8n_port or self.n8n_proxy_hops else f":{self.n8n_port}"
        return f"{self.n8n_protocol}://{self.n8n_host}{port}/"
