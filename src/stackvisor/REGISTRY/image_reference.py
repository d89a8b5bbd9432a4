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
Image reference parsing for service descriptors.
Accepts references like 'postgres:16-alpine', 'ollama/ollama' or
'ghcr.io/open-webui/open-webui:main'.
"""

import re
from typing import Optional
from dataclasses import dataclass

_REPOSITORY = re.compile(r"^[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*(?:/[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*)*$")
_TAG = re.compile(r"^[\w][\w.-]{0,127}$")


@dataclass
class ImageReference:
    """
    Parsed container image reference.

    Examples:
        - postgres -> docker.io/library/postgres:latest
        - n8nio/n8n:1.64 -> docker.io/n8nio/n8n:1.64
        - ghcr.io/open-webui/open-webui:main -> ghcr.io/open-webui/open-webui:main
        - localhost:5000/app@sha256:abc... -> localhost:5000/app@sha256:abc...
    """

    registry: str
    repository: str
    tag: Optional[str] = None
    digest: Optional[str] = None

    DEFAULT_REGISTRY = "docker.io"
    DEFAULT_TAG = "latest"

    @classmethod
    def parse(cls, reference: str) -> "ImageReference":
        """
        Parse an image reference string.

        Args:
            reference: Image reference string (e.g., 'postgres:16', 'n8nio/n8n').

        Returns:
            Parsed ImageReference object.

        Raises:
            ValueError: If the reference is empty or malformed.
        """
        original = reference
        reference = (reference or "").strip()
        if not reference:
            raise ValueError("Empty image reference")
        if any(ch.isspace() for ch in reference):
            raise ValueError(f"Image reference '{original}' contains whitespace")

        digest = None
        if "@" in reference:
            reference, digest = reference.rsplit("@", 1)
            if ":" not in digest:
                raise ValueError(f"Image reference '{original}' has a malformed digest")

        tag = None
        last_colon = reference.rfind(":")
        if last_colon != -1:
            after_colon = reference[last_colon + 1:]
            # A colon followed by a path is a registry port, not a tag
            if "/" not in after_colon:
                tag = after_colon
                reference = reference[:last_colon]
                if not _TAG.match(tag):
                    raise ValueError(f"Image reference '{original}' has an invalid tag '{tag}'")

        parts = reference.split("/")
        first = parts[0]
        if len(parts) > 1 and ("." in first or ":" in first or first == "localhost"):
            registry = first
            repository = "/".join(parts[1:])
        else:
            registry = cls.DEFAULT_REGISTRY
            repository = reference if len(parts) > 1 else f"library/{reference}"

        if not _REPOSITORY.match(repository):
            raise ValueError(f"Image reference '{original}' has an invalid repository '{repository}'")

        if not tag and not digest:
            tag = cls.DEFAULT_TAG

        return cls(registry=registry, repository=repository, tag=tag, digest=digest)

    @property
    def full_name(self) -> str:
        """Get full image name with registry."""
        name = f"{self.registry}/{self.repository}"
        if self.digest:
            return f"{name}@{self.digest}"
        return f"{name}:{self.tag}"

    @property
    def short_name(self) -> str:
        """Get short image name (without registry if default)."""
        if self.registry != self.DEFAULT_REGISTRY:
            return self.full_name
        repo = self.repository
        if repo.startswith("library/"):
            repo = repo[len("library/"):]
        if self.digest:
            return f"{repo}@{self.digest}"
        return f"{repo}:{self.tag}"

    def __str__(self) -> str:
        return self.short_name
