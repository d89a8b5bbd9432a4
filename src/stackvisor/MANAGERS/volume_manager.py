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
Named, host-backed volumes: created on first use, kept across restarts,
removed only on an explicit wipe.
"""
import json
import os
import re
import shutil
import tarfile
from dataclasses import dataclass, asdict
from typing import Dict, List, Optional

from loguru import logger

from ..MODELS.service_definition import VolumeMount
from ..exceptions import ConfigurationError

_INDEX = "volumes.json"
_VALID_NAME = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


@dataclass
class NamedVolume:
    """A persistent volume and the service that owns it."""

    name: str
    path: str
    owner: Optional[str] = None


class VolumeManager:
    """
    Manages named volumes under the state directory and maps them into services.
    """
    def __init__(self, base_dir: str = ".", volumes_root: str = ".stackvisor/volumes"):
        """
        Initializes the volume manager.

        :param base_dir: The base directory for resolving relative paths.
        :param volumes_root: Where named volume data lives, relative to base_dir.
        """
        self.base_dir = os.path.abspath(base_dir)
        self.volumes_root = os.path.abspath(os.path.join(base_dir, volumes_root))
        os.makedirs(self.volumes_root, exist_ok=True)
        self._volumes: Dict[str, NamedVolume] = self._load_index()

    def _load_index(self) -> Dict[str, NamedVolume]:
        path = os.path.join(self.volumes_root, _INDEX)
        if not os.path.exists(path):
            return {}
        with open(path, 'r') as f:
            data = json.load(f)
        return {name: NamedVolume(**entry) for name, entry in data.items()}

    def _save_index(self) -> None:
        path = os.path.join(self.volumes_root, _INDEX)
        tmp = path + ".tmp"
        with open(tmp, 'w') as f:
            json.dump({name: asdict(vol) for name, vol in self._volumes.items()}, f, indent=2)
        os.replace(tmp, path)

    def create_volume(self, name: str, owner: Optional[str] = None) -> NamedVolume:
        """
        Creates a named volume, or returns the existing one.

        :param name: Volume name.
        :param owner: Service that owns the volume.
        :return: The volume.
        """
        if not _VALID_NAME.match(name):
            raise ConfigurationError(f"Invalid volume name '{name}'",
                                     hint="use letters, digits, dots, dashes and underscores")
        existing = self._volumes.get(name)
        if existing is not None and os.path.isdir(existing.path):
            if existing.owner is None and owner is not None:
                existing.owner = owner
                self._save_index()
            return existing

        path = os.path.join(self.volumes_root, name)
        os.makedirs(path, exist_ok=True)
        volume = NamedVolume(name=name, path=path, owner=owner)
        self._volumes[name] = volume
        self._save_index()
        logger.info("Created volume {} at {}", name, path)
        return volume

    def get_volume(self, name: str) -> Optional[NamedVolume]:
        return self._volumes.get(name)

    def list_volumes(self) -> List[NamedVolume]:
        return sorted(self._volumes.values(), key=lambda v: v.name)

    def remove_volume(self, name: str) -> bool:
        """
        Deletes a volume and all of its data.

        :return: True if a volume was removed.
        """
        volume = self._volumes.pop(name, None)
        if volume is None:
            return False
        shutil.rmtree(volume.path, ignore_errors=True)
        self._save_index()
        logger.warning("Wiped volume {}", name)
        return True

    def backup_volume(self, name: str, destination: str) -> str:
        """
        Archives a volume's backing path into a gzipped tarball.

        :param name: Volume name.
        :param destination: Archive file path or a directory to place it in.
        :return: Path of the written archive.
        """
        volume = self._require(name)
        if os.path.isdir(destination):
            destination = os.path.join(destination, f"{name}.tar.gz")
        with tarfile.open(destination, "w:gz") as tar:
            tar.add(volume.path, arcname=name)
        logger.info("Backed up volume {} to {}", name, destination)
        return destination

    def restore_volume(self, name: str, archive: str) -> NamedVolume:
        """
        Replaces a volume's contents with those of an archive written by backup_volume.
        """
        if not os.path.exists(archive):
            raise ConfigurationError(f"Backup archive {archive} not found", hint="check the archive path")
        volume = self._volumes.get(name) or self.create_volume(name)
        staging = volume.path + ".restore"
        shutil.rmtree(staging, ignore_errors=True)
        os.makedirs(staging)
        try:
            with tarfile.open(archive, "r:gz") as tar:
                tar.extractall(staging, filter="data")
        except tarfile.TarError as e:
            shutil.rmtree(staging, ignore_errors=True)
            raise ConfigurationError(f"Cannot restore {archive}: {e}", hint="use an archive written by 'volumes backup'")
        restored = os.path.join(staging, name)
        if not os.path.isdir(restored):
            shutil.rmtree(staging, ignore_errors=True)
            raise ConfigurationError(f"Archive {archive} does not contain volume {name}",
                                     hint="restore into the volume name the backup was taken from")
        shutil.rmtree(volume.path, ignore_errors=True)
        os.replace(restored, volume.path)
        shutil.rmtree(staging, ignore_errors=True)
        logger.info("Restored volume {} from {}", name, archive)
        return volume

    def get_volume_size(self, name: str) -> int:
        """Total size in bytes of the files in a volume."""
        volume = self._require(name)
        total = 0
        for root, _, files in os.walk(volume.path):
            for fname in files:
                fpath = os.path.join(root, fname)
                if not os.path.islink(fpath):
                    total += os.path.getsize(fpath)
        return total

    def _require(self, name: str) -> NamedVolume:
        volume = self._volumes.get(name)
        if volume is None:
            raise ConfigurationError(f"Volume {name} does not exist",
                                     hint="volumes are created on the first start of their service")
        return volume

    def ensure_service_volumes(self, service_name: str, mounts: List[VolumeMount]) -> Dict[str, str]:
        """
        Creates the named volumes a service mounts.

        :return: Mapping of mount target -> host source path.
        """
        resolved = {}
        for mount in mounts:
            if mount.is_named:
                resolved[mount.target] = self.create_volume(mount.source, owner=service_name).path
            else:
                resolved[mount.target] = self.resolve_source(mount.source)
        return resolved

    def prepare_volumes(self, service_name: str, mounts: List[VolumeMount],
                        service_working_dir: Optional[str] = None):
        """
        Maps volumes into a native process's filesystem view with symlinks.

        :param service_name: Owning service.
        :param mounts: List of volume mounts.
        :param service_working_dir: The directory where the service will run.
        """
        for target, source_path in self.ensure_service_volumes(service_name, mounts).items():
            target_path = self.resolve_target(target, service_working_dir)
            os.makedirs(source_path, exist_ok=True)

            if os.path.realpath(target_path) == os.path.realpath(source_path):
                continue
            if os.path.islink(target_path):
                os.unlink(target_path)
            elif os.path.isdir(target_path):
                shutil.rmtree(target_path)
            elif os.path.exists(target_path):
                os.remove(target_path)

            target_parent = os.path.dirname(target_path)
            if target_parent:
                os.makedirs(target_parent, exist_ok=True)
            logger.debug("Mapping volume: {} -> {}", source_path, target_path)
            os.symlink(source_path, target_path, target_is_directory=True)

    def resolve_source(self, source: str) -> str:
        """
        Resolves the source path of a volume.

        :param source: The source path or volume name.
        :return: The absolute path to the source.
        """
        if not os.path.isabs(source) and not source.startswith('.') and '/' not in source:
            return os.path.join(self.volumes_root, source)
        return os.path.abspath(os.path.join(self.base_dir, os.path.expanduser(source)))

    def resolve_target(self, target: str, working_dir: Optional[str] = None) -> str:
        """
        Resolves the target path of a volume for a native process.

        Absolute container paths are re-rooted under base_dir.

        :param target: The target path inside the "container".
        :param working_dir: The working directory of the service.
        :return: The absolute path to the target.
        """
        if os.path.isabs(target):
            return os.path.abspath(os.path.join(self.base_dir, target.lstrip('/\\')))
        root = working_dir if working_dir else self.base_dir
        return os.path.abspath(os.path.join(root, target))
