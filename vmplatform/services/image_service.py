import configparser
import logging
import os
import shutil
import subprocess
from typing import Optional

import httpx

from vmplatform.config import Settings
from vmplatform.schemas import LaunchProfile
from vmplatform.services.exceptions import (
    ConfigMissingError,
    ImageOperationFailedError,
    OperationTimedOutError,
)
from vmplatform.services.resource_allocator import ResourceAllocator

logger = logging.getLogger(__name__)


class ImageService:
    """
    Owns every on-disk artifact of a VM: the primary qcow2 image, its internal
    snapshots, the vm.conf file, and full backup copies.

    Nothing here is retried; the caller decides what to do with a failure.
    """

    def __init__(self, allocator: ResourceAllocator, settings: Settings, http_client: Optional[httpx.Client] = None):
        """
        Args:
            allocator: resolves every VM path.
            settings: qemu-img binary and timeouts.
            http_client: client used to fetch template images (created lazily when omitted).
        """
        self.allocator = allocator
        self.qemu_img = settings.qemu_img_binary
        self.command_timeout = settings.command_timeout_seconds
        self.download_timeout = settings.download_timeout_seconds
        self._http_client = http_client

    # ------------------------------------------------------------------
    # Provisioning
    # ------------------------------------------------------------------

    def provision(self, vm_id: str, size_gb: int, source: Optional[str] = None) -> str:
        """
        Creates the VM's primary disk image of exactly ``size_gb`` GiB.

        Without a source an empty qcow2 image is created. With a source (URL or
        local path) the source is fetched into the VM directory, converted to
        qcow2 and resized to the requested size; the fetched file is then removed.
        Every VM gets its own independent copy.

        Args:
            vm_id: the VM identifier.
            size_gb: requested virtual size in GiB.
            source: optional template image URL or path.

        Returns:
            Path of the created disk image.

        Raises:
            ImageOperationFailedError: qemu-img or the fetch failed.
            OperationTimedOutError: a command exceeded its timeout.
        """
        vm_dir = self.allocator.vm_dir(vm_id)
        disk_path = self.allocator.disk_path(vm_id)
        os.makedirs(vm_dir, mode=0o755, exist_ok=True)

        if not source:
            self._run([self.qemu_img, 'create', '-f', 'qcow2', disk_path, f'{size_gb}G'])
            return disk_path

        seed_path = os.path.join(vm_dir, 'source.img')
        try:
            self._fetch(source, seed_path)
            self._run([self.qemu_img, 'convert', '-O', 'qcow2', seed_path, disk_path])
            self._run([self.qemu_img, 'resize', disk_path, f'{size_gb}G'])
        finally:
            self.remove_file(seed_path)

        return disk_path

    def _fetch(self, source: str, destination: str):
        if source.startswith(('http://', 'https://')):
            logger.info(f"Downloading template image {source}")
            client = self._http_client or httpx.Client(timeout=self.download_timeout, follow_redirects=True)
            try:
                with client.stream('GET', source) as response:
                    response.raise_for_status()
                    with open(destination, 'wb') as f:
                        for chunk in response.iter_bytes():
                            f.write(chunk)
            except httpx.TimeoutException as e:
                raise OperationTimedOutError(f"Download of {source} timed out: {e}") from e
            except (httpx.HTTPError, OSError) as e:
                raise ImageOperationFailedError(['download', source], str(e)) from e
            finally:
                if self._http_client is None:
                    client.close()
        else:
            try:
                shutil.copyfile(source, destination)
            except OSError as e:
                raise ImageOperationFailedError(['copy', source, destination], str(e)) from e

    # ------------------------------------------------------------------
    # vm.conf
    # ------------------------------------------------------------------

    def write_config(self, vm_id: str, profile: LaunchProfile) -> str:
        """Writes vm.conf, the file ``start`` requires before launching."""
        config = configparser.ConfigParser()
        config['vm'] = {
            'name': profile.vm_id,
            'memory': str(profile.memory_mb),
            'cpus': str(profile.cpu_cores),
            'disk': profile.disk_path,
            'network': f'bridge:{profile.bridge}',
            'mac': profile.mac_address,
            'vnc': str(profile.vnc_display),
        }
        path = self.allocator.config_path(vm_id)
        with open(path, 'w') as f:
            config.write(f)
        return path

    def config_exists(self, vm_id: str) -> bool:
        return os.path.isfile(self.allocator.config_path(vm_id))

    def read_config(self, vm_id: str) -> dict:
        """
        Raises:
            ConfigMissingError: vm.conf is absent or has no [vm] section.
        """
        path = self.allocator.config_path(vm_id)
        config = configparser.ConfigParser()
        if not config.read(path) or not config.has_section('vm'):
            raise ConfigMissingError("VM configuration not found")
        return dict(config['vm'])

    # ------------------------------------------------------------------
    # Snapshots / backups
    # ------------------------------------------------------------------

    def image_exists(self, vm_id: str) -> bool:
        return os.path.isfile(self.allocator.disk_path(vm_id))

    def image_size(self, vm_id: str) -> int:
        """Bytes the image currently occupies on disk, 0 when it does not exist."""
        try:
            return os.path.getsize(self.allocator.disk_path(vm_id))
        except OSError:
            return 0

    def snapshot(self, vm_id: str, handle: str):
        """Adds an internal snapshot named ``handle`` to the primary image."""
        self._run([self.qemu_img, 'snapshot', '-c', handle, self.allocator.disk_path(vm_id)])

    def restore_snapshot(self, vm_id: str, handle: str):
        self._run([self.qemu_img, 'snapshot', '-a', handle, self.allocator.disk_path(vm_id)])

    def delete_snapshot(self, vm_id: str, handle: str):
        self._run([self.qemu_img, 'snapshot', '-d', handle, self.allocator.disk_path(vm_id)])

    def backup(self, vm_id: str, destination: str) -> int:
        """
        Writes a full, standalone copy of the primary image to ``destination``.

        The image must not be written to while this runs; making sure of that is
        the caller's job.

        Returns:
            Size of the backup file in bytes.

        Raises:
            ImageOperationFailedError: the copy failed or the target is unwritable.
        """
        try:
            os.makedirs(os.path.dirname(destination), mode=0o755, exist_ok=True)
        except OSError as e:
            raise ImageOperationFailedError(['mkdir', os.path.dirname(destination)], str(e)) from e
        self._run([self.qemu_img, 'convert', '-O', 'qcow2', self.allocator.disk_path(vm_id), destination])
        try:
            return os.path.getsize(destination)
        except OSError as e:
            raise ImageOperationFailedError(['stat', destination], str(e)) from e

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------

    def remove_vm_files(self, vm_id: str) -> bool:
        """
        Recursively removes the VM directory.

        Never raises: a stale file must not make a VM undeletable.

        Returns:
            True when the directory is gone (or never existed).
        """
        vm_dir = self.allocator.vm_dir(vm_id)
        if not os.path.exists(vm_dir):
            logger.info(f"VM directory not found, skipping delete: {vm_dir}")
            return True
        try:
            shutil.rmtree(vm_dir)
            logger.info(f"VM directory removed: {vm_dir}")
            return True
        except OSError as e:
            logger.warning(f"Failed to remove VM directory '{vm_dir}': {e}")
            return False

    def remove_file(self, path: str) -> bool:
        try:
            os.remove(path)
            return True
        except FileNotFoundError:
            return True
        except OSError as e:
            logger.warning(f"Failed to remove '{path}': {e}")
            return False

    def _run(self, command):
        logger.info(f"Executing: {' '.join(command)}")
        try:
            result = subprocess.run(
                command,
                check=True,
                capture_output=True,
                text=True,
                timeout=self.command_timeout
            )
            return result.stdout.strip()
        except subprocess.CalledProcessError as e:
            output = (e.stderr or '').strip() or (e.stdout or '').strip() or f"exit status {e.returncode}"
            logger.error(f"Image command failed: {output}")
            raise ImageOperationFailedError(command, output) from e
        except subprocess.TimeoutExpired as e:
            raise OperationTimedOutError(
                f"'{' '.join(command)}' did not finish within {self.command_timeout}s."
            ) from e
        except FileNotFoundError as e:
            raise ImageOperationFailedError(
                command, f"{command[0]} command not found. Install qemu-utils."
            ) from e
