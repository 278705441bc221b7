import logging
import os
import shutil
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional

import psutil

from vmplatform.config import Settings
from vmplatform.schemas import LaunchProfile
from vmplatform.services.exceptions import (
    LaunchFailedError,
    OperationTimedOutError,
    TerminateFailedError,
)
from vmplatform.services.resource_allocator import ResourceAllocator
from vmplatform.utils.qemu_args import build_qemu_command

logger = logging.getLogger(__name__)


@dataclass
class ProcessStats:
    cpu_percent: float
    memory_percent: float
    memory_rss: int


class ProcessSupervisor(ABC):
    """
    Maps a vm_id to zero or one hypervisor process.

    Every answer is a point-in-time reading of the OS (or hypervisor) state;
    a process may exit right after ``is_running`` returned True.
    """
    name = "unknown"

    @abstractmethod
    def is_running(self, vm_id: str, pid: Optional[int] = None) -> bool:
        pass

    @abstractmethod
    def launch(self, vm_id: str, profile: LaunchProfile) -> Optional[int]:
        """Starts the process. Returns its PID when the hypervisor exposes one."""
        pass

    @abstractmethod
    def terminate(self, vm_id: str, pid: Optional[int] = None) -> None:
        """Stops the process. No matching process counts as success."""
        pass

    @abstractmethod
    def process_stats(self, vm_id: str, pid: Optional[int] = None) -> Optional[ProcessStats]:
        pass

    @abstractmethod
    def count_running(self) -> int:
        pass

    def release(self, vm_id: str) -> None:
        """Forgets anything the hypervisor keeps for a deleted VM."""
        pass


class QemuProcessSupervisor(ProcessSupervisor):
    """
    Runs one daemonized ``qemu-system-x86_64`` per VM.

    The PID written to the pid file at launch is the handle for every later
    operation. A PID is only trusted while the process behind it still carries
    ``-name <vm_id>``; with no usable PID the process table is scanned for that
    exact argument pair.
    """
    name = "qemu"

    def __init__(self, allocator: ResourceAllocator, settings: Settings):
        self.allocator = allocator
        self.qemu_binary = settings.qemu_binary
        self.vnc_host = settings.vnc_host
        self.command_timeout = settings.command_timeout_seconds
        self.stop_timeout = settings.stop_timeout_seconds
        self.cpu_sample_interval = settings.cpu_sample_interval

    # --- lookup ---

    def _belongs_to(self, proc: psutil.Process, vm_id: str) -> bool:
        try:
            cmdline = proc.cmdline()
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            return False
        return any(arg == "-name" and value == vm_id for arg, value in zip(cmdline, cmdline[1:]))

    def _read_pid_file(self, vm_id: str) -> Optional[int]:
        try:
            with open(self.allocator.pid_path(vm_id), "r") as f:
                return int(f.read().strip())
        except (OSError, ValueError):
            return None

    def _find_processes(self, vm_id: str, pid: Optional[int] = None) -> List[psutil.Process]:
        for candidate in (pid, self._read_pid_file(vm_id)):
            if not candidate:
                continue
            try:
                proc = psutil.Process(candidate)
                if proc.is_running() and proc.status() != psutil.STATUS_ZOMBIE and self._belongs_to(proc, vm_id):
                    return [proc]
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue

        matches = []
        for proc in psutil.process_iter(["pid", "name"]):
            try:
                if proc.info["name"] and "qemu" in proc.info["name"] and self._belongs_to(proc, vm_id):
                    matches.append(proc)
            except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                continue
        return matches

    def is_running(self, vm_id: str, pid: Optional[int] = None) -> bool:
        return bool(self._find_processes(vm_id, pid))

    # --- control ---

    def launch(self, vm_id: str, profile: LaunchProfile) -> Optional[int]:
        """
        Starts the daemonized QEMU process.

        Any non-zero exit status or any diagnostic output counts as a failed launch;
        a process that did come up despite diagnostics is stopped again so the VM
        is never left half-started.

        Raises:
            LaunchFailedError: with the captured output as reason.
            OperationTimedOutError: QEMU did not daemonize within the command timeout.
        """
        pid_file = self.allocator.pid_path(vm_id)
        command = build_qemu_command(self.qemu_binary, profile, pid_file, self.vnc_host)
        logger.info(f"Executing: {' '.join(command)}")

        try:
            result = subprocess.run(command, capture_output=True, text=True, timeout=self.command_timeout)
        except FileNotFoundError as e:
            raise LaunchFailedError(f"{self.qemu_binary} not found") from e
        except subprocess.TimeoutExpired as e:
            raise OperationTimedOutError(f"QEMU for {vm_id} did not start within {self.command_timeout}s.") from e

        output = "\n".join(part.strip() for part in (result.stdout, result.stderr) if part and part.strip())
        if result.returncode != 0 or output:
            logger.error(f"QEMU launch for {vm_id} failed (exit {result.returncode}): {output}")
            if self.is_running(vm_id):
                self.terminate(vm_id)
            raise LaunchFailedError(output or f"exit status {result.returncode}")

        pid = self._read_pid_file(vm_id)
        logger.info(f"VM {vm_id} started with pid {pid}")
        return pid

    def terminate(self, vm_id: str, pid: Optional[int] = None) -> None:
        """
        SIGTERM, wait up to ``stop_timeout``, then SIGKILL whatever is left.

        This is an external kill, not a guest shutdown.

        Raises:
            TerminateFailedError: the process could not be signalled.
        """
        procs = self._find_processes(vm_id, pid)
        if not procs:
            logger.info(f"No process found for {vm_id}; treating as stopped.")
            self._clear_pid_file(vm_id)
            return

        try:
            for proc in procs:
                try:
                    proc.terminate()
                except psutil.NoSuchProcess:
                    continue
            _, alive = psutil.wait_procs(procs, timeout=self.stop_timeout)
            for proc in alive:
                logger.warning(f"Process {proc.pid} of {vm_id} ignored SIGTERM, killing.")
                try:
                    proc.kill()
                except psutil.NoSuchProcess:
                    continue
            if alive:
                psutil.wait_procs(alive, timeout=self.stop_timeout)
        except psutil.AccessDenied as e:
            raise TerminateFailedError(f"Permission denied while stopping {vm_id}: {e}") from e

        self._clear_pid_file(vm_id)

    def _clear_pid_file(self, vm_id: str):
        try:
            os.remove(self.allocator.pid_path(vm_id))
        except OSError:
            pass

    # --- telemetry ---

    def process_stats(self, vm_id: str, pid: Optional[int] = None) -> Optional[ProcessStats]:
        procs = self._find_processes(vm_id, pid)
        if not procs:
            return None
        proc = procs[0]
        try:
            # cpu_percent spans all cores (200% = two busy cores); scale to host share
            cpu = proc.cpu_percent(interval=self.cpu_sample_interval) / (psutil.cpu_count() or 1)
            return ProcessStats(
                cpu_percent=round(cpu, 1),
                memory_percent=round(proc.memory_percent(), 1),
                memory_rss=proc.memory_info().rss,
            )
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            return None

    def count_running(self) -> int:
        count = 0
        for proc in psutil.process_iter(["name"]):
            name = proc.info.get("name") or ""
            if os.path.basename(self.qemu_binary) in name:
                count += 1
        return count


def detect_hypervisor() -> str:
    """Probes the host for a usable hypervisor, preferring plain QEMU."""
    if shutil.which("qemu-system-x86_64"):
        return "qemu"
    if shutil.which("virsh"):
        return "libvirt"
    return "qemu"


def create_process_supervisor(settings: Settings, allocator: ResourceAllocator) -> ProcessSupervisor:
    """
    Resolves ``settings.hypervisor`` once and builds the matching supervisor.
    """
    hypervisor = settings.hypervisor
    if hypervisor == "auto":
        hypervisor = detect_hypervisor()
        logger.info(f"Detected hypervisor: {hypervisor}")

    if hypervisor == "libvirt":
        from vmplatform.services.libvirt_supervisor import LibvirtProcessSupervisor
        return LibvirtProcessSupervisor(allocator, settings)
    if hypervisor == "qemu":
        return QemuProcessSupervisor(allocator, settings)
    raise ValueError(f"Unsupported hypervisor '{settings.hypervisor}'.")
