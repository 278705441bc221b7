import logging
import time
import uuid
from typing import Optional

import libvirt
import psutil

from vmplatform.config import Settings
from vmplatform.schemas import LaunchProfile
from vmplatform.services.exceptions import LaunchFailedError, TerminateFailedError
from vmplatform.services.process_supervisor import ProcessStats, ProcessSupervisor
from vmplatform.services.resource_allocator import ResourceAllocator
from vmplatform.utils.vm_xml_generator import generate_vm_xml

logger = logging.getLogger(__name__)


class LibvirtProcessSupervisor(ProcessSupervisor):
    """
    Delegates the hypervisor process to libvirt: one persistent domain per VM,
    named after the vm_id. libvirt tracks the process itself, so no PID is kept.
    """
    name = "libvirt"

    def __init__(self, allocator: ResourceAllocator, settings: Settings):
        self.allocator = allocator
        self.vnc_host = settings.vnc_host
        self.cpu_sample_interval = settings.cpu_sample_interval
        try:
            self.conn = libvirt.open(settings.libvirt_uri)
        except libvirt.libvirtError as e:
            raise ConnectionError(f"Failed to open connection to the hypervisor: {e}")

    def _lookup(self, vm_id: str):
        try:
            return self.conn.lookupByName(vm_id)
        except libvirt.libvirtError as e:
            if e.get_error_code() == libvirt.VIR_ERR_NO_DOMAIN:
                return None
            raise

    def is_running(self, vm_id: str, pid: Optional[int] = None) -> bool:
        try:
            domain = self._lookup(vm_id)
            return bool(domain and domain.isActive())
        except libvirt.libvirtError as e:
            logger.warning(f"Could not query domain {vm_id}: {e}")
            return False

    def launch(self, vm_id: str, profile: LaunchProfile) -> Optional[int]:
        xml_config = generate_vm_xml(
            vm_name=vm_id,
            vm_uuid=str(uuid.uuid5(uuid.NAMESPACE_URL, vm_id)),
            cpu_count=profile.cpu_cores,
            ram_mb=profile.memory_mb,
            image_filepath=profile.disk_path,
            bridge=profile.bridge,
            mac_address=profile.mac_address,
            vnc_port=self.allocator.vnc_port(profile.vnc_display),
            vnc_listen=self.vnc_host,
        )
        try:
            domain = self.conn.defineXML(xml_config)
            if domain.create() < 0:
                raise LaunchFailedError("libvirt refused to start the domain")
        except libvirt.libvirtError as e:
            logger.error(f"libvirt launch for {vm_id} failed: {e}")
            raise LaunchFailedError(str(e)) from e
        return None

    def terminate(self, vm_id: str, pid: Optional[int] = None) -> None:
        try:
            domain = self._lookup(vm_id)
            if domain is None or not domain.isActive():
                logger.info(f"Domain {vm_id} is not running; treating as stopped.")
                return
            domain.destroy()
        except libvirt.libvirtError as e:
            raise TerminateFailedError(f"Failed to stop domain {vm_id}: {e}") from e

    def release(self, vm_id: str) -> None:
        try:
            domain = self._lookup(vm_id)
            if domain is not None:
                domain.undefine()
        except libvirt.libvirtError as e:
            logger.warning(f"Failed to undefine domain {vm_id}: {e}")

    def process_stats(self, vm_id: str, pid: Optional[int] = None) -> Optional[ProcessStats]:
        try:
            domain = self._lookup(vm_id)
            if domain is None or not domain.isActive():
                return None
            # info() -> [state, maxMem KiB, memory KiB, nrVirtCpu, cpuTime ns]
            first = domain.info()
            time.sleep(self.cpu_sample_interval)
            second = domain.info()
        except libvirt.libvirtError:
            return None

        elapsed_ns = self.cpu_sample_interval * 1e9
        host_cpus = psutil.cpu_count() or 1
        cpu = (second[4] - first[4]) / elapsed_ns * 100 / host_cpus if elapsed_ns else 0.0
        total_kib = psutil.virtual_memory().total / 1024
        return ProcessStats(
            cpu_percent=round(max(cpu, 0.0), 1),
            memory_percent=round(second[2] / total_kib * 100, 1) if total_kib else 0.0,
            memory_rss=second[2] * 1024,
        )

    def count_running(self) -> int:
        try:
            return self.conn.numOfDomains()
        except libvirt.libvirtError:
            return 0

    def __del__(self):
        conn = getattr(self, "conn", None)
        if conn:
            try:
                conn.close()
            except libvirt.libvirtError:
                pass
