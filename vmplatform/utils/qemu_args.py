import hashlib

from vmplatform.schemas import LaunchProfile


def mac_address_for(vm_id: str) -> str:
    """
    Derives a stable, locally administered MAC (QEMU's 52:54:00 prefix) from the vm_id,
    so a VM keeps its address across restarts.
    """
    digest = hashlib.sha256(vm_id.encode("utf-8")).digest()
    return "52:54:00:" + ":".join(f"{b:02x}" for b in digest[:3])


def build_qemu_command(qemu_binary: str, profile: LaunchProfile, pid_file: str, vnc_listen: str = "127.0.0.1"):
    """
    Builds the argv for a daemonized QEMU process.

    ``-name`` carries the vm_id as a standalone argument so the process table can be
    matched exactly when no PID is known.
    """
    return [
        qemu_binary,
        "-daemonize",
        "-name", profile.vm_id,
        "-pidfile", pid_file,
        "-machine", "q35,accel=kvm:tcg",
        "-m", str(profile.memory_mb),
        "-smp", str(profile.cpu_cores),
        "-drive", f"file={profile.disk_path},format=qcow2,if=virtio",
        "-netdev", f"bridge,id=net0,br={profile.bridge}",
        "-device", f"virtio-net-pci,netdev=net0,mac={profile.mac_address}",
        "-vnc", f"{vnc_listen}:{profile.vnc_display}",
    ]
