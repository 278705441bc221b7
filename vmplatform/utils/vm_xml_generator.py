import functools
from pathlib import Path

TEMPLATE_PATH = Path(__file__).resolve().parent / 'templates' / 'vm_template.xml'


@functools.lru_cache(maxsize=1)
def get_xml_template():
    """Reads the libvirt domain template once and returns its contents."""
    try:
        with open(TEMPLATE_PATH, 'r') as f:
            return f.read()
    except FileNotFoundError:
        raise FileNotFoundError(f"VM template file not found at {TEMPLATE_PATH}.")


def generate_vm_xml(vm_name, vm_uuid, cpu_count, ram_mb, image_filepath,
                    bridge='vmbr0', mac_address='52:54:00:00:00:01', vnc_port=5900, vnc_listen='127.0.0.1'):
    """
    Fills the domain template with the VM's resource profile.
    """
    ram_kib = ram_mb * 1024

    return get_xml_template().format(
        vm_name=vm_name,
        vm_uuid=vm_uuid,
        cpu_count=cpu_count,
        ram_kib=ram_kib,
        image_filepath=image_filepath,
        bridge=bridge,
        mac_address=mac_address,
        vnc_port=vnc_port,
        vnc_listen=vnc_listen,
    )
