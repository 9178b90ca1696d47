import uuid
import hashlib
import platform
import psutil

def get_hardware_fingerprint() -> str:
    """
    Hash of the machine's stable identifiers (MAC, CPU count, OS, arch).
    Raw identifiers never leave the machine.
    """
    mac = ':'.join(['{:02x}'.format((uuid.getnode() >> elements) & 0xff)
                    for elements in range(0, 2*6, 2)][::-1])

    cpu_count = str(psutil.cpu_count(logical=True))
    system = platform.system()
    machine = platform.machine()

    fingerprint_data = f"{mac}|{cpu_count}|{system}|{machine}"
    return hashlib.sha256(fingerprint_data.encode()).hexdigest()

def new_device_id() -> str:
    """
    Fresh device identifier for a new installation.

    Two installations on the same machine still get distinct identifiers;
    the caller persists the result and never regenerates it.
    """
    installation_nonce = uuid.uuid4().hex
    digest = hashlib.sha256(f"{get_hardware_fingerprint()}|{installation_nonce}".encode()).hexdigest()
    return f"dev-{digest[:32]}"
