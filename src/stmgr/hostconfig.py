"""Host configuration for System Transparency nodes.

The host configuration is a flat JSON document read by the bootloader.
It is written either to a local file or to an EFI variable through
efivarfs. Fields that are not set are written as JSON null, which is
distinct from an empty string.
"""

import fcntl
import ipaddress
import logging
import os
import re
import struct
from pathlib import Path
from typing import Optional, Union
from urllib.parse import urlparse

from pydantic import BaseModel, ValidationError, field_validator

from .errors import InvalidHostConfig, StmgrError
from .fileio import PRIVATE_FILE_MODE, write_atomic

logger = logging.getLogger(__name__)

HOST_CONFIG_FILE = "host_configuration.json"
HOST_CONFIG_VERSION = 1

EFI_VARIABLE_NAME = "STHostConfig-f401f2c1-b005-4be0-8cee-f2e5945bcbe7"
EFIVARFS_PATH = Path("/sys/firmware/efi/efivars")

EFI_VARIABLE_NON_VOLATILE = 0x00000001
EFI_VARIABLE_BOOTSERVICE_ACCESS = 0x00000002
EFI_VARIABLE_RUNTIME_ACCESS = 0x00000004

# linux/fs.h; efivarfs marks existing variables immutable
FS_IOC_GETFLAGS = 0x80086601
FS_IOC_SETFLAGS = 0x40086602
FS_IMMUTABLE_FL = 0x00000010

NETWORK_MODES = ("static", "dhcp")


class HostConfig(BaseModel):
    """Host configuration document."""

    version: int = HOST_CONFIG_VERSION
    network_mode: Optional[str] = None
    host_ip: Optional[str] = None
    gateway: Optional[str] = None
    dns: Optional[str] = None
    network_interface: Optional[str] = None
    provisioning_urls: Optional[list[str]] = None
    identity: Optional[str] = None
    authentication: Optional[str] = None
    timestamp: Optional[int] = None
    network_interfaces: Optional[list[str]] = None
    bonding_mode: Optional[str] = None
    bond_name: Optional[str] = None
    custom: Optional[dict[str, str]] = None

    @field_validator("network_mode")
    @classmethod
    def _check_network_mode(cls, value: Optional[str]) -> Optional[str]:
        if value and value not in NETWORK_MODES:
            raise ValueError(f"network_mode must be one of {', '.join(NETWORK_MODES)}")
        return value

    @field_validator("host_ip")
    @classmethod
    def _check_host_ip(cls, value: Optional[str]) -> Optional[str]:
        if value:
            # Address with prefix length, e.g. 10.0.2.15/24
            ipaddress.ip_interface(value)
            if "/" not in value:
                raise ValueError("host_ip needs a prefix length, e.g. 10.0.2.15/24")
        return value

    @field_validator("gateway", "dns")
    @classmethod
    def _check_address(cls, value: Optional[str]) -> Optional[str]:
        if value:
            ipaddress.ip_address(value)
        return value

    @field_validator("provisioning_urls")
    @classmethod
    def _check_urls(cls, value: Optional[list[str]]) -> Optional[list[str]]:
        for url in value or []:
            parsed = urlparse(url)
            if parsed.scheme not in ("http", "https") or not parsed.netloc:
                raise ValueError(f"provisioning URL must be http(s): {url!r}")
        return value

    def to_json(self) -> bytes:
        # custom is the only field left out when unset
        return self.model_dump_json(exclude={"custom"} if self.custom is None else None).encode()


def split_urls(value: Optional[str]) -> Optional[list[str]]:
    """Split a comma or space separated URL list; None stays unset."""
    if value is None:
        return None
    return [url for url in re.split(r"[,\s]+", value) if url]


def build_host_config(
    version: int = HOST_CONFIG_VERSION,
    network_mode: Optional[str] = None,
    host_ip: Optional[str] = None,
    gateway: Optional[str] = None,
    dns: Optional[str] = None,
    network_interface: Optional[str] = None,
    urls: Optional[str] = None,
    identity: Optional[str] = None,
    authentication: Optional[str] = None,
) -> HostConfig:
    """Build and validate a host configuration.

    Raises:
        InvalidHostConfig: If any value is rejected
    """
    try:
        return HostConfig(
            version=version,
            network_mode=network_mode,
            host_ip=host_ip,
            gateway=gateway,
            dns=dns,
            network_interface=network_interface,
            provisioning_urls=split_urls(urls),
            identity=identity,
            authentication=authentication,
        )
    except ValidationError as e:
        messages = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise InvalidHostConfig(f"invalid host configuration: {messages}") from e


def write_host_config(
    config: HostConfig,
    efi: bool = False,
    path: Optional[Union[str, Path]] = None,
    efivarfs: Path = EFIVARFS_PATH,
) -> Path:
    """Write a host configuration to a file or an EFI variable.

    Args:
        config: Host configuration
        efi: Store in the EFI variable instead of a file
        path: Output file, defaults to host_configuration.json
        efivarfs: Mount point of efivarfs

    Returns:
        Path that was written
    """
    data = config.to_json()

    if not efi:
        out = Path(path) if path else Path(HOST_CONFIG_FILE)
        write_atomic(out, data, PRIVATE_FILE_MODE)
        logger.info("wrote host configuration to %s", out)
        return out

    attributes = (
        EFI_VARIABLE_NON_VOLATILE
        | EFI_VARIABLE_BOOTSERVICE_ACCESS
        | EFI_VARIABLE_RUNTIME_ACCESS
    )
    var_path = Path(efivarfs) / EFI_VARIABLE_NAME

    _clear_immutable(var_path)

    # efivarfs takes attributes and payload in a single write
    try:
        with open(var_path, "wb") as f:
            f.write(struct.pack("<I", attributes) + data)
    except PermissionError as e:
        raise StmgrError(
            f"cannot write EFI variable {var_path}: {e} "
            "(an existing variable may be immutable; remove it with chattr -i and rm first)"
        ) from e
    except OSError as e:
        raise StmgrError(f"cannot write EFI variable {var_path}: {e}") from e

    logger.info("wrote host configuration to EFI variable %s", EFI_VARIABLE_NAME)
    return var_path


def _clear_immutable(path: Path) -> None:
    """Drop the immutable flag from an existing efivarfs variable."""
    try:
        fd = os.open(path, os.O_RDONLY)
    except FileNotFoundError:
        return
    except OSError as e:
        logger.debug("cannot open %s to check flags: %s", path, e)
        return

    try:
        (flags,) = struct.unpack("I", fcntl.ioctl(fd, FS_IOC_GETFLAGS, struct.pack("I", 0)))
        if flags & FS_IMMUTABLE_FL:
            fcntl.ioctl(fd, FS_IOC_SETFLAGS, struct.pack("I", flags & ~FS_IMMUTABLE_FL))
            logger.debug("cleared immutable flag on %s", path)
    except OSError as e:
        # Filesystems without inode flags reject the ioctl
        logger.debug("cannot clear immutable flag on %s: %s", path, e)
    finally:
        os.close(fd)
