"""User-facing configuration of a microVM and its devices."""

from __future__ import annotations

import enum
import ipaddress
import os
from dataclasses import dataclass, field
from typing import IO, Any, Optional, Union

from fcmachine.network import NetworkInterfaces
from fcmachine.rate_limiter import RateLimiter


class ConfigError(ValueError):
    """Raised when a machine configuration is invalid."""


class SeccompLevel(enum.IntEnum):
    """How restrictive the seccomp filters installed by the VMM are."""

    DISABLE = 0
    BASIC = 1
    ADVANCED = 2

    def __str__(self) -> str:
        return str(int(self))


@dataclass
class MachineConfiguration:
    """CPU and memory settings of the microVM."""

    vcpu_count: Optional[int] = None
    mem_size_mib: Optional[int] = None
    ht_enabled: Optional[bool] = None
    cpu_template: Optional[str] = None

    def to_dict(self) -> dict:
        """Return the configuration as an API payload, leaving out unset fields."""
        values = {
            "vcpu_count": self.vcpu_count,
            "mem_size_mib": self.mem_size_mib,
            "ht_enabled": self.ht_enabled,
            "cpu_template": self.cpu_template,
        }
        return {key: value for key, value in values.items() if value is not None}


@dataclass
class Drive:
    """A block device made available to the microVM."""

    drive_id: Optional[str] = None
    path_on_host: Optional[str] = None
    is_root_device: Optional[bool] = None
    is_read_only: Optional[bool] = None
    rate_limiter: Optional[RateLimiter] = None

    def to_dict(self) -> dict:
        """Return the drive as an API payload, leaving out unset fields."""
        payload: dict = {}
        if self.drive_id is not None:
            payload["drive_id"] = self.drive_id
        if self.path_on_host is not None:
            payload["path_on_host"] = self.path_on_host
        if self.is_root_device is not None:
            payload["is_root_device"] = self.is_root_device
        if self.is_read_only is not None:
            payload["is_read_only"] = self.is_read_only
        if self.rate_limiter is not None:
            payload["rate_limiter"] = self.rate_limiter.to_dict()
        return payload


@dataclass
class VsockDevice:
    """A vsock connection between the host and the guest."""

    id: str = ""
    path: str = ""
    cid: int = 0

    def to_dict(self) -> dict:
        """Return the device as an API payload."""
        return {"vsock_id": self.id, "uds_path": self.path, "guest_cid": self.cid}


@dataclass
class RateLimiterSet:
    """An inbound and an outbound rate limiter."""

    in_rate_limiter: Optional[RateLimiter] = None
    out_rate_limiter: Optional[RateLimiter] = None


IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


@dataclass
class Config:
    """User-configurable settings of the VMM and the microVM it runs."""

    socket_path: str = ""
    log_path: str = ""
    log_fifo: str = ""
    log_level: str = ""
    metrics_path: str = ""
    metrics_fifo: str = ""
    kernel_image_path: str = ""
    initrd_path: str = ""
    kernel_args: str = ""
    drives: list[Drive] = field(default_factory=list)
    network_interfaces: NetworkInterfaces = field(default_factory=NetworkInterfaces)
    fifo_log_writer: Optional[IO] = None
    vsock_devices: list[VsockDevice] = field(default_factory=list)
    machine_cfg: MachineConfiguration = field(default_factory=MachineConfiguration)
    disable_validation: bool = False
    jailer_cfg: Optional[Any] = None
    vm_id: str = ""
    net_ns: str = ""
    forward_signals: Optional[list[int]] = None
    seccomp_level: SeccompLevel = SeccompLevel.DISABLE
    mmds_address: Optional[Union[IPAddress, str]] = None

    def __post_init__(self) -> None:
        if not isinstance(self.network_interfaces, NetworkInterfaces):
            self.network_interfaces = NetworkInterfaces(self.network_interfaces)
        if isinstance(self.mmds_address, str):
            self.mmds_address = ipaddress.ip_address(self.mmds_address)
        self.seccomp_level = SeccompLevel(self.seccomp_level)

    def validate(self) -> None:
        """Raise ConfigError unless required files exist and machine settings are usable."""
        if self.disable_validation:
            return

        try:
            os.stat(self.kernel_image_path)
        except OSError as exc:
            raise ConfigError(
                f"failed to stat kernel image path, {self.kernel_image_path!r}: {exc}"
            ) from exc

        if self.initrd_path:
            try:
                os.stat(self.initrd_path)
            except OSError as exc:
                raise ConfigError(
                    f"failed to stat initrd image path, {self.initrd_path!r}: {exc}"
                ) from exc

        root = next((drive for drive in self.drives if drive.is_root_device), None)
        if root is not None:
            root_path = root.path_on_host or ""
            try:
                os.stat(root_path)
            except OSError as exc:
                raise ConfigError(
                    f"failed to stat host drive path, {root_path!r}: {exc}"
                ) from exc

        if self.socket_path and os.path.exists(self.socket_path):
            raise ConfigError(f"socket {self.socket_path} already exists")

        machine = self.machine_cfg
        if machine.vcpu_count is None or machine.vcpu_count < 1:
            raise ConfigError("machine needs a nonzero VcpuCount")
        if machine.mem_size_mib is None or machine.mem_size_mib < 1:
            raise ConfigError("machine needs a nonzero amount of memory")
        if machine.ht_enabled is None:
            raise ConfigError("machine needs a setting for ht_enabled")