"""Network interface configuration for microVMs: static and CNI-driven."""

from __future__ import annotations

import ipaddress
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Optional, Union

from fcmachine.rate_limiter import RateLimiter

DEFAULT_CNI_BIN_DIR = "/opt/cni/bin"
DEFAULT_CNI_CONF_DIR = "/etc/cni/conf.d"
DEFAULT_CNI_CACHE_DIR = "/var/lib/cni"

IPInterface = Union[ipaddress.IPv4Interface, ipaddress.IPv6Interface]
IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


class NetworkConfigError(ValueError):
    """Raised when a network configuration is invalid."""


def _is_ipv4(address: Optional[IPAddress]) -> bool:
    if address is None:
        return False
    if isinstance(address, ipaddress.IPv4Address):
        return True
    return address.ipv4_mapped is not None


@dataclass
class IPConfiguration:
    """A static IP, gateway and up to two nameservers configured inside the VM.

    ``ip_addr`` and ``gateway`` accept strings and are converted to
    ``ipaddress`` objects. Only IPv4 is currently supported.
    """

    ip_addr: Union[IPInterface, str]
    gateway: Optional[Union[IPAddress, str]] = None
    nameservers: list[str] = field(default_factory=list)
    if_name: str = ""

    def __post_init__(self) -> None:
        if isinstance(self.ip_addr, str):
            self.ip_addr = ipaddress.ip_interface(self.ip_addr)
        if isinstance(self.gateway, str):
            self.gateway = ipaddress.ip_address(self.gateway)

    def validate(self) -> None:
        """Raise NetworkConfigError unless both addresses are IPv4 and nameservers number at most two."""
        for address in (self.ip_addr.ip, self.gateway):
            if not _is_ipv4(address):
                raise NetworkConfigError(
                    f"invalid ip, only ipv4 addresses are supported: {address}"
                )
        if len(self.nameservers) > 2:
            raise NetworkConfigError(
                f"cannot specify more than 2 nameservers: {self.nameservers!r}"
            )


@dataclass
class StaticNetworkConfiguration:
    """A network interface defined by static parameters."""

    mac_address: str = ""
    host_dev_name: str = ""
    ip_configuration: Optional[IPConfiguration] = None

    def validate(self) -> None:
        """Raise NetworkConfigError if the tap name is missing or the IP configuration is invalid."""
        if not self.host_dev_name:
            raise NetworkConfigError(
                f"HostDevName must be provided if StaticNetworkConfiguration is provided: {self!r}"
            )
        if self.ip_configuration is not None:
            self.ip_configuration.validate()


@dataclass
class CNIConfiguration:
    """CNI parameters used to create the network namespace and tap device of an interface.

    ``container_id`` and ``net_ns_path`` are normally filled in from the
    machine's VM ID and network namespace rather than by the user.
    """

    network_name: str = ""
    network_config: Optional[Any] = None
    if_name: str = ""
    vm_if_name: str = ""
    args: list[tuple[str, str]] = field(default_factory=list)
    bin_path: list[str] = field(default_factory=list)
    conf_dir: str = ""
    cache_dir: str = ""
    container_id: str = ""
    net_ns_path: str = ""
    force: bool = False

    def validate(self) -> None:
        """Raise NetworkConfigError unless exactly one of network name and network config is set."""
        if not self.network_name and self.network_config is None:
            raise NetworkConfigError(
                f"must specify either NetworkName or NetworkConfig in CNIConfiguration: {self!r}"
            )
        if self.network_name and self.network_config is not None:
            raise NetworkConfigError(
                f"must not specify both NetworkName and NetworkConfig in CNIConfiguration: {self!r}"
            )

    def set_defaults(self) -> None:
        """Fill in the plugin path, configuration directory and cache directory if unset."""
        if not self.bin_path:
            self.bin_path = [DEFAULT_CNI_BIN_DIR]
        if not self.conf_dir:
            self.conf_dir = DEFAULT_CNI_CONF_DIR
        if not self.cache_dir:
            self.cache_dir = os.path.join(DEFAULT_CNI_CACHE_DIR, self.container_id)

    def as_runtime_conf(self) -> dict:
        """Return the runtime parameters passed to CNI plugins."""
        return {
            "container_id": self.container_id,
            "netns": self.net_ns_path,
            "if_name": self.if_name,
            "args": list(self.args),
        }


@dataclass
class NetworkInterface:
    """A microVM network interface, configured either statically or through CNI."""

    static_configuration: Optional[StaticNetworkConfiguration] = None
    cni_configuration: Optional[CNIConfiguration] = None
    allow_mmds: bool = False
    in_rate_limiter: Optional[RateLimiter] = None
    out_rate_limiter: Optional[RateLimiter] = None


class NetworkInterfaces(list):
    """The list of network interfaces a VM is configured to use."""

    def validate(self, kernel_args: Mapping) -> None:
        """Raise NetworkConfigError if the interfaces conflict with each other or with the kernel args."""
        for iface in self:
            has_cni = iface.cni_configuration is not None
            has_static = iface.static_configuration is not None
            has_static_ip = has_static and iface.static_configuration.ip_configuration is not None

            if not has_cni and not has_static:
                raise NetworkConfigError(
                    "must specify at least one of CNIConfiguration or StaticConfiguration "
                    f"for network interfaces: {list(self)!r}"
                )
            if has_cni and has_static:
                raise NetworkConfigError(
                    "cannot provide both CNIConfiguration and StaticConfiguration "
                    f"for a network interface: {iface!r}"
                )
            if has_cni or has_static_ip:
                # The "ip=" boot parameter can only describe one interface.
                if len(self) > 1:
                    raise NetworkConfigError(
                        "cannot specify CNIConfiguration or IPConfiguration when multiple "
                        f"network interfaces are provided: {list(self)!r}"
                    )
                if "ip" in kernel_args:
                    raise NetworkConfigError(
                        'CNIConfiguration or IPConfiguration cannot be specified when "ip=" '
                        f'provided in kernel boot args, value found: "{kernel_args["ip"]}"'
                    )
            if has_cni:
                iface.cni_configuration.validate()
            if has_static:
                iface.static_configuration.validate()

    def cni_interface(self) -> Optional[NetworkInterface]:
        """Return the first interface with CNI configuration, or None."""
        return next((iface for iface in self if iface.cni_configuration is not None), None)

    def static_ip_interface(self) -> Optional[NetworkInterface]:
        """Return the first interface with a static IP configuration, or None."""
        return next(
            (
                iface
                for iface in self
                if iface.static_configuration is not None
                and iface.static_configuration.ip_configuration is not None
            ),
            None,
        )