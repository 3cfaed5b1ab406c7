"""Calls a running VMM answers through its API client.

The client is any object with the API operations used here. Each
operation takes a JSON-ready payload, returns the decoded response
payload (or None) and raises on failure.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Optional

from fcmachine.config import Drive, MachineConfiguration, RateLimiterSet, VsockDevice
from fcmachine.network import NetworkInterface

ACTION_INSTANCE_START = "InstanceStart"
ACTION_SEND_CTRL_ALT_DEL = "SendCtrlAltDel"

VM_STATE_PAUSED = "Paused"
VM_STATE_RESUMED = "Resumed"


class MachineAPI:
    """Operations on a microVM that go through the VMM's API client."""

    def __init__(self, client: Any, logger: Optional[logging.Logger] = None) -> None:
        self.client = client
        self.logger = logger if logger is not None else logging.getLogger(__name__)

    def shutdown(self) -> None:
        """Ask the guest to shut down by sending Ctrl+Alt+Del on its virtual keyboard."""
        self.logger.debug("Called machine.shutdown()")
        try:
            self.client.create_sync_action({"action_type": ACTION_SEND_CTRL_ALT_DEL})
        except Exception as exc:
            self.logger.error("Unable to send CtrlAltDel: %s", exc)
            raise
        self.logger.info("Sent instance shutdown request")

    def set_metadata(self, metadata: Any) -> None:
        """Replace the metadata served by the MMDS."""
        try:
            self.client.put_mmds(metadata)
        except Exception as exc:
            self.logger.error("Setting metadata: %s", exc)
            raise
        self.logger.info("SetMetadata successful")

    def update_metadata(self, metadata: Any) -> None:
        """Patch the metadata served by the MMDS."""
        try:
            self.client.patch_mmds(metadata)
        except Exception as exc:
            self.logger.error("Updating metadata: %s", exc)
            raise
        self.logger.info("UpdateMetadata successful")

    def get_metadata(self) -> Any:
        """Return a JSON-decoded copy of the metadata served by the MMDS."""
        try:
            payload = self.client.get_mmds()
        except Exception as exc:
            self.logger.error("Getting metadata: %s", exc)
            raise
        try:
            result = json.loads(json.dumps(payload))
        except (TypeError, ValueError) as exc:
            self.logger.error("Getting metadata failed parsing payload: %s", exc)
            raise
        self.logger.info("GetMetadata successful")
        return result

    def update_guest_drive(self, drive_id: str, path_on_host: str) -> None:
        """Point an attached guest drive at a different host file."""
        try:
            self.client.patch_guest_drive_by_id(drive_id, path_on_host)
        except Exception as exc:
            self.logger.error("PatchGuestDrive failed: %s", exc)
            raise
        self.logger.info("PatchGuestDrive successful")

    def update_guest_network_interface_rate_limit(
        self, iface_id: str, rate_limiters: RateLimiterSet
    ) -> None:
        """Change the rate limits of a network interface."""
        iface: dict = {"iface_id": iface_id}
        if rate_limiters.in_rate_limiter is not None:
            iface["rx_rate_limiter"] = rate_limiters.in_rate_limiter.to_dict()
        if rate_limiters.out_rate_limiter is not None and rate_limiters.in_rate_limiter is not None:
            iface["tx_rate_limiter"] = rate_limiters.in_rate_limiter.to_dict()
        try:
            self.client.patch_guest_network_interface_by_id(iface_id, iface)
        except Exception as exc:
            self.logger.error("Update network interface failed: %s: %s", iface_id, exc)
            raise
        self.logger.info("Updated network interface: %s", iface_id)

    def describe_instance_info(self) -> Any:
        """Return the instance information reported by the VMM."""
        try:
            info = self.client.get_instance_info()
        except Exception as exc:
            self.logger.error("Getting Instance Info: %s", exc)
            raise
        self.logger.info("GetInstanceInfo successful")
        return info

    def pause_vm(self) -> None:
        """Pause the microVM."""
        try:
            self.client.patch_vm({"state": VM_STATE_PAUSED})
        except Exception as exc:
            self.logger.error("failed to pause the VM: %s", exc)
            raise
        self.logger.debug("VM paused successfully")

    def resume_vm(self) -> None:
        """Resume a paused microVM."""
        try:
            self.client.patch_vm({"state": VM_STATE_RESUMED})
        except Exception as exc:
            self.logger.error("failed to resume the VM: %s", exc)
            raise
        self.logger.debug("VM resumed successfully")

    def create_snapshot(self, mem_file_path: str, snapshot_path: str) -> None:
        """Write a snapshot of the paused microVM to the two given files."""
        params = {"mem_file_path": mem_file_path, "snapshot_path": snapshot_path}
        try:
            self.client.create_snapshot(params)
        except Exception as exc:
            self.logger.error("failed to create a snapshot of the VM: %s", exc)
            raise
        self.logger.debug("snapshot created successfully")

    def create_balloon(
        self, amount_mib: int, deflate_on_oom: bool, stats_polling_interval_s: int
    ) -> None:
        """Create the balloon device."""
        balloon = {
            "amount_mib": amount_mib,
            "deflate_on_oom": deflate_on_oom,
            "stats_polling_interval_s": stats_polling_interval_s,
        }
        try:
            self.client.put_balloon(balloon)
        except Exception as exc:
            self.logger.error("Create balloon device failed : %s", exc)
            raise
        self.logger.debug("Created balloon device successful")

    def get_balloon_config(self) -> Any:
        """Return the current balloon device configuration."""
        try:
            config = self.client.describe_balloon_config()
        except Exception as exc:
            self.logger.error("Getting balloonConfig: %s", exc)
            raise
        self.logger.debug("GetBalloonConfig successful")
        return config

    def update_balloon(self, amount_mib: int) -> None:
        """Change the target size of the balloon device."""
        try:
            self.client.patch_balloon({"amount_mib": amount_mib})
        except Exception as exc:
            self.logger.error("Update balloon device failed : %s", exc)
            raise
        self.logger.debug("Update balloon device successful")

    def get_balloon_stats(self) -> Any:
        """Return the latest balloon statistics, if enabled before boot."""
        try:
            stats = self.client.describe_balloon_stats()
        except Exception as exc:
            self.logger.error("Getting balloonStats: %s", exc)
            raise
        self.logger.debug("GetBalloonStats successful")
        return stats

    def update_balloon_stats(self, stats_polling_interval_s: int) -> None:
        """Change the balloon statistics polling interval."""
        try:
            self.client.patch_balloon_stats_interval(
                {"stats_polling_interval_s": stats_polling_interval_s}
            )
        except Exception as exc:
            self.logger.error("UpdateBalloonStats failed: %s", exc)
            raise
        self.logger.debug("UpdateBalloonStats successful")

    # Pre-boot configuration calls used while starting a machine.

    def _start_instance(self) -> None:
        try:
            self.client.create_sync_action({"action_type": ACTION_INSTANCE_START})
        except Exception as exc:
            self.logger.error("Starting instance: %s", exc)
            raise
        self.logger.info("startInstance successful")

    def _put_machine_configuration(self, machine_cfg: MachineConfiguration) -> None:
        try:
            self.client.put_machine_configuration(machine_cfg.to_dict())
        except Exception as exc:
            self.logger.error("PutMachineConfiguration returned %s", exc)
            raise
        self.logger.debug("PutMachineConfiguration returned")

    def _fetch_machine_configuration(self) -> MachineConfiguration:
        payload = self.client.get_machine_configuration() or {}
        return MachineConfiguration(
            vcpu_count=payload.get("vcpu_count"),
            mem_size_mib=payload.get("mem_size_mib"),
            ht_enabled=payload.get("ht_enabled"),
            cpu_template=payload.get("cpu_template"),
        )

    def _create_boot_source(self, image_path: str, initrd_path: str, kernel_args: str) -> None:
        source: dict = {"kernel_image_path": image_path}
        if initrd_path:
            source["initrd_path"] = initrd_path
        if kernel_args:
            source["boot_args"] = kernel_args
        self.client.put_guest_boot_source(source)
        self.logger.info("PutGuestBootSource successful")

    def _create_network_interface(self, iface: NetworkInterface, index: int) -> None:
        iface_id = str(index)
        static = iface.static_configuration
        if static is None:
            raise ValueError("invalid nil state for network interface")
        self.logger.info(
            "Attaching NIC %s (hwaddr %s) at index %s",
            static.host_dev_name,
            static.mac_address,
            iface_id,
        )
        payload: dict = {
            "iface_id": iface_id,
            "host_dev_name": static.host_dev_name,
            "allow_mmds_requests": iface.allow_mmds,
        }
        if static.mac_address:
            payload["guest_mac"] = static.mac_address
        if iface.in_rate_limiter is not None:
            payload["rx_rate_limiter"] = iface.in_rate_limiter.to_dict()
        if iface.out_rate_limiter is not None:
            payload["tx_rate_limiter"] = iface.out_rate_limiter.to_dict()
        self.client.put_guest_network_interface_by_id(iface_id, payload)
        self.logger.debug("createNetworkInterface returned for %s", static.host_dev_name)

    def _attach_drive(self, drive: Drive) -> None:
        host_path = drive.path_on_host or ""
        self.logger.info(
            "Attaching drive %s, slot %s, root %s.",
            host_path,
            drive.drive_id or "",
            bool(drive.is_root_device),
        )
        try:
            self.client.put_guest_drive_by_id(drive.drive_id or "", drive.to_dict())
        except Exception as exc:
            self.logger.error("Attach drive failed: %s: %s", host_path, exc)
            raise
        self.logger.info("Attached drive %s", host_path)

    def _add_vsock(self, device: VsockDevice) -> None:
        self.client.put_guest_vsock(device.to_dict())
        self.logger.debug("Attach vsock %s successful", device.path)

    def _set_mmds_config(self, address: Any) -> None:
        try:
            self.client.put_mmds_config({"ipv4_address": str(address)})
        except Exception as exc:
            self.logger.error("Setting mmds configuration failed: %s: %s", address, exc)
            raise
        self.logger.debug("SetMmdsConfig successful")