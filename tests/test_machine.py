import io
import os
import signal
import subprocess
import sys
import uuid

import pytest

from fcmachine.config import Config, ConfigError, Drive, MachineConfiguration, VsockDevice
from fcmachine.machine import AlreadyStartedError, Machine
from fcmachine.network import (
    CNIConfiguration,
    IPConfiguration,
    NetworkInterface,
    StaticNetworkConfiguration,
)

VMM_SCRIPT = """
import pathlib, signal, sys, time
def handle(signum, frame):
    if len(sys.argv) > 2:
        pathlib.Path(sys.argv[2]).write_text(str(signum))
    sys.exit(0)
signal.signal(signal.SIGUSR1, handle)
pathlib.Path(sys.argv[1]).write_text("")
time.sleep(30)
"""


class FakeClient:
    def __init__(self, fail_on=None):
        self.calls = []
        self.fail_on = fail_on
        self.machine_cfg = {}

    def _record(self, name, *args):
        self.calls.append((name, args))
        if name == self.fail_on:
            raise RuntimeError(f"{name} failed")

    def names(self):
        return [name for name, _ in self.calls if name != "get_machine_configuration"]

    def payloads(self, name):
        return [args for call, args in self.calls if call == name]

    def get_machine_configuration(self):
        self._record("get_machine_configuration")
        return dict(self.machine_cfg)

    def put_machine_configuration(self, payload):
        self._record("put_machine_configuration", payload)
        self.machine_cfg = dict(payload)

    def put_logger(self, payload):
        self._record("put_logger", payload)

    def put_metrics(self, payload):
        self._record("put_metrics", payload)

    def put_guest_boot_source(self, payload):
        self._record("put_guest_boot_source", payload)

    def put_guest_drive_by_id(self, drive_id, payload):
        self._record("put_guest_drive_by_id", drive_id, payload)

    def put_guest_network_interface_by_id(self, iface_id, payload):
        self._record("put_guest_network_interface_by_id", iface_id, payload)

    def put_guest_vsock(self, payload):
        self._record("put_guest_vsock", payload)

    def put_mmds_config(self, payload):
        self._record("put_mmds_config", payload)

    def create_sync_action(self, payload):
        self._record("create_sync_action", payload)


def make_config(tmp_path, **overrides):
    values = dict(
        socket_path=str(tmp_path / "fc.sock"),
        kernel_image_path="/path/to/kernel",
        disable_validation=True,
        forward_signals=[],
        machine_cfg=MachineConfiguration(vcpu_count=1, mem_size_mib=64, ht_enabled=False),
    )
    values.update(overrides)
    return Config(**values)


@pytest.fixture
def machines():
    created = []
    yield created
    for machine in created:
        machine.stop_vmm()
        try:
            machine.wait(timeout=5)
        except Exception:
            pass


def vmm_command(cfg, *extra):
    return [sys.executable, "-c", VMM_SCRIPT, cfg.socket_path, *extra]


def test_socket_path_in_default_command(tmp_path):
    machine = Machine(Config(socket_path="foo/bar"), FakeClient())
    index = machine.command.index("--api-sock")
    assert machine.command[index + 1] == "foo/bar"
    assert machine.command[0] == "firecracker"


def test_vm_id_generated_and_preserved():
    generated = Machine(Config(), FakeClient())
    assert str(uuid.UUID(generated.cfg.vm_id)) == generated.cfg.vm_id
    given = Machine(Config(vm_id="UserSuppliedVMID"), FakeClient())
    assert given.cfg.vm_id == "UserSuppliedVMID"
    assert given.command[given.command.index("--id") + 1] == "UserSuppliedVMID"


def test_default_forward_signals():
    machine = Machine(Config(), FakeClient())
    assert machine.cfg.forward_signals == [
        signal.SIGINT,
        signal.SIGQUIT,
        signal.SIGTERM,
        signal.SIGHUP,
        signal.SIGABRT,
    ]


def test_default_netns_for_cni_interface():
    cfg = Config(
        vm_id="vm1",
        network_interfaces=[NetworkInterface(cni_configuration=CNIConfiguration(network_name="net"))],
    )
    machine = Machine(cfg, FakeClient())
    assert machine.cfg.net_ns == "/var/run/netns/vm1"


def test_jailer_config_needs_command():
    with pytest.raises(ConfigError):
        Machine(Config(jailer_cfg=object()), FakeClient())


def test_log_file_and_level(tmp_path):
    machine = Machine(make_config(tmp_path, log_fifo="/tmp/x.fifo", log_level="Debug"), FakeClient())
    assert machine.log_file() == "/tmp/x.fifo"
    assert machine.log_level() == "Debug"


def test_pid_before_start_raises():
    machine = Machine(Config(), FakeClient())
    with pytest.raises(RuntimeError, match="not running"):
        machine.pid()


def test_wait_times_out_when_not_started():
    machine = Machine(Config(), FakeClient())
    with pytest.raises(TimeoutError):
        machine.wait(timeout=0.05)


def test_validation_failure_runs_cleanups_in_reverse(tmp_path):
    order = []
    cfg = make_config(tmp_path, disable_validation=False, kernel_image_path=str(tmp_path / "missing"))
    machine = Machine(cfg, FakeClient())
    machine.add_cleanup(lambda: order.append("first"))
    machine.add_cleanup(lambda: order.append("second"))
    with pytest.raises(ConfigError):
        machine.start()
    assert order == ["second", "first"]
    with pytest.raises(AlreadyStartedError):
        machine.start()


def test_cni_interface_cannot_start(tmp_path):
    cfg = make_config(
        tmp_path,
        network_interfaces=[NetworkInterface(cni_configuration=CNIConfiguration(network_name="net"))],
    )
    machine = Machine(cfg, FakeClient(), command=["true"])
    with pytest.raises(ConfigError):
        machine.start()


def test_start_configures_vmm_in_order(tmp_path, machines):
    cfg = make_config(
        tmp_path,
        drives=[Drive(drive_id="root", path_on_host="/rootfs", is_root_device=True, is_read_only=True)],
        network_interfaces=[
            NetworkInterface(
                static_configuration=StaticNetworkConfiguration(
                    mac_address="02:00:00:00:00:01", host_dev_name="tap0"
                )
            )
        ],
        vsock_devices=[VsockDevice(id="1", path="v.sock", cid=3)],
    )
    client = FakeClient()
    machine = Machine(cfg, client, command=vmm_command(cfg))
    machines.append(machine)
    machine.start()
    assert client.names() == [
        "put_machine_configuration",
        "put_guest_boot_source",
        "put_guest_drive_by_id",
        "put_guest_network_interface_by_id",
        "put_guest_vsock",
        "create_sync_action",
    ]
    assert client.payloads("create_sync_action") == [({"action_type": "InstanceStart"},)]
    assert client.payloads("put_guest_network_interface_by_id")[0][0] == "1"
    assert machine.machine_config == MachineConfiguration(vcpu_count=1, mem_size_mib=64, ht_enabled=False)
    assert machine.pid() == machine._process.pid
    with pytest.raises(AlreadyStartedError):
        machine.start()


def test_stop_vmm_reports_termination_and_removes_socket(tmp_path, machines):
    cfg = make_config(tmp_path)
    machine = Machine(cfg, FakeClient(), command=vmm_command(cfg))
    machines.append(machine)
    machine.start()
    assert os.path.exists(cfg.socket_path)
    machine.stop_vmm()
    with pytest.raises(subprocess.CalledProcessError) as info:
        machine.wait(timeout=10)
    assert info.value.returncode == -signal.SIGTERM
    assert not os.path.exists(cfg.socket_path)
    with pytest.raises(RuntimeError, match="exited"):
        machine.pid()


def test_wait_with_invalid_binary(tmp_path):
    cfg = make_config(tmp_path)
    machine = Machine(cfg, FakeClient(), command=["definitely-not-a-real-binary-fcmachine"])
    with pytest.raises(FileNotFoundError) as info:
        machine.start()
    with pytest.raises(FileNotFoundError) as waited:
        machine.wait(timeout=1)
    assert waited.value is info.value


def test_wait_with_no_socket(tmp_path, monkeypatch):
    monkeypatch.setenv("FCMACHINE_INIT_TIMEOUT_SECONDS", "1")
    cfg = make_config(tmp_path)
    machine = Machine(cfg, FakeClient(), command=[sys.executable, "-c", "import time; time.sleep(10)"])
    with pytest.raises(TimeoutError) as info:
        machine.start()
    with pytest.raises(TimeoutError) as waited:
        machine.wait(timeout=1)
    assert waited.value is info.value
    assert "did not create API socket" in str(info.value)


def test_client_failure_cleans_up_socket(tmp_path, machines):
    cfg = make_config(tmp_path)
    machine = Machine(cfg, FakeClient(fail_on="put_guest_boot_source"), command=vmm_command(cfg))
    machines.append(machine)
    with pytest.raises(RuntimeError, match="put_guest_boot_source failed"):
        machine.start()
    assert not os.path.exists(cfg.socket_path)


def test_static_ip_sets_kernel_ip_arg(tmp_path, machines):
    ip_conf = IPConfiguration(
        ip_addr="198.51.100.2/24",
        gateway="198.51.100.1",
        nameservers=["192.0.2.1"],
        if_name="eth0",
    )
    cfg = make_config(
        tmp_path,
        kernel_args="console=ttyS0 reboot=k",
        network_interfaces=[
            NetworkInterface(
                static_configuration=StaticNetworkConfiguration(
                    mac_address="02:00:00:00:00:01", host_dev_name="tap0", ip_configuration=ip_conf
                )
            )
        ],
    )
    client = FakeClient()
    machine = Machine(cfg, client, command=vmm_command(cfg))
    machines.append(machine)
    machine.start()
    boot_args = client.payloads("put_guest_boot_source")[0][0]["boot_args"]
    tokens = boot_args.split()
    assert "console=ttyS0" in tokens
    ip_token = next(token for token in tokens if token.startswith("ip="))
    assert "198.51.100.2" in ip_token
    assert "198.51.100.1" in ip_token


def test_log_fifo_captured_to_writer(tmp_path, machines):
    writer = io.BytesIO()
    fifo_path = str(tmp_path / "log.fifo")
    cfg = make_config(tmp_path, log_fifo=fifo_path, log_level="Info", fifo_log_writer=writer)
    client = FakeClient()
    machine = Machine(cfg, client, command=vmm_command(cfg))
    machines.append(machine)
    machine.start()
    payload = client.payloads("put_logger")[0][0]
    assert payload["log_path"] == fifo_path
    assert payload["level"] == "Info"
    fd = os.open(fifo_path, os.O_WRONLY)
    os.write(fd, b"Hello world!")
    os.close(fd)
    machine.stop_vmm()
    with pytest.raises(subprocess.CalledProcessError):
        machine.wait(timeout=10)
    assert writer.getvalue() == b"Hello world!"
    assert not os.path.exists(fifo_path)


def test_signal_forwarding(tmp_path, machines):
    marker = tmp_path / "signal.txt"
    original = signal.getsignal(signal.SIGUSR1)
    cfg = make_config(tmp_path, forward_signals=[signal.SIGUSR1])
    machine = Machine(cfg, FakeClient(), command=vmm_command(cfg, str(marker)))
    machines.append(machine)
    machine.start()
    os.kill(os.getpid(), signal.SIGUSR1)
    assert machine.wait(timeout=10) is None
    assert marker.read_text() == str(int(signal.SIGUSR1))
    assert signal.getsignal(signal.SIGUSR1) == original