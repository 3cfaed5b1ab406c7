# fcmachine

`fcmachine` configures, starts and controls Firecracker microVMs from Python.
It validates a machine configuration, runs the VMM process, configures the
microVM through an API client you supply, boots it and waits for it to exit.

## Installation

```
pip install fcmachine
```

## Modules

- `fcmachine.config`: `Config`, `MachineConfiguration`, `Drive`,
  `VsockDevice`, `RateLimiterSet`, `SeccompLevel` and `ConfigError`
- `fcmachine.network`: `NetworkInterfaces`, `NetworkInterface`,
  `StaticNetworkConfiguration`, `IPConfiguration`, `CNIConfiguration` and
  `NetworkConfigError`
- `fcmachine.rate_limiter`: `TokenBucket`, `RateLimiter`,
  `TokenBucketBuilder` and `new_rate_limiter`
- `fcmachine.machine_api`: `MachineAPI`, the calls answered by a running VMM
- `fcmachine.machine`: `Machine` and `AlreadyStartedError`
- `fcmachine.utils`: `env_value_or_default_int` and `wait_for_alive_vmm`

## Configuring a machine

```python
from fcmachine.config import Config, Drive, MachineConfiguration

cfg = Config(
    socket_path="/tmp/firecracker.sock",
    kernel_image_path="/path/to/vmlinux",
    kernel_args="console=ttyS0 reboot=k panic=1 pci=off",
    drives=[Drive(drive_id="root", path_on_host="/path/to/rootfs.ext4",
                  is_root_device=True, is_read_only=False)],
    machine_cfg=MachineConfiguration(vcpu_count=1, mem_size_mib=256,
                                     ht_enabled=False),
)
cfg.validate()
```

Unless `disable_validation` is set, `Config.validate()` raises `ConfigError`
when:

- the kernel image, the initrd (if given) or the first root drive cannot be
  stat'ed
- a file already exists at the socket path
- `vcpu_count` or `mem_size_mib` is missing or below 1, or `ht_enabled` is
  not set

`seccomp_level` takes a `SeccompLevel` (`DISABLE`, `BASIC`, `ADVANCED`) or
the integers 0 to 2. `mmds_address` accepts an address string.

## Network interfaces

Each `NetworkInterface` holds either a `StaticNetworkConfiguration` (tap
device name, MAC address and an optional `IPConfiguration`) or a
`CNIConfiguration`, plus optional inbound and outbound rate limiters.

`NetworkInterfaces.validate(kernel_args)` takes a mapping of kernel
arguments and raises `NetworkConfigError` when:

- an interface has neither or both kinds of configuration
- an interface has a CNI configuration or a static IP, and there is more
  than one interface
- such an interface is present and the kernel arguments already contain `ip`
- a static configuration has no tap device name
- an `IPConfiguration` address or gateway is not IPv4, or it lists more than
  two nameservers
- a CNI configuration sets neither, or both, of `network_name` and
  `network_config`

`cni_interface()` and `static_ip_interface()` return the first matching
interface or `None`.

## Rate limiting

```python
from datetime import timedelta
from fcmachine.rate_limiter import TokenBucketBuilder, new_rate_limiter

bandwidth = (TokenBucketBuilder()
             .with_initial_size(1024 * 1024)
             .with_bucket_size(1024 * 1024)
             .with_refill_duration(timedelta(seconds=30))
             .build())
ops = TokenBucketBuilder().with_bucket_size(5).with_refill_duration(5).build()
limiter = new_rate_limiter(bandwidth, ops)
```

`with_refill_duration` takes a `timedelta` or a number of seconds and stores
whole milliseconds. Every builder method returns a new builder.

## Running a machine

`Machine` needs an API client: any object with methods such as
`get_machine_configuration`, `put_machine_configuration`, `put_logger`,
`put_metrics`, `put_guest_boot_source`, `put_guest_drive_by_id`,
`put_guest_network_interface_by_id`, `put_guest_vsock`, `put_mmds_config`
and `create_sync_action`. Each takes a JSON-ready dictionary, returns the
decoded response and raises on failure.

```python
from fcmachine.machine import Machine

machine = Machine(cfg, client)   # client: your API client object
machine.start()
print(machine.pid())
machine.wait(timeout=None)
```

- If `vm_id` is empty, a random UUID is used.
- By default the command is
  `firecracker --api-sock <socket> --seccomp-level <level> --id <vm_id>`.
  Pass `command=[...]` to run something else.
- A `jailer_cfg` needs an explicit `command`; otherwise `ConfigError` is
  raised.
- `start()` does these steps in order:
  1. validates the configuration
  2. adds an `ip=` kernel argument for a static IP interface
  3. creates the log and metrics fifos
  4. starts the process and waits for the API socket, for 3 seconds by
     default, overridden by a non-zero integer in
     `FCMACHINE_INIT_TIMEOUT_SECONDS`
  5. configures logging, metrics, the machine, the boot source, drives,
     network interfaces, vsocks and MMDS
  6. boots the instance
- A second call to `start()` raises `AlreadyStartedError`.
- When `fifo_log_writer` is set with `log_fifo`, the log fifo's contents are
  copied to it.
- `stop_vmm()` sends SIGTERM to the VMM process.
- `wait(timeout)` blocks until the process exits. It raises `TimeoutError`
  if the timeout passes, and otherwise re-raises the error that stopped the
  VMM, if there was one.
- `pid()` raises `RuntimeError` if the VMM is not running.
- `add_cleanup(func)` registers teardown callables, which run newest first.
- `log_file()` and `log_level()` return the configured log fifo and log
  level.
- When started from the main thread, SIGINT, SIGQUIT, SIGTERM, SIGHUP and
  SIGABRT are forwarded to the VMM, unless `forward_signals` names other
  signals or is empty.

`Machine` inherits the `MachineAPI` methods for a running VM:

- `shutdown` sends Ctrl+Alt+Del
- `pause_vm`, `resume_vm` and `create_snapshot`
- `set_metadata`, `update_metadata` and `get_metadata`
- `update_guest_drive` and `update_guest_network_interface_rate_limit`
- `describe_instance_info`
- `create_balloon`, `get_balloon_config`, `update_balloon`,
  `get_balloon_stats` and `update_balloon_stats`

## What this package does not do

- It contains no HTTP client for the VMM's Unix API socket. You supply the
  client object.
- It does not invoke CNI plugins or create network namespaces. Starting a
  machine whose interfaces include a CNI configuration raises `ConfigError`.
  Validation, defaults and runtime parameters of `CNIConfiguration` are
  available.
- It does not build jailer command lines.

## Running the tests

```
pip install -e ".[test]"
pytest
```