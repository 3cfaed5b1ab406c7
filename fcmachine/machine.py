"""Lifecycle of a microVM: starting the VMM process, configuring it and waiting for it."""

from __future__ import annotations

import dataclasses
import logging
import os
import signal
import subprocess
import sys
import threading
import time
import uuid
from typing import IO, Any, Callable, Optional, Sequence

from fcmachine.config import Config, ConfigError
from fcmachine.machine_api import MachineAPI
from fcmachine.network import IPConfiguration
from fcmachine.utils import env_value_or_default_int

DEFAULT_FIRECRACKER_BINARY = "firecracker"
DEFAULT_NETNS_DIR = "/var/run/netns"
INIT_TIMEOUT_ENV = "FCMACHINE_INIT_TIMEOUT_SECONDS"
DEFAULT_INIT_TIMEOUT_SECONDS = 3
SOCKET_POLL_INTERVAL = 0.01

DEFAULT_FORWARD_SIGNALS = (
    signal.SIGINT,
    signal.SIGQUIT,
    signal.SIGTERM,
    signal.SIGHUP,
    signal.SIGABRT,
)


class AlreadyStartedError(RuntimeError):
    """Raised when start() is called on a machine that was already started."""

    def __init__(self) -> None:
        super().__init__("firecracker: machine already started")


def _parse_kernel_args(raw: str) -> dict[str, Optional[str]]:
    args: dict[str, Optional[str]] = {}
    for token in raw.split():
        key, sep, value = token.partition("=")
        args[key] = value if sep else None
    return args


def _format_kernel_args(args: dict[str, Optional[str]]) -> str:
    return " ".join(key if value is None else f"{key}={value}" for key, value in args.items())


def _ip_boot_param(conf: IPConfiguration) -> str:
    iface = conf.ip_addr
    nameservers = list(conf.nameservers[:2]) + ["", ""]
    fields = [
        str(iface.ip),
        "",
        "" if conf.gateway is None else str(conf.gateway),
        str(iface.netmask),
        "",
        conf.if_name,
        "off",
        nameservers[0],
        nameservers[1],
    ]
    return ":".join(fields)


def _combine_errors(errors: Sequence[BaseException]) -> Optional[BaseException]:
    if not errors:
        return None
    if len(errors) == 1:
        return errors[0]
    combined = RuntimeError("; ".join(str(error) for error in errors))
    combined.__cause__ = errors[0]
    return combined


def _netns_entry(path: str) -> Callable[[], None]:
    setns = getattr(os, "setns", None)
    clone_newnet = getattr(os, "CLONE_NEWNET", None)
    if setns is None or clone_newnet is None:
        raise ConfigError(f"cannot join network namespace {path!r}: os.setns is unavailable")

    def enter() -> None:
        fd = os.open(path, os.O_RDONLY)
        try:
            setns(fd, clone_newnet)
        finally:
            os.close(fd)

    return enter


class Machine(MachineAPI):
    """A microVM driven through its VMM process and API client.

    ``command`` replaces the default VMM command line, for instance to run
    the VMM under a jailer or with redirected output.
    """

    def __init__(
        self,
        cfg: Config,
        client: Any,
        *,
        logger: Optional[logging.Logger] = None,
        command: Optional[Sequence[str]] = None,
    ) -> None:
        super().__init__(client, logger)
        cfg = dataclasses.replace(cfg)
        if not cfg.vm_id:
            cfg.vm_id = str(uuid.uuid4())
        if cfg.forward_signals is None:
            cfg.forward_signals = list(DEFAULT_FORWARD_SIGNALS)
        if command is None:
            if cfg.jailer_cfg is not None:
                raise ConfigError("a jailer configuration needs an explicit command")
            command = [
                DEFAULT_FIRECRACKER_BINARY,
                "--api-sock",
                cfg.socket_path,
                "--seccomp-level",
                str(cfg.seccomp_level),
                "--id",
                cfg.vm_id,
            ]
        if not cfg.net_ns and cfg.network_interfaces.cni_interface() is not None:
            cfg.net_ns = os.path.join(DEFAULT_NETNS_DIR, cfg.vm_id)

        self.cfg = cfg
        self.command = list(command)
        self.machine_config = cfg.machine_cfg

        self._process: Optional[subprocess.Popen] = None
        self._start_lock = threading.Lock()
        self._started = False

        self._state_lock = threading.Lock()
        self._exited = threading.Event()
        self._fatal_error: Optional[BaseException] = None
        self._process_done = threading.Event()
        self._process_error: Optional[BaseException] = None
        self._publish_on_exit = False

        self._cleanup_lock = threading.Lock()
        self._cleaned = False
        self._cleanup_funcs: list[Callable[[], Any]] = []

        self._fifo_holders: list[int] = []
        self._capture_threads: list[threading.Thread] = []
        self._previous_handlers: dict[int, Any] = {}

        self.logger.debug("Called Machine()")

    # Public lifecycle

    def log_file(self) -> str:
        """Return the path of the VMM log fifo."""
        return self.cfg.log_fifo

    def log_level(self) -> str:
        """Return the VMM log level."""
        return self.cfg.log_level

    def add_cleanup(self, func: Callable[[], Any]) -> None:
        """Register a callable run when the machine is torn down, newest first."""
        self._cleanup_funcs.append(func)

    def pid(self) -> int:
        """Return the PID of the running VMM process."""
        if self._process is None:
            raise RuntimeError("machine is not running")
        if self._exited.is_set():
            raise RuntimeError("machine process has exited")
        return self._process.pid

    def start(self) -> None:
        """Validate, start the VMM, configure the microVM and boot it. Only once."""
        self.logger.debug("Called Machine.start()")
        with self._start_lock:
            if self._started:
                raise AlreadyStartedError()
            self._started = True
        try:
            self._run_start_sequence()
        except BaseException:
            errors = self._run_cleanup()
            if errors:
                self.logger.error(
                    "failed to cleanup VM after previous start failure: %s",
                    _combine_errors(errors),
                )
            raise

    def stop_vmm(self) -> None:
        """Send SIGTERM to the VMM process, if there is one."""
        process = self._process
        if process is None:
            self.logger.debug("stop_vmm(): no firecracker process running, not sending a signal")
            return
        self.logger.debug("stop_vmm(): sending sigterm to firecracker")
        try:
            process.send_signal(signal.SIGTERM)
        except ProcessLookupError:
            pass

    def wait(self, timeout: Optional[float] = None) -> None:
        """Block until the VMM has exited; raise the error that stopped it, if any."""
        if not self._exited.wait(timeout):
            raise TimeoutError("timed out waiting for the VMM to exit")
        if threading.current_thread() is threading.main_thread():
            self._restore_signals()
        if self._fatal_error is not None:
            raise self._fatal_error

    # Start sequence

    def _run_start_sequence(self) -> None:
        self._validate()
        self._setup_network()
        self._setup_kernel_args()
        self._create_fifos()
        self._start_vmm()
        self._setup_logging()
        self._setup_metrics()
        self._create_machine()
        self._create_boot_source(
            self.cfg.kernel_image_path, self.cfg.initrd_path, self.cfg.kernel_args
        )
        for drive in self.cfg.drives:
            self._attach_drive(drive)
        for index, iface in enumerate(self.cfg.network_interfaces, start=1):
            self._create_network_interface(iface, index)
        for device in self.cfg.vsock_devices:
            self._add_vsock(device)
        if self.cfg.mmds_address is not None:
            self._set_mmds_config(self.cfg.mmds_address)
        self._start_instance()

    def _validate(self) -> None:
        if self.cfg.disable_validation:
            return
        self.cfg.validate()
        self.cfg.network_interfaces.validate(_parse_kernel_args(self.cfg.kernel_args))

    def _setup_network(self) -> None:
        if self.cfg.network_interfaces.cni_interface() is not None:
            raise ConfigError("CNI network interfaces cannot be set up: invoking CNI plugins is unsupported")

    def _setup_kernel_args(self) -> None:
        kernel_args = _parse_kernel_args(self.cfg.kernel_args)
        iface = self.cfg.network_interfaces.static_ip_interface()
        if iface is not None:
            kernel_args["ip"] = _ip_boot_param(iface.static_configuration.ip_configuration)
        self.cfg.kernel_args = _format_kernel_args(kernel_args)

    def _create_fifos(self) -> None:
        for path in (self.cfg.log_fifo, self.cfg.metrics_fifo):
            if not path or os.path.exists(path):
                continue
            self.logger.debug("Creating FIFO %s", path)
            try:
                os.mkfifo(path, 0o700)
            except OSError as exc:
                self.logger.error("Failed to create log fifo: %s", exc)
                raise
            self.add_cleanup(lambda p=path: self._remove_if_present(p))

    def _start_vmm(self) -> None:
        self.logger.info("Called start_vmm(), setting up a VMM on %s", self.cfg.socket_path)
        self.logger.debug("Starting %s", self.command)
        kwargs: dict = {}
        if self.cfg.net_ns and self.cfg.jailer_cfg is None:
            kwargs["preexec_fn"] = _netns_entry(self.cfg.net_ns)
        try:
            self._process = subprocess.Popen(self.command, **kwargs)
        except (OSError, subprocess.SubprocessError) as exc:
            self.logger.error("Failed to start VMM: %s", exc)
            with self._state_lock:
                self._publish(exc)
            raise

        self.add_cleanup(lambda: self._remove_if_present(self.cfg.socket_path))
        threading.Thread(target=self._watch_process, daemon=True).start()
        self._setup_signals()

        timeout = env_value_or_default_int(INIT_TIMEOUT_ENV, DEFAULT_INIT_TIMEOUT_SECONDS)
        try:
            self._wait_for_socket(timeout)
        except Exception as exc:
            message = f"Firecracker did not create API socket {self.cfg.socket_path}: {exc}"
            error: Exception = (
                TimeoutError(message) if isinstance(exc, TimeoutError) else RuntimeError(message)
            )
            error.__cause__ = exc
            with self._state_lock:
                self._publish(error)
            self.stop_vmm()
            raise error

        with self._state_lock:
            self._publish_on_exit = True
            if self._process_done.is_set():
                self._publish(self._process_error)
        self.logger.debug("returning from start_vmm()")

    def _wait_for_socket(self, timeout: float) -> None:
        deadline = time.monotonic() + timeout
        while True:
            if self._process_done.is_set():
                if self._process_error is not None:
                    raise self._process_error
                return
            if os.path.exists(self.cfg.socket_path):
                try:
                    self.client.get_machine_configuration()
                except Exception:
                    pass
                else:
                    return
            if time.monotonic() >= deadline:
                raise TimeoutError("timed out waiting for the API socket")
            time.sleep(SOCKET_POLL_INTERVAL)

    def _watch_process(self) -> None:
        process = self._process
        returncode = process.wait()
        errors: list[BaseException] = []
        if returncode != 0:
            self.logger.warning("firecracker exited: status=%s", returncode)
            errors.append(subprocess.CalledProcessError(returncode, self.command))
        else:
            self.logger.info("firecracker exited: status=0")
        cleanup_errors = self._run_cleanup()
        if cleanup_errors:
            self.logger.error(
                "failed to cleanup after VM exit: %s", _combine_errors(cleanup_errors)
            )
        errors.extend(cleanup_errors)
        self._release_fifos()
        for thread in self._capture_threads:
            thread.join(timeout=1.0)
        combined = _combine_errors(errors)
        with self._state_lock:
            self._process_error = combined
            self._process_done.set()
            if self._publish_on_exit:
                self._publish(combined)

    def _publish(self, error: Optional[BaseException]) -> None:
        if self._exited.is_set():
            return
        self._fatal_error = error
        self.logger.debug("marking the VMM as exited: %s", error)
        self._exited.set()

    def _setup_logging(self) -> None:
        path = self.cfg.log_fifo or self.cfg.log_path
        if not path:
            self.logger.info("VMM logging disabled.")
            return
        payload: dict = {"log_path": path, "show_level": True, "show_log_origin": False}
        if self.cfg.log_level:
            payload["level"] = self.cfg.log_level
        self.client.put_logger(payload)
        self.logger.debug("Configured VMM logging to %s", path)
        if self.cfg.log_fifo and self.cfg.fifo_log_writer is not None:
            self._capture_fifo(self.cfg.log_fifo, self.cfg.fifo_log_writer)

    def _setup_metrics(self) -> None:
        path = self.cfg.metrics_fifo or self.cfg.metrics_path
        if not path:
            self.logger.info("VMM metrics disabled.")
            return
        self.client.put_metrics({"metrics_path": path})
        self.logger.debug("Configured VMM metrics to %s", path)

    def _create_machine(self) -> None:
        self._put_machine_configuration(self.cfg.machine_cfg)
        try:
            self.machine_config = self._fetch_machine_configuration()
        except Exception as exc:
            self.logger.error("Unable to inspect Firecracker MachineConfiguration: %s", exc)
            raise
        self.logger.debug("create_machine returning")

    # Fifo capture

    def _capture_fifo(self, path: str, writer: IO) -> None:
        try:
            read_fd = os.open(path, os.O_RDONLY | os.O_NONBLOCK)
        except OSError as exc:
            self.logger.error("Failed to open fifo path at %r: %s", path, exc)
            raise
        # Keep a write end open so reads block until the VMM exits.
        self._fifo_holders.append(os.open(path, os.O_WRONLY | os.O_NONBLOCK))
        os.set_blocking(read_fd, True)
        self.logger.debug("Capturing %r to writer", path)
        thread = threading.Thread(
            target=self._copy_fifo, args=(read_fd, path, writer), daemon=True
        )
        self._capture_threads.append(thread)
        thread.start()

    def _copy_fifo(self, read_fd: int, path: str, writer: IO) -> None:
        try:
            while True:
                chunk = os.read(read_fd, 65536)
                if not chunk:
                    break
                writer.write(chunk)
                flush = getattr(writer, "flush", None)
                if flush is not None:
                    flush()
        except (OSError, ValueError) as exc:
            self.logger.warning("failed to copy contents of fifo pipe: %s", exc)
        finally:
            try:
                os.close(read_fd)
            except OSError as exc:
                self.logger.warning("Failed to close fifo pipe: %s", exc)
            try:
                os.unlink(path)
            except OSError as exc:
                self.logger.warning("Failed to unlink %s: %s", path, exc)

    def _release_fifos(self) -> None:
        while self._fifo_holders:
            fd = self._fifo_holders.pop()
            try:
                os.close(fd)
            except OSError as exc:
                self.logger.debug("failed to close fifo: %s", exc)

    # Signals

    def _setup_signals(self) -> None:
        signals = self.cfg.forward_signals
        if not signals:
            return
        if threading.current_thread() is not threading.main_thread():
            self.logger.warning("signals can only be forwarded from the main thread")
            return
        self.logger.debug("Setting up signal handler: %s", signals)
        for sig in signals:
            self._previous_handlers[sig] = signal.signal(sig, self._forward_signal)

    def _forward_signal(self, signum: int, frame: Any) -> None:
        process = self._process
        if process is not None and process.returncode is None and not self._exited.is_set():
            self.logger.debug("Caught signal %s", signum)
            try:
                os.kill(process.pid, signum)
            except ProcessLookupError:
                pass
            return
        previous = self._previous_handlers.get(signum)
        self._restore_signals()
        if callable(previous):
            previous(signum, frame)
        elif previous == signal.SIG_DFL:
            signal.raise_signal(signum)

    def _restore_signals(self) -> None:
        for sig, previous in self._previous_handlers.items():
            if previous is not None:
                signal.signal(sig, previous)
        self._previous_handlers.clear()

    # Cleanup

    def _run_cleanup(self) -> list[Exception]:
        with self._cleanup_lock:
            if self._cleaned:
                return []
            self._cleaned = True
            funcs = list(reversed(self._cleanup_funcs))
        errors: list[Exception] = []
        for func in funcs:
            try:
                func()
            except Exception as exc:
                errors.append(exc)
        return errors

    @staticmethod
    def _remove_if_present(path: str) -> None:
        if not path:
            return
        try:
            os.remove(path)
        except FileNotFoundError:
            pass


__all__ = ["AlreadyStartedError", "Machine"]

if sys.platform == "win32":  # pragma: no cover
    raise ImportError("fcmachine.machine requires a POSIX system")