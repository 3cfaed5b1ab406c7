"""Configure, start and control Firecracker microVMs: configuration, networking, rate limits and the VMM lifecycle."""

__version__ = "0.22.0"