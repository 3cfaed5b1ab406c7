[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "fcmachine"
version = "0.22.0"
description = "Configure, start and control Firecracker microVMs from Python"
requires-python = ">=3.10"
dependencies = []
keywords = ["firecracker", "microvm", "virtualization", "vmm", "rate-limiter"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Emulators",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["fcmachine"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
