[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "tracenet"
version = "0.9.0"
description = "Build and send traceroute probes over ICMP, UDP and TCP for IPv4 and IPv6, and decode the responses"
requires-python = ">=3.10"
keywords = ["traceroute", "icmp", "udp", "tcp", "network", "diagnostics", "probe"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Networking :: Monitoring",
]
dependencies = [
    "psutil",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["tracenet"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
