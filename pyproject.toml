[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "portshare"
version = "0.1.0"
description = "Pair trusted devices over a tailnet with a shared secret, keep a trusted-peer list and steer Clash/Mihomo egress toward direct peer links."
requires-python = ">=3.10"
dependencies = [
    "pyyaml",
]
keywords = [
    "tailscale",
    "tailnet",
    "pairing",
    "hmac",
    "clash",
    "mihomo",
    "proxy",
    "port-sharing",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: End Users/Desktop",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Networking",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["portshare"]

[tool.hatch.build.targets.sdist]
include = [
    "portshare",
    "tests",
]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
check_untyped_defs = true
