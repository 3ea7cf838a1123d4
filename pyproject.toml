[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "moshnet"
version = "0.1.0"
description = "State-synchronization datagram transport for mobile shell sessions"
requires-python = ">=3.10"
dependencies = []
keywords = ["udp", "transport", "state synchronization", "roaming", "terminal", "fragmentation"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Networking",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["moshnet"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
