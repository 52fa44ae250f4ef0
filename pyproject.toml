[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "trunkdev"
version = "0.1.0"
description = "Development server, file watcher, proxies and tool manager for web application builds"
requires-python = ">=3.10"
keywords = ["dev-server", "proxy", "websocket", "autoreload", "watcher", "build-tools"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Framework :: AsyncIO",
    "Topic :: Software Development :: Build Tools",
    "Topic :: Internet :: WWW/HTTP :: HTTP Servers",
    "Topic :: Internet :: Proxy Servers",
]
dependencies = [
    "aiohttp",
    "semver",
    "platformdirs",
    "watchdog",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
]

[tool.hatch.build.targets.wheel]
packages = ["trunkdev"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
