"""Development server, file watcher, proxies, tool downloads and version checks for web builds."""

__version__ = "0.1.0"