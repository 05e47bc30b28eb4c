"""PressBox - runtime reconfiguration engine for local WordPress sites."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("pressbox")
except PackageNotFoundError:
    __version__ = "0.0.0-dev"
