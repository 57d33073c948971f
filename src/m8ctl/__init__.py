"""m8ctl - command line client for the m8 multi-cluster control plane."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("m8ctl")
except PackageNotFoundError:
    __version__ = "unknown"
