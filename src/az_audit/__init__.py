"""Azure governance audit."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("az-audit")
except PackageNotFoundError:
    __version__ = "0.0.0-dev"
