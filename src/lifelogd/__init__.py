"""Top-level package for :mod:`lifelogd`.

The package exposes version metadata so downstream tooling can surface the
installed build.

Example:
    >>> from lifelogd import __version__
    >>> __version__.split(".")[0]
    '0'
"""

from importlib import metadata

try:
    __version__ = metadata.version("lifelogd")
except metadata.PackageNotFoundError:  # pragma: no cover - fallback for source checkouts
    __version__ = "0.0.0"

__all__ = ["__version__"]
