"""amendgov — amendment governance for supervised agents."""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("amendgov")
except PackageNotFoundError:
    __version__ = "0.1.0"  # fallback for development
