"""neuromesh — a self-maturing capability graph shared across stations."""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("neuromesh")
except PackageNotFoundError:
    __version__ = "0.1.0"  # fallback for development
