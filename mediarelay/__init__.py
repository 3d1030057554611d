"""Same-origin media relay for images and HLS/video streams."""

from ._version import __version__

__all__ = ["__version__"]
