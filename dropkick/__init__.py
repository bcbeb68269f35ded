"""Build and publish bootable VM images for a single service binary."""

__version__ = "0.1.0"
