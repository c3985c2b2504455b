"""IPV detection experiment tracking for NVDRS death-investigation narratives."""

__version__ = "0.1.0"
