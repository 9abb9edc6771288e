"""sdflash - write disk images to SD cards without erasing the wrong disk.

This package classifies an input image (raw, gzip, xz or zip, including
NOOBS installer archives) and an output block device, refuses any target
that is not an unmounted, whole, card-type removable device, and drives the
helper programs that perform the actual write.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
