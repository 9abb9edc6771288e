"""Input image classification."""

from sdflash.image.classifier import (
    ImageDescriptor,
    InputNotFoundError,
    InputNotRegularFileError,
    UnrecognizedImageFormatError,
    classify_image,
)

__all__ = [
    "ImageDescriptor",
    "InputNotFoundError",
    "InputNotRegularFileError",
    "UnrecognizedImageFormatError",
    "classify_image",
]
