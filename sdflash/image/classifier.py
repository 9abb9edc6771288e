"""Input image classification.

This module handles everything we need to know about the input before
touching a device:
- Validate the path exists and is a regular file
- Detect the container format from its content signature (the filename
  suffix is only a hint)
- Resolve the payload size, i.e. the number of bytes that will land on
  the card, which differs from the file size for compressed inputs
- Recognize NOOBS installer archives by their BUILD-DATA manifest
"""

import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path

from sdflash.errors import SdFlashError
from sdflash.process.runner import (
    CommandResult,
    HelperProcessFailedError,
    ProcessRunner,
)
from sdflash.types import ImageKind

logger = logging.getLogger(__name__)

# Prefixes of file(1) descriptions, checked in order
SIGNATURES: list[tuple[str, ImageKind]] = [
    ("Zip archive data", ImageKind.ZIP),
    ("gzip compressed data", ImageKind.GZIP),
    ("XZ compressed data", ImageKind.XZ),
    ("DOS/MBR boot sector", ImageKind.RAW),
]

SUFFIXES: dict[str, ImageKind] = {
    ".zip": ImageKind.ZIP,
    ".gz": ImageKind.GZIP,
    ".xz": ImageKind.XZ,
    ".img": ImageKind.RAW,
}

BUILD_MANIFEST = "BUILD-DATA"
_BOOTSTRAP_VERSION = re.compile(r"NOOBS Version:\s*(\S+)")
_XZ_IMG_NAME = re.compile(r"^(.+\.img)\.xz$", re.IGNORECASE)
_ZIP_ENTRY = re.compile(r"^\s*(\d+)\s+\S+\s+\S+\s+(.+?)\s*$")


@dataclass(frozen=True)
class ImageDescriptor:
    """Classified input image.

    Attributes:
        path: Absolute path to the input file.
        detected_kind: Container format, taken from the content signature.
        payload_size_bytes: Bytes that will be written to the device.
        embedded_image_name: Name of the image inside a container, if any.
        is_bootstrap_package: Whether this is a NOOBS installer archive.
        file_size_bytes: Size of the file on disk.
        signature: file(1) description of the content.
        bootstrap_version: NOOBS version tag from BUILD-DATA, if any.
    """

    path: str
    detected_kind: ImageKind
    payload_size_bytes: int
    embedded_image_name: str | None = None
    is_bootstrap_package: bool = False
    file_size_bytes: int = 0
    signature: str = ""
    bootstrap_version: str | None = None


@dataclass(frozen=True)
class ZipEntry:
    """One member of a zip listing."""

    name: str
    size_bytes: int


class InputNotFoundError(SdFlashError):
    """Input path does not exist."""

    def __init__(self, path: str) -> None:
        super().__init__(f"Input file not found: {path}", error_code="INPUT_NOT_FOUND")
        self.path = path


class InputNotRegularFileError(SdFlashError):
    """Input path exists but is not a plain file."""

    def __init__(self, path: str) -> None:
        super().__init__(
            f"Input is not a regular file: {path}",
            error_code="INPUT_NOT_REGULAR_FILE",
        )
        self.path = path


class UnrecognizedImageFormatError(SdFlashError):
    """Input format could not be determined or its contents are unusable."""

    def __init__(self, path: str, detail: str) -> None:
        super().__init__(
            f"Unrecognized image format for {path}: {detail}",
            error_code="UNRECOGNIZED_IMAGE_FORMAT",
        )
        self.path = path
        self.detail = detail


def kind_from_signature(description: str) -> ImageKind | None:
    """Map a file(1) description to an image kind."""
    for prefix, kind in SIGNATURES:
        if description.startswith(prefix):
            return kind
    return None


def kind_from_suffix(path: str | Path) -> ImageKind | None:
    """Map a filename suffix to an image kind."""
    return SUFFIXES.get(Path(path).suffix.lower())


def _checked(result: CommandResult) -> CommandResult:
    if not result.ok:
        raise HelperProcessFailedError(result)
    return result


def sniff_signature(path: str, runner: ProcessRunner) -> str:
    """Describe a file's content with file(1).

    Args:
        path: File to inspect.
        runner: Process runner.

    Returns:
        The description string (e.g. 'gzip compressed data, ...').
    """
    result = _checked(runner.run("file", ["file", "--brief", "--dereference", path]))
    return result.stdout.strip()


def detect_kind(path: str, signature: str) -> ImageKind:
    """Decide the image kind; the content signature wins over the suffix.

    Raises:
        UnrecognizedImageFormatError: Neither signature nor suffix is known.
    """
    by_signature = kind_from_signature(signature)
    by_suffix = kind_from_suffix(path)

    if by_signature is not None:
        if by_suffix is not None and by_suffix != by_signature:
            logger.warning(
                "%s is named like %s data but contains %s data",
                path,
                by_suffix.value,
                by_signature.value,
            )
        return by_signature
    if by_suffix is not None:
        logger.info("Unknown signature for %s, trusting its suffix", path)
        return by_suffix

    logger.error("Unrecognized image: %s (%s)", path, signature)
    raise UnrecognizedImageFormatError(path, signature or "empty signature")


def parse_gzip_listing(path: str, output: str) -> tuple[int, str | None]:
    """Parse `gzip --list --name` output.

    Returns:
        Tuple of (uncompressed size, embedded file name or None).
    """
    lines = [line for line in output.splitlines() if line.strip()]
    if len(lines) < 2:
        raise UnrecognizedImageFormatError(path, "empty gzip listing")
    fields = lines[1].split(None, 3)
    try:
        size = int(fields[1])
    except (IndexError, ValueError) as e:
        raise UnrecognizedImageFormatError(path, f"bad gzip listing: {lines[1]}") from e
    name = os.path.basename(fields[3]) if len(fields) > 3 else None
    return size, name or None


def parse_xz_listing(path: str, output: str) -> int:
    """Parse `xz --robot --list` output and return the uncompressed size."""
    for line in output.splitlines():
        fields = line.split("\t")
        if fields[0] == "file" and len(fields) > 4:
            try:
                return int(fields[4])
            except ValueError as e:
                raise UnrecognizedImageFormatError(
                    path, f"bad xz listing: {line}"
                ) from e
    raise UnrecognizedImageFormatError(path, "xz listing has no file line")


def parse_zip_listing(path: str, output: str) -> tuple[list[ZipEntry], int]:
    """Parse `unzip -l` output.

    Entries sit between the two dashed separator lines; the last line
    carries the total uncompressed size of all entries.

    Returns:
        Tuple of (entries in listing order, total uncompressed size).
    """
    entries: list[ZipEntry] = []
    separators = 0
    for line in output.splitlines():
        if line.lstrip().startswith("---"):
            separators += 1
            continue
        if separators != 1:
            continue
        match = _ZIP_ENTRY.match(line)
        if match:
            size, name = int(match.group(1)), match.group(2)
            entries.append(ZipEntry(name=name, size_bytes=size))

    lines = [line for line in output.splitlines() if line.strip()]
    total_fields = lines[-1].split() if lines else []
    if not total_fields or not total_fields[0].isdigit():
        raise UnrecognizedImageFormatError(path, "zip listing has no total line")
    return entries, int(total_fields[0])


def parse_bootstrap_version(manifest: str) -> str | None:
    """Extract the NOOBS version tag from a BUILD-DATA manifest."""
    match = _BOOTSTRAP_VERSION.search(manifest)
    return match.group(1) if match else None


def _describe_zip(
    path: str, runner: ProcessRunner
) -> tuple[int, str | None, bool, str | None]:
    listing = _checked(runner.run("unzip", ["unzip", "-l", path]))
    entries, total = parse_zip_listing(path, listing.stdout)

    manifest = next((e for e in entries if e.name.endswith(BUILD_MANIFEST)), None)
    if manifest is not None:
        extracted = _checked(runner.run("unzip", ["unzip", "-p", path, manifest.name]))
        version = parse_bootstrap_version(extracted.stdout)
        if version is not None:
            logger.info("%s is a NOOBS %s installer archive", path, version)
            return total, None, True, version
        logger.warning("%s has no NOOBS version tag", manifest.name)

    image = next((e for e in entries if e.name.lower().endswith(".img")), None)
    if image is None:
        raise UnrecognizedImageFormatError(
            path, "zip archive contains no .img file and no NOOBS manifest"
        )
    return image.size_bytes, image.name, False, None


def classify_image(path: str | Path, runner: ProcessRunner) -> ImageDescriptor:
    """Classify an input image.

    Args:
        path: Path to the input file.
        runner: Process runner for file(1) and the listing helpers.

    Returns:
        ImageDescriptor for the input.

    Raises:
        InputNotFoundError: Path does not exist.
        InputNotRegularFileError: Path is not a plain file.
        UnrecognizedImageFormatError: Format unknown or contents unusable.
        HelperProcessFailedError: A listing helper failed.
    """
    path = os.path.abspath(path)
    logger.debug("Classifying image: %s", path)

    if not os.path.exists(path):
        logger.error("Input not found: %s", path)
        raise InputNotFoundError(path)
    if not os.path.isfile(path):
        logger.error("Input is not a regular file: %s", path)
        raise InputNotRegularFileError(path)

    file_size = os.path.getsize(path)
    signature = sniff_signature(path, runner)
    kind = detect_kind(path, signature)

    embedded_name: str | None = None
    bootstrap = False
    version: str | None = None

    if kind is ImageKind.RAW:
        payload = file_size
    elif kind is ImageKind.GZIP:
        listing = _checked(runner.run("gzip", ["gzip", "--list", "--name", path]))
        payload, embedded_name = parse_gzip_listing(path, listing.stdout)
        if payload < file_size:
            # gzip stores the uncompressed size modulo 2**32
            logger.warning(
                "gzip reports %d uncompressed bytes for %s (%d compressed); "
                "payloads over 4 GiB are not sized correctly",
                payload,
                path,
                file_size,
            )
    elif kind is ImageKind.XZ:
        listing = _checked(runner.run("xz", ["xz", "--robot", "--list", path]))
        payload = parse_xz_listing(path, listing.stdout)
        match = _XZ_IMG_NAME.match(os.path.basename(path))
        embedded_name = match.group(1) if match else None
    else:
        payload, embedded_name, bootstrap, version = _describe_zip(path, runner)

    descriptor = ImageDescriptor(
        path=path,
        detected_kind=kind,
        payload_size_bytes=payload,
        embedded_image_name=embedded_name,
        is_bootstrap_package=bootstrap,
        file_size_bytes=file_size,
        signature=signature,
        bootstrap_version=version,
    )
    logger.info(
        "Image classified: %s (kind=%s, payload=%d bytes)",
        path,
        kind.value,
        payload,
    )
    return descriptor


__all__ = [
    "BUILD_MANIFEST",
    "ImageDescriptor",
    "InputNotFoundError",
    "InputNotRegularFileError",
    "UnrecognizedImageFormatError",
    "ZipEntry",
    "classify_image",
    "detect_kind",
    "kind_from_signature",
    "kind_from_suffix",
    "parse_bootstrap_version",
    "parse_gzip_listing",
    "parse_xz_listing",
    "parse_zip_listing",
    "sniff_signature",
]
