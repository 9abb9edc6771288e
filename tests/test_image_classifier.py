"""Tests for image/classifier.py - input image classification."""

import logging
from pathlib import Path

import pytest

from conftest import FakeRunner
from sdflash.image.classifier import (
    ImageDescriptor,
    InputNotFoundError,
    InputNotRegularFileError,
    UnrecognizedImageFormatError,
    classify_image,
    detect_kind,
    kind_from_signature,
    kind_from_suffix,
    parse_bootstrap_version,
    parse_gzip_listing,
    parse_xz_listing,
    parse_zip_listing,
)
from sdflash.process.runner import HelperProcessFailedError
from sdflash.types import ImageKind

MBR_SIGNATURE = "DOS/MBR boot sector; partition 1 : ID=0xc, start-CHS (0x0,130,3)"
GZIP_SIGNATURE = 'gzip compressed data, was "raspios.img", from Unix'
XZ_SIGNATURE = "XZ compressed data, checksum CRC64"
ZIP_SIGNATURE = "Zip archive data, at least v2.0 to extract, compression method=deflate"

GZIP_LISTING = """\
         compressed        uncompressed  ratio uncompressed_name
          488462336          1862270976  73.8% /home/pi/raspios.img
"""

XZ_LISTING = (
    "name\t/tmp/raspios.img.xz\n"
    "file\t1\t1\t351234567\t1862270976\t0.189\tCRC64\t0\n"
    "totals\t1\t1\t351234567\t1862270976\t0.189\tCRC64\t0\t1\n"
)

IMG_ZIP_LISTING = """\
Archive:  raspios.zip
  Length      Date    Time    Name
---------  ---------- -----   ----
      120  2023-05-03 10:02   README.txt
1862270976  2023-05-03 10:00   2023-05-03-raspios-bullseye-armhf.img
---------                     -------
1862271096                     2 files
"""

NOOBS_ZIP_LISTING = """\
Archive:  NOOBS_v3_3_1.zip
  Length      Date    Time    Name
---------  ---------- -----   ----
       57  2020-02-13 13:42   BUILD-DATA
  4812345  2020-02-13 13:42   recovery.img
1734567890  2020-02-13 13:42   os/Raspbian/root.tar.xz
---------                     -------
1739380292                     3 files
"""

NOOBS_MANIFEST = "NOOBS Version: v3_3_1\nNOOBS Git Commit: 1234abcd\n"


@pytest.fixture
def image_file(tmp_path: Path):
    def _make(name: str, size: int = 4096) -> Path:
        path = tmp_path / name
        path.write_bytes(b"\0" * size)
        return path

    return _make


class TestSignatures:
    """Tests for signature and suffix mapping."""

    def test_known_signatures(self) -> None:
        """Each supported container maps from its file(1) description."""
        assert kind_from_signature(MBR_SIGNATURE) is ImageKind.RAW
        assert kind_from_signature(GZIP_SIGNATURE) is ImageKind.GZIP
        assert kind_from_signature(XZ_SIGNATURE) is ImageKind.XZ
        assert kind_from_signature(ZIP_SIGNATURE) is ImageKind.ZIP

    def test_unknown_signature(self) -> None:
        """Anything else is not recognized."""
        assert kind_from_signature("data") is None
        assert kind_from_signature("") is None

    def test_suffixes(self) -> None:
        """Suffixes are matched case-insensitively."""
        assert kind_from_suffix("a.IMG") is ImageKind.RAW
        assert kind_from_suffix("a.img.gz") is ImageKind.GZIP
        assert kind_from_suffix("a.img.xz") is ImageKind.XZ
        assert kind_from_suffix("a.zip") is ImageKind.ZIP
        assert kind_from_suffix("a.iso") is None

    def test_signature_wins_over_suffix(self, caplog) -> None:
        """A mismatching suffix only produces a warning."""
        with caplog.at_level(logging.WARNING):
            kind = detect_kind("/tmp/really-raw.gz", MBR_SIGNATURE)

        assert kind is ImageKind.RAW
        assert "really-raw.gz" in caplog.text

    def test_suffix_fallback(self) -> None:
        """The suffix is used when the signature says nothing useful."""
        assert detect_kind("/tmp/blank.img", "data") is ImageKind.RAW

    def test_unrecognized(self) -> None:
        """Neither signature nor suffix known is fatal."""
        with pytest.raises(UnrecognizedImageFormatError) as exc_info:
            detect_kind("/tmp/notes.txt", "ASCII text")

        assert exc_info.value.error_code == "UNRECOGNIZED_IMAGE_FORMAT"
        assert "ASCII text" in exc_info.value.message


class TestListingParsers:
    """Tests for helper output parsers."""

    def test_gzip_listing(self) -> None:
        """Uncompressed size and base name come from the second line."""
        size, name = parse_gzip_listing("x.gz", GZIP_LISTING)
        assert size == 1862270976
        assert name == "raspios.img"

    def test_gzip_listing_empty(self) -> None:
        """A listing without a data line is rejected."""
        with pytest.raises(UnrecognizedImageFormatError):
            parse_gzip_listing("x.gz", "compressed uncompressed ratio name\n")

    def test_xz_listing(self) -> None:
        """The uncompressed size is the fifth field of the file line."""
        assert parse_xz_listing("x.xz", XZ_LISTING) == 1862270976

    def test_xz_listing_without_file_line(self) -> None:
        """A listing without a file line is rejected."""
        with pytest.raises(UnrecognizedImageFormatError):
            parse_xz_listing("x.xz", "name\tx.xz\n")

    def test_zip_listing(self) -> None:
        """Entries and the total are read from the listing."""
        entries, total = parse_zip_listing("x.zip", IMG_ZIP_LISTING)

        assert [e.name for e in entries] == [
            "README.txt",
            "2023-05-03-raspios-bullseye-armhf.img",
        ]
        assert entries[1].size_bytes == 1862270976
        assert total == 1862271096

    def test_zip_listing_without_total(self) -> None:
        """A truncated listing is rejected."""
        with pytest.raises(UnrecognizedImageFormatError):
            parse_zip_listing("x.zip", "Archive:  x.zip\n")

    def test_bootstrap_version(self) -> None:
        """The NOOBS version tag is extracted from the manifest."""
        assert parse_bootstrap_version(NOOBS_MANIFEST) == "v3_3_1"
        assert parse_bootstrap_version("Build-date: 2020-02-13\n") is None


class TestClassifyImage:
    """Tests for classify_image."""

    def test_raw_image(self, image_file) -> None:
        """A raw image writes exactly its own size."""
        path = image_file("raspios.img", size=8192)
        runner = FakeRunner({"file": MBR_SIGNATURE})

        image = classify_image(path, runner)

        assert isinstance(image, ImageDescriptor)
        assert image.path == str(path)
        assert image.detected_kind is ImageKind.RAW
        assert image.payload_size_bytes == 8192
        assert image.file_size_bytes == 8192
        assert image.is_bootstrap_package is False
        assert runner.calls[0][1] == ("file", "--brief", "--dereference", str(path))

    def test_gzip_image(self, image_file) -> None:
        """A gzip image writes its uncompressed size."""
        path = image_file("raspios.img.gz")
        runner = FakeRunner({"file": GZIP_SIGNATURE, "gzip": GZIP_LISTING})

        image = classify_image(path, runner)

        assert image.detected_kind is ImageKind.GZIP
        assert image.payload_size_bytes == 1862270976
        assert image.embedded_image_name == "raspios.img"
        assert runner.names == ["file", "gzip"]

    def test_gzip_size_below_file_size_warns(self, image_file, caplog) -> None:
        """A listed size smaller than the compressed file is flagged."""
        path = image_file("huge.img.gz", size=8192)
        listing = GZIP_LISTING.replace("1862270976", "      4096")
        runner = FakeRunner({"file": GZIP_SIGNATURE, "gzip": listing})

        with caplog.at_level(logging.WARNING):
            image = classify_image(path, runner)

        assert image.payload_size_bytes == 4096
        assert "over 4 GiB" in caplog.text

    def test_xz_image(self, image_file) -> None:
        """An xz image writes its uncompressed size; the name comes from the file."""
        path = image_file("raspios.img.xz")
        runner = FakeRunner({"file": XZ_SIGNATURE, "xz": XZ_LISTING})

        image = classify_image(path, runner)

        assert image.detected_kind is ImageKind.XZ
        assert image.payload_size_bytes == 1862270976
        assert image.embedded_image_name == "raspios.img"

    def test_zip_with_single_image(self, image_file) -> None:
        """A zip holding an image writes that entry's size."""
        path = image_file("raspios.zip")
        runner = FakeRunner({"file": ZIP_SIGNATURE, "unzip": IMG_ZIP_LISTING})

        image = classify_image(path, runner)

        assert image.detected_kind is ImageKind.ZIP
        assert image.is_bootstrap_package is False
        assert image.embedded_image_name == "2023-05-03-raspios-bullseye-armhf.img"
        assert image.payload_size_bytes == 1862270976

    def test_noobs_archive(self, image_file) -> None:
        """A zip with a versioned BUILD-DATA manifest is a NOOBS archive."""
        path = image_file("NOOBS_v3_3_1.zip")
        runner = FakeRunner(
            {"file": ZIP_SIGNATURE, "unzip": [NOOBS_ZIP_LISTING, NOOBS_MANIFEST]}
        )

        image = classify_image(path, runner)

        assert image.is_bootstrap_package is True
        assert image.bootstrap_version == "v3_3_1"
        assert image.payload_size_bytes == 1739380292
        assert image.embedded_image_name is None
        assert runner.calls[-1][1] == ("unzip", "-p", str(path), "BUILD-DATA")

    def test_manifest_without_version(self, image_file) -> None:
        """Without a version tag the archive is treated as a plain image zip."""
        path = image_file("odd.zip")
        runner = FakeRunner(
            {"file": ZIP_SIGNATURE, "unzip": [NOOBS_ZIP_LISTING, "Build-date: x\n"]}
        )

        image = classify_image(path, runner)

        assert image.is_bootstrap_package is False
        assert image.embedded_image_name == "recovery.img"
        assert image.payload_size_bytes == 4812345

    def test_zip_without_image(self, image_file) -> None:
        """A zip with neither an image nor a manifest is rejected."""
        listing = IMG_ZIP_LISTING.replace(
            "2023-05-03-raspios-bullseye-armhf.img", "notes.md"
        )
        path = image_file("docs.zip")
        runner = FakeRunner({"file": ZIP_SIGNATURE, "unzip": listing})

        with pytest.raises(UnrecognizedImageFormatError):
            classify_image(path, runner)

    def test_listing_helper_failure(self, image_file) -> None:
        """A failing listing helper is reported with its name."""
        path = image_file("broken.img.gz")
        runner = FakeRunner({"file": GZIP_SIGNATURE}, failing=["gzip"])

        with pytest.raises(HelperProcessFailedError) as exc_info:
            classify_image(path, runner)

        assert exc_info.value.message.startswith("gzip exited with code 1")

    def test_missing_input(self, tmp_path: Path) -> None:
        """A missing input is reported before any helper runs."""
        runner = FakeRunner()

        with pytest.raises(InputNotFoundError) as exc_info:
            classify_image(tmp_path / "nope.img", runner)

        assert exc_info.value.error_code == "INPUT_NOT_FOUND"
        assert runner.calls == []

    def test_directory_input(self, tmp_path: Path) -> None:
        """A directory is not an image."""
        with pytest.raises(InputNotRegularFileError):
            classify_image(tmp_path, FakeRunner())

    def test_raw_without_suffix(self, image_file) -> None:
        """A raw image without a known suffix classifies like one named .img."""
        plain = classify_image(image_file("card"), FakeRunner({"file": MBR_SIGNATURE}))
        named = classify_image(
            image_file("card.img"), FakeRunner({"file": MBR_SIGNATURE})
        )

        assert plain.detected_kind is named.detected_kind is ImageKind.RAW
        assert plain.payload_size_bytes == named.payload_size_bytes

    def test_relative_path_is_made_absolute(self, image_file, monkeypatch) -> None:
        """Descriptors always carry absolute paths."""
        path = image_file("relative.img")
        monkeypatch.chdir(path.parent)

        image = classify_image("relative.img", FakeRunner({"file": MBR_SIGNATURE}))

        assert image.path == str(path)
