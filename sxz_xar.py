#!/usr/bin/env python3
"""Read XAR archives (the container format of ``.safariextz`` files).

Layout of a XAR file:
  1. A big-endian header (magic ``xar!``, header size, version, compressed and
     uncompressed TOC lengths, checksum algorithm).
  2. The zlib-compressed XML table of contents (TOC).
  3. The heap. Offsets in the TOC are relative to the start of the heap.

The TOC holds the TOC checksum location, the signature location together
with its X.509 certificates, and the file tree.

Usage:
    python sxz_xar.py extract-toc ext.safariextz      # writes ./toc.dat
    python sxz_xar.py list ext.safariextz
    python sxz_xar.py extract ext.safariextz out/
    python sxz_xar.py verify ext.safariextz
"""

from __future__ import annotations

import argparse
import base64
import binascii
import bz2
import hashlib
import lzma
import struct
import sys
import zlib
import xml.etree.ElementTree as ET
from pathlib import Path
from typing import Dict, Iterator, List, NamedTuple, Optional, Tuple

from sxz_tools import TOC_FILE

# =============================================================================
# Constants
# =============================================================================

XAR_MAGIC = 0x78617221  # "xar!"
XAR_VERSION = 1
HEADER = struct.Struct(">IHHQQI")

CHECKSUM_NONE = 0
CHECKSUM_SHA1 = 1
CHECKSUM_MD5 = 2
CHECKSUM_OTHER = 3

CHECKSUM_NAMES = {
    CHECKSUM_NONE: "none",
    CHECKSUM_SHA1: "sha1",
    CHECKSUM_MD5: "md5",
    CHECKSUM_OTHER: "other",
}

ENCODING_GZIP = "application/x-gzip"
ENCODING_BZIP2 = "application/x-bzip2"
ENCODING_LZMA = "application/x-lzma"
ENCODING_XZ = "application/x-xz"
ENCODING_NONE = "application/octet-stream"


# =============================================================================
# Data Types
# =============================================================================


class XarError(ValueError):
    """Raised when an archive is malformed or unsupported."""

    pass


class XarHeader(NamedTuple):
    magic: int
    size: int
    version: int
    toc_length_compressed: int
    toc_length_uncompressed: int
    checksum_algorithm: int


class HeapRef(NamedTuple):
    offset: int  # Relative to the heap start
    size: int


class FileData(NamedTuple):
    location: HeapRef  # size is the extracted size
    length: int  # Stored (possibly compressed) length
    encoding: str
    archived_checksum: str
    archived_style: str
    extracted_checksum: str
    extracted_style: str


class XarEntry(NamedTuple):
    path: str  # "/"-joined names from the archive root
    type: str  # "file", "directory", "symlink", ...
    data: Optional[FileData]


class XarChecksum(NamedTuple):
    style: str
    location: HeapRef
    data: bytes


class XarSignature(NamedTuple):
    style: str
    location: HeapRef
    certificates: Tuple[bytes, ...]  # DER, leaf first
    data: bytes


# =============================================================================
# TOC parsing helpers
# =============================================================================


def _local(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _children(elem: ET.Element, name: Optional[str] = None) -> Iterator[ET.Element]:
    for child in elem:
        if name is None or _local(child.tag) == name:
            yield child


def _child(elem: ET.Element, name: str) -> Optional[ET.Element]:
    return next(_children(elem, name), None)


def _child_text(elem: ET.Element, name: str) -> str:
    child = _child(elem, name)
    if child is None or child.text is None:
        return ""
    return child.text.strip()


def _child_int(elem: ET.Element, name: str) -> int:
    try:
        return int(_child_text(elem, name))
    except ValueError:
        return 0


def _heap_ref(elem: ET.Element) -> HeapRef:
    return HeapRef(_child_int(elem, "offset"), _child_int(elem, "size"))


def _parse_file_data(elem: ET.Element) -> FileData:
    encoding_elt = _child(elem, "encoding")
    encoding = encoding_elt.get("style", "") if encoding_elt is not None else ""
    archived = _child(elem, "archived-checksum")
    extracted = _child(elem, "extracted-checksum")
    return FileData(
        location=_heap_ref(elem),
        length=_child_int(elem, "length"),
        encoding=encoding,
        archived_checksum=_child_text(elem, "archived-checksum").lower(),
        archived_style=archived.get("style", "sha1") if archived is not None else "sha1",
        extracted_checksum=_child_text(elem, "extracted-checksum").lower(),
        extracted_style=extracted.get("style", "sha1") if extracted is not None else "sha1",
    )


def _validate_name(name: str) -> None:
    if not name or name in {".", ".."} or "/" in name or "\\" in name or "\x00" in name:
        raise XarError(f"Invalid entry name in archive: {name!r}")


def _walk_files(elem: ET.Element, prefix: str = "") -> Iterator[XarEntry]:
    for file_elt in _children(elem, "file"):
        name = _child_text(file_elt, "name")
        _validate_name(name)
        path = f"{prefix}/{name}" if prefix else name
        data_elt = _child(file_elt, "data")
        entry_type = _child_text(file_elt, "type") or "file"
        yield XarEntry(path, entry_type, _parse_file_data(data_elt) if data_elt is not None else None)
        yield from _walk_files(file_elt, path)


def _parse_certificates(sig_elt: ET.Element) -> Tuple[bytes, ...]:
    key_info = _child(sig_elt, "KeyInfo")
    if key_info is None:
        return ()
    x509_data = _child(key_info, "X509Data")
    if x509_data is None:
        return ()
    certs = []
    for cert_elt in _children(x509_data, "X509Certificate"):
        text = "".join((cert_elt.text or "").split())
        try:
            certs.append(base64.b64decode(text, validate=True))
        except binascii.Error as exc:
            raise XarError("Invalid base64 certificate in signature") from exc
    return tuple(certs)


def read_header(data: bytes) -> XarHeader:
    if len(data) < HEADER.size:
        raise XarError("File too short for a XAR header")
    header = XarHeader(*HEADER.unpack_from(data))
    if header.magic != XAR_MAGIC:
        raise XarError("Not a XAR archive (bad magic)")
    if header.size < HEADER.size:
        raise XarError(f"Invalid header size {header.size}")
    return header


# =============================================================================
# Archive
# =============================================================================


class XarArchive:
    """A XAR archive loaded in memory."""

    def __init__(self, raw: bytes, path: Optional[Path] = None):
        self.path = path
        self._raw = raw
        self.header = read_header(raw)

        toc_end = self.header.size + self.header.toc_length_compressed
        if toc_end > len(raw):
            raise XarError("Truncated table of contents")
        self.toc_compressed = raw[self.header.size : toc_end]
        try:
            self.toc_xml = zlib.decompress(self.toc_compressed)
        except zlib.error as exc:
            raise XarError(f"Cannot decompress table of contents: {exc}") from exc

        try:
            root = ET.fromstring(self.toc_xml)
        except ET.ParseError as exc:
            raise XarError(f"Cannot parse table of contents: {exc}") from exc
        toc = _child(root, "toc") if _local(root.tag) == "xar" else None
        if toc is None:
            raise XarError("Table of contents has no <xar><toc> element")

        self.checksum: Optional[XarChecksum] = None
        self.signature: Optional[XarSignature] = None
        checksum_elt = _child(toc, "checksum")
        if checksum_elt is not None:
            ref = _heap_ref(checksum_elt)
            self.checksum = XarChecksum(
                checksum_elt.get("style", ""), ref, self.read_heap(ref.offset, ref.size)
            )
        sig_elt = _child(toc, "signature")
        if sig_elt is not None:
            ref = _heap_ref(sig_elt)
            self.signature = XarSignature(
                sig_elt.get("style", ""),
                ref,
                _parse_certificates(sig_elt),
                self.read_heap(ref.offset, ref.size),
            )
        self.entries: List[XarEntry] = list(_walk_files(toc))

    @classmethod
    def open(cls, path: Path) -> "XarArchive":
        path = Path(path)
        return cls(path.read_bytes(), path)

    @property
    def heap_offset(self) -> int:
        return self.header.size + self.header.toc_length_compressed

    @property
    def checksum_name(self) -> str:
        return CHECKSUM_NAMES.get(self.header.checksum_algorithm, "unknown")

    def read_heap(self, offset: int, length: int) -> bytes:
        start = self.heap_offset + offset
        end = start + length
        if end > len(self._raw):
            raise XarError(f"Heap reference out of range (offset {offset}, length {length})")
        return self._raw[start:end]

    def file_names(self) -> List[str]:
        return sorted(e.path for e in self.entries if e.type == "file")

    def stored_bytes(self, entry: XarEntry) -> bytes:
        if entry.data is None:
            return b""
        return self.read_heap(entry.data.location.offset, entry.data.length)

    def file_bytes(self, entry: XarEntry) -> bytes:
        """Return the decoded contents of a file entry."""
        if entry.data is None:
            return b""
        return _decode(entry.data.encoding, self.stored_bytes(entry))

    def verify_toc_checksum(self) -> Optional[str]:
        """Return an error message, or None when the TOC checksum matches."""
        if self.checksum is None:
            return "Archive has no TOC checksum"
        style = self.checksum.style or self.checksum_name
        actual = _hexdigest(style, self.toc_compressed)
        expected = self.checksum.data.hex()
        if actual != expected:
            return f"Checksum mismatch. Expected {expected}, actual {actual}"
        return None

    def verify_files(self) -> List[str]:
        errors: List[str] = []
        for entry in self.entries:
            if entry.type != "file" or entry.data is None:
                continue
            data = entry.data
            stored = self.stored_bytes(entry)
            archived = _hexdigest(data.archived_style, stored)
            if archived != data.archived_checksum:
                errors.append(
                    f"Digest mismatch for {entry.path}. "
                    f"Expected {data.archived_checksum}, actual {archived}"
                )
                continue
            try:
                extracted = _hexdigest(data.extracted_style, _decode(data.encoding, stored))
            except XarError as exc:
                errors.append(f"{entry.path}: {exc}")
                continue
            if extracted != data.extracted_checksum:
                errors.append(
                    f"Extracted digest mismatch for {entry.path}. "
                    f"Expected {data.extracted_checksum}, actual {extracted}"
                )
        return errors


def _hexdigest(style: str, data: bytes) -> str:
    try:
        return hashlib.new(style.lower(), data).hexdigest()
    except ValueError as exc:
        raise XarError(f"Unsupported checksum style: {style}") from exc


def _decode(encoding: str, data: bytes) -> bytes:
    try:
        if encoding == ENCODING_GZIP:
            return zlib.decompress(data)
        if encoding == ENCODING_BZIP2:
            return bz2.decompress(data)
        if encoding in {ENCODING_LZMA, ENCODING_XZ}:
            return lzma.decompress(data)
    except (zlib.error, OSError, lzma.LZMAError, EOFError) as exc:
        raise XarError(f"Cannot decode {encoding} data: {exc}") from exc
    if encoding in {"", ENCODING_NONE}:
        return data
    raise XarError(f"Unsupported encoding: {encoding}")


# =============================================================================
# Operations
# =============================================================================


def open_archive(path: Path) -> XarArchive:
    return XarArchive.open(path)


def extract_toc(archive_path: Path, dest_dir: Path) -> Path:
    """Write the compressed TOC of ``archive_path`` to ``dest_dir/toc.dat``."""
    archive = open_archive(archive_path)
    target = Path(dest_dir) / TOC_FILE
    target.write_bytes(archive.toc_compressed)
    return target


def extract_archive(archive_path: Path, dest: Path) -> List[str]:
    """Extract files and directories; links and escaping paths are rejected."""
    archive = open_archive(archive_path)
    dest = Path(dest).resolve()
    dest.mkdir(parents=True, exist_ok=True)
    written: List[str] = []
    for entry in archive.entries:
        target = (dest / entry.path).resolve()
        if not target.is_relative_to(dest):
            raise XarError(f"Archive member escapes destination: {entry.path}")
        if entry.type == "directory":
            target.mkdir(parents=True, exist_ok=True)
        elif entry.type == "file":
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(archive.file_bytes(entry))
            written.append(entry.path)
        else:
            raise XarError(f"Unsupported entry type {entry.type!r}: {entry.path}")
    return written


def describe(archive: XarArchive) -> Dict[str, object]:
    sig = archive.signature
    return {
        "version": archive.header.version,
        "checksum": archive.checksum_name,
        "tocLengthCompressed": archive.header.toc_length_compressed,
        "tocLengthUncompressed": archive.header.toc_length_uncompressed,
        "signature": None
        if sig is None
        else {"style": sig.style, "size": sig.location.size, "certificates": len(sig.certificates)},
        "files": archive.file_names(),
    }


def main(argv: Optional[List[str]] = None, prog: Optional[str] = None) -> int:
    parser = argparse.ArgumentParser(
        prog=prog,
        description="Read XAR archives (.safariextz)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    toc_parser = subparsers.add_parser("extract-toc", help="Write the compressed TOC as toc.dat")
    toc_parser.add_argument("archive", type=Path)
    toc_parser.add_argument(
        "--output-dir", "-o", type=Path, default=Path("."), help="Directory for toc.dat"
    )

    list_parser = subparsers.add_parser("list", help="List archived files")
    list_parser.add_argument("archive", type=Path)
    list_parser.add_argument("--json", action="store_true", help="Output as JSON")

    extract_parser = subparsers.add_parser("extract", help="Extract the archive")
    extract_parser.add_argument("archive", type=Path)
    extract_parser.add_argument("dest", type=Path)

    verify_parser = subparsers.add_parser("verify", help="Check TOC and file checksums")
    verify_parser.add_argument("archive", type=Path)

    args = parser.parse_args(argv)

    try:
        if args.command == "extract-toc":
            print(extract_toc(args.archive, args.output_dir))
        elif args.command == "list":
            archive = open_archive(args.archive)
            if args.json:
                import json

                print(json.dumps(describe(archive), indent=2))
            else:
                for name in archive.file_names():
                    print(name)
        elif args.command == "extract":
            for name in extract_archive(args.archive, args.dest):
                print(name)
        elif args.command == "verify":
            archive = open_archive(args.archive)
            errors = []
            toc_error = archive.verify_toc_checksum()
            if toc_error:
                errors.append(toc_error)
            errors.extend(archive.verify_files())
            if errors:
                print(f"Archive verification failed: {', '.join(errors)}")
                return 1
            print("Archive verified")
        return 0

    except (XarError, FileNotFoundError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
