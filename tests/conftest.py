from __future__ import annotations

import base64
import hashlib
import logging
import struct
import xml.etree.ElementTree as ET
import zlib
from pathlib import Path
from typing import Dict, List, NamedTuple, Optional, Sequence

import pytest

import sxz_crypto
from sxz_process import ExternalToolFailure
from sxz_tools import ToolPaths

XMLDSIG_NS = "http://www.w3.org/2000/09/xmldsig#"


@pytest.fixture(autouse=True)
def _reset_sxz_logger():
    yield
    logger = logging.getLogger("sxz")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    logger.setLevel(logging.NOTSET)


# =============================================================================
# Fake tool runner
# =============================================================================


class ToolCall(NamedTuple):
    stage: str
    argv: List[str]
    cwd: Optional[Path]
    hide_stdout: bool


def _classify(argv: Sequence[str]) -> str:
    if argv[0] == "xar":
        if "-cf" in argv:
            return "create"
        if "--replace-sign" in argv:
            return "leaf-sign"
        if "--inject-sig" in argv:
            return "inject"
    if argv[0] == "openssl":
        return "toc-sign" if argv[-1].endswith("toc.dat") else "size-probe"
    if "extract-toc" in argv:
        return "extract-toc"
    return "unknown"


def _arg_after(argv: Sequence[str], flag: str) -> List[str]:
    return [argv[i + 1] for i, a in enumerate(argv[:-1]) if a == flag]


class FakeRunner:
    """Stands in for xar, openssl and the TOC extractor, recording every call."""

    def __init__(
        self,
        signature_size: int = 256,
        toc_signature_size: Optional[int] = None,
        fail_stage: Optional[str] = None,
        exit_code: int = 1,
    ):
        self.signature_size = signature_size
        self.toc_signature_size = toc_signature_size or signature_size
        self.fail_stage = fail_stage
        self.exit_code = exit_code
        self.calls: List[ToolCall] = []
        self.injected: Optional[bytes] = None

    @property
    def stages(self) -> List[str]:
        return [c.stage for c in self.calls]

    def call(self, stage: str) -> ToolCall:
        return next(c for c in self.calls if c.stage == stage)

    def __call__(self, argv, cwd=None, hide_stdout=False) -> bytes:
        args = [str(a) for a in argv]
        stage = _classify(args)
        self.calls.append(ToolCall(stage, args, Path(cwd) if cwd else None, hide_stdout))
        if stage == self.fail_stage:
            raise ExternalToolFailure(self.exit_code, args)
        handler = getattr(self, "_" + stage.replace("-", "_"))
        return handler(args, cwd)

    def _create(self, args, cwd) -> bytes:
        archive = Path(args[2])
        source = Path(args[4]) / args[5]
        if not source.is_dir():
            raise ExternalToolFailure(1, args)
        archive.write_bytes(b"xar!unsigned")
        return b""

    def _size_probe(self, args, cwd) -> bytes:
        return b"\x01" * self.signature_size

    def _leaf_sign(self, args, cwd) -> bytes:
        if not all(Path(p).exists() for p in _arg_after(args, "--cert-loc")):
            raise ExternalToolFailure(1, args)
        Path(_arg_after(args, "--data-to-sign")[0]).write_bytes(b"\x00" * 20)
        Path(_arg_after(args, "--sig-offset")[0]).write_text("120\n")
        archive = Path(_arg_after(args, "-f")[0])
        archive.write_bytes(archive.read_bytes() + b"+leaf")
        return b""

    def _extract_toc(self, args, cwd) -> bytes:
        (Path(cwd) / "toc.dat").write_bytes(b"compressed toc")
        return b""

    def _toc_sign(self, args, cwd) -> bytes:
        return b"\x02" * self.toc_signature_size

    def _inject(self, args, cwd) -> bytes:
        self.injected = Path(args[2]).read_bytes()
        archive = Path(_arg_after(args, "-f")[0])
        archive.write_bytes(archive.read_bytes() + b"+sig")
        return b""

    def _unknown(self, args, cwd) -> bytes:
        raise AssertionError(f"unexpected command: {args}")


@pytest.fixture
def make_runner():
    return FakeRunner


@pytest.fixture
def tools() -> ToolPaths:
    return ToolPaths(xar="xar", openssl="openssl", xartool=("xartool",))


# =============================================================================
# Source tree and key material
# =============================================================================


@pytest.fixture
def extension_dir(tmp_path: Path) -> Path:
    root = tmp_path / "src" / "demo.safariextension"
    root.mkdir(parents=True)
    (root / "Info.plist").write_text(
        '<?xml version="1.0" encoding="UTF-8"?>\n<plist version="1.0"><dict/></plist>\n',
        encoding="utf-8",
    )
    (root / "global.html").write_text("<html><body>demo</body></html>\n", encoding="utf-8")
    return root


@pytest.fixture
def placeholder_certs(tmp_path: Path) -> Dict[str, str]:
    """Option mapping pointing at files that exist but hold no real keys."""
    certs = tmp_path / "certs"
    certs.mkdir()
    names = {
        "privateKey": "key.pem",
        "extensionCer": "leaf.cer",
        "appleDevCer": "intermediate.cer",
        "appleRootCer": "root.cer",
    }
    options = {}
    for key, name in names.items():
        path = certs / name
        path.write_bytes(b"placeholder " + name.encode("ascii"))
        options[key] = str(path)
    work = tmp_path / "work"
    work.mkdir()
    options["temp"] = str(work)
    return options


@pytest.fixture(scope="session")
def dev_chain(tmp_path_factory) -> sxz_crypto.DevChain:
    return sxz_crypto.generate_dev_chain(tmp_path_factory.mktemp("chain"))


# =============================================================================
# XAR builder
# =============================================================================


def _text(parent: ET.Element, tag: str, text: str, **attrib: str) -> ET.Element:
    elt = ET.SubElement(parent, tag, attrib)
    elt.text = text
    return elt


def build_xar(
    out_path: Path,
    files: Dict[str, bytes],
    root_name: str = "demo.safariextension",
    private_key=None,
    certificates: Sequence[bytes] = (),
    tamper_signature: bool = False,
    compress: bool = True,
) -> Path:
    """Write a XAR archive the way ``xar -cf`` plus signing would lay it out."""
    sig_size = (private_key.key_size + 7) // 8 if private_key is not None else 0
    files_offset = 20 + sig_size

    xar = ET.Element("xar")
    toc = ET.SubElement(xar, "toc")
    checksum = ET.SubElement(toc, "checksum", {"style": "sha1"})
    _text(checksum, "offset", "0")
    _text(checksum, "size", "20")
    if private_key is not None:
        signature = ET.SubElement(toc, "signature", {"style": "RSA"})
        _text(signature, "offset", "20")
        _text(signature, "size", str(sig_size))
        key_info = ET.SubElement(signature, f"{{{XMLDSIG_NS}}}KeyInfo")
        x509_data = ET.SubElement(key_info, f"{{{XMLDSIG_NS}}}X509Data")
        for der in certificates:
            _text(x509_data, f"{{{XMLDSIG_NS}}}X509Certificate", base64.b64encode(der).decode("ascii"))

    ids = iter(range(1, 10_000))
    root_elt = ET.SubElement(toc, "file", {"id": str(next(ids))})
    _text(root_elt, "name", root_name)
    _text(root_elt, "type", "directory")
    dirs: Dict[str, ET.Element] = {"": root_elt}

    heap = bytearray()
    for rel in sorted(files):
        parts = rel.split("/")
        prefix = ""
        for part in parts[:-1]:
            parent = dirs[prefix]
            prefix = f"{prefix}/{part}" if prefix else part
            if prefix not in dirs:
                dir_elt = ET.SubElement(parent, "file", {"id": str(next(ids))})
                _text(dir_elt, "name", part)
                _text(dir_elt, "type", "directory")
                dirs[prefix] = dir_elt
        content = files[rel]
        stored = zlib.compress(content) if compress else content
        file_elt = ET.SubElement(dirs[prefix], "file", {"id": str(next(ids))})
        _text(file_elt, "name", parts[-1])
        _text(file_elt, "type", "file")
        data = ET.SubElement(file_elt, "data")
        _text(data, "length", str(len(stored)))
        _text(data, "offset", str(files_offset + len(heap)))
        _text(data, "size", str(len(content)))
        ET.SubElement(
            data,
            "encoding",
            {"style": "application/x-gzip" if compress else "application/octet-stream"},
        )
        _text(data, "archived-checksum", hashlib.sha1(stored).hexdigest(), style="sha1")
        _text(data, "extracted-checksum", hashlib.sha1(content).hexdigest(), style="sha1")
        heap += stored

    toc_xml = b'<?xml version="1.0" encoding="UTF-8"?>\n' + ET.tostring(xar)
    toc_compressed = zlib.compress(toc_xml)
    toc_checksum = hashlib.sha1(toc_compressed).digest()
    sig = b""
    if private_key is not None:
        sig = sxz_crypto.sign_data(private_key, toc_compressed, "sha1")
        if tamper_signature:
            sig = sig[:-1] + bytes([sig[-1] ^ 0xFF])

    header = struct.pack(">IHHQQI", 0x78617221, 28, 1, len(toc_compressed), len(toc_xml), 1)
    out_path.write_bytes(header + toc_compressed + toc_checksum + sig + bytes(heap))
    return out_path


@pytest.fixture
def xar_builder():
    return build_xar


@pytest.fixture
def demo_files() -> Dict[str, bytes]:
    return {
        "Info.plist": b'<?xml version="1.0" encoding="UTF-8"?>\n<plist version="1.0"><dict/></plist>\n',
        "global.html": b"<html><body>demo</body></html>\n",
    }


@pytest.fixture
def signed_xar(tmp_path: Path, dev_chain, demo_files) -> Path:
    key = sxz_crypto.load_private_key(dev_chain.private_key)
    certs = [p.read_bytes() for p in (dev_chain.leaf, dev_chain.intermediate, dev_chain.root)]
    return build_xar(tmp_path / "demo.safariextz", demo_files, private_key=key, certificates=certs)
