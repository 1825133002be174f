#!/usr/bin/env python3
"""Command builders for the external tools used by the packer.

  - ``xar`` 1.6.1 creates the archive, reserves the leaf signature and
    injects the final signature. Neither xar 1.5 nor 1.7 support the
    ``--replace-sign`` option.
  - A TOC extractor writes the compressed table of contents as ``toc.dat``.
    By default this is the ``sxz_xar.py`` script installed beside this
    module, run by the current interpreter.
  - ``openssl dgst`` produces binary signatures.
"""

from __future__ import annotations

import os
import shlex
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional, Tuple

from sxz_process import PathLike, Runner, run_tool

# =============================================================================
# Constants (tool contract)
# =============================================================================

# File names are part of the contract with xar and the TOC extractor.
DIGEST_FILE = "digest.dat"
TOC_FILE = "toc.dat"
SIGNATURE_FILE = "signature.dat"
SIG_OFFSET_FILE = "sigoffset"

DEFAULT_DIGEST = "sha1"

ENV_XAR = "SXZ_XAR"
ENV_OPENSSL = "SXZ_OPENSSL"
ENV_XARTOOL = "SXZ_XARTOOL"


def _default_xartool() -> Tuple[str, ...]:
    # Run by path: the extractor works in the temp dir, where -m cannot find it.
    return (sys.executable, str(Path(__file__).resolve().with_name("sxz_xar.py")))


@dataclass(frozen=True)
class ToolPaths:
    """Executables for the three external tools."""

    xar: str = "xar"
    openssl: str = "openssl"
    xartool: Tuple[str, ...] = field(default_factory=_default_xartool)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ToolPaths":
        env = os.environ if environ is None else environ
        defaults = cls()
        xartool = env.get(ENV_XARTOOL)
        return cls(
            xar=env.get(ENV_XAR) or defaults.xar,
            openssl=env.get(ENV_OPENSSL) or defaults.openssl,
            xartool=tuple(shlex.split(xartool)) if xartool else defaults.xartool,
        )

    def override(
        self,
        xar: Optional[str] = None,
        openssl: Optional[str] = None,
        xartool: Optional[str] = None,
    ) -> "ToolPaths":
        return ToolPaths(
            xar=xar or self.xar,
            openssl=openssl or self.openssl,
            xartool=tuple(shlex.split(xartool)) if xartool else self.xartool,
        )


# =============================================================================
# Archiving tool
# =============================================================================


class XarTool:
    def __init__(self, runner: Runner = run_tool, executable: str = "xar"):
        self.runner = runner
        self.executable = executable

    def create_archive(self, archive: Path, source_dir: Path) -> Path:
        """Archive ``source_dir`` with its basename as the single root entry."""
        parent = source_dir.parent
        self.runner(
            [self.executable, "-cf", archive, "-C", parent, source_dir.name],
            cwd=parent,
        )
        return archive

    def replace_sign(
        self,
        archive: Path,
        digest_out: Path,
        sig_size: int,
        leaf_cert: PathLike,
        intermediate_cert: PathLike,
        root_cert: PathLike,
        sig_offset_out: Path,
        cwd: Optional[Path] = None,
    ) -> None:
        self.runner(
            [
                self.executable,
                "--replace-sign",
                "-f",
                archive,
                "--data-to-sign",
                digest_out,
                "--sig-size",
                str(sig_size),
                "--cert-loc",
                leaf_cert,
                "--cert-loc",
                intermediate_cert,
                "--cert-loc",
                root_cert,
                "--sig-offset",
                sig_offset_out,
            ],
            cwd=cwd,
        )

    def inject_signature(self, archive: Path, signature_file: Path, cwd: Optional[Path] = None) -> None:
        self.runner(
            [self.executable, "--inject-sig", signature_file, "-f", archive],
            cwd=cwd,
        )


# =============================================================================
# TOC extractor
# =============================================================================


class TocExtractor:
    def __init__(self, runner: Runner = run_tool, command: Optional[Tuple[str, ...]] = None):
        self.runner = runner
        self.command = tuple(command) if command else _default_xartool()

    def extract(self, archive: Path, workdir: Path) -> Path:
        """Write ``toc.dat`` for ``archive`` into ``workdir`` and return its path."""
        self.runner([*self.command, "extract-toc", archive], cwd=workdir)
        return workdir / TOC_FILE


# =============================================================================
# Signing tool
# =============================================================================


class OpenSSLSigner:
    def __init__(self, runner: Runner = run_tool, executable: str = "openssl"):
        self.runner = runner
        self.executable = executable

    def sign(self, private_key: PathLike, input_file: PathLike, digest: str = DEFAULT_DIGEST) -> bytes:
        """Return the raw signature of ``input_file``'s bytes."""
        return self.runner(
            [
                self.executable,
                "dgst",
                f"-{digest}",
                "-sign",
                private_key,
                "-binary",
                input_file,
            ],
            hide_stdout=True,
        )
