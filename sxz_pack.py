#!/usr/bin/env python3
"""Pack and sign a Safari extension without the browser.

The pipeline is a linear state machine. Each transition runs one external
tool and must finish successfully before the next one starts:

    UNSIGNED --create--> CREATED                xar -cf
    CREATED --size-probe--> SIZED               openssl dgst -sign (length only)
    SIZED --leaf-sign--> LEAF_SIGNED            xar --replace-sign
    LEAF_SIGNED --extract-toc--> TOC_EXTRACTED  sxz_xar extract-toc
    TOC_EXTRACTED --toc-sign--> TOC_SIGNED      openssl dgst -sha1 -sign toc.dat
    TOC_SIGNED --inject--> SIGNED               xar --inject-sig

Any non-zero exit moves the run to FAILED and raises ExternalToolFailure;
other errors raised by a stage also move it to FAILED and propagate
unchanged. Temporary files written by the stages that ran are removed on
every exit path. A failed run can leave a partially signed archive behind;
callers should delete it before retrying.

Concurrent runs must use distinct temp directories and archive paths.

Usage:
    python sxz_pack.py out/ext.safariextz src/ext.safariextension --config sxz.json
    python sxz_pack.py out/ext.safariextz src/ext.safariextension \\
        --private-key key.pem --extension-cer dev.cer \\
        --apple-dev-cer apple-wwdr.cer --apple-root-cer apple-root.cer --temp /tmp
"""

from __future__ import annotations

import argparse
import sys
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

import sxz_crypto
import sxz_log
from sxz_options import OptionsError, PackOptions, load_options, merge_overrides
from sxz_process import ExternalToolFailure, Runner, run_tool
from sxz_tools import (
    DEFAULT_DIGEST,
    DIGEST_FILE,
    SIG_OFFSET_FILE,
    SIGNATURE_FILE,
    TOC_FILE,
    OpenSSLSigner,
    TocExtractor,
    ToolPaths,
    XarTool,
)

logger = sxz_log.get_logger("pack")


class PackState(Enum):
    UNSIGNED = "unsigned"
    CREATED = "created"
    SIZED = "sized"
    LEAF_SIGNED = "leaf-signed"
    TOC_EXTRACTED = "toc-extracted"
    TOC_SIGNED = "toc-signed"
    SIGNED = "signed"
    FAILED = "failed"


TERMINAL_STATES = frozenset({PackState.SIGNED, PackState.FAILED})


@dataclass(frozen=True)
class PackRequest:
    """One packing job. Paths are made absolute on construction."""

    archive: Path
    source_dir: Path
    options: PackOptions

    def __post_init__(self) -> None:
        object.__setattr__(self, "archive", Path(self.archive).absolute())
        object.__setattr__(self, "source_dir", Path(self.source_dir).absolute())

    @property
    def temp_dir(self) -> Path:
        return self.options.temp_dir.absolute()

    @property
    def digest_file(self) -> Path:
        return self.temp_dir / DIGEST_FILE

    @property
    def toc_file(self) -> Path:
        return self.temp_dir / TOC_FILE

    @property
    def signature_file(self) -> Path:
        return self.temp_dir / SIGNATURE_FILE

    @property
    def sig_offset_file(self) -> Path:
        return self.temp_dir / SIG_OFFSET_FILE

    def stage_artifacts(self, stage: str) -> Tuple[Path, ...]:
        """Temp files the given stage may write."""
        return {
            "leaf-sign": (self.digest_file, self.sig_offset_file),
            "extract-toc": (self.toc_file,),
            "toc-sign": (self.signature_file,),
        }.get(stage, ())


@dataclass
class PackResult:
    archive: Path
    signature_size: int
    states: List[PackState] = field(default_factory=list)


class Packer:
    """Runs the pack-and-sign pipeline for a single :class:`PackRequest`."""

    def __init__(
        self,
        request: PackRequest,
        runner: Runner = run_tool,
        tools: Optional[ToolPaths] = None,
        digest: str = DEFAULT_DIGEST,
    ):
        tools = tools or ToolPaths.from_env()
        self.request = request
        self.digest = digest
        self.xar = XarTool(runner, tools.xar)
        self.signer = OpenSSLSigner(runner, tools.openssl)
        self.toc_extractor = TocExtractor(runner, tools.xartool)

        self.state = PackState.UNSIGNED
        self.history: List[PackState] = [PackState.UNSIGNED]
        self.failed_stage: Optional[str] = None
        self.signature_size: Optional[int] = None
        self.toc_path: Optional[Path] = None
        self.artifacts: List[Path] = []

        # state -> (stage name, next state, action)
        self._transitions: Dict[PackState, Tuple[str, PackState, Callable[[], None]]] = {
            PackState.UNSIGNED: ("create", PackState.CREATED, self._create_archive),
            PackState.CREATED: ("size-probe", PackState.SIZED, self._probe_signature_size),
            PackState.SIZED: ("leaf-sign", PackState.LEAF_SIGNED, self._replace_signature),
            PackState.LEAF_SIGNED: ("extract-toc", PackState.TOC_EXTRACTED, self._extract_toc),
            PackState.TOC_EXTRACTED: ("toc-sign", PackState.TOC_SIGNED, self._sign_toc),
            PackState.TOC_SIGNED: ("inject", PackState.SIGNED, self._inject_signature),
        }

    # -------------------------------------------------------------------------
    # Stages
    # -------------------------------------------------------------------------

    def _create_archive(self) -> None:
        self.request.archive.parent.mkdir(parents=True, exist_ok=True)
        self.xar.create_archive(self.request.archive, self.request.source_dir)

    def _probe_signature_size(self) -> None:
        # Any input will do: the key file itself is signed to learn the length.
        key = self.request.options.private_key
        probe = self.signer.sign(key, key, digest=self.digest)
        self.signature_size = len(probe)
        logger.debug("signature size %d bytes", self.signature_size)

        expected = sxz_crypto.expected_signature_size(key)
        if expected is not None and expected != self.signature_size:
            logger.warning(
                "signature probe returned %d bytes but the key implies %d",
                self.signature_size,
                expected,
            )

    def _replace_signature(self) -> None:
        options = self.request.options
        leaf, intermediate, root = options.certificate_chain()
        self.xar.replace_sign(
            self.request.archive,
            digest_out=self.request.digest_file,
            sig_size=self.signature_size or 0,
            leaf_cert=leaf,
            intermediate_cert=intermediate,
            root_cert=root,
            sig_offset_out=self.request.sig_offset_file,
            cwd=self.request.temp_dir,
        )

    def _extract_toc(self) -> None:
        self.toc_path = self.toc_extractor.extract(self.request.archive, self.request.temp_dir)

    def _sign_toc(self) -> None:
        toc_path = self.toc_path or self.request.toc_file
        signature = self.signer.sign(self.request.options.private_key, toc_path, digest=self.digest)
        if len(signature) != self.signature_size:
            logger.error(
                "TOC signature is %d bytes but %d bytes were reserved",
                len(signature),
                self.signature_size,
            )
        self.request.signature_file.write_bytes(signature)

    def _inject_signature(self) -> None:
        self.xar.inject_signature(
            self.request.archive, self.request.signature_file, cwd=self.request.temp_dir
        )

    # -------------------------------------------------------------------------
    # State machine
    # -------------------------------------------------------------------------

    def step(self) -> PackState:
        """Run the stage leaving the current state and return the new state."""
        if self.state in TERMINAL_STATES:
            raise RuntimeError(f"Pack run already finished in state {self.state.value}")
        stage, next_state, action = self._transitions[self.state]
        logger.debug("stage %s", stage)
        self.artifacts.extend(self.request.stage_artifacts(stage))
        try:
            action()
        except Exception as exc:
            if isinstance(exc, ExternalToolFailure):
                exc.stage = stage
            self.failed_stage = stage
            self._enter(PackState.FAILED)
            raise
        self._enter(next_state)
        return self.state

    def _enter(self, state: PackState) -> None:
        self.state = state
        self.history.append(state)

    def cleanup(self) -> None:
        """Remove the temp files of the stages that ran.

        Files the run never reached are left alone, since ``temp`` may be a
        directory the caller also uses.
        """
        for path in self.artifacts:
            try:
                path.unlink(missing_ok=True)
            except OSError as exc:
                logger.warning("could not remove %s: %s", path, exc)

    def run(self) -> PackResult:
        try:
            while self.state not in TERMINAL_STATES:
                self.step()
        finally:
            self.cleanup()
        return PackResult(self.request.archive, self.signature_size or 0, list(self.history))


def pack(
    archive_name: Union[str, Path],
    source_dir: Union[str, Path],
    options: Union[PackOptions, Mapping[str, Any]],
    runner: Runner = run_tool,
    tools: Optional[ToolPaths] = None,
) -> None:
    """Pack ``source_dir`` into a signed archive at ``archive_name``.

    Raises:
        ExternalToolFailure: a tool exited non-zero; ``exit_code`` and
            ``stage`` identify the failure.
        OptionsError: ``options`` is not a valid configuration.
    """
    if not isinstance(options, PackOptions):
        options = PackOptions.from_mapping(options)
    request = PackRequest(Path(archive_name), Path(source_dir), options)
    Packer(request, runner=runner, tools=tools).run()
    logger.info("packed %s", request.archive)


# =============================================================================
# CLI
# =============================================================================


def _exit_code(exc: ExternalToolFailure) -> int:
    if 0 < exc.exit_code < 256:
        return exc.exit_code
    return 1


def build_options(args: argparse.Namespace) -> PackOptions:
    base = load_options(args.config) if args.config else None
    return merge_overrides(
        base,
        private_key=args.private_key,
        extension_cer=args.extension_cer,
        apple_dev_cer=args.apple_dev_cer,
        apple_root_cer=args.apple_root_cer,
        temp=args.temp,
    )


def main(argv: Optional[List[str]] = None, prog: Optional[str] = None) -> int:
    parser = argparse.ArgumentParser(
        prog=prog,
        description="Pack and sign a Safari extension (.safariextz)",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Requires xar 1.6.1 and openssl on PATH (or --xar / --openssl).

Examples:
  %(prog)s out/ext.safariextz src/ext.safariextension --config sxz.json
  %(prog)s out/ext.safariextz src/ext.safariextension --config sxz.json --verify
        """,
    )
    parser.add_argument("archive", type=Path, help="Output archive (.safariextz)")
    parser.add_argument("source", type=Path, help="Extension source directory (.safariextension)")
    parser.add_argument("--config", "-c", type=Path, help="Options file (JSON or YAML)")
    parser.add_argument("--private-key", type=Path, help="Private key (PKCS#8 PEM)")
    parser.add_argument("--extension-cer", type=Path, help="Developer (leaf) certificate")
    parser.add_argument("--apple-dev-cer", type=Path, help="Intermediate CA certificate")
    parser.add_argument("--apple-root-cer", type=Path, help="Root CA certificate")
    parser.add_argument("--temp", type=Path, help="Directory for temporary files (default: cwd)")
    parser.add_argument("--xar", help="xar executable (default: $SXZ_XAR or xar)")
    parser.add_argument("--openssl", help="openssl executable (default: $SXZ_OPENSSL or openssl)")
    parser.add_argument("--xartool", help="TOC extractor command (default: $SXZ_XARTOOL or sxz_xar)")
    parser.add_argument("--verify", action="store_true", help="Verify the archive after packing")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    args = parser.parse_args(argv)

    sxz_log.configure(verbose=args.verbose)

    try:
        options = build_options(args)
    except OptionsError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2

    tools = ToolPaths.from_env().override(xar=args.xar, openssl=args.openssl, xartool=args.xartool)

    try:
        pack(args.archive, args.source, options, tools=tools)
    except ExternalToolFailure as e:
        print(f"Error: {e}", file=sys.stderr)
        return _exit_code(e)

    if args.verify:
        import sxz_verify

        report = sxz_verify.verify_archive(
            args.archive, source_dir=args.source, expected_leaf=options.extension_cer
        )
        report.print_report(verbose=args.verbose)
        if not report.passed:
            return 1

    print(args.archive.absolute())
    return 0


if __name__ == "__main__":
    sys.exit(main())
