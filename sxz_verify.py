#!/usr/bin/env python3
"""Verify a packed ``.safariextz`` archive.

Checks performed:
- XAR header and TOC checksum (XAR-*)
- Archived and extracted checksums of every file (XAR-004)
- Embedded certificate chain and TOC signature (SIG-*)
- Optionally, that the archive holds exactly the files of a source tree (TREE-001)

Usage:
    python sxz_verify.py ext.safariextz
    python sxz_verify.py ext.safariextz --source src/ext.safariextension --cert dev.cer
    python sxz_verify.py ext.safariextz --json

Exit codes:
    0 = Verification passed
    1 = Verification failed
"""

from __future__ import annotations

import argparse
import json
import pathlib
import sys
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional

import sxz_crypto
from sxz_xar import XAR_VERSION, CHECKSUM_MD5, CHECKSUM_SHA1, XarArchive, XarError

EXPECTED_CHAIN_LENGTH = 3
TOC_SIGNATURE_DIGEST = "sha1"

# Files the browser ignores and the packer does not need to carry.
IGNORED_SOURCE_FILES = {".DS_Store", "Thumbs.db"}


# =============================================================================
# Verification result types
# =============================================================================


class Severity(Enum):
    ERROR = "ERROR"
    WARNING = "WARNING"
    INFO = "INFO"


# Rule id prefix -> report section.
RULE_SECTIONS = {
    "XAR": "Archive structure",
    "SIG": "Signature",
    "TREE": "Source tree",
}


@dataclass
class VerificationResult:
    rule_id: str
    passed: bool
    severity: Severity
    message: str
    details: Optional[str] = None

    @property
    def section(self) -> str:
        return RULE_SECTIONS.get(self.rule_id.split("-", 1)[0], "Other")

    @property
    def status(self) -> str:
        if self.passed:
            return "PASS"
        return "FAIL" if self.severity == Severity.ERROR else "WARN"


class VerificationReport:
    """Outcome of every rule checked against one archive."""

    def __init__(self, archive: Optional[pathlib.Path] = None):
        self.archive = archive
        self.results: List[VerificationResult] = []

    def ok(self, rule_id: str, message: str):
        self.results.append(VerificationResult(rule_id, True, Severity.INFO, message))

    def fail(
        self,
        rule_id: str,
        message: str,
        details: Optional[str] = None,
        severity: Severity = Severity.ERROR,
    ):
        self.results.append(VerificationResult(rule_id, False, severity, message, details))

    def _failures(self, severity: Severity) -> List[VerificationResult]:
        return [r for r in self.results if not r.passed and r.severity == severity]

    @property
    def passed(self) -> bool:
        return not self._failures(Severity.ERROR)

    @property
    def has_warnings(self) -> bool:
        return bool(self._failures(Severity.WARNING))

    def failed_rules(self) -> List[str]:
        return [r.rule_id for r in self.results if not r.passed]

    def sections(self) -> Dict[str, List[VerificationResult]]:
        grouped: Dict[str, List[VerificationResult]] = {}
        for result in self.results:
            grouped.setdefault(result.section, []).append(result)
        return grouped

    def summary(self) -> Dict[str, int]:
        return {
            "checked": len(self.results),
            "errors": len(self._failures(Severity.ERROR)),
            "warnings": len(self._failures(Severity.WARNING)),
        }

    def verdict(self) -> str:
        if not self.passed:
            return "FAILED"
        return "PASSED WITH WARNINGS" if self.has_warnings else "PASSED"

    def to_dict(self) -> dict:
        return {
            "archive": str(self.archive) if self.archive is not None else None,
            "passed": self.passed,
            "has_warnings": self.has_warnings,
            "summary": self.summary(),
            "results": [
                {
                    "rule_id": r.rule_id,
                    "passed": r.passed,
                    "severity": r.severity.value,
                    "message": r.message,
                    "details": r.details,
                }
                for r in self.results
            ],
        }

    def print_report(self, verbose: bool = False):
        print(f"\nsxz verify: {self.archive}")
        for title, results in self.sections().items():
            shown = [r for r in results if verbose or not r.passed]
            if not shown:
                continue
            print(f"\n{title}:")
            for r in shown:
                print(f"  {r.status} [{r.rule_id}] {r.message}")
                if r.details and (verbose or not r.passed):
                    print(f"       {r.details}")

        counts = self.summary()
        print(
            f"\nRESULT: {self.verdict()} "
            f"({counts['checked']} checks, {counts['errors']} errors, {counts['warnings']} warnings)\n"
        )


# =============================================================================
# Verification functions
# =============================================================================


def _source_files(source_dir: pathlib.Path) -> List[str]:
    root = source_dir.resolve()
    names = []
    for path in root.rglob("*"):
        if path.is_file() and path.name not in IGNORED_SOURCE_FILES:
            names.append(f"{root.name}/{path.relative_to(root).as_posix()}")
    return sorted(names)


def _verify_structure(archive: XarArchive, report: VerificationReport) -> None:
    if archive.header.version == XAR_VERSION:
        report.ok("XAR-001", f"XAR version {archive.header.version}")
    else:
        report.fail("XAR-001", f"Unsupported archive version {archive.header.version}")

    if archive.header.checksum_algorithm in {CHECKSUM_SHA1, CHECKSUM_MD5}:
        report.ok("XAR-002", f"Checksum algorithm {archive.checksum_name}")
    else:
        report.fail(
            "XAR-002", f"Unsupported checksum type {archive.header.checksum_algorithm}"
        )

    try:
        toc_error = archive.verify_toc_checksum()
    except XarError as exc:
        toc_error = str(exc)
    if toc_error:
        report.fail("XAR-003", "TOC checksum verification failed", toc_error)
    else:
        report.ok("XAR-003", "TOC checksum matches")

    try:
        file_errors = archive.verify_files()
    except XarError as exc:
        file_errors = [str(exc)]
    if file_errors:
        report.fail("XAR-004", "File checksum verification failed", ", ".join(file_errors))
    else:
        report.ok("XAR-004", f"{len(archive.file_names())} file checksums match")


def _verify_signature(
    archive: XarArchive,
    report: VerificationReport,
    expected_leaf: Optional[pathlib.Path],
) -> None:
    signature = archive.signature
    if signature is None:
        report.fail("SIG-001", "Archive is not signed")
        return
    if not signature.certificates:
        report.fail("SIG-001", "Signature has no embedded certificates")
        return
    report.ok("SIG-001", f"{signature.style or 'unknown'} signature of {len(signature.data)} bytes")

    try:
        certs = [sxz_crypto.load_certificate_bytes(der) for der in signature.certificates]
    except ValueError as exc:
        report.fail("SIG-002", "Embedded certificate could not be parsed", str(exc))
        return

    if len(certs) == EXPECTED_CHAIN_LENGTH:
        report.ok("SIG-002", f"{len(certs)} certificates embedded")
    else:
        report.fail(
            "SIG-002",
            f"Expected {EXPECTED_CHAIN_LENGTH} certificates (leaf, intermediate, root), found {len(certs)}",
            severity=Severity.WARNING,
        )

    problems = sxz_crypto.check_chain(certs)
    if problems:
        report.fail("SIG-003", "Certificate chain is broken", "; ".join(problems))
    else:
        report.ok("SIG-003", "Certificate chain links to its root")

    leaf = certs[0]
    if sxz_crypto.verify_signature(
        leaf.public_key(), signature.data, archive.toc_compressed, TOC_SIGNATURE_DIGEST
    ):
        report.ok("SIG-004", "TOC signature verifies with the leaf certificate")
    else:
        report.fail("SIG-004", "TOC signature does not verify with the leaf certificate")

    if expected_leaf is not None:
        try:
            expected = sxz_crypto.load_certificate(expected_leaf)
        except (OSError, ValueError) as exc:
            report.fail("SIG-005", f"Cannot load expected certificate {expected_leaf}", str(exc))
            return
        if expected == leaf:
            report.ok("SIG-005", "Leaf certificate matches the expected certificate")
        else:
            report.fail("SIG-005", "Leaf certificate differs from the expected certificate")


def _verify_tree(archive: XarArchive, source_dir: pathlib.Path, report: VerificationReport) -> None:
    archived = set(archive.file_names())
    source = set(_source_files(source_dir))
    if archived == source:
        report.ok("TREE-001", f"Archive holds the {len(source)} source files")
        return
    details = []
    missing = sorted(source - archived)
    extra = sorted(archived - source)
    if missing:
        details.append(f"missing: {', '.join(missing)}")
    if extra:
        details.append(f"unexpected: {', '.join(extra)}")
    report.fail("TREE-001", "Archive content differs from the source tree", "; ".join(details))


def verify_archive(
    archive_path: pathlib.Path,
    source_dir: Optional[pathlib.Path] = None,
    expected_leaf: Optional[pathlib.Path] = None,
    require_signature: bool = True,
) -> VerificationReport:
    report = VerificationReport(pathlib.Path(archive_path))
    try:
        archive = XarArchive.open(pathlib.Path(archive_path))
    except (XarError, OSError) as exc:
        report.fail("XAR-000", f"Cannot read archive {archive_path}", str(exc))
        return report

    _verify_structure(archive, report)
    if require_signature or archive.signature is not None:
        _verify_signature(archive, report, expected_leaf)
    if source_dir is not None:
        _verify_tree(archive, pathlib.Path(source_dir), report)
    return report


def main(argv: Optional[List[str]] = None, prog: Optional[str] = None) -> int:
    parser = argparse.ArgumentParser(
        prog=prog,
        description="Verify a signed .safariextz archive",
    )
    parser.add_argument("archive", type=pathlib.Path, help="Archive to verify")
    parser.add_argument(
        "--source", "-s", type=pathlib.Path, help="Source directory the archive was packed from"
    )
    parser.add_argument(
        "--cert", type=pathlib.Path, help="Expected leaf (developer) certificate, DER or PEM"
    )
    parser.add_argument(
        "--allow-unsigned", action="store_true", help="Do not fail when the archive is unsigned"
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Show passed checks")
    parser.add_argument("--json", action="store_true", help="Output report as JSON")
    args = parser.parse_args(argv)

    report = verify_archive(
        args.archive,
        source_dir=args.source,
        expected_leaf=args.cert,
        require_signature=not args.allow_unsigned,
    )

    if args.json:
        print(json.dumps(report.to_dict(), indent=2))
    else:
        report.print_report(verbose=args.verbose)

    return 0 if report.passed else 1


if __name__ == "__main__":
    sys.exit(main())
