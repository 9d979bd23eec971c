#!/usr/bin/env python3
"""
fsck.py — VSFS consistency checker.

Cross-checks the superblock, the inode bitmap and the data bitmap of a
VSFS image against the inode table, which is the only authoritative
record of what is in use.  Every inconsistency is reported; with
``--fix`` each one is also corrected and the image rewritten.

Passes, in order:
    1. Superblock     every geometry field against the fixed layout
    2. Inodes         validity vs. inode bitmap, direct pointer vs.
                      data bitmap, invalid and duplicate pointers
    3. Data bitmap    blocks marked used that no live inode references

Usage:
    python fsck.py [--fix] IMAGE
"""

from __future__ import annotations

import argparse
import sys
from dataclasses import dataclass, field
from typing import Optional, TextIO

import numpy as np

from vsfs import (
    DEFAULT_GEOMETRY, Geometry, BlockDevice, ImageError, Superblock,
    bitmap_get, bitmap_set, bitmap_clear, bitmap_bits,
)

ERROR = "ERROR"
WARNING = "WARNING"

# Superblock fields that must equal the same-named Geometry attribute.
# inode_count is bounded instead (see check_superblock).
_EXACT_FIELDS = (
    ("magic", "Invalid magic number: 0x{actual:x}"),
    ("block_size", "Block size is {actual}"),
    ("total_blocks", "Total blocks is {actual}"),
    ("inode_bitmap_block", "Inode bitmap block is {actual}"),
    ("data_bitmap_block", "Data bitmap block is {actual}"),
    ("inode_table_start", "Inode table start is {actual}"),
    ("first_data_block", "First data block is {actual}"),
    ("inode_size", "Inode size is {actual}"),
)


@dataclass
class Finding:
    """One reported inconsistency."""
    severity: str
    kind: str
    index: Optional[int]
    message: str
    fixed: bool = False


@dataclass
class CheckResult:
    """Outcome of one checker run."""
    repair: bool
    findings: list[Finding] = field(default_factory=list)
    inodes_checked: int = 0
    blocks_checked: int = 0
    writes: int = 0

    @property
    def errors(self) -> list[Finding]:
        return [f for f in self.findings if f.severity == ERROR]

    @property
    def warnings(self) -> list[Finding]:
        return [f for f in self.findings if f.severity == WARNING]

    @property
    def fixed(self) -> list[Finding]:
        return [f for f in self.findings if f.fixed]

    @property
    def clean(self) -> bool:
        return not self.findings

    def of_kind(self, kind: str) -> list[Finding]:
        return [f for f in self.findings if f.kind == kind]


class Checker:
    """Runs every pass over an open BlockDevice.

    In repair mode the device must be writable; otherwise no correction
    is applied, not even in memory.
    """

    def __init__(self, dev: BlockDevice, repair: bool = False,
                 out: TextIO | None = None):
        self.dev = dev
        self.geo: Geometry = dev.geometry
        self.repair = repair
        self.out = out if out is not None else sys.stdout
        self.result = CheckResult(repair=repair)

        self.inode_bitmap = bytearray()
        self.data_bitmap = bytearray()
        self.seen = bytearray(self.geo.block_size)

    # ── reporting ──────────────────────────────────────────────────

    def _say(self, line: str):
        print(line, file=self.out)

    def _report(self, severity: str, kind: str, index: Optional[int],
                message: str) -> Finding:
        finding = Finding(severity, kind, index, message)
        self.result.findings.append(finding)
        self._say(f"{severity}: {message}")
        return finding

    def _fixed(self, finding: Finding, what: str):
        finding.fixed = True
        self._say(f"  --> Fixed: {what}")

    # ── pass 1: superblock ─────────────────────────────────────────

    def check_superblock(self) -> Superblock:
        """Validate block 0 against the geometry; rewrite it if repaired."""
        self._say("Validating superblock...")
        sb = self.dev.read_superblock()
        changed = False

        for attr, template in _EXACT_FIELDS:
            expected = getattr(self.geo, attr)
            actual = getattr(sb, attr)
            if actual == expected:
                continue
            f = self._report(ERROR, "superblock", None,
                             template.format(actual=actual))
            if self.repair:
                setattr(sb, attr, expected)
                changed = True
                self._fixed(f, f"{attr} set to {expected}")

        if sb.inode_count > self.geo.max_inodes:
            f = self._report(WARNING, "inode-count", None,
                             f"inode_count ({sb.inode_count}) exceeds max "
                             f"({self.geo.max_inodes}). Clamping.")
            if self.repair:
                sb.inode_count = self.geo.max_inodes
                changed = True
                self._fixed(f, f"inode_count clamped to {self.geo.max_inodes}")

        if self.repair and changed:
            self._say("Writing fixed superblock to disk...")
            self.dev.write_superblock(sb)
        return sb

    # ── pass 2: inodes ─────────────────────────────────────────────

    def scan_inodes(self):
        """Visit every inode slot in ascending order."""
        self._say("Checking inodes and bitmaps...")
        for i in range(self.geo.max_inodes):
            self._check_inode(i)
            self.result.inodes_checked += 1

    def _check_inode(self, i: int):
        inode = self.dev.read_inode(i)
        valid = inode.is_valid
        marked = bitmap_get(self.inode_bitmap, i)

        if marked and not valid:
            f = self._report(ERROR, "inode-bitmap", i,
                             f"Inode {i} marked used but invalid")
            if self.repair:
                bitmap_clear(self.inode_bitmap, i)
                self._fixed(f, "Inode bitmap cleared")
        elif valid and not marked:
            f = self._report(ERROR, "inode-bitmap", i,
                             f"Inode {i} not marked but valid")
            if self.repair:
                bitmap_set(self.inode_bitmap, i)
                self._fixed(f, "Inode bitmap set")

        if not valid:
            return

        ptr = inode.direct
        if self.geo.is_data_block(ptr):
            rel = ptr - self.geo.first_data_block

            if not bitmap_get(self.data_bitmap, rel):
                f = self._report(ERROR, "data-bitmap", rel,
                                 f"Data block {ptr} used by inode {i} "
                                 f"not marked in bitmap")
                if self.repair:
                    bitmap_set(self.data_bitmap, rel)
                    self._fixed(f, f"Data bitmap set for block {ptr}")

            if bitmap_get(self.seen, rel):
                f = self._report(ERROR, "duplicate-block", i,
                                 f"Duplicate data block {ptr} used in inode {i}")
                if self.repair:
                    inode.direct = 0
                    self.dev.write_inode(inode)
                    self._fixed(f, f"Inode {i} direct pointer cleared")
            else:
                bitmap_set(self.seen, rel)

        elif ptr != 0:
            f = self._report(ERROR, "bad-pointer", i,
                             f"Invalid direct pointer {ptr} in inode {i}")
            if self.repair:
                inode.direct = 0
                self.dev.write_inode(inode)
                self._fixed(f, f"Cleared invalid direct pointer in inode {i}")

    # ── pass 3: data bitmap ────────────────────────────────────────

    def reconcile_data_bitmap(self):
        """Clear data bits no live inode claimed during the scan."""
        self._say("Checking data bitmap...")
        count = self.geo.data_block_count
        marked = bitmap_bits(self.data_bitmap, count)
        seen = bitmap_bits(self.seen, count)
        self.result.blocks_checked += count

        for rel in np.flatnonzero(marked & (seen ^ 1)):
            rel = int(rel)
            block = rel + self.geo.first_data_block
            f = self._report(WARNING, "unreferenced-block", rel,
                             f"Data block {block} marked used but unreferenced")
            if self.repair:
                bitmap_clear(self.data_bitmap, rel)
                self._fixed(f, f"Cleared data bitmap for block {block}")

    # ── driver ─────────────────────────────────────────────────────

    def run(self) -> CheckResult:
        """Run all passes and persist repaired bitmaps."""
        self.dev.check_size()
        self.check_superblock()

        geo = self.geo
        loaded_inode_bmap = self.dev.read_block(geo.inode_bitmap_block)
        loaded_data_bmap = self.dev.read_block(geo.data_bitmap_block)
        self.inode_bitmap = bytearray(loaded_inode_bmap)
        self.data_bitmap = bytearray(loaded_data_bmap)
        self.seen = bytearray(geo.block_size)

        self.scan_inodes()
        self.reconcile_data_bitmap()

        if self.repair:
            dirty = False
            if self.inode_bitmap != loaded_inode_bmap:
                self.dev.write_block(geo.inode_bitmap_block, self.inode_bitmap)
                dirty = True
            if self.data_bitmap != loaded_data_bmap:
                self.dev.write_block(geo.data_bitmap_block, self.data_bitmap)
                dirty = True
            if dirty:
                self._say("Writing bitmaps to disk...")
            if self.result.fixed:
                self._say("All detected issues fixed and written to disk.")

        r = self.result
        r.writes = self.dev.writes
        self._say(f"{len(r.errors)} error(s), {len(r.warnings)} warning(s), "
                  f"{len(r.fixed)} fixed")
        self._say("VSFS check completed.")
        return r


def check_image(path, repair: bool = False,
                geometry: Geometry = DEFAULT_GEOMETRY,
                out: TextIO | None = None) -> CheckResult:
    """Open *path*, run every pass and close it again."""
    with BlockDevice(path, geometry, writable=repair) as dev:
        return Checker(dev, repair=repair, out=out).run()


# ── CLI ────────────────────────────────────────────────────────────────

def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="vsfsck",
        description="Check (and optionally repair) a VSFS disk image",
    )
    parser.add_argument("image", help="Disk image path")
    parser.add_argument("--fix", action="store_true",
                        help="Repair inconsistencies in place")
    args = parser.parse_args(argv)

    try:
        check_image(args.image, repair=args.fix)
    except ImageError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except OSError as e:
        print(f"Error opening file: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
