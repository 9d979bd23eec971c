"""
vsfs.py — VSFS disk image layout, codecs and block access.

Provides the Python-side view of a VSFS image: the fixed geometry, the
superblock and inode records, the bitmap helpers shared by the checker,
and a small utility for creating and inspecting images.

Disk layout (256 KiB = 64 × 4096-byte blocks):
    Block 0        Superblock
    Block 1        Inode bitmap      (1 bit per inode slot)
    Block 2        Data bitmap       (1 bit per data block, relative to 8)
    Blocks 3-7     Inode table       (80 × 256-byte inodes)
    Blocks 8-63    Data region

Superblock (block 0, little-endian, packed):
    +0   magic[2]               u16  (0xD34D)
    +2   block_size[4]          u32  (4096)
    +6   total_blocks[4]        u32  (64)
    +10  inode_bitmap_block[4]  u32  (1)
    +14  data_bitmap_block[4]   u32  (2)
    +18  inode_table_start[4]   u32  (3)
    +22  first_data_block[4]    u32  (8)
    +26  inode_size[4]          u32  (256)
    +30  inode_count[4]         u32  (<= 80)
    +34  reserved               preserved as-is

Inode (256-byte slot, little-endian u32 fields):
    +0   mode     +4   uid      +8   gid      +12  size
    +16  atime    +20  ctime    +24  mtime    +28  dtime
    +32  links    +36  blocks   +40  direct
    +44  single_indirect  +48  double_indirect  +52  triple_indirect
    +56  reserved         preserved as-is

Bitmaps:
    Bit N lives in byte N // 8 at position N % 8 (LSB first).
    Bit N = 1 means slot N is allocated.
"""

from __future__ import annotations

import os
import struct
import sys
from dataclasses import dataclass, field
from pathlib import Path

import numpy as np

# ── Constants ──────────────────────────────────────────────────────────

VSFS_MAGIC = 0xD34D

BLOCK_SIZE = 4096
TOTAL_BLOCKS = 64
INODE_SIZE = 256

INODE_BITMAP_BLOCK = 1
DATA_BITMAP_BLOCK = 2
INODE_TABLE_START = 3
INODE_TABLE_BLOCKS = 5
FIRST_DATA_BLOCK = 8

SUPERBLOCK_FMT = "<H8I"
SUPERBLOCK_FIELDS_SIZE = struct.calcsize(SUPERBLOCK_FMT)   # 34

INODE_FMT = "<14I"
INODE_FIELDS_SIZE = struct.calcsize(INODE_FMT)             # 56


# ── Errors ─────────────────────────────────────────────────────────────

class ImageError(Exception):
    """Raised when an image cannot be used at all."""


class ImageTooSmallError(ImageError):
    """The backing file is shorter than the fixed image size."""

    def __init__(self, size: int, required: int):
        super().__init__(
            f"image is too small: {size} bytes (need {required})")
        self.size = size
        self.required = required


class ReadOnlyImageError(ImageError):
    """A write was attempted on an image opened without repair mode."""


# ── Geometry ───────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Geometry:
    """Fixed block/inode layout of a VSFS image.

    The defaults describe the one layout the checker enforces.  Tests
    may build a smaller geometry to keep synthetic images tiny.
    """
    magic: int = VSFS_MAGIC
    block_size: int = BLOCK_SIZE
    total_blocks: int = TOTAL_BLOCKS
    inode_bitmap_block: int = INODE_BITMAP_BLOCK
    data_bitmap_block: int = DATA_BITMAP_BLOCK
    inode_table_start: int = INODE_TABLE_START
    inode_table_blocks: int = INODE_TABLE_BLOCKS
    first_data_block: int = FIRST_DATA_BLOCK
    inode_size: int = INODE_SIZE

    def __post_init__(self):
        if self.block_size < SUPERBLOCK_FIELDS_SIZE:
            raise ValueError(f"Block size {self.block_size} cannot hold "
                             f"the superblock ({SUPERBLOCK_FIELDS_SIZE} bytes)")
        if self.inode_size < INODE_FIELDS_SIZE:
            raise ValueError(f"Inode size {self.inode_size} is smaller "
                             f"than {INODE_FIELDS_SIZE} bytes")
        if self.block_size % self.inode_size:
            raise ValueError("Block size must be a multiple of inode size")
        if self.first_data_block >= self.total_blocks:
            raise ValueError("Data region is empty")
        if self.max_inodes > self.block_size * 8:
            raise ValueError(f"Inode bitmap cannot hold {self.max_inodes} bits")
        if self.data_block_count > self.block_size * 8:
            raise ValueError(
                f"Data bitmap cannot hold {self.data_block_count} bits")

    @property
    def inodes_per_block(self) -> int:
        return self.block_size // self.inode_size

    @property
    def max_inodes(self) -> int:
        return self.inode_table_blocks * self.inodes_per_block

    @property
    def data_block_count(self) -> int:
        return self.total_blocks - self.first_data_block

    @property
    def image_size(self) -> int:
        return self.total_blocks * self.block_size

    def inode_location(self, index: int) -> tuple[int, int]:
        """Return (block, byte offset within block) of inode *index*."""
        block, slot = divmod(index, self.inodes_per_block)
        return self.inode_table_start + block, slot * self.inode_size

    def is_data_block(self, block: int) -> bool:
        return self.first_data_block <= block < self.total_blocks


DEFAULT_GEOMETRY = Geometry()


# ── Records ────────────────────────────────────────────────────────────

@dataclass
class Superblock:
    """The block-0 record.  *raw* keeps the whole block for re-encoding."""
    magic: int
    block_size: int
    total_blocks: int
    inode_bitmap_block: int
    data_bitmap_block: int
    inode_table_start: int
    first_data_block: int
    inode_size: int
    inode_count: int
    raw: bytes = field(default=b"", repr=False, compare=False)

    @classmethod
    def decode(cls, data: bytes | bytearray) -> "Superblock":
        fields = struct.unpack_from(SUPERBLOCK_FMT, data, 0)
        return cls(*fields, raw=bytes(data))

    def encode(self, size: int | None = None) -> bytearray:
        """Serialise over the original block so reserved bytes survive."""
        if size is None:
            size = len(self.raw)
        buf = bytearray(self.raw[:size])
        buf.extend(bytes(size - len(buf)))
        struct.pack_into(SUPERBLOCK_FMT, buf, 0,
                         self.magic, self.block_size, self.total_blocks,
                         self.inode_bitmap_block, self.data_bitmap_block,
                         self.inode_table_start, self.first_data_block,
                         self.inode_size, self.inode_count)
        return buf

    @classmethod
    def for_geometry(cls, geo: Geometry) -> "Superblock":
        """A correct superblock for *geo*, with every inode slot declared."""
        return cls(geo.magic, geo.block_size, geo.total_blocks,
                   geo.inode_bitmap_block, geo.data_bitmap_block,
                   geo.inode_table_start, geo.first_data_block,
                   geo.inode_size, geo.max_inodes,
                   raw=bytes(geo.block_size))


@dataclass
class Inode:
    """One inode slot.  Only the direct pointer is ever interpreted."""
    index: int
    mode: int = 0
    uid: int = 0
    gid: int = 0
    size: int = 0
    atime: int = 0
    ctime: int = 0
    mtime: int = 0
    dtime: int = 0
    links: int = 0
    blocks: int = 0
    direct: int = 0
    single_indirect: int = 0
    double_indirect: int = 0
    triple_indirect: int = 0
    raw: bytes = field(default=b"", repr=False, compare=False)

    @property
    def is_valid(self) -> bool:
        """Live inode: linked and never deleted."""
        return self.links > 0 and self.dtime == 0

    @classmethod
    def decode(cls, index: int, data: bytes | bytearray) -> "Inode":
        fields = struct.unpack_from(INODE_FMT, data, 0)
        return cls(index, *fields, raw=bytes(data))

    def encode(self, size: int | None = None) -> bytearray:
        if size is None:
            size = len(self.raw)
        buf = bytearray(self.raw[:size])
        buf.extend(bytes(size - len(buf)))
        struct.pack_into(INODE_FMT, buf, 0,
                         self.mode, self.uid, self.gid, self.size,
                         self.atime, self.ctime, self.mtime, self.dtime,
                         self.links, self.blocks, self.direct,
                         self.single_indirect, self.double_indirect,
                         self.triple_indirect)
        return buf


# ── Bitmap helpers ─────────────────────────────────────────────────────

def bitmap_get(bmap: bytes | bytearray, index: int) -> bool:
    """Return True if *index* is marked allocated."""
    byte_idx, bit_idx = divmod(index, 8)
    if byte_idx >= len(bmap):
        return False
    return bool(bmap[byte_idx] & (1 << bit_idx))


def bitmap_set(bmap: bytearray, index: int):
    """Mark *index* as allocated."""
    byte_idx, bit_idx = divmod(index, 8)
    if byte_idx < len(bmap):
        bmap[byte_idx] |= (1 << bit_idx)


def bitmap_clear(bmap: bytearray, index: int):
    """Mark *index* as free."""
    byte_idx, bit_idx = divmod(index, 8)
    if byte_idx < len(bmap):
        bmap[byte_idx] &= ~(1 << bit_idx) & 0xFF


def bitmap_bits(bmap: bytes | bytearray, nbits: int) -> np.ndarray:
    """Unpack the first *nbits* bits of *bmap* into a 0/1 uint8 array."""
    raw = np.frombuffer(bytes(bmap), dtype=np.uint8)
    return np.unpackbits(raw, bitorder="little")[:nbits]


def bitmap_count(bmap: bytes | bytearray, nbits: int) -> int:
    """Number of set bits among the first *nbits*."""
    return int(bitmap_bits(bmap, nbits).sum())


# ── Block access ───────────────────────────────────────────────────────

class BlockDevice:
    """Whole-block reads and writes against an image file.

    Opened read-only unless *writable*; a read-only device refuses every
    write so a check without repair can never touch the image.
    """

    def __init__(self, path: str | Path, geometry: Geometry = DEFAULT_GEOMETRY,
                 writable: bool = False):
        self.path = Path(path)
        self.geometry = geometry
        self.writable = writable
        self.writes = 0
        self._file = None

    @property
    def is_open(self) -> bool:
        return self._file is not None

    def open(self) -> "BlockDevice":
        self._file = open(self.path, "r+b" if self.writable else "rb")
        return self

    def close(self):
        if self._file is not None:
            if self.writable:
                self._file.flush()
                os.fsync(self._file.fileno())
            self._file.close()
        self._file = None

    def __enter__(self) -> "BlockDevice":
        return self.open()

    def __exit__(self, exc_type, exc, tb):
        self.close()

    @property
    def size(self) -> int:
        """Actual size of the backing file in bytes."""
        assert self.is_open, "Device not open."
        return os.fstat(self._file.fileno()).st_size

    def check_size(self):
        """Raise ImageTooSmallError unless the file holds every block."""
        size = self.size
        if size < self.geometry.image_size:
            raise ImageTooSmallError(size, self.geometry.image_size)

    def read_block(self, index: int) -> bytearray:
        assert self.is_open, "Device not open."
        bs = self.geometry.block_size
        self._file.seek(index * bs)
        data = self._file.read(bs)
        if len(data) < bs:
            raise ImageError(f"Short read at block {index}")
        return bytearray(data)

    def write_block(self, index: int, data: bytes | bytearray):
        assert self.is_open, "Device not open."
        if not self.writable:
            raise ReadOnlyImageError(
                f"Cannot write block {index}: image opened read-only")
        bs = self.geometry.block_size
        if len(data) != bs:
            raise ValueError(f"Block write needs {bs} bytes, got {len(data)}")
        self._file.seek(index * bs)
        self._file.write(data)
        self.writes += 1

    def read_superblock(self) -> Superblock:
        return Superblock.decode(self.read_block(0))

    def write_superblock(self, sb: Superblock):
        self.write_block(0, sb.encode(self.geometry.block_size))

    def read_inode(self, index: int) -> Inode:
        block, offset = self.geometry.inode_location(index)
        data = self.read_block(block)
        return Inode.decode(index, data[offset : offset + self.geometry.inode_size])

    def write_inode(self, inode: Inode):
        """Rewrite one inode slot, leaving its neighbours untouched."""
        size = self.geometry.inode_size
        block, offset = self.geometry.inode_location(inode.index)
        data = self.read_block(block)
        data[offset : offset + size] = inode.encode(size)
        self.write_block(block, data)


# ── Image-level operations ─────────────────────────────────────────────

def format_image(path: str | Path,
                 geometry: Geometry = DEFAULT_GEOMETRY) -> Path:
    """Create a fresh, empty VSFS image: valid superblock, no live inodes."""
    path = Path(path)
    img = bytearray(geometry.image_size)
    sb = Superblock.for_geometry(geometry)
    img[0 : geometry.block_size] = sb.encode(geometry.block_size)
    path.write_bytes(img)
    return path


def image_info(path: str | Path, geometry: Geometry = DEFAULT_GEOMETRY) -> dict:
    """Return superblock fields and allocation counts for an image."""
    with BlockDevice(path, geometry) as dev:
        size = dev.size
        if size < geometry.image_size:
            return {"size": size, "size_ok": False}
        sb = dev.read_superblock()
        inode_bmap = dev.read_block(geometry.inode_bitmap_block)
        data_bmap = dev.read_block(geometry.data_bitmap_block)
        live = sum(1 for i in range(geometry.max_inodes)
                   if dev.read_inode(i).is_valid)
    return {
        "size": size,
        "size_ok": True,
        "magic": f"0x{sb.magic:04X}",
        "magic_ok": sb.magic == geometry.magic,
        "block_size": sb.block_size,
        "total_blocks": sb.total_blocks,
        "inode_bitmap_block": sb.inode_bitmap_block,
        "data_bitmap_block": sb.data_bitmap_block,
        "inode_table_start": sb.inode_table_start,
        "first_data_block": sb.first_data_block,
        "inode_size": sb.inode_size,
        "inode_count": sb.inode_count,
        "inodes_marked": bitmap_count(inode_bmap, geometry.max_inodes),
        "inodes_live": live,
        "data_blocks_marked": bitmap_count(data_bmap, geometry.data_block_count),
        "data_blocks_total": geometry.data_block_count,
    }


# ── CLI ────────────────────────────────────────────────────────────────

def main(argv: list[str] | None = None) -> int:
    import argparse

    parser = argparse.ArgumentParser(
        prog="vsfs",
        description="VSFS disk image utility",
    )
    sub = parser.add_subparsers(dest="cmd")

    # format — create a blank formatted image
    p_fmt = sub.add_parser("format", help="Create a blank formatted image")
    p_fmt.add_argument("-o", "--output", default="vsfs.img",
                       help="Output path (default: vsfs.img)")

    # info — show superblock and allocation details
    p_info = sub.add_parser("info", help="Show superblock info")
    p_info.add_argument("image", help="Disk image path")

    args = parser.parse_args(argv)

    if args.cmd is None:
        parser.print_help()
        return 0

    if args.cmd == "format":
        format_image(args.output)
        print(f"Formatted {args.output} ({DEFAULT_GEOMETRY.total_blocks} blocks "
              f"× {DEFAULT_GEOMETRY.block_size} bytes)")

    elif args.cmd == "info":
        try:
            info = image_info(args.image)
        except OSError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1
        for k, v in info.items():
            print(f"  {k}: {v}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
