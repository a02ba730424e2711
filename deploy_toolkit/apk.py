"""
apk.py - APK assembly and APK Signature Scheme v2.

The v2 scheme inserts an *APK Signing Block* between the zip entries and
the central directory::

    u64 size | (u64 len, u32 id, value)* | u64 size | "APK Sig Block 42"

The signed digest covers three sections (zip entries, central directory,
end-of-central-directory with its CD offset pointing at the signing block),
each cut into 1 MiB chunks. A chunk digest is SHA-256(0xa5 | u32 len |
chunk); the top level is SHA-256(0x5a | u32 count | chunk digests).
"""

import hashlib
import logging
import struct
import zipfile
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from .errors import PackageInvalid
from .signer import Signer, verify_rsa_sha256

log = logging.getLogger("deploy_toolkit.apk")

APK_SIG_BLOCK_MAGIC = b"APK Sig Block 42"
APK_SIGNATURE_SCHEME_V2_ID = 0x7109871A
RSA_PKCS1V15_SHA2_256 = 0x0103
CHUNK_SIZE = 1024 * 1024

EOCD_SIGNATURE = b"PK\x05\x06"
EOCD_MIN_SIZE = 22
ZIP_EPOCH = (1980, 1, 1, 0, 0, 0)

# zipalign's extra field: u16 alignment, then zero padding
ALIGNMENT_EXTRA_ID = 0xD935
PAGE_ALIGNMENT = 4096
STORED_ALIGNMENT = 4


# ---------------------------------------------------------------------------
# Zip assembly
# ---------------------------------------------------------------------------
def alignment_extra(header_offset: int, name: str, align: int) -> bytes:
    """Extra field that puts the entry's data on an *align* boundary."""
    data_start = header_offset + 30 + len(name.encode("utf-8")) + 6
    size = 6 + (-data_start) % align
    return struct.pack("<HHH", ALIGNMENT_EXTRA_ID, size - 4, align) + b"\0" * (size - 6)


def write_entry(zf: zipfile.ZipFile, name: str, data: bytes, compress: bool = True,
                align: int = STORED_ALIGNMENT):
    """Add one entry; stored entries start on an *align* boundary so they can be mapped."""
    info = zipfile.ZipInfo(name, date_time=ZIP_EPOCH)
    info.compress_type = zipfile.ZIP_DEFLATED if compress else zipfile.ZIP_STORED
    info.external_attr = 0o644 << 16
    if not compress:
        info.extra = alignment_extra(zf.fp.tell(), name, align)
    zf.writestr(info, data)


def build_apk(
    path: Path,
    manifest: bytes,
    libraries: Dict[str, Path],
    assets: Iterable[Tuple[Path, str]] = (),
    dex: Optional[Path] = None,
):
    """Write an unsigned APK.

    *libraries* maps the in-zip path (``lib/<abi>/lib<name>.so``) to the
    built shared object; they are stored page-aligned, the layout
    ``zipalign -p`` produces. *assets* yields ``(file, relative name)`` pairs.
    """
    with zipfile.ZipFile(path, "w") as zf:
        write_entry(zf, "AndroidManifest.xml", manifest)
        if dex is not None:
            write_entry(zf, "classes.dex", Path(dex).read_bytes())
        for name, lib in sorted(libraries.items()):
            write_entry(zf, name, Path(lib).read_bytes(), compress=False, align=PAGE_ALIGNMENT)
        for src, rel in sorted(assets, key=lambda a: a[1]):
            write_entry(zf, f"assets/{rel}", Path(src).read_bytes(), compress=False)


# ---------------------------------------------------------------------------
# Signing
# ---------------------------------------------------------------------------
def _lp(data: bytes) -> bytes:
    return struct.pack("<I", len(data)) + data


class _Reader:
    def __init__(self, data: bytes):
        self.data = data
        self.pos = 0

    def remaining(self) -> int:
        return len(self.data) - self.pos

    def u32(self) -> int:
        if self.remaining() < 4:
            raise PackageInvalid("truncated APK signature block")
        (v,) = struct.unpack_from("<I", self.data, self.pos)
        self.pos += 4
        return v

    def lp(self) -> bytes:
        n = self.u32()
        if self.remaining() < n:
            raise PackageInvalid("truncated APK signature block")
        v = self.data[self.pos:self.pos + n]
        self.pos += n
        return v

    def lp_sequence(self) -> List[bytes]:
        inner = _Reader(self.lp())
        items = []
        while inner.remaining():
            items.append(inner.lp())
        return items


def _find_eocd(data: bytes) -> int:
    start = max(0, len(data) - EOCD_MIN_SIZE - 0xFFFF)
    offset = data.rfind(EOCD_SIGNATURE, start)
    if offset < 0 or len(data) - offset < EOCD_MIN_SIZE:
        raise PackageInvalid("not a zip archive (no end of central directory)")
    return offset


def _zip_layout(data: bytes) -> Tuple[int, int]:
    """(central directory offset, EOCD offset)."""
    eocd = _find_eocd(data)
    (cd_offset,) = struct.unpack_from("<I", data, eocd + 16)
    if cd_offset > eocd:
        raise PackageInvalid("central directory offset past end of archive")
    return cd_offset, eocd


def _patched_eocd(data: bytes, eocd: int, cd_offset: int) -> bytes:
    record = bytearray(data[eocd:])
    struct.pack_into("<I", record, 16, cd_offset)
    return bytes(record)


def compute_digest(data: bytes, signing_block_start: int, cd_offset: int, eocd: int) -> bytes:
    sections = (
        data[:signing_block_start],
        data[cd_offset:eocd],
        _patched_eocd(data, eocd, signing_block_start),
    )
    chunk_digests = []
    for section in sections:
        for i in range(0, len(section), CHUNK_SIZE):
            chunk = section[i:i + CHUNK_SIZE]
            chunk_digests.append(
                hashlib.sha256(b"\xa5" + struct.pack("<I", len(chunk)) + chunk).digest()
            )
    return hashlib.sha256(
        b"\x5a" + struct.pack("<I", len(chunk_digests)) + b"".join(chunk_digests)
    ).digest()


def _signing_block(data: bytes, cd_offset: int) -> Optional[Tuple[int, bytes]]:
    """(start offset, pairs) of an existing signing block, if any."""
    if cd_offset < 32 or data[cd_offset - 16:cd_offset] != APK_SIG_BLOCK_MAGIC:
        return None
    (size,) = struct.unpack_from("<Q", data, cd_offset - 24)
    start = cd_offset - size - 8
    if start < 0:
        raise PackageInvalid("APK signing block size out of range")
    (head_size,) = struct.unpack_from("<Q", data, start)
    if head_size != size:
        raise PackageInvalid("APK signing block sizes disagree")
    return start, data[start + 8:cd_offset - 24]


def sign_apk(path: Path, signer: Signer):
    """Insert a v2 signing block into the APK at *path*, in place."""
    data = Path(path).read_bytes()
    cd_offset, eocd = _zip_layout(data)
    existing = _signing_block(data, cd_offset)
    if existing is not None:
        # re-signing: drop the old block first
        start = existing[0]
        data = data[:start] + data[cd_offset:eocd] + _patched_eocd(data, eocd, start)
        cd_offset, eocd = _zip_layout(data)

    digest = compute_digest(data, cd_offset, cd_offset, eocd)
    signed_data = (
        _lp(_lp(struct.pack("<I", RSA_PKCS1V15_SHA2_256) + _lp(digest)))
        + _lp(_lp(signer.cert_der))
        + _lp(b"")
    )
    signature = signer.sign(signed_data)
    signer_block = (
        _lp(signed_data)
        + _lp(_lp(struct.pack("<I", RSA_PKCS1V15_SHA2_256) + _lp(signature)))
        + _lp(signer.public_key_der)
    )
    value = _lp(_lp(signer_block))
    pair = struct.pack("<QI", 4 + len(value), APK_SIGNATURE_SCHEME_V2_ID) + value
    size = len(pair) + 8 + len(APK_SIG_BLOCK_MAGIC)
    block = struct.pack("<Q", size) + pair + struct.pack("<Q", size) + APK_SIG_BLOCK_MAGIC

    signed = (
        data[:cd_offset]
        + block
        + data[cd_offset:eocd]
        + _patched_eocd(data, eocd, cd_offset + len(block))
    )
    Path(path).write_bytes(signed)
    log.debug("Signed %s (%d byte signing block)", Path(path).name, len(block))


def verify_apk(path: Path) -> bool:
    """Check the v2 signature. False if unsigned; PackageInvalid if wrong."""
    data = Path(path).read_bytes()
    cd_offset, eocd = _zip_layout(data)
    found = _signing_block(data, cd_offset)
    if found is None:
        return False
    start, pairs = found

    reader = _Reader(pairs)
    value = None
    while reader.remaining() >= 12:
        (length,) = struct.unpack_from("<Q", pairs, reader.pos)
        (pair_id,) = struct.unpack_from("<I", pairs, reader.pos + 8)
        if pair_id == APK_SIGNATURE_SCHEME_V2_ID:
            value = pairs[reader.pos + 12:reader.pos + 8 + length]
        reader.pos += 8 + length
    if value is None:
        return False

    signers = _Reader(value).lp_sequence()
    if not signers:
        raise PackageInvalid("APK v2 block has no signers")
    expected = compute_digest(data, start, cd_offset, eocd)
    for signer_bytes in signers:
        r = _Reader(signer_bytes)
        signed_data = r.lp()
        signatures = r.lp_sequence()
        public_key = r.lp()

        sig = next((s for s in signatures
                    if struct.unpack_from("<I", s)[0] == RSA_PKCS1V15_SHA2_256), None)
        if sig is None:
            raise PackageInvalid("no supported signature algorithm in APK v2 block")
        if not verify_rsa_sha256(public_key, _Reader(sig[4:]).lp(), signed_data):
            raise PackageInvalid("APK v2 signature does not verify")

        sd = _Reader(signed_data)
        digests = sd.lp_sequence()
        digest = next((d for d in digests
                       if struct.unpack_from("<I", d)[0] == RSA_PKCS1V15_SHA2_256), None)
        if digest is None or _Reader(digest[4:]).lp() != expected:
            raise PackageInvalid("APK contents do not match the v2 digest")
    return True
