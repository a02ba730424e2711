"""
msix.py - MSIX package writer.

An MSIX is a zip whose payload files are followed by ``AppxManifest.xml``,
``AppxBlockMap.xml`` (SHA-256 of every 64 KiB block of every other part)
and ``[Content_Types].xml``. Entries are stored uncompressed, so block
elements carry no ``Size`` attribute.

A signed package ends with ``AppxSignature.p7x``: ``PKCX`` followed by a
DER PKCS#7 SignedData whose content is an Authenticode SpcIndirectData.
Its digest payload hashes the package as it was before the signature went
in::

    "APPX" "AXPC" sha256(local entries) "AXCD" sha256(central directory + EOCD)
           "AXCT" sha256([Content_Types].xml) "AXBM" sha256(AppxBlockMap.xml)
           "AXCI" 32 zero bytes (no code integrity catalog)
"""

import base64
import hashlib
import logging
import posixpath
import struct
import zipfile
from pathlib import Path
from typing import Dict, List, Optional, Tuple
from xml.etree import ElementTree as ET

from cryptography import x509
from cryptography.hazmat.primitives import serialization

from .errors import PackageInvalid
from .signer import Signer, verify_rsa_sha256

log = logging.getLogger("deploy_toolkit.msix")

FOUNDATION_NS = "http://schemas.microsoft.com/appx/manifest/foundation/windows10"
UAP_NS = "http://schemas.microsoft.com/appx/manifest/uap/windows10"
RESCAP_NS = "http://schemas.microsoft.com/appx/manifest/foundation/windows10/restrictedcapabilities"
BLOCKMAP_NS = "http://schemas.microsoft.com/appx/2010/blockmap"
CONTENT_TYPES_NS = "http://schemas.openxmlformats.org/package/2006/content-types"
SHA256_URI = "http://www.w3.org/2001/04/xmlenc#sha256"

BLOCK_SIZE = 64 * 1024
LOCAL_HEADER_SIZE = 30

MANIFEST_NAME = "AppxManifest.xml"
BLOCKMAP_NAME = "AppxBlockMap.xml"
CONTENT_TYPES_NAME = "[Content_Types].xml"
SIGNATURE_NAME = "AppxSignature.p7x"
ZIP_EPOCH = (1980, 1, 1, 0, 0, 0)

IDENTITY_REQUIRED = ("Name", "Version", "Publisher", "ProcessorArchitecture")

_CONTENT_TYPES = {
    "xml": "application/vnd.ms-appx.manifest+xml",
    "exe": "application/x-msdownload",
    "dll": "application/x-msdownload",
    "png": "image/png",
    "json": "application/json",
}

ET.register_namespace("", FOUNDATION_NS)
ET.register_namespace("uap", UAP_NS)
ET.register_namespace("rescap", RESCAP_NS)


def _xml(root: ET.Element) -> bytes:
    return ET.tostring(root, encoding="utf-8", xml_declaration=True)


def appx_manifest(
    name: str,
    version: str,
    publisher: str,
    arch: str,
    display_name: str,
    publisher_display_name: str,
    executable: str,
    min_version: str = "10.0.17763.0",
    max_version_tested: str = "10.0.22621.0",
    logo: str = "",
) -> bytes:
    f = "{%s}" % FOUNDATION_NS
    uap = "{%s}" % UAP_NS
    rescap = "{%s}" % RESCAP_NS
    root = ET.Element(f + "Package")
    ET.SubElement(root, f + "Identity", {
        "Name": name,
        "Version": version,
        "Publisher": publisher,
        "ProcessorArchitecture": arch,
    })
    props = ET.SubElement(root, f + "Properties")
    ET.SubElement(props, f + "DisplayName").text = display_name
    ET.SubElement(props, f + "PublisherDisplayName").text = publisher_display_name
    ET.SubElement(props, f + "Logo").text = logo
    resources = ET.SubElement(root, f + "Resources")
    ET.SubElement(resources, f + "Resource", {"Language": "en-us"})
    deps = ET.SubElement(root, f + "Dependencies")
    ET.SubElement(deps, f + "TargetDeviceFamily", {
        "Name": "Windows.Desktop",
        "MinVersion": min_version,
        "MaxVersionTested": max_version_tested,
    })
    caps = ET.SubElement(root, f + "Capabilities")
    ET.SubElement(caps, rescap + "Capability", {"Name": "runFullTrust"})
    apps = ET.SubElement(root, f + "Applications")
    app = ET.SubElement(apps, f + "Application", {
        "Id": "App",
        "Executable": executable,
        "EntryPoint": "Windows.FullTrustApplication",
    })
    ET.SubElement(app, uap + "VisualElements", {
        "DisplayName": display_name,
        "Description": display_name,
        "BackgroundColor": "transparent",
        "Square150x150Logo": logo,
        "Square44x44Logo": logo,
    })
    return _xml(root)


def read_identity(manifest: bytes) -> Dict[str, str]:
    try:
        root = ET.fromstring(manifest)
    except ET.ParseError as exc:
        raise PackageInvalid(f"malformed {MANIFEST_NAME}: {exc}") from exc
    identity = root.find("{%s}Identity" % FOUNDATION_NS)
    return dict(identity.attrib) if identity is not None else {}


def content_types(names: List[str], signed: bool = False) -> bytes:
    root = ET.Element("Types", {"xmlns": CONTENT_TYPES_NS})
    seen = set()
    for name in names:
        ext = posixpath.splitext(name)[1].lstrip(".").lower()
        if ext and ext not in seen:
            seen.add(ext)
            ET.SubElement(root, "Default", {
                "Extension": ext,
                "ContentType": _CONTENT_TYPES.get(ext, "application/octet-stream"),
            })
    ET.SubElement(root, "Override", {
        "PartName": "/" + BLOCKMAP_NAME,
        "ContentType": "application/vnd.ms-appx.blockmap+xml",
    })
    if signed:
        ET.SubElement(root, "Override", {
            "PartName": "/" + SIGNATURE_NAME,
            "ContentType": "application/vnd.ms-appx.signature",
        })
    return _xml(root)


def block_map(parts: List[Tuple[str, bytes]]) -> bytes:
    root = ET.Element("BlockMap", {"xmlns": BLOCKMAP_NS, "HashMethod": SHA256_URI})
    for name, data in parts:
        el = ET.SubElement(root, "File", {
            "Name": name.replace("/", "\\"),
            "Size": str(len(data)),
            "LfhSize": str(LOCAL_HEADER_SIZE + len(name.encode("utf-8"))),
        })
        for i in range(0, len(data), BLOCK_SIZE):
            digest = hashlib.sha256(data[i:i + BLOCK_SIZE]).digest()
            ET.SubElement(el, "Block", {"Hash": base64.b64encode(digest).decode("ascii")})
    return _xml(root)


def build_msix(path, manifest: bytes, payload: List[Tuple[str, bytes]],
               signer: Optional[Signer] = None):
    """Write the package; with a *signer* it gets an ``AppxSignature.p7x``."""
    parts = list(payload) + [(MANIFEST_NAME, manifest)]
    names = [name for name, _ in parts]
    blocks = block_map(parts)
    types = content_types(names, signed=signer is not None)
    with zipfile.ZipFile(path, "w", zipfile.ZIP_STORED) as zf:
        for name, data in parts:
            zf.writestr(zipfile.ZipInfo(name, date_time=ZIP_EPOCH), data)
        zf.writestr(zipfile.ZipInfo(BLOCKMAP_NAME, date_time=ZIP_EPOCH), blocks)
        zf.writestr(zipfile.ZipInfo(CONTENT_TYPES_NAME, date_time=ZIP_EPOCH), types)
    if signer is not None:
        digests = package_digests(Path(path).read_bytes(), types, blocks)
        # append mode rewrites the central directory after the new entry
        with zipfile.ZipFile(path, "a") as zf:
            zf.writestr(zipfile.ZipInfo(SIGNATURE_NAME, date_time=ZIP_EPOCH), sign_p7x(signer, digests))
    log.debug("Wrote %s (%d part(s)%s)", path, len(parts), ", signed" if signer else "")


def verify_block_map(zf: zipfile.ZipFile):
    """Raise PackageInvalid unless every listed part matches its block hashes."""
    try:
        root = ET.fromstring(zf.read(BLOCKMAP_NAME))
    except KeyError:
        raise PackageInvalid(f"{BLOCKMAP_NAME} missing") from None
    except ET.ParseError as exc:
        raise PackageInvalid(f"malformed {BLOCKMAP_NAME}: {exc}") from exc
    for el in root.findall("{%s}File" % BLOCKMAP_NS):
        name = el.get("Name", "").replace("\\", "/")
        try:
            data = zf.read(name)
        except KeyError:
            raise PackageInvalid(f"block map lists missing part {name}") from None
        hashes = [b.get("Hash") for b in el.findall("{%s}Block" % BLOCKMAP_NS)]
        actual = [
            base64.b64encode(hashlib.sha256(data[i:i + BLOCK_SIZE]).digest()).decode("ascii")
            for i in range(0, len(data), BLOCK_SIZE)
        ]
        if hashes != actual or int(el.get("Size", "-1")) != len(data):
            raise PackageInvalid(f"block map does not match contents of {name}")


# ---------------------------------------------------------------------------
# Signature
# ---------------------------------------------------------------------------
P7X_MAGIC = b"PKCX"
EOCD_SIGNATURE = b"PK\x05\x06"
CD_SIGNATURE = b"PK\x01\x02"

SHA256_OID = "2.16.840.1.101.3.4.2.1"
RSA_ENCRYPTION_OID = "1.2.840.113549.1.1.1"
SIGNED_DATA_OID = "1.2.840.113549.1.7.2"
CONTENT_TYPE_OID = "1.2.840.113549.1.9.3"
MESSAGE_DIGEST_OID = "1.2.840.113549.1.9.4"
SPC_INDIRECT_DATA_OID = "1.3.6.1.4.1.311.2.1.4"
SPC_SP_OPUS_INFO_OID = "1.3.6.1.4.1.311.2.1.12"
SPC_SIPINFO_OID = "1.3.6.1.4.1.311.2.1.30"
# SIP identity of the AppX subject interface package
SIPINFO_MAGIC = bytes.fromhex("4bdfc50a07cee24db76e23c839a09fd1")
SIPINFO_VERSION = 0x01010000

_NULL = b"\x05\x00"


def _der(tag: int, body: bytes) -> bytes:
    n = len(body)
    if n < 0x80:
        return bytes((tag, n)) + body
    raw = n.to_bytes((n.bit_length() + 7) // 8, "big")
    return bytes((tag, 0x80 | len(raw))) + raw + body


def _seq(*items: bytes) -> bytes:
    return _der(0x30, b"".join(items))


def _set(*items: bytes) -> bytes:
    # DER orders SET OF members by their encoding
    return _der(0x31, b"".join(sorted(items)))


def _int(value: int) -> bytes:
    return _der(0x02, value.to_bytes(value.bit_length() // 8 + 1, "big", signed=True))


def _octets(data: bytes) -> bytes:
    return _der(0x04, data)


def _oid(dotted: str) -> bytes:
    arcs = [int(a) for a in dotted.split(".")]
    body = bytearray((40 * arcs[0] + arcs[1],))
    for arc in arcs[2:]:
        chunk = [arc & 0x7F]
        arc >>= 7
        while arc:
            chunk.append(0x80 | (arc & 0x7F))
            arc >>= 7
        body += bytes(reversed(chunk))
    return _der(0x06, bytes(body))


def _der_read(data: bytes, pos: int = 0) -> Tuple[int, bytes, int]:
    """(tag, value, end) of the element starting at *pos*."""
    if pos + 2 > len(data):
        raise PackageInvalid("truncated signature")
    tag, n = data[pos], data[pos + 1]
    pos += 2
    if n & 0x80:
        count = n & 0x7F
        if not 0 < count <= 4 or pos + count > len(data):
            raise PackageInvalid("bad length in signature")
        n = int.from_bytes(data[pos:pos + count], "big")
        pos += count
    if pos + n > len(data):
        raise PackageInvalid("truncated signature")
    return tag, data[pos:pos + n], pos + n


def _der_children(body: bytes) -> List[Tuple[int, bytes, bytes]]:
    """(tag, value, full encoding) of each element in *body*."""
    items = []
    pos = 0
    while pos < len(body):
        tag, value, end = _der_read(body, pos)
        items.append((tag, value, body[pos:end]))
        pos = end
    return items


def _central_directory(data: bytes) -> Tuple[int, int]:
    """(central directory offset, EOCD offset)."""
    eocd = data.rfind(EOCD_SIGNATURE, max(0, len(data) - 22 - 0xFFFF))
    if eocd < 0 or len(data) - eocd < 22:
        raise PackageInvalid("not a zip archive (no end of central directory)")
    (cd_offset,) = struct.unpack_from("<I", data, eocd + 16)
    if cd_offset > eocd:
        raise PackageInvalid("central directory offset past end of archive")
    return cd_offset, eocd


def package_digests(data: bytes, content_types_xml: bytes, block_map_xml: bytes) -> bytes:
    """Digest payload for an unsigned package held in *data*."""
    cd_offset, _ = _central_directory(data)

    def sha(part: bytes) -> bytes:
        return hashlib.sha256(part).digest()

    return b"".join((
        b"APPX",
        b"AXPC", sha(data[:cd_offset]),
        b"AXCD", sha(data[cd_offset:]),
        b"AXCT", sha(content_types_xml),
        b"AXBM", sha(block_map_xml),
        b"AXCI", bytes(32),
    ))


def _spc_indirect_data(digests: bytes) -> bytes:
    sip_info = _seq(
        _int(SIPINFO_VERSION), _octets(SIPINFO_MAGIC),
        _int(0), _int(0), _int(0), _int(0), _int(0),
    )
    return _seq(
        _seq(_oid(SPC_SIPINFO_OID), sip_info),
        _seq(_seq(_oid(SHA256_OID), _NULL), _octets(digests)),
    )


def _signed_attributes(spc: bytes) -> bytes:
    """The signed attributes as the SET that gets signed."""
    _, spc_value, _ = _der_read(spc)
    return _set(
        _seq(_oid(CONTENT_TYPE_OID), _set(_oid(SPC_INDIRECT_DATA_OID))),
        _seq(_oid(MESSAGE_DIGEST_OID), _set(_octets(hashlib.sha256(spc_value).digest()))),
        _seq(_oid(SPC_SP_OPUS_INFO_OID), _set(_seq())),
    )


def sign_p7x(signer: Signer, digests: bytes) -> bytes:
    """``AppxSignature.p7x`` contents for *digests* (see ``package_digests``)."""
    spc = _spc_indirect_data(digests)
    attrs = _signed_attributes(spc)
    sha256 = _seq(_oid(SHA256_OID), _NULL)
    signer_info = _seq(
        _int(1),
        _seq(signer.cert.issuer.public_bytes(), _int(signer.cert.serial_number)),
        sha256,
        b"\xa0" + attrs[1:],  # [0] IMPLICIT
        _seq(_oid(RSA_ENCRYPTION_OID), _NULL),
        _octets(signer.sign(attrs)),
    )
    signed_data = _seq(
        _int(1),
        _set(sha256),
        _seq(_oid(SPC_INDIRECT_DATA_OID), _der(0xA0, spc)),
        _der(0xA0, signer.cert_der),
        _set(signer_info),
    )
    return P7X_MAGIC + _seq(_oid(SIGNED_DATA_OID), _der(0xA0, signed_data))


def _unsigned_directory(data: bytes, signature_offset: int) -> bytes:
    """Central directory and EOCD as they were before the signature was appended."""
    cd_offset, eocd = _central_directory(data)
    kept = []
    pos = cd_offset
    while pos < eocd:
        if data[pos:pos + 4] != CD_SIGNATURE:
            raise PackageInvalid("corrupt central directory")
        name_len, extra_len, comment_len = struct.unpack_from("<HHH", data, pos + 28)
        end = pos + 46 + name_len + extra_len + comment_len
        if data[pos + 46:pos + 46 + name_len] != SIGNATURE_NAME.encode("ascii"):
            kept.append(data[pos:end])
        pos = end
    directory = b"".join(kept)
    record = bytearray(data[eocd:])
    struct.pack_into("<HHII", record, 8, len(kept), len(kept), len(directory), signature_offset)
    return directory + bytes(record)


def verify_signature(path) -> bool:
    """Check ``AppxSignature.p7x``. False if unsigned; PackageInvalid if wrong."""
    data = Path(path).read_bytes()
    with zipfile.ZipFile(path) as zf:
        if SIGNATURE_NAME not in zf.namelist():
            return False
        p7x = zf.read(SIGNATURE_NAME)
        types = zf.read(CONTENT_TYPES_NAME)
        blocks = zf.read(BLOCKMAP_NAME)
        signature_offset = zf.getinfo(SIGNATURE_NAME).header_offset
    if not p7x.startswith(P7X_MAGIC):
        raise PackageInvalid(f"{SIGNATURE_NAME} does not start with {P7X_MAGIC!r}")

    _, content_info, _ = _der_read(p7x, len(P7X_MAGIC))
    children = _der_children(content_info)
    if len(children) != 2 or children[0][2] != _oid(SIGNED_DATA_OID):
        raise PackageInvalid(f"{SIGNATURE_NAME} is not a PKCS#7 SignedData")
    _, signed_data, _ = _der_read(children[1][1])
    parts = _der_children(signed_data)
    encap = next((p for p in parts if p[0] == 0x30), None)
    certs = next((p for p in parts if p[0] == 0xA0), None)
    infos = [p for p in parts if p[0] == 0x31]
    if encap is None or certs is None or len(infos) < 2:
        raise PackageInvalid(f"{SIGNATURE_NAME} is missing SignedData fields")

    content_type, wrapped = _der_children(encap[1])
    if content_type[2] != _oid(SPC_INDIRECT_DATA_OID):
        raise PackageInvalid(f"{SIGNATURE_NAME} does not carry SpcIndirectData")
    _, spc_body, _ = _der_read(wrapped[1])
    spc = wrapped[1]
    _, digest_info = _der_children(spc_body)
    _, payload = _der_children(digest_info[1])
    unsigned = data[:signature_offset] + _unsigned_directory(data, signature_offset)
    if payload[1] != package_digests(unsigned, types, blocks):
        raise PackageInvalid("package contents do not match the signature digests")

    cert = x509.load_der_x509_certificate(_der_children(certs[1])[0][2])
    public_key = cert.public_key().public_bytes(
        serialization.Encoding.DER,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    signer_info = _der_children(infos[-1][1])[0]
    fields = _der_children(signer_info[1])
    attrs = next((f for f in fields if f[0] == 0xA0), None)
    signature = fields[-1]
    if attrs is None or signature[0] != 0x04:
        raise PackageInvalid(f"{SIGNATURE_NAME} signer info is malformed")
    if b"\x31" + attrs[2][1:] != _signed_attributes(spc):
        raise PackageInvalid(f"{SIGNATURE_NAME} signed attributes do not match its content")
    if not verify_rsa_sha256(public_key, signature[1], b"\x31" + attrs[2][1:]):
        raise PackageInvalid(f"{SIGNATURE_NAME} signature does not verify")
    return True
