from __future__ import annotations

import struct
from typing import List

import pytest

from deploy_toolkit import axml


def _strings(data: bytes) -> List[str]:
    """Decode the string pool that follows the 8-byte XML header."""
    chunk_type, header_size, size, count, _, _, start, _ = struct.unpack_from("<HHIIIIII", data, 8)
    assert chunk_type == axml.RES_STRING_POOL_TYPE
    offsets = struct.unpack_from(f"<{count}I", data, 8 + header_size)
    out = []
    for off in offsets:
        pos = 8 + start + off
        (n,) = struct.unpack_from("<H", data, pos)
        out.append(data[pos + 2:pos + 2 + 2 * n].decode("utf-16-le"))
    return out


def _manifest() -> bytes:
    tree = axml.android_manifest(
        "com.example.hello", 7, "1.2.0", 26, 34, "Hello", "hello", debuggable=True,
    )
    return axml.encode(tree)


def test_header_covers_whole_document() -> None:
    data = _manifest()
    chunk_type, header_size, size = struct.unpack_from("<HHI", data, 0)
    assert (chunk_type, header_size) == (axml.RES_XML_TYPE, 8)
    assert size == len(data)


def test_resource_map_matches_leading_strings() -> None:
    data = _manifest()
    _, header_size, pool_size = struct.unpack_from("<HHI", data, 8)
    map_at = 8 + pool_size
    map_type, _, map_size = struct.unpack_from("<HHI", data, map_at)
    assert map_type == axml.RES_XML_RESOURCE_MAP_TYPE
    ids = struct.unpack_from(f"<{(map_size - 8) // 4}I", data, map_at + 8)

    strings = _strings(data)
    assert [axml.ATTR_IDS[s] for s in strings[:len(ids)]] == list(ids)
    assert list(ids) == sorted(ids)


def test_pool_holds_names_and_values() -> None:
    strings = _strings(_manifest())
    for expected in ("android", axml.ANDROID_NS, "manifest", "package",
                     "com.example.hello", "1.2.0", "android.app.lib_name", "hello"):
        assert expected in strings


def test_unknown_android_attribute_is_rejected() -> None:
    root = axml.Element("manifest", android_attrs={"notAnAttribute": 1})
    with pytest.raises(ValueError, match="notAnAttribute"):
        axml.encode(root)
