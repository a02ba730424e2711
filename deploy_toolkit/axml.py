"""
axml.py - Android binary XML writer for AndroidManifest.xml.

Layout of the compiled document::

    RES_XML_TYPE header
      string pool (UTF-16)       attribute names with resource ids come first
      resource map               u32 id per leading attribute-name string
      start namespace "android"
      start/end element chunks   attributes sorted by resource id
      end namespace

The package manager only reads the binary form, so the tree is built in
Python and serialized here rather than compiled by aapt.
"""

import struct
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple, Union

ANDROID_NS = "http://schemas.android.com/apk/res/android"

RES_STRING_POOL_TYPE = 0x0001
RES_XML_TYPE = 0x0003
RES_XML_START_NAMESPACE_TYPE = 0x0100
RES_XML_END_NAMESPACE_TYPE = 0x0101
RES_XML_START_ELEMENT_TYPE = 0x0102
RES_XML_END_ELEMENT_TYPE = 0x0103
RES_XML_RESOURCE_MAP_TYPE = 0x0180

TYPE_REFERENCE = 0x01
TYPE_STRING = 0x03
TYPE_INT_DEC = 0x10
TYPE_INT_HEX = 0x11
TYPE_INT_BOOLEAN = 0x12

NO_INDEX = 0xFFFFFFFF

# android.R.attr ids for the attributes we emit
ATTR_IDS: Dict[str, int] = {
    "theme": 0x01010000,
    "label": 0x01010001,
    "icon": 0x01010002,
    "name": 0x01010003,
    "hasCode": 0x0101000C,
    "debuggable": 0x0101000F,
    "exported": 0x01010010,
    "screenOrientation": 0x0101001E,
    "configChanges": 0x0101001F,
    "value": 0x01010024,
    "minSdkVersion": 0x0101020C,
    "versionCode": 0x0101021B,
    "versionName": 0x0101021C,
    "targetSdkVersion": 0x01010270,
    "glEsVersion": 0x01010281,
    "required": 0x0101028E,
    "extractNativeLibs": 0x010104EA,
}

Value = Union[str, int, bool]


@dataclass
class Element:
    """An XML element; ``android:`` attributes go in ``android_attrs``."""
    tag: str
    attrs: Dict[str, Value] = field(default_factory=dict)
    android_attrs: Dict[str, Value] = field(default_factory=dict)
    children: List["Element"] = field(default_factory=list)

    def add(self, child: "Element") -> "Element":
        self.children.append(child)
        return child


class _StringPool:
    def __init__(self, resource_names: List[str]):
        self.strings: List[str] = list(resource_names)
        self._index = {s: i for i, s in enumerate(self.strings)}

    def ref(self, value: Optional[str]) -> int:
        if value is None:
            return NO_INDEX
        if value not in self._index:
            self._index[value] = len(self.strings)
            self.strings.append(value)
        return self._index[value]

    def encode(self) -> bytes:
        offsets = []
        data = bytearray()
        for s in self.strings:
            offsets.append(len(data))
            units = s.encode("utf-16-le")
            n = len(units) // 2
            if n > 0x7FFF:
                data += struct.pack("<HH", 0x8000 | (n >> 16), n & 0xFFFF)
            else:
                data += struct.pack("<H", n)
            data += units + b"\x00\x00"
        while len(data) % 4:
            data += b"\x00"
        header_size = 28
        strings_start = header_size + 4 * len(offsets)
        body = struct.pack(f"<{len(offsets)}I", *offsets) + bytes(data)
        header = struct.pack(
            "<HHIIIIII",
            RES_STRING_POOL_TYPE, header_size, header_size + len(body),
            len(self.strings), 0, 0, strings_start, 0,
        )
        return header + body


def _typed(value: Value, pool: _StringPool) -> Tuple[int, int, int]:
    """(raw string index, data type, data) for an attribute value."""
    if isinstance(value, bool):
        return NO_INDEX, TYPE_INT_BOOLEAN, 0xFFFFFFFF if value else 0
    if isinstance(value, int):
        return NO_INDEX, TYPE_INT_DEC, value & 0xFFFFFFFF
    idx = pool.ref(value)
    return idx, TYPE_STRING, idx


def _collect_resource_names(root: Element) -> List[str]:
    names: List[str] = []
    stack = [root]
    while stack:
        el = stack.pop(0)
        for name in el.android_attrs:
            if name not in ATTR_IDS:
                raise ValueError(f"no resource id known for android:{name}")
            if name not in names:
                names.append(name)
        stack.extend(el.children)
    return sorted(names, key=ATTR_IDS.get)


def encode(root: Element) -> bytes:
    """Serialize *root* (the ``<manifest>`` element) to binary XML."""
    resource_names = _collect_resource_names(root)
    pool = _StringPool(resource_names)
    ns_prefix = pool.ref("android")
    ns_uri = pool.ref(ANDROID_NS)

    chunks: List[bytes] = []
    line = [1]

    def node_header(chunk_type: int, size: int) -> bytes:
        header = struct.pack("<HHIII", chunk_type, 16, size, line[0], NO_INDEX)
        line[0] += 1
        return header

    def write(el: Element):
        attrs = []
        ordered = sorted(el.android_attrs.items(), key=lambda kv: ATTR_IDS[kv[0]])
        for name, value in ordered:
            raw, dtype, data = _typed(value, pool)
            attrs.append(struct.pack("<IIIHBBI", ns_uri, pool.ref(name), raw, 8, 0, dtype, data))
        for name, value in sorted(el.attrs.items()):
            raw, dtype, data = _typed(value, pool)
            attrs.append(struct.pack("<IIIHBBI", NO_INDEX, pool.ref(name), raw, 8, 0, dtype, data))
        ext = struct.pack("<IIHHHHHH", NO_INDEX, pool.ref(el.tag), 20, 20, len(attrs), 0, 0, 0)
        body = ext + b"".join(attrs)
        chunks.append(node_header(RES_XML_START_ELEMENT_TYPE, 16 + len(body)) + body)
        for child in el.children:
            write(child)
        chunks.append(
            node_header(RES_XML_END_ELEMENT_TYPE, 24)
            + struct.pack("<II", NO_INDEX, pool.ref(el.tag))
        )

    chunks.append(node_header(RES_XML_START_NAMESPACE_TYPE, 24) + struct.pack("<II", ns_prefix, ns_uri))
    write(root)
    chunks.append(node_header(RES_XML_END_NAMESPACE_TYPE, 24) + struct.pack("<II", ns_prefix, ns_uri))

    # The pool is complete only after every node has been visited.
    pool_chunk = pool.encode()
    ids = [ATTR_IDS[n] for n in resource_names]
    res_map = struct.pack("<HHI", RES_XML_RESOURCE_MAP_TYPE, 8, 8 + 4 * len(ids)) + struct.pack(f"<{len(ids)}I", *ids)
    body = pool_chunk + res_map + b"".join(chunks)
    return struct.pack("<HHI", RES_XML_TYPE, 8, 8 + len(body)) + body


def android_manifest(
    package: str,
    version_code: int,
    version_name: str,
    min_sdk: int,
    target_sdk: int,
    label: str,
    lib_name: str,
    debuggable: bool = False,
    activity: str = "android.app.NativeActivity",
) -> Element:
    """Manifest for a native-activity app loading ``lib<lib_name>.so``."""
    manifest = Element(
        "manifest",
        attrs={"package": package},
        android_attrs={"versionCode": version_code, "versionName": version_name},
    )
    manifest.add(Element("uses-sdk", android_attrs={
        "minSdkVersion": min_sdk, "targetSdkVersion": target_sdk,
    }))
    app = manifest.add(Element("application", android_attrs={
        "label": label,
        "hasCode": False,
        "debuggable": debuggable,
        "extractNativeLibs": True,
    }))
    act = app.add(Element("activity", android_attrs={
        "name": activity,
        "label": label,
        "exported": True,
        # orientation|keyboardHidden|screenSize
        "configChanges": 0x04A0,
    }))
    act.add(Element("meta-data", android_attrs={"name": "android.app.lib_name", "value": lib_name}))
    intent = act.add(Element("intent-filter"))
    intent.add(Element("action", android_attrs={"name": "android.intent.action.MAIN"}))
    intent.add(Element("category", android_attrs={"name": "android.intent.category.LAUNCHER"}))
    return manifest
