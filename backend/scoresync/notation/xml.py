"""
Namespace-agnostic ElementTree lookups for MusicXML documents.
"""

from typing import List, Optional
from xml.etree import ElementTree as ET


def get_ns(root: ET.Element) -> dict:
    return {"m": root.tag.split("}")[0].strip("{")} if "}" in root.tag else {}


def local(tag: str) -> str:
    return tag.split("}")[-1] if "}" in tag else tag


def F(elem: ET.Element, path: str, ns: dict) -> Optional[ET.Element]:
    if ns:
        path = "/".join(f"m:{part}" for part in path.split("/"))
    return elem.find(path, ns)


def FA(elem: ET.Element, path: str, ns: dict) -> List[ET.Element]:
    if ns:
        path = "/".join(f"m:{part}" for part in path.split("/"))
    return elem.findall(path, ns)


def text(elem: ET.Element, path: str, ns: dict, default: Optional[str] = None) -> Optional[str]:
    found = F(elem, path, ns)
    if found is None or found.text is None:
        return default
    value = found.text.strip()
    return value if value else default


def iter_local(elem: ET.Element, name: str):
    """Yield descendants with the given local tag name, at any depth."""
    for node in elem.iter():
        if local(node.tag) == name:
            yield node
