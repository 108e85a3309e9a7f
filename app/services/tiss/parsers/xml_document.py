"""
TISS response document
Parses an operator payload once and answers queries by element local name,
so 'ans:', 'tiss:' or unprefixed responses read the same way.
"""

import logging
from typing import Iterator, List, Optional, Tuple, Union

from lxml import etree

logger = logging.getLogger(__name__)

_PARSER = etree.XMLParser(recover=True, remove_comments=True, resolve_entities=False, no_network=True)


def local_name(element) -> str:
    tag = element.tag if isinstance(element.tag, str) else ""
    if "}" in tag:
        tag = tag.split("}", 1)[1]
    return tag.split(":", 1)[-1]


class TISSDocument:
    """Read-only view over a parsed TISS XML payload"""

    def __init__(self, root):
        self.root = root

    @classmethod
    def parse(cls, payload: Union[str, bytes]) -> "TISSDocument":
        """
        Raises:
            ValueError: payload is empty or has no recoverable root element
        """
        if isinstance(payload, str):
            payload = payload.encode("utf-8")
        if not payload or not payload.strip():
            raise ValueError("Resposta XML vazia")
        try:
            root = etree.fromstring(payload, _PARSER)
        except etree.XMLSyntaxError as e:
            raise ValueError(f"Resposta XML inválida: {e}")
        if root is None:
            raise ValueError("Resposta XML sem elemento raiz")
        return cls(root)

    def iter(self, *names: str, within=None, outside: Tuple[str, ...] = ()) -> Iterator:
        """Matching elements in document order, skipping those nested in an ``outside`` block"""
        base = within if within is not None else self.root
        for element in base.iter(etree.Element):
            if local_name(element) not in names:
                continue
            if outside and any(local_name(parent) in outside for parent in element.iterancestors()):
                continue
            yield element

    def find(self, *names: str, within=None):
        """First element matching any of the names, trying names in priority order"""
        for name in names:
            for element in self.iter(name, within=within):
                return element
        return None

    def find_all(self, *names: str, within=None) -> List:
        return list(self.iter(*names, within=within))

    def text(self, *names: str, within=None, outside: Tuple[str, ...] = (), default: Optional[str] = None) -> Optional[str]:
        """Text of the first non-empty element matching the names, in priority order"""
        for name in names:
            for element in self.iter(name, within=within, outside=outside):
                if element.text and element.text.strip():
                    return element.text.strip()
        return default

    def has(self, *names: str) -> bool:
        return self.find(*names) is not None
