"""
Canonicalization of UBL invoice documents for stable hashing/signing.

The digest of an invoice covers everything except the stamp itself:
``UBLExtensions``, ``Signature`` elements and the reserved
``AdditionalDocumentReference`` entries (``QR`` and, by default, ``ICV`` and
``PIH``) are removed by local name before the remainder is serialized with
exclusive XML canonicalization (no comments).
"""

from __future__ import annotations

import hashlib
import re
from collections.abc import Iterable

from lxml import etree

from invoice_stamp.core.config import QR_REFERENCE_ID, get_settings
from invoice_stamp.core.errors import MalformedDocumentError

Document = etree._Element | etree._ElementTree | bytes | str

EXTENSIONS_LOCAL_NAME = "UBLExtensions"
SIGNATURE_LOCAL_NAME = "Signature"
REFERENCE_LOCAL_NAME = "AdditionalDocumentReference"
REFERENCE_ID_LOCAL_NAME = "ID"

# Text input is already decoded; its declared encoding is dropped and UTF-8 used.
_XML_DECLARATION = re.compile(r"^\ufeff?\s*<\?xml\b[^>]*\?>")


def local_name(element: etree._Element) -> str:
    """Return the namespace-free tag name of ``element``."""
    return etree.QName(element).localname


def _make_parser() -> etree.XMLParser:
    return etree.XMLParser(
        remove_blank_text=True,
        resolve_entities=False,
        no_network=True,
    )


def _serialize_input(document: Document) -> bytes:
    if isinstance(document, etree._ElementTree):
        return etree.tostring(document.getroot())
    if isinstance(document, etree._Element):
        return etree.tostring(document)
    if isinstance(document, str):
        return _XML_DECLARATION.sub("", document, count=1).encode("utf-8")
    if isinstance(document, bytes):
        return document
    raise MalformedDocumentError(
        f"Unsupported document type: {type(document).__name__}",
        step="parse",
    )


def _drop_insignificant_whitespace(root: etree._Element) -> None:
    for element in root.iter():
        is_parent = isinstance(element.tag, str) and len(element) > 0
        if is_parent and element.text is not None and not element.text.strip():
            element.text = None
        if element.tail is not None and not element.tail.strip():
            element.tail = None


def parse_document(document: Document) -> etree._Element:
    """Parse ``document`` into a fresh element tree.

    Trees are round-tripped through their serialized form so the caller's
    tree is never shared with, or modified by, the result. Whitespace-only
    text between elements is dropped.

    Raises
    ------
    MalformedDocumentError
        If the input is not well-formed XML.
    """
    data = _serialize_input(document)
    try:
        root = etree.fromstring(data, _make_parser())
    except (etree.XMLSyntaxError, ValueError) as exc:
        raise MalformedDocumentError(f"Document is not well-formed XML: {exc}", step="parse") from exc
    if root is None:
        raise MalformedDocumentError("Document is empty", step="parse")
    _drop_insignificant_whitespace(root)
    return root


def reference_id(element: etree._Element) -> str | None:
    """Return the trimmed ``ID`` child text of a document reference, if any."""
    for child in element.iterchildren(etree.Element):
        if local_name(child) == REFERENCE_ID_LOCAL_NAME:
            return (child.text or "").strip()
    return None


def iter_stamp_elements(
    root: etree._Element,
    reference_ids: Iterable[str],
) -> list[etree._Element]:
    """Collect the elements excluded from hashing, outermost first."""
    markers = frozenset(reference_ids)
    matches: list[etree._Element] = []
    for element in root.iter(etree.Element):
        if element is root:
            continue
        name = local_name(element)
        if name in (EXTENSIONS_LOCAL_NAME, SIGNATURE_LOCAL_NAME):
            matches.append(element)
        elif name == REFERENCE_LOCAL_NAME and reference_id(element) in markers:
            matches.append(element)
    return matches


def find_stamp_reference(document: etree._Element, marker: str) -> etree._Element | None:
    """Return the first ``AdditionalDocumentReference`` whose ``ID`` is ``marker``."""
    for element in document.iter(etree.Element):
        if local_name(element) == REFERENCE_LOCAL_NAME and reference_id(element) == marker:
            return element
    return None


def remove_element(element: etree._Element) -> None:
    """Detach ``element`` from its parent, keeping any non-blank tail text."""
    parent = element.getparent()
    if parent is None:
        return
    tail = element.tail
    if tail and tail.strip():
        previous = element.getprevious()
        if previous is not None:
            previous.tail = (previous.tail or "") + tail
        else:
            parent.text = (parent.text or "") + tail
    parent.remove(element)


def strip_stamp_elements(
    document: Document,
    *,
    reference_ids: Iterable[str] | None = None,
) -> etree._Element:
    """Return a new tree with every stamp-bearing element removed.

    Parameters
    ----------
    document:
        Element, element tree, or serialized XML. It is not modified.
    reference_ids:
        ``AdditionalDocumentReference`` IDs to exclude. Defaults to the
        configured reserved markers; ``QR`` is always excluded.
    """
    if reference_ids is None:
        markers = get_settings().stamp_reference_id_set
    else:
        markers = frozenset(reference_ids) | {QR_REFERENCE_ID}
    root = parse_document(document)
    for element in iter_stamp_elements(root, markers):
        remove_element(element)
    return root


def canonicalize(
    document: Document,
    *,
    reference_ids: Iterable[str] | None = None,
) -> bytes:
    """Return exclusive C14N bytes of the stamp-free document.

    Raises
    ------
    MalformedDocumentError
        If the document cannot be parsed or serialized.
    """
    root = strip_stamp_elements(document, reference_ids=reference_ids)
    try:
        return etree.tostring(
            etree.ElementTree(root),
            method="c14n",
            exclusive=True,
            with_comments=False,
        )
    except (etree.LxmlError, ValueError) as exc:
        raise MalformedDocumentError(
            f"Document could not be canonicalized: {exc}", step="canonicalize"
        ) from exc


def sha256_hex_document(
    document: Document,
    *,
    reference_ids: Iterable[str] | None = None,
) -> str:
    """Compute the SHA-256 hex digest of the canonical document bytes."""
    return hashlib.sha256(canonicalize(document, reference_ids=reference_ids)).hexdigest()
