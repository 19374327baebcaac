"""
Inspection of provider response bodies for errors and warnings.

Bodies are otherwise opaque: only ``Error``/``Warning`` elements (XML, any
namespace) or ``errors``/``warnings`` arrays (JSON) are looked at.
"""

import json
from typing import Any, Dict, List, Tuple
from xml.etree.ElementTree import Element, ParseError

from defusedxml import DefusedXmlException
from defusedxml import ElementTree as ET

from ndc_shared.errors import ProviderError


def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _xml_entry(element: Element) -> ProviderError:
    attrs = {_local_name(k).lower(): v for k, v in element.attrib.items()}
    children = {_local_name(child.tag).lower(): (child.text or "").strip() for child in element}

    message = (
        children.get("desctext")
        or children.get("description")
        or children.get("shorttext")
        or (element.text or "").strip()
        or attrs.get("shorttext")
        or "Provider reported an error"
    )
    return ProviderError(
        code=attrs.get("code") or children.get("code") or children.get("errorcode") or None,
        message=message,
        type=attrs.get("type") or children.get("typecode") or None,
        owner=attrs.get("owner") or children.get("ownername") or None
    )


def _from_xml(body: str) -> Tuple[List[ProviderError], List[ProviderError]]:
    try:
        root = ET.fromstring(body.encode("utf-8"), forbid_dtd=True)
    except (ParseError, DefusedXmlException):
        return [], []

    errors: List[ProviderError] = []
    warnings: List[ProviderError] = []
    for element in root.iter():
        name = _local_name(element.tag) if isinstance(element.tag, str) else ""
        if name == "Error":
            errors.append(_xml_entry(element))
        elif name == "Warning":
            warnings.append(_xml_entry(element))
    return errors, warnings


def _json_entry(item: Any) -> ProviderError:
    if not isinstance(item, dict):
        return ProviderError(message=str(item))
    lowered: Dict[str, Any] = {str(k).lower(): v for k, v in item.items()}
    code = lowered.get("code") or lowered.get("errorcode")
    return ProviderError(
        code=str(code) if code is not None else None,
        message=str(lowered.get("message") or lowered.get("description") or lowered.get("desctext")
                    or "Provider reported an error"),
        type=lowered.get("type") or lowered.get("typecode"),
        owner=lowered.get("owner")
    )


def _from_json(body: str) -> Tuple[List[ProviderError], List[ProviderError]]:
    try:
        document = json.loads(body)
    except ValueError:
        return [], []
    if not isinstance(document, dict):
        return [], []

    lowered = {str(k).lower(): v for k, v in document.items()}
    raw_errors = lowered.get("errors") or []
    raw_warnings = lowered.get("warnings") or []
    if not isinstance(raw_errors, list):
        raw_errors = [raw_errors]
    if not isinstance(raw_warnings, list):
        raw_warnings = [raw_warnings]
    return [_json_entry(e) for e in raw_errors], [_json_entry(w) for w in raw_warnings]


def inspect_body(body: str) -> Tuple[List[ProviderError], List[ProviderError]]:
    """Return ``(errors, warnings)`` found in a provider response body."""
    if not body:
        return [], []
    stripped = body.lstrip()
    if stripped.startswith("<"):
        return _from_xml(stripped)
    if stripped.startswith("{"):
        return _from_json(stripped)
    return [], []
