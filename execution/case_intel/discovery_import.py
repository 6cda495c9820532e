"""
Discovery request import.

Parses pasted discovery requests ("RFP 1: ...", "Interrogatory No. 3 - ...")
or a type,number,text CSV into DiscoveryRequest objects with a detected
category hint.
"""

import csv
import re
import logging
from typing import Iterable, Optional
from dataclasses import dataclass, field

from .discovery import DiscoveryRequest, InvalidDiscoveryRequestError, detect_category

logger = logging.getLogger(__name__)

RFP_PATTERN = re.compile(
    r"^(?:RFP|REQUEST\s+FOR\s+PRODUCTION)(?:\s+(?:NO\.?|#))?\s*(\d+)\s*[:\-\.]\s*(.+)",
    re.IGNORECASE,
)
INTERROGATORY_PATTERN = re.compile(
    r"^(?:INTERROGATORY|INTERROG)(?:\s+(?:NO\.?|#))?\s*(\d+)\s*[:\-\.]\s*(.+)",
    re.IGNORECASE,
)
CSV_HEADER_PATTERN = re.compile(r"^type\s*,\s*number\s*,\s*text", re.IGNORECASE)

_LINE_PATTERNS = [
    ("RFP", RFP_PATTERN),
    ("Interrogatory", INTERROGATORY_PATTERN),
]


@dataclass
class ParsedRequest:
    type: str
    number: int
    text: str


@dataclass
class ImportValidation:
    valid: bool
    count: int
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"valid": self.valid, "count": self.count, "errors": self.errors}


@dataclass
class ImportResult:
    """Requests built from an import, plus the entries that were rejected."""
    requests: list[DiscoveryRequest] = field(default_factory=list)
    errors: list[dict] = field(default_factory=list)

    @property
    def imported(self) -> int:
        return len(self.requests)

    @property
    def failed(self) -> int:
        return len(self.errors)

    def to_dict(self) -> dict:
        return {
            "imported": self.imported,
            "failed": self.failed,
            "requests": [r.to_dict() for r in self.requests],
            "errors": self.errors,
        }


def parse_discovery_text(text: str) -> list[ParsedRequest]:
    """
    Parse numbered requests from free text or CSV.

    Lines that start a request begin a new entry; following non-blank lines
    are appended to it, and a blank line closes it. Lines before the first
    request are ignored.
    """
    if not text:
        return []

    lines = text.splitlines()
    if lines and CSV_HEADER_PATTERN.match(lines[0].strip()):
        return _parse_csv(lines[1:])

    requests = []
    current: Optional[ParsedRequest] = None

    for raw in lines:
        line = raw.strip()
        if not line:
            if current:
                requests.append(current)
                current = None
            continue

        started = _match_request_line(line)
        if started:
            if current:
                requests.append(current)
            current = started
        elif current:
            current.text += "\n" + line

    if current:
        requests.append(current)
    return requests


def _match_request_line(line: str) -> Optional[ParsedRequest]:
    for request_type, pattern in _LINE_PATTERNS:
        match = pattern.match(line)
        if match:
            return ParsedRequest(
                type=request_type,
                number=int(match.group(1)),
                text=match.group(2).strip(),
            )
    return None


def _parse_csv(lines: list[str]) -> list[ParsedRequest]:
    requests = []
    for row in csv.reader(line.strip() for line in lines if line.strip()):
        if len(row) < 3:
            continue
        request_type = row[0].strip().upper()
        number = row[1].strip()
        text = ",".join(row[2:]).strip()

        if request_type not in ("RFP", "INTERROGATORY") or not number.isdigit() or not text:
            logger.debug(f"Skipping CSV row: {row}")
            continue
        requests.append(ParsedRequest(
            type="RFP" if request_type == "RFP" else "Interrogatory",
            number=int(number),
            text=text,
        ))
    return requests


def validate_import(text: str) -> ImportValidation:
    """Check an import for emptiness and duplicate (type, number) pairs."""
    parsed = parse_discovery_text(text)
    errors = []

    if not parsed:
        errors.append("No valid discovery requests found in the text")

    seen = set()
    for request in parsed:
        key = (request.type, request.number)
        if key in seen:
            errors.append(f"Duplicate {request.type} {request.number} in import")
        seen.add(key)

    return ImportValidation(valid=not errors, count=len(parsed), errors=errors)


def import_requests(text: str, existing: Optional[Iterable[tuple[str, int]]] = None) -> ImportResult:
    """
    Build DiscoveryRequest objects from import text.

    Args:
        text: Pasted requests or CSV
        existing: (type, number) pairs already on the case; these are rejected

    Each accepted request gets category_hint = detect_category(text).
    """
    taken = set(existing or ())
    result = ImportResult()

    for position, parsed in enumerate(parse_discovery_text(text), 1):
        key = (parsed.type, parsed.number)
        if key in taken:
            result.errors.append({
                "line": position,
                "error": f"{parsed.type} {parsed.number} already exists",
            })
            continue

        try:
            request = DiscoveryRequest(
                type=parsed.type,
                number=parsed.number,
                text=parsed.text,
                category_hint=detect_category(parsed.text),
            )
        except InvalidDiscoveryRequestError as e:
            result.errors.append({"line": position, "error": str(e)})
            continue

        taken.add(key)
        result.requests.append(request)

    logger.info(f"Imported {result.imported} discovery requests ({result.failed} rejected)")
    return result
