"""
Discovery Request Matcher

Scores how well a case's classified documents answer formal discovery
requests (Requests for Production and Interrogatories).

Scoring is a deterministic, additive heuristic over six signals:

    CATEGORY          40   request category == document category
    PARTIAL_CATEGORY  25   one category name contains the other
    SUBTYPE           10   per request keyword in the subtype (max 20)
    FILENAME           5   per request keyword in the file name (max 15)
    CONTENT            3   per request keyword in summary/metadata text (max 15)
    DATE              10   request date span overlaps the document's date range

Totals are clamped to 100. A request is complete once any document scores
70 or more, partial when something scores at least min_score, and
incomplete otherwise.
"""

import re
import logging
import calendar
from datetime import date, timedelta
from enum import Enum
from typing import Optional
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


# =============================================================================
# Vocabulary
# =============================================================================

CATEGORY_KEYWORDS = {
    "Financial": [
        "bank", "statement", "account", "deposit", "withdrawal", "balance",
        "tax", "return", "w-2", "w2", "1099", "income", "expense",
        "credit", "card", "loan", "mortgage", "debt", "payment",
        "paycheck", "pay stub", "salary", "wage", "earnings",
        "investment", "401k", "ira", "stock", "bond", "retirement",
        "financial", "money", "funds", "assets", "liabilities",
    ],
    "Medical": [
        "medical", "health", "doctor", "hospital", "clinic", "prescription",
        "diagnosis", "treatment", "therapy", "insurance", "bill",
        "record", "chart", "lab", "test", "result", "medication",
        "mental health", "counseling", "psychiatrist", "psychologist",
    ],
    "Legal": [
        "court", "order", "custody", "visitation", "parenting", "divorce",
        "petition", "motion", "judgment", "decree", "agreement",
        "police", "arrest", "report", "restraining", "protective",
        "attorney", "lawyer", "legal", "settlement", "mediation",
    ],
    "Communications": [
        "email", "text", "message", "letter", "correspondence", "communication",
        "screenshot", "chat", "voicemail", "phone", "call", "sms",
    ],
    "Property": [
        "property", "deed", "title", "house", "home", "real estate",
        "vehicle", "car", "auto", "registration", "insurance",
        "appraisal", "valuation", "asset",
    ],
    "Employment": [
        "employment", "employer", "job", "work", "company", "business",
        "contract", "offer", "termination", "benefits", "hr",
        "schedule", "hours", "overtime",
    ],
    "Personal": [
        "birth", "certificate", "marriage", "license", "id", "identification",
        "passport", "driver", "social security", "ssn",
    ],
    "Parenting": [
        "child", "children", "school", "education", "daycare", "childcare",
        "extracurricular", "activity", "medical", "pediatric", "custody",
        "parenting", "visitation", "schedule",
    ],
}

MONTHS = [
    "january", "february", "march", "april", "may", "june",
    "july", "august", "september", "october", "november", "december",
]

DATE_KEYWORDS = [
    "from", "to", "between", "since", "through", "during",
    *MONTHS,
    "2020", "2021", "2022", "2023", "2024", "2025",
]

KEYWORD_STOPWORDS = frozenset({
    "the", "and", "for", "are", "but", "not", "you", "all", "can",
    "her", "was", "one", "our", "out", "has", "have", "been", "were",
    "any", "each", "which", "their", "will", "there", "than", "that",
    "this", "with", "from", "your", "they", "make", "more", "when",
    "other", "please", "provide", "include", "including",
    "request", "production", "interrogatory", "documents", "document",
})

_NON_WORD = re.compile(r"[^\w\s]")
_DATE_KEYWORD_PATTERN = re.compile(r"\b(?:" + "|".join(DATE_KEYWORDS) + r")\b")
_YEAR_PATTERN = re.compile(r"\b(?:19|20)\d{2}\b")

MONTH_NUMBERS = {name: i + 1 for i, name in enumerate(MONTHS)}
MONTH_NUMBERS.update({name[:3]: i + 1 for i, name in enumerate(MONTHS)})
MONTH_NUMBERS["sept"] = 9

_MONTH_NAME = r"(?:" + "|".join(sorted(MONTH_NUMBERS, key=len, reverse=True)) + r")\.?"
# One date expression: ISO day, US numeric day, "March 5, 2024", "March 2024" or a year
_DATE_EXPR = (
    r"(?:\d{4}-\d{1,2}-\d{1,2}"
    r"|\d{1,2}/\d{1,2}/\d{4}"
    rf"|{_MONTH_NAME}\s+\d{{1,2}}(?:st|nd|rd|th)?,?\s+\d{{4}}"
    rf"|{_MONTH_NAME}\s+\d{{4}}"
    r"|(?:19|20)\d{2})"
)
_OPEN_END = r"(?:present|current|now|today|date)"
_DATE_EXPR_PATTERN = re.compile(rf"\b{_DATE_EXPR}\b")
_RANGE_PATTERN = re.compile(
    rf"\b(?:(?:from|between)\s+)?({_DATE_EXPR})\s*"
    rf"(?:-|\u2013|\u2014|\bto\b|\bthrough\b|\bthru\b|\buntil\b|\btill\b|\band\b)\s*"
    rf"(?:the\s+)?({_DATE_EXPR}|{_OPEN_END})\b"
)
_SINCE_PATTERN = re.compile(rf"\b(?:since|after|starting|beginning)\s+(?:on\s+|in\s+)?({_DATE_EXPR})\b")
_UNTIL_PATTERN = re.compile(rf"\b(through|thru|until|till|before|prior\s+to)\s+({_DATE_EXPR})\b")

# Minimum summed keyword length for detect_category to commit to a category
CATEGORY_DETECTION_THRESHOLD = 3

REQUEST_TYPES = ("RFP", "Interrogatory")
_REQUEST_TYPE_ALIASES = {t.lower(): t for t in REQUEST_TYPES}


# =============================================================================
# Types
# =============================================================================

class InvalidDiscoveryRequestError(ValueError):
    """A discovery request failed validation."""

    def __init__(self, message: str, field_name: Optional[str] = None):
        self.field_name = field_name
        super().__init__(message)


@dataclass(frozen=True)
class DateRange:
    """Inclusive span of days named by a request. A missing bound is open-ended."""
    start: Optional[date]
    end: Optional[date]
    text: str = ""

    def overlaps(self, start: date, end: date) -> bool:
        return start <= (self.end or date.max) and end >= (self.start or date.min)

    def to_dict(self) -> dict:
        return {
            "start": self.start.isoformat() if self.start else None,
            "end": self.end.isoformat() if self.end else None,
            "text": self.text,
        }


class MatchSignal(str, Enum):
    CATEGORY = "category"
    PARTIAL_CATEGORY = "partial_category"
    SUBTYPE = "subtype"
    FILENAME = "filename"
    CONTENT = "content"
    DATE = "date"
    GENERAL = "general"

    @property
    def label(self) -> str:
        return _SIGNAL_LABELS[self]


_SIGNAL_LABELS = {
    MatchSignal.CATEGORY: "Category match",
    MatchSignal.PARTIAL_CATEGORY: "Partial category match",
    MatchSignal.SUBTYPE: "Subtype match",
    MatchSignal.FILENAME: "Filename match",
    MatchSignal.CONTENT: "Content match",
    MatchSignal.DATE: "Has date range",
    MatchSignal.GENERAL: "General match",
}

# Tie-break order for match_reason
SIGNAL_PRIORITY = [
    MatchSignal.CATEGORY,
    MatchSignal.PARTIAL_CATEGORY,
    MatchSignal.SUBTYPE,
    MatchSignal.FILENAME,
    MatchSignal.CONTENT,
    MatchSignal.DATE,
]


class MatchStatus(str, Enum):
    COMPLETE = "complete"
    PARTIAL = "partial"
    INCOMPLETE = "incomplete"


@dataclass
class DiscoveryRequest:
    """A Request for Production or Interrogatory."""
    type: str
    number: int
    text: str
    id: Optional[str] = None
    category_hint: Optional[str] = None

    def __post_init__(self):
        normalized = _REQUEST_TYPE_ALIASES.get(str(self.type).strip().lower())
        if normalized is None:
            raise InvalidDiscoveryRequestError(
                f"Invalid request type {self.type!r}; expected one of {list(REQUEST_TYPES)}",
                field_name="type",
            )
        self.type = normalized

        if isinstance(self.number, bool) or not isinstance(self.number, int) or self.number < 1:
            raise InvalidDiscoveryRequestError(
                f"Request number must be a positive integer, got {self.number!r}",
                field_name="number",
            )

        if not isinstance(self.text, str) or not self.text.strip():
            raise InvalidDiscoveryRequestError("Request text is required", field_name="text")

    @property
    def label(self) -> str:
        return f"{self.type} {self.number}"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type,
            "number": self.number,
            "text": self.text,
            "category_hint": self.category_hint,
        }


@dataclass
class MatchedDocument:
    """A document that satisfies a request at or above min_score."""
    document_id: str
    file_name: str
    category: Optional[str]
    subtype: Optional[str]
    confidence: Optional[int]
    match_score: int
    match_reason: MatchSignal

    def to_dict(self) -> dict:
        return {
            "document_id": self.document_id,
            "file_name": self.file_name,
            "category": self.category,
            "subtype": self.subtype,
            "confidence": self.confidence,
            "match_score": self.match_score,
            "match_reason": self.match_reason.value,
            "match_reason_label": self.match_reason.label,
        }


@dataclass
class MatchResult:
    """How well a case's documents answer one request."""
    request: DiscoveryRequest
    status: MatchStatus
    completion_percentage: int
    matching_documents: list[MatchedDocument] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "request": self.request.to_dict(),
            "status": self.status.value,
            "completion_percentage": self.completion_percentage,
            "matching_documents": [d.to_dict() for d in self.matching_documents],
        }


@dataclass
class ComplianceStats:
    """Roll-up over a set of match results."""
    total_requests: int = 0
    complete_requests: int = 0
    partial_requests: int = 0
    incomplete_requests: int = 0
    overall_compliance_score: int = 0
    documents_with_matches: int = 0
    unmatched_documents: int = 0
    total_documents: int = 0

    def to_dict(self) -> dict:
        return {
            "total_requests": self.total_requests,
            "complete_requests": self.complete_requests,
            "partial_requests": self.partial_requests,
            "incomplete_requests": self.incomplete_requests,
            "overall_compliance_score": self.overall_compliance_score,
            "documents_with_matches": self.documents_with_matches,
            "unmatched_documents": self.unmatched_documents,
            "total_documents": self.total_documents,
        }


@dataclass
class MatcherConfig:
    """Weights and thresholds for discovery matching."""
    min_score: int = 30
    complete_threshold: int = 70
    category_points: int = 40
    partial_category_points: int = 25
    subtype_points: int = 10
    subtype_cap: int = 20
    filename_points: int = 5
    filename_cap: int = 15
    content_points: int = 3
    content_cap: int = 15
    date_points: int = 10
    max_score: int = 100


# =============================================================================
# Text helpers
# =============================================================================

def extract_keywords(text: str) -> list[str]:
    """Distinct lowercase words longer than 2 chars, minus stopwords, in first-seen order."""
    if not text:
        return []
    words = _NON_WORD.sub(" ", text.lower()).split()
    seen = []
    for w in words:
        if len(w) > 2 and w not in KEYWORD_STOPWORDS and w not in seen:
            seen.append(w)
    return seen


def detect_category(text: str) -> Optional[str]:
    """
    Most likely document category for free text.

    Each category scores the summed length of its keywords found in the
    text; the strictly highest wins (first in table order on ties) and only
    if it clears CATEGORY_DETECTION_THRESHOLD.
    """
    if not text:
        return None
    lower = text.lower()

    best_category = None
    best_score = 0
    for category, keywords in CATEGORY_KEYWORDS.items():
        score = sum(len(k) for k in keywords if k in lower)
        if score > best_score:
            best_score = score
            best_category = category

    return best_category if best_score > CATEGORY_DETECTION_THRESHOLD else None


def has_date_reference(text: str) -> bool:
    """True if the text names a date keyword (whole word) or a year."""
    lower = (text or "").lower()
    return bool(_DATE_KEYWORD_PATTERN.search(lower) or _YEAR_PATTERN.search(lower))


def _period(expr: str) -> Optional[tuple[date, date]]:
    """First and last day covered by one date expression, or None if it is not a real date."""
    expr = expr.strip().lower().replace(".", "")
    try:
        m = re.fullmatch(r"(\d{4})-(\d{1,2})-(\d{1,2})", expr)
        if m:
            day = date(int(m.group(1)), int(m.group(2)), int(m.group(3)))
            return day, day
        m = re.fullmatch(r"(\d{1,2})/(\d{1,2})/(\d{4})", expr)
        if m:
            day = date(int(m.group(3)), int(m.group(1)), int(m.group(2)))
            return day, day
        m = re.fullmatch(r"([a-z]+)\s+(\d{1,2})(?:st|nd|rd|th)?,?\s+(\d{4})", expr)
        if m and m.group(1) in MONTH_NUMBERS:
            day = date(int(m.group(3)), MONTH_NUMBERS[m.group(1)], int(m.group(2)))
            return day, day
        m = re.fullmatch(r"([a-z]+)\s+(\d{4})", expr)
        if m and m.group(1) in MONTH_NUMBERS:
            year, month = int(m.group(2)), MONTH_NUMBERS[m.group(1)]
            return date(year, month, 1), date(year, month, calendar.monthrange(year, month)[1])
        if re.fullmatch(r"\d{4}", expr):
            year = int(expr)
            return date(year, 1, 1), date(year, 12, 31)
    except ValueError:
        return None
    return None


def parse_date_range(text: str) -> Optional[DateRange]:
    """
    Date span a request asks for, or None when the text names no date.

    Tried in order:
        "from X to Y", "between X and Y", "X - Y", "X through present"
        "since X" / "after X"                   open end
        "through X" / "until X" / "before X"    open start
        any other date expressions              span from earliest to latest

    X and Y may be a year, "March 2024", "March 5, 2024", 2024-03-05 or
    03/05/2024. A month or year bound covers the whole month or year.
    """
    lower = (text or "").lower()

    m = _RANGE_PATTERN.search(lower)
    if m:
        start = _period(m.group(1))
        open_end = re.fullmatch(_OPEN_END, m.group(2)) is not None
        end = None if open_end else _period(m.group(2))
        if start and (end or open_end):
            if end and end[1] < start[0]:
                start, end = end, start
            return DateRange(start[0], end[1] if end else None, m.group(0))

    m = _SINCE_PATTERN.search(lower)
    if m:
        start = _period(m.group(1))
        if start:
            return DateRange(start[0], None, m.group(0))

    m = _UNTIL_PATTERN.search(lower)
    if m:
        end = _period(m.group(2))
        if end:
            exclusive = m.group(1) == "before" or m.group(1).startswith("prior")
            return DateRange(None, end[0] - timedelta(days=1) if exclusive else end[1], m.group(0))

    found = [(m, _period(m.group(0))) for m in _DATE_EXPR_PATTERN.finditer(lower)]
    found = [(m, p) for m, p in found if p]
    if not found:
        return None
    return DateRange(
        min(p[0] for _, p in found),
        max(p[1] for _, p in found),
        lower[found[0][0].start():found[-1][0].end()],
    )


def document_date_range(metadata: Optional[dict]) -> Optional[tuple[date, date]]:
    """(start, end) from startDate/endDate metadata; a single bound covers one day."""
    if not metadata:
        return None
    bounds = []
    for key in ("startDate", "endDate"):
        value = metadata.get(key)
        if not isinstance(value, str):
            bounds.append(None)
            continue
        try:
            bounds.append(date.fromisoformat(value.strip()[:10]))
        except ValueError:
            logger.debug(f"Ignoring unparseable {key} {value!r}")
            bounds.append(None)
    start, end = bounds
    if start is None and end is None:
        return None
    start, end = start or end, end or start
    return (end, start) if end < start else (start, end)


def _keyword_in_filename(keyword: str, filename: str) -> bool:
    if keyword in filename:
        return True
    return keyword in MONTHS and keyword[:3] in filename


def _metadata_text(metadata: Optional[dict]) -> str:
    """Summary plus other textual metadata values, lowercased; date fields are left out."""
    if not metadata:
        return ""
    parts = []
    summary = metadata.get("summary")
    if isinstance(summary, str):
        parts.append(summary)
    for key, value in metadata.items():
        if key == "summary" or "date" in key.lower():
            continue
        if isinstance(value, str):
            parts.append(value)
        elif isinstance(value, list):
            parts.extend(v for v in value if isinstance(v, str))
    return " ".join(parts).lower()


# =============================================================================
# Matcher
# =============================================================================

class DiscoveryMatcher:
    """
    Pure scoring of (request, documents) pairs.

    The same inputs always produce the same MatchResult; nothing is read
    from or written to storage.
    """

    def __init__(self, config: Optional[MatcherConfig] = None):
        self.config = config or MatcherConfig()

    def score_breakdown(self, request: DiscoveryRequest, document) -> dict[MatchSignal, int]:
        """Points contributed by each signal that fired."""
        cfg = self.config
        keywords = extract_keywords(request.text)
        request_category = request.category_hint or detect_category(request.text)
        points: dict[MatchSignal, int] = {}

        if document.category and request_category:
            doc_cat = document.category.lower()
            req_cat = request_category.lower()
            if doc_cat == req_cat:
                points[MatchSignal.CATEGORY] = cfg.category_points
            elif req_cat in doc_cat or doc_cat in req_cat:
                points[MatchSignal.PARTIAL_CATEGORY] = cfg.partial_category_points

        if document.subtype:
            subtype = document.subtype.lower()
            hits = sum(1 for k in keywords if k in subtype)
            if hits:
                points[MatchSignal.SUBTYPE] = min(cfg.subtype_cap, hits * cfg.subtype_points)

        if document.file_name:
            filename = document.file_name.lower()
            hits = sum(1 for k in keywords if _keyword_in_filename(k, filename))
            if hits:
                points[MatchSignal.FILENAME] = min(cfg.filename_cap, hits * cfg.filename_points)

        content = _metadata_text(document.metadata)
        if content:
            hits = sum(1 for k in keywords if k in content)
            if hits:
                points[MatchSignal.CONTENT] = min(cfg.content_cap, hits * cfg.content_points)

        doc_range = document_date_range(document.metadata)
        if doc_range:
            request_range = parse_date_range(request.text)
            if request_range is not None:
                if request_range.overlaps(*doc_range):
                    points[MatchSignal.DATE] = cfg.date_points
            elif has_date_reference(request.text):
                # "monthly statements during the marriage" names no concrete days
                points[MatchSignal.DATE] = cfg.date_points

        return points

    def score(self, request: DiscoveryRequest, document) -> tuple[int, MatchSignal]:
        """
        Total score (0-100) and the strongest contributing signal.

        Ties between signals go to the earlier entry in SIGNAL_PRIORITY;
        GENERAL when nothing fired.
        """
        points = self.score_breakdown(request, document)
        total = min(self.config.max_score, sum(points.values()))

        reason = MatchSignal.GENERAL
        best = 0
        for signal in SIGNAL_PRIORITY:
            if points.get(signal, 0) > best:
                best = points[signal]
                reason = signal
        return total, reason

    def match_one(self, request: DiscoveryRequest, documents: list, min_score: Optional[int] = None) -> MatchResult:
        """Score every classified document against one request."""
        if min_score is None:
            min_score = self.config.min_score

        matched = []
        for doc in documents:
            if not doc.category:
                continue
            total, reason = self.score(request, doc)
            if total >= min_score:
                matched.append(MatchedDocument(
                    document_id=doc.id,
                    file_name=doc.file_name,
                    category=doc.category,
                    subtype=doc.subtype,
                    confidence=doc.confidence,
                    match_score=total,
                    match_reason=reason,
                ))

        matched.sort(key=lambda m: (-m.match_score, m.file_name, m.document_id))

        if not matched:
            status, completion = MatchStatus.INCOMPLETE, 0
        elif any(m.match_score >= self.config.complete_threshold for m in matched):
            status, completion = MatchStatus.COMPLETE, 100
        else:
            status, completion = MatchStatus.PARTIAL, round(matched[0].match_score)

        logger.debug(
            f"{request.label}: {status.value} ({completion}%), {len(matched)} matching documents"
        )
        return MatchResult(
            request=request,
            status=status,
            completion_percentage=completion,
            matching_documents=matched,
        )

    def match_many(self, requests: list[DiscoveryRequest], documents: list, min_score: Optional[int] = None) -> list[MatchResult]:
        """Match each request independently against the same documents."""
        results = [self.match_one(r, documents, min_score) for r in requests]
        logger.info(f"Matched {len(requests)} discovery requests against {len(documents)} documents")
        return results

    @staticmethod
    def compliance_stats(results: list[MatchResult], total_document_count: int) -> ComplianceStats:
        """Status counts, mean completion and document coverage across results."""
        stats = ComplianceStats(
            total_requests=len(results),
            total_documents=total_document_count,
        )
        for r in results:
            if r.status == MatchStatus.COMPLETE:
                stats.complete_requests += 1
            elif r.status == MatchStatus.PARTIAL:
                stats.partial_requests += 1
            else:
                stats.incomplete_requests += 1

        if results:
            stats.overall_compliance_score = round(
                sum(r.completion_percentage for r in results) / len(results)
            )

        matched_ids = {d.document_id for r in results for d in r.matching_documents}
        stats.documents_with_matches = len(matched_ids)
        stats.unmatched_documents = max(total_document_count - len(matched_ids), 0)
        return stats
