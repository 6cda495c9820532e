"""
Document Classifier

Assigns a category, subtype, confidence and structured metadata to a
document's extracted text. The default implementation asks an OpenAI chat
model for a JSON verdict; when no usable text was extracted it classifies
from the file name alone.

Also provides the regex heuristics used to enrich model metadata
(dates, amounts, masked account numbers, parties, summary).
"""

import os
import re
import json
import logging
from typing import Optional
from dataclasses import dataclass, field

from .documents import DOCUMENT_CATEGORIES

logger = logging.getLogger(__name__)


class ClassificationError(Exception):
    """Raised on model/service errors or an unusable model response."""

    def __init__(self, message: str, document_id: Optional[str] = None):
        super().__init__(message)
        self.document_id = document_id


@dataclass
class ClassificationContext:
    """What the classifier knows about a document besides its text."""
    document_id: str
    case_id: Optional[str] = None
    file_name: Optional[str] = None


@dataclass
class ClassificationResult:
    """Output of a classifier call."""
    category: str
    subtype: str
    confidence: float  # 0-1
    metadata: dict = field(default_factory=dict)
    tokens_used: int = 0
    model_used: Optional[str] = None
    needs_review: bool = False

    def to_dict(self) -> dict:
        return {
            "category": self.category,
            "subtype": self.subtype,
            "confidence": self.confidence,
            "metadata": self.metadata,
            "tokens_used": self.tokens_used,
            "model_used": self.model_used,
            "needs_review": self.needs_review,
        }


@dataclass
class ClassifierConfig:
    """Configuration for the LLM classifier."""
    model: str = "gpt-4o-mini"
    max_tokens: int = 500
    temperature: float = 0.1
    max_text_chars: int = 4000
    review_threshold: float = 0.8
    timeout: float = 60.0


class Classifier:
    """Interface for document classifiers."""

    def classify(self, text: str, context: ClassificationContext) -> ClassificationResult:
        raise NotImplementedError("Subclasses must implement classify()")


class LLMClassifier(Classifier):
    """
    Classifies documents with an OpenAI chat model in JSON mode.

    The model is taken from OPENAI_MODEL_CLASSIFICATION when set.
    """

    # Models that take max_completion_tokens instead of max_tokens
    _NEW_MODEL_PREFIXES = ("o1", "o3", "gpt-5", "gpt-4o")
    # Reasoning models reject response_format
    _REASONING_PREFIXES = ("o1", "o3")

    def __init__(self, config: Optional[ClassifierConfig] = None):
        self.config = config or ClassifierConfig(
            model=os.getenv("OPENAI_MODEL_CLASSIFICATION", "gpt-4o-mini"),
        )
        self._llm_client = None

    def _get_llm_client(self):
        """Get or create cached OpenAI client."""
        if self._llm_client is None:
            from openai import OpenAI
            self._llm_client = OpenAI(
                api_key=os.getenv("OPENAI_API_KEY"),
                timeout=self.config.timeout,
            )
        return self._llm_client

    def classify(self, text: str, context: ClassificationContext) -> ClassificationResult:
        """
        Classify a document.

        Args:
            text: Extracted document text (may be empty for scanned files)
            context: Document id, case id and file name

        Returns:
            ClassificationResult with confidence in 0-1

        Raises:
            ClassificationError: On API failure or a malformed response
        """
        model = self.config.model
        params = {
            "model": model,
            "messages": [
                {
                    "role": "system",
                    "content": "You are a legal document classification assistant. Always respond with valid JSON.",
                },
                {"role": "user", "content": self._build_prompt(text, context.file_name)},
            ],
            "temperature": self.config.temperature,
        }
        if model.startswith(self._NEW_MODEL_PREFIXES):
            params["max_completion_tokens"] = self.config.max_tokens
        else:
            params["max_tokens"] = self.config.max_tokens
        if not model.startswith(self._REASONING_PREFIXES):
            params["response_format"] = {"type": "json_object"}

        try:
            response = self._get_llm_client().chat.completions.create(**params)
        except Exception as e:
            logger.error(f"Classification call failed for {context.document_id}: {e}")
            raise ClassificationError(f"Classifier service error: {e}", context.document_id) from e

        content = (response.choices[0].message.content if response.choices else None) or "{}"
        tokens_used = response.usage.total_tokens if response.usage else 0

        try:
            parsed = json.loads(content)
        except json.JSONDecodeError as e:
            raise ClassificationError("Invalid response from AI", context.document_id) from e
        if not isinstance(parsed, dict):
            raise ClassificationError("Invalid response from AI", context.document_id)

        confidence = _coerce_confidence(parsed.get("confidence"))
        metadata = parsed.get("metadata") if isinstance(parsed.get("metadata"), dict) else {}

        result = ClassificationResult(
            category=parsed.get("category") or "Other",
            subtype=parsed.get("subtype") or "Miscellaneous",
            confidence=confidence,
            metadata=metadata,
            tokens_used=tokens_used,
            model_used=model,
            needs_review=confidence < self.config.review_threshold,
        )
        logger.info(
            f"Classified {context.document_id} as {result.category}/{result.subtype} "
            f"(confidence={confidence:.2f}, tokens={tokens_used})"
        )
        return result

    def _build_prompt(self, text: str, file_name: Optional[str]) -> str:
        categories = "\n".join(
            f"{cat}: {', '.join(subtypes)}" for cat, subtypes in DOCUMENT_CATEGORIES.items()
        )

        limit = self.config.max_text_chars
        if len(text) > 10:
            truncated = " ... [truncated]" if len(text) > limit else ""
            content_section = f"DOCUMENT TEXT:\n{text[:limit]}{truncated}"
        else:
            content_section = (
                f"FILENAME: {file_name or 'unknown'}\n\n"
                "Note: Document text could not be extracted. Please classify based on the filename."
            )

        return f"""You are a legal document classifier for family law cases. Analyze the following document and classify it.

DOCUMENT CATEGORIES AND SUBTYPES:
{categories}

{content_section}

Respond with a JSON object containing:
{{
  "category": "The main category from the list above",
  "subtype": "The specific subtype from that category",
  "confidence": 0.0-1.0 (how confident you are in this classification),
  "metadata": {{
    "startDate": "YYYY-MM-DD if applicable",
    "endDate": "YYYY-MM-DD if applicable",
    "parties": ["List of parties mentioned"],
    "amounts": [list of monetary amounts as numbers],
    "accountNumbers": ["last 4 digits only"],
    "summary": "Brief 1-2 sentence summary of the document"
  }}
}}"""


def _coerce_confidence(value) -> float:
    try:
        confidence = float(value)
    except (TypeError, ValueError):
        return 0.0
    return min(max(confidence, 0.0), 1.0)


# =============================================================================
# Heuristic metadata
# =============================================================================

_DATE_PATTERNS = [
    re.compile(r"\d{1,2}/\d{1,2}/\d{4}"),
    re.compile(r"\d{4}-\d{2}-\d{2}"),
    re.compile(
        r"(?:January|February|March|April|May|June|July|August|September|October|November|December)"
        r"\s+\d{1,2},?\s+\d{4}",
        re.IGNORECASE,
    ),
]
_AMOUNT_PATTERN = re.compile(r"\$[\d,]+\.?\d*")
_ACCOUNT_PATTERN = re.compile(r"(?:account|acct)[\s#:]*(\d{4,})", re.IGNORECASE)
_PARTY_PATTERNS = [
    re.compile(r"(\w+\s+\w+)\s*(?:\(|,\s*)(?:Petitioner|Respondent|Plaintiff|Defendant)", re.IGNORECASE),
    re.compile(r"(?:Petitioner|Respondent|Plaintiff|Defendant)[:\s]+(\w+\s+\w+)", re.IGNORECASE),
]


def extract_metadata(text: str, category: str) -> dict:
    """
    Pull structured fields out of raw text with regexes.

    Returns a dict that may contain startDate/endDate, amounts (Financial),
    accountNumbers (masked), parties (Legal) and summary.
    """
    metadata: dict = {}

    dates = []
    for pattern in _DATE_PATTERNS:
        dates.extend(pattern.findall(text))
    if dates:
        metadata["startDate"] = dates[0]
        if len(dates) > 1:
            metadata["endDate"] = dates[-1]

    if category == "Financial":
        amounts = []
        for raw in _AMOUNT_PATTERN.findall(text):
            try:
                amounts.append(float(raw.replace("$", "").replace(",", "")))
            except ValueError:
                continue
        metadata["amounts"] = amounts

    accounts = []
    for number in _ACCOUNT_PATTERN.findall(text):
        masked = "****" + number[-4:]
        if masked not in accounts:
            accounts.append(masked)
    if accounts:
        metadata["accountNumbers"] = accounts

    if category == "Legal":
        parties = []
        for pattern in _PARTY_PATTERNS:
            for match in pattern.findall(text):
                name = match.strip()
                if name not in parties:
                    parties.append(name)
        if parties:
            metadata["parties"] = parties

    sentences = [s.strip() for s in re.split(r"[.!?]+", text) if len(s.strip()) > 20]
    if sentences:
        metadata["summary"] = sentences[0][:150] + "..."

    return metadata


def calculate_confidence(category: str, subtype: str, text_quality: float) -> float:
    """Confidence from classification validity plus text quality (0-1)."""
    confidence = 0.5
    if category in DOCUMENT_CATEGORIES:
        confidence += 0.2
        if subtype in DOCUMENT_CATEGORIES[category]:
            confidence += 0.2
    confidence += text_quality * 0.1
    return min(confidence, 1.0)
