"""
Tests for execution/case_intel/discovery.py

Covers: keyword extraction, category detection, date references, date-range
parsing and overlap, request validation, per-signal scoring, reason
priority, match status thresholds, ordering, score monotonicity,
compliance roll-up.
"""

from datetime import date

import pytest

from tests.conftest import make_document


def _request(text, type="RFP", number=1, **kwargs):
    from execution.case_intel.discovery import DiscoveryRequest
    return DiscoveryRequest(type=type, number=number, text=text, **kwargs)


BANK_REQUEST = "Produce all bank statements from January 2024"
TAX_REQUEST = "All tax returns for 2023"
VOICEMAIL_REQUEST = "Produce all voicemail recordings"


# ---------------------------------------------------------------------------
# Text helpers
# ---------------------------------------------------------------------------

class TestExtractKeywords:

    def test_punctuation_stopwords_and_short_words(self):
        from execution.case_intel.discovery import extract_keywords
        assert extract_keywords("Please provide ALL W-2 forms, and 1099s!") == ["forms", "1099s"]

    def test_first_seen_order_without_duplicates(self):
        from execution.case_intel.discovery import extract_keywords
        assert extract_keywords(BANK_REQUEST) == ["produce", "bank", "statements", "january", "2024"]
        assert extract_keywords("bank Bank BANK") == ["bank"]

    def test_empty(self):
        from execution.case_intel.discovery import extract_keywords
        assert extract_keywords("") == []


class TestDetectCategory:

    def test_financial(self):
        from execution.case_intel.discovery import detect_category
        assert detect_category(BANK_REQUEST) == "Financial"

    def test_legal_beats_parenting(self):
        from execution.case_intel.discovery import detect_category
        assert detect_category("Identify every court order concerning custody") == "Legal"

    def test_tie_goes_to_first_category(self):
        from execution.case_intel.discovery import detect_category
        # "insurance" is listed under both Medical and Property
        assert detect_category("insurance") == "Medical"

    def test_below_threshold(self):
        from execution.case_intel.discovery import detect_category
        assert detect_category("car") is None
        assert detect_category("nothing to see") is None
        assert detect_category("") is None


class TestHasDateReference:

    @pytest.mark.parametrize("text", [
        "Statements from the bank",
        "Records during the marriage",
        "Receipts for March",
        "Anything in 1999",
        "Emails since 2021",
    ])
    def test_positive(self, text):
        from execution.case_intel.discovery import has_date_reference
        assert has_date_reference(text)

    @pytest.mark.parametrize("text", [
        "The todo list",
        "The mayor's report",
        "Produce all photographs",
        "",
    ])
    def test_negative(self, text):
        from execution.case_intel.discovery import has_date_reference
        assert not has_date_reference(text)


class TestParseDateRange:

    @pytest.mark.parametrize("text,start,end", [
        ("Statements from January 2022 to March 2023", date(2022, 1, 1), date(2023, 3, 31)),
        ("Emails between 2020 and 2021", date(2020, 1, 1), date(2021, 12, 31)),
        ("Pay stubs for the years 2019-2021", date(2019, 1, 1), date(2021, 12, 31)),
        ("Records from March 5, 2024 through April 10, 2024", date(2024, 3, 5), date(2024, 4, 10)),
        ("Ledgers from 01/15/2023 to 2023-02-28", date(2023, 1, 15), date(2023, 2, 28)),
        ("Texts from June 2021 to present", date(2021, 6, 1), None),
        ("Employers since 2020", date(2020, 1, 1), None),
        ("Receipts through Sept. 2022", None, date(2022, 9, 30)),
        ("Photos taken before 2019", None, date(2018, 12, 31)),
        ("Bank statements from January 2024", date(2024, 1, 1), date(2024, 1, 31)),
        ("All tax returns for 2023", date(2023, 1, 1), date(2023, 12, 31)),
        ("Returns for 2021, 2019, February 2020", date(2019, 1, 1), date(2021, 12, 31)),
        ("Leap day February 2024", date(2024, 2, 1), date(2024, 2, 29)),
    ])
    def test_ranges(self, text, start, end):
        from execution.case_intel.discovery import parse_date_range
        parsed = parse_date_range(text)
        assert (parsed.start, parsed.end) == (start, end)

    def test_reversed_bounds_are_swapped(self):
        from execution.case_intel.discovery import parse_date_range
        parsed = parse_date_range("from 2023 to 2021")
        assert (parsed.start, parsed.end) == (date(2021, 1, 1), date(2023, 12, 31))

    @pytest.mark.parametrize("text", [
        "Produce all voicemail recordings",
        "Monthly statements during the marriage",
        "All W-2 and 1099s",
        "Invoices dated 13/45/2024",
        "",
    ])
    def test_no_concrete_dates(self, text):
        from execution.case_intel.discovery import parse_date_range
        assert parse_date_range(text) is None

    def test_to_dict(self):
        from execution.case_intel.discovery import parse_date_range
        assert parse_date_range("Texts since March 2021").to_dict() == {
            "start": "2021-03-01",
            "end": None,
            "text": "since march 2021",
        }

    def test_open_bounds_overlap_everything_on_that_side(self):
        from execution.case_intel.discovery import DateRange
        since = DateRange(date(2020, 1, 1), None)
        assert since.overlaps(date(2031, 5, 1), date(2031, 5, 31))
        assert not since.overlaps(date(2019, 1, 1), date(2019, 12, 31))
        # Touching on a single day counts
        assert since.overlaps(date(2019, 12, 1), date(2020, 1, 1))


class TestDocumentDateRange:

    def test_both_bounds(self):
        from execution.case_intel.discovery import document_date_range
        assert document_date_range({"startDate": "2024-01-01", "endDate": "2024-01-31"}) == (
            date(2024, 1, 1), date(2024, 1, 31),
        )

    def test_single_bound_is_one_day(self):
        from execution.case_intel.discovery import document_date_range
        assert document_date_range({"endDate": "2023-12-31T00:00:00Z"}) == (date(2023, 12, 31), date(2023, 12, 31))

    @pytest.mark.parametrize("metadata", [None, {}, {"startDate": "sometime"}, {"startDate": 2024}])
    def test_missing_or_unparseable(self, metadata):
        from execution.case_intel.discovery import document_date_range
        assert document_date_range(metadata) is None


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------

class TestDiscoveryRequest:

    def test_type_normalized(self):
        assert _request("x", type="rfp").type == "RFP"
        assert _request("x", type=" INTERROGATORY ").type == "Interrogatory"

    def test_label_and_dict(self):
        request = _request("Bank statements", type="Interrogatory", number=4, id="r-4")
        assert request.label == "Interrogatory 4"
        assert request.to_dict()["number"] == 4

    @pytest.mark.parametrize("kwargs,field_name", [
        ({"type": "Subpoena"}, "type"),
        ({"number": 0}, "number"),
        ({"number": -2}, "number"),
        ({"number": True}, "number"),
        ({"number": "3"}, "number"),
        ({"text": "   "}, "text"),
    ])
    def test_invalid(self, kwargs, field_name):
        from execution.case_intel.discovery import InvalidDiscoveryRequestError
        params = {"type": "RFP", "number": 1, "text": "Bank statements"}
        params.update(kwargs)
        with pytest.raises(InvalidDiscoveryRequestError) as exc_info:
            _request(**params)
        assert exc_info.value.field_name == field_name

    def test_invalid_is_value_error(self):
        with pytest.raises(ValueError):
            _request("")


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------

class TestScoring:
    """score_breakdown / score."""

    def test_bank_statement_example(self, sample_documents):
        from execution.case_intel.discovery import DiscoveryMatcher, MatchSignal
        matcher = DiscoveryMatcher()
        bank = sample_documents[0]

        breakdown = matcher.score_breakdown(_request(BANK_REQUEST), bank)

        assert breakdown == {
            MatchSignal.CATEGORY: 40,
            MatchSignal.SUBTYPE: 10,
            MatchSignal.FILENAME: 10,
            MatchSignal.DATE: 10,
        }
        assert matcher.score(_request(BANK_REQUEST), bank) == (70, MatchSignal.CATEGORY)

    def test_category_hint_overrides_detection(self):
        from execution.case_intel.discovery import DiscoveryMatcher, MatchSignal
        doc = make_document(file_name="x.pdf", category="Legal", subtype="Other")
        request = _request("bank statements", category_hint="Legal")
        assert DiscoveryMatcher().score_breakdown(request, doc).get(MatchSignal.CATEGORY) == 40

    def test_partial_category(self):
        from execution.case_intel.discovery import DiscoveryMatcher, MatchSignal
        doc = make_document(file_name="x.pdf", category="Financial", subtype="Other")
        request = _request("something", category_hint="Financial Records")
        total, reason = DiscoveryMatcher().score(request, doc)
        assert (total, reason) == (25, MatchSignal.PARTIAL_CATEGORY)

    def test_caps(self):
        from execution.case_intel.discovery import DiscoveryMatcher, MatchSignal
        doc = make_document(
            file_name="alpha_bravo_charlie_delta.pdf",
            category="Misc",
            subtype="alpha bravo charlie",
            metadata={"summary": "alpha bravo charlie delta echo foxtrot"},
        )
        request = _request("alpha bravo charlie delta echo foxtrot")
        breakdown = DiscoveryMatcher().score_breakdown(request, doc)
        assert breakdown[MatchSignal.SUBTYPE] == 20
        assert breakdown[MatchSignal.FILENAME] == 15
        assert breakdown[MatchSignal.CONTENT] == 15

    def test_content_reads_textual_metadata_but_not_dates(self):
        from execution.case_intel.discovery import DiscoveryMatcher, MatchSignal
        doc = make_document(
            file_name="x.pdf",
            category="Misc",
            subtype="Other",
            metadata={
                "summary": "payroll ledger",
                "parties": ["Acme Logistics"],
                "startDate": "2024-01-01",
                "pages": 3,
            },
        )
        breakdown = DiscoveryMatcher().score_breakdown(_request("payroll acme 2024"), doc)
        # payroll + acme; "2024" only appears in the date field
        assert breakdown[MatchSignal.CONTENT] == 6
        assert breakdown[MatchSignal.DATE] == 10

    def test_date_needs_both_request_reference_and_document_range(self):
        from execution.case_intel.discovery import DiscoveryMatcher, MatchSignal
        dated = make_document(file_name="x.pdf", category="Misc", metadata={"endDate": "2023-12-31"})
        undated = make_document(file_name="x.pdf", category="Misc", metadata={})
        matcher = DiscoveryMatcher()
        assert MatchSignal.DATE in matcher.score_breakdown(_request("ledgers since 2020"), dated)
        assert MatchSignal.DATE not in matcher.score_breakdown(_request("ledgers since 2020"), undated)
        assert MatchSignal.DATE not in matcher.score_breakdown(_request("all ledgers"), dated)

    @pytest.mark.parametrize("text,fires", [
        ("Bank statements from January 2024", True),
        ("Bank statements for 2023", False),
        ("Bank statements from March 2023 to February 2024", True),
        ("Bank statements from 2022 to 2023", False),
        ("Bank statements since December 2023", True),
        ("Bank statements since February 2024", False),
        ("Bank statements through January 1, 2024", True),
        ("Bank statements before 2024", False),
        # No concrete days named, so any dated document counts
        ("Monthly bank statements during the marriage", True),
    ])
    def test_date_requires_overlapping_range(self, text, fires):
        from execution.case_intel.discovery import DiscoveryMatcher, MatchSignal
        doc = make_document(metadata={"startDate": "2024-01-01", "endDate": "2024-01-31"})
        assert (MatchSignal.DATE in DiscoveryMatcher().score_breakdown(_request(text), doc)) is fires

    def test_unparseable_document_dates_never_fire(self):
        from execution.case_intel.discovery import DiscoveryMatcher, MatchSignal
        doc = make_document(metadata={"startDate": "last spring"})
        assert MatchSignal.DATE not in DiscoveryMatcher().score_breakdown(_request("statements since 2020"), doc)

    @pytest.mark.parametrize("field", ["file_name", "summary"])
    def test_adding_matching_keywords_never_lowers_score(self, field):
        from execution.case_intel.discovery import DiscoveryMatcher, extract_keywords
        matcher = DiscoveryMatcher()
        request = _request("Checking account statements deposits withdrawals transfers payroll 2024")
        added = []
        previous = -1
        for keyword in [""] + extract_keywords(request.text):
            if keyword:
                added.append(keyword)
            if field == "file_name":
                doc = make_document(file_name="_".join(["scan"] + added) + ".pdf", subtype="Other")
            else:
                doc = make_document(file_name="scan.pdf", subtype="Other", metadata={"summary": " ".join(added)})
            total, _ = matcher.score(request, doc)
            assert total >= previous
            previous = total
        assert previous > matcher.score(request, make_document(file_name="scan.pdf", subtype="Other"))[0]

    def test_reason_tie_uses_signal_priority(self):
        from execution.case_intel.discovery import DiscoveryMatcher, MatchSignal
        doc = make_document(file_name="widget_gizmo.pdf", category="Misc", subtype="Widget Sheet")
        assert DiscoveryMatcher().score(_request("widget gizmo"), doc) == (20, MatchSignal.SUBTYPE)

    def test_nothing_fired_is_general(self):
        from execution.case_intel.discovery import DiscoveryMatcher, MatchSignal
        doc = make_document(file_name="x.pdf", category="Misc", subtype="Other")
        assert DiscoveryMatcher().score(_request("zebra"), doc) == (0, MatchSignal.GENERAL)

    def test_total_clamped(self, sample_documents):
        from execution.case_intel.discovery import DiscoveryMatcher, MatcherConfig
        matcher = DiscoveryMatcher(MatcherConfig(category_points=90))
        total, _ = matcher.score(_request(BANK_REQUEST), sample_documents[0])
        assert total == 100

    def test_deterministic(self, sample_documents):
        from execution.case_intel.discovery import DiscoveryMatcher
        matcher = DiscoveryMatcher()
        request = _request(BANK_REQUEST)
        first = matcher.match_one(request, sample_documents).to_dict()
        second = matcher.match_one(request, sample_documents).to_dict()
        assert first == second


# ---------------------------------------------------------------------------
# Matching
# ---------------------------------------------------------------------------

class TestMatchOne:

    def test_complete(self, sample_documents):
        from execution.case_intel.discovery import DiscoveryMatcher, MatchStatus, MatchSignal
        result = DiscoveryMatcher().match_one(_request(BANK_REQUEST), sample_documents)

        assert result.status == MatchStatus.COMPLETE
        assert result.completion_percentage == 100
        assert [(d.document_id, d.match_score) for d in result.matching_documents] == [
            ("doc-bank-jan", 70),
            ("doc-w2", 40),
        ]
        assert result.matching_documents[0].match_reason == MatchSignal.CATEGORY

    def test_partial(self, sample_documents):
        from execution.case_intel.discovery import DiscoveryMatcher, MatchStatus
        result = DiscoveryMatcher().match_one(_request(TAX_REQUEST), sample_documents)

        assert result.status == MatchStatus.PARTIAL
        assert result.completion_percentage == 58
        assert [(d.document_id, d.match_score) for d in result.matching_documents] == [
            ("doc-w2", 58),
            ("doc-bank-jan", 40),
        ]

    def test_incomplete(self, sample_documents):
        from execution.case_intel.discovery import DiscoveryMatcher, MatchStatus
        result = DiscoveryMatcher().match_one(_request(VOICEMAIL_REQUEST), sample_documents)
        assert result.status == MatchStatus.INCOMPLETE
        assert result.completion_percentage == 0
        assert result.matching_documents == []

    def test_unclassified_documents_ignored(self, sample_documents):
        from execution.case_intel.discovery import DiscoveryMatcher
        request = _request("scan", category_hint=None)
        result = DiscoveryMatcher().match_one(request, sample_documents, min_score=0)
        assert "doc-unclassified" not in [d.document_id for d in result.matching_documents]

    def test_min_score_override(self, sample_documents):
        from execution.case_intel.discovery import DiscoveryMatcher
        result = DiscoveryMatcher().match_one(_request(BANK_REQUEST), sample_documents, min_score=60)
        assert [d.document_id for d in result.matching_documents] == ["doc-bank-jan"]

    def test_equal_scores_ordered_by_file_name(self):
        from execution.case_intel.discovery import DiscoveryMatcher
        docs = [
            make_document(file_name="zz.pdf", category="Financial", subtype="Other"),
            make_document(file_name="aa.pdf", category="Financial", subtype="Other"),
        ]
        result = DiscoveryMatcher().match_one(_request("produce the ledgers", category_hint="Financial"), docs)
        assert [d.file_name for d in result.matching_documents] == ["aa.pdf", "zz.pdf"]

    def test_no_documents(self):
        from execution.case_intel.discovery import DiscoveryMatcher, MatchStatus
        assert DiscoveryMatcher().match_one(_request(BANK_REQUEST), []).status == MatchStatus.INCOMPLETE

    def test_to_dict(self, sample_documents):
        from execution.case_intel.discovery import DiscoveryMatcher
        d = DiscoveryMatcher().match_one(_request(BANK_REQUEST), sample_documents).to_dict()
        assert d["status"] == "complete"
        assert d["matching_documents"][0]["match_reason"] == "category"
        assert d["matching_documents"][0]["match_reason_label"] == "Category match"


class TestComplianceStats:

    def test_roll_up(self, sample_documents):
        from execution.case_intel.discovery import DiscoveryMatcher
        matcher = DiscoveryMatcher()
        requests = [
            _request(BANK_REQUEST, number=1),
            _request(TAX_REQUEST, number=2),
            _request(VOICEMAIL_REQUEST, number=3),
        ]
        results = matcher.match_many(requests, sample_documents)
        stats = DiscoveryMatcher.compliance_stats(results, len(sample_documents))

        assert stats.to_dict() == {
            "total_requests": 3,
            "complete_requests": 1,
            "partial_requests": 1,
            "incomplete_requests": 1,
            "overall_compliance_score": 53,
            "documents_with_matches": 2,
            "unmatched_documents": 2,
            "total_documents": 4,
        }

    def test_empty(self):
        from execution.case_intel.discovery import DiscoveryMatcher
        stats = DiscoveryMatcher.compliance_stats([], 5)
        assert stats.total_requests == 0
        assert stats.overall_compliance_score == 0
        assert stats.unmatched_documents == 5
