import json

from schema import (
    DEGRADED_HEADLINE,
    Summary,
    calculate_quality_score,
    ensure_minimum_takeaways,
    parse_summary_response,
    repair_summary_data,
    validate_summary,
)


def valid_payload(**overrides):
    data = {
        "headline": "Rust adoption keeps growing across infrastructure teams",
        "tldr": "Teams adopt Rust for safety and speed, with some friction around hiring and tooling.",
        "fullSummary": "A detailed look at why infrastructure teams pick Rust. " * 5,
        "keyPoints": ["Memory safety", "Performance", "Tooling maturity", "Hiring", "Ecosystem"],
        "keyTakeaways": [
            {"takeaway": "Start with small services", "context": "Limits risk", "confidence": 1.0},
            {"takeaway": "Invest in training", "context": "Hiring is hard", "confidence": 1.0},
            {"takeaway": "Measure latency", "context": "Proves value", "confidence": 1.0},
        ],
        "relatedIdeas": [
            {"idea": "Go for services", "connection": "Alternative", "category": "counterpoint"},
            {"idea": "WASM targets", "connection": "Reuse", "category": "extension"},
        ],
        "alliedTrivia": [
            {"fact": "Rust was named after a fungus", "relevance": "Naming history"},
            {"fact": "Firefox ships Rust code", "relevance": "Early adopter"},
        ],
    }
    data.update(overrides)
    return data


def test_valid_payload_parses():
    summary, degraded = parse_summary_response(json.dumps(valid_payload()))
    assert not degraded
    assert summary.headline.startswith("Rust adoption")
    assert len(summary.key_takeaways) == 3
    assert summary.to_payload()["keyPoints"][0] == "Memory safety"


def test_code_fenced_json_is_accepted():
    raw = "```json\n" + json.dumps(valid_payload()) + "\n```"
    summary, degraded = parse_summary_response(raw)
    assert not degraded


def test_malformed_json_degrades():
    summary, degraded = parse_summary_response("this is not json {")
    assert degraded
    assert summary.headline == DEGRADED_HEADLINE
    assert summary.full_summary == "this is not json {"
    assert summary.key_points == []


def test_json_array_degrades():
    _, degraded = parse_summary_response("[1, 2, 3]")
    assert degraded


def test_schema_violation_degrades():
    summary, degraded = parse_summary_response(json.dumps(valid_payload(tldr="short")))
    assert degraded
    assert summary.headline == DEGRADED_HEADLINE


def test_repair_clamps_confidence_and_normalizes_categories():
    data = valid_payload(
        keyTakeaways=[{"takeaway": "t", "context": "c", "confidence": 1.7},
                      {"takeaway": "u", "context": "c", "confidence": -3}],
        relatedIdeas=[{"idea": "i", "connection": "c", "category": "Extension"},
                      {"idea": "j", "connection": "c", "category": "tangent"}],
    )
    summary, errors = validate_summary(repair_summary_data(data))
    assert errors == []
    assert [t.confidence for t in summary.key_takeaways] == [1.0, 0.0]
    assert [i.category for i in summary.related_ideas] == ["extension"]


def test_long_headline_is_shortened():
    summary, degraded = parse_summary_response(json.dumps(valid_payload(headline="H" * 150)))
    assert not degraded
    assert len(summary.headline) <= 100


def test_validate_reports_errors():
    summary, errors = validate_summary({"headline": "x"})
    assert summary is None
    assert any("tldr" in e for e in errors)


def test_ensure_minimum_takeaways_derives_from_key_points():
    summary = Summary.model_validate(valid_payload(keyTakeaways=[]))
    topped = ensure_minimum_takeaways(summary, 3)
    assert [t.takeaway for t in topped.key_takeaways] == ["Memory safety", "Performance", "Tooling maturity"]
    assert all(t.confidence == 0.7 for t in topped.key_takeaways)
    assert topped.key_takeaways[0].context == "Derived from key points"


def test_ensure_minimum_takeaways_leaves_full_summary_alone():
    summary = Summary.model_validate(valid_payload())
    assert ensure_minimum_takeaways(summary, 3) is summary


def test_quality_score_full_and_degraded():
    full = Summary.model_validate(valid_payload())
    score = calculate_quality_score(full)
    assert score == 100
    degraded, _ = parse_summary_response("nope")
    assert calculate_quality_score(degraded) < 30
