from tokens import (
    calculate_cost,
    calculate_transcription_cost,
    conservative_tokens,
    count_tokens,
    estimate_tokens,
    fits_in_context,
    get_model_limits,
    truncate_to_token_limit,
)


def test_estimate_tokens_rounds_up_characters():
    assert estimate_tokens("") == 0
    assert estimate_tokens("abcd") == 1
    assert estimate_tokens("abcde") == 2


def test_count_tokens_uses_word_heuristic():
    assert count_tokens("") == 0
    assert count_tokens("one two three") == 4  # ceil(3 * 1.3)
    assert count_tokens("  spaced\n\nout\twords ") == 4


def test_conservative_tokens_counts_long_runs_by_characters():
    assert conservative_tokens("") == 0
    assert conservative_tokens("one two three") == count_tokens("one two three")
    unbroken = "中文" * 2500
    assert count_tokens(unbroken) == 2
    assert conservative_tokens(unbroken) == estimate_tokens(unbroken) == 1250
    # 12 short words (15.6) plus a 41-character URL (10.25)
    text = "see " * 12 + "https://example.com/a/very/long/path/here"
    assert conservative_tokens(text) == 26
    assert conservative_tokens(text) >= count_tokens(text)


def test_unknown_model_falls_back_to_default_pricing():
    assert get_model_limits("no-such-model") == get_model_limits("gpt-4o")
    assert calculate_cost("no-such-model", 1000, 1000) == calculate_cost("gpt-4o", 1000, 1000)


def test_calculate_cost_per_thousand_tokens():
    assert abs(calculate_cost("gpt-4o", 1000, 1000) - (0.0025 + 0.01)) < 1e-9
    assert abs(calculate_cost("gpt-4o-mini", 2000, 0) - 0.0003) < 1e-9


def test_transcription_cost_per_minute():
    assert abs(calculate_transcription_cost("whisper-1", 600) - 0.06) < 1e-9
    assert calculate_transcription_cost("whisper-1", -5) == 0


def test_truncate_to_token_limit_respects_budget():
    text = " ".join(f"word{i}" for i in range(100))
    truncated = truncate_to_token_limit(text, 50)
    assert count_tokens(truncated) <= 50
    assert text.startswith(truncated)
    # The next word would not fit
    assert count_tokens(" ".join(text.split()[:len(truncated.split()) + 1])) > 50


def test_truncate_returns_short_text_unchanged():
    assert truncate_to_token_limit("short text", 100) == "short text"


def test_fits_in_context_reserves_output():
    text = "word " * 1000
    assert fits_in_context(text, "gpt-4o")
    assert not fits_in_context(text, "gpt-4o", reserve_for_output=128000)
