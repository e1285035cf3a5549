from kaspit.formatting import (
    calculate_change,
    calculate_percentage,
    format_currency,
    month_name,
    round_half_up,
    translate_status,
)


def test_format_currency():
    assert format_currency(1234567) == "₪1,234,567"
    assert format_currency(-1234.4) == "-₪1,234"
    assert format_currency(99.5, decimals=2) == "₪99.50"
    assert format_currency(10, "USD") == "$10"
    assert format_currency(10, "GBP") == "GBP 10"


def test_percentage_and_change():
    assert calculate_percentage(25, 200) == 13
    assert calculate_percentage(5, 0) == 0
    assert calculate_change(150, 100) == 50
    assert calculate_change(50, 100) == -50
    assert calculate_change(10, 0) == 100
    assert calculate_change(0, 0) == 0


def test_round_half_up():
    assert round_half_up(2.5) == 3
    assert round_half_up(-2.5) == -2
    assert round_half_up(2.4) == 2


def test_month_name_and_status_labels():
    assert month_name(1) == "ינואר"
    assert month_name(12) == "דצמבר"
    assert month_name(13) == ""
    assert translate_status("paid") == "שולם"
    assert translate_status("unknown") == "unknown"
