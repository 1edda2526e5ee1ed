import pytest

from src.utils.errors import InternalError, ValidationError
from src.utils.money import assert_usd, cents_to_usd, price_to_cents


# ---------- price_to_cents ----------

@pytest.mark.parametrize(
    "value,expected",
    [
        ("24.99", 2499),
        ("$24.99", 2499),
        (" 24.99 USD ", 2499),
        ("24", 2400),
        ("24.9", 2490),
        (24.5, 2450),
        (10, 1000),
        ("1.005", 101),
        ("0.50", 50),
        ("20000", 2_000_000),
    ],
)
def test_price_to_cents_accepts_display_prices(value, expected):
    assert price_to_cents(value) == expected


@pytest.mark.parametrize("value", ["0.49", "0", "20000.01", "abc", "", None, True])
def test_price_to_cents_rejects_invalid_or_out_of_range(value):
    with pytest.raises(ValidationError) as exc:
        price_to_cents(value)
    assert exc.value.status_code == 400
    assert exc.value.code == "validation_error"


# ---------- cents_to_usd ----------

def test_cents_to_usd_formats_two_decimals():
    assert cents_to_usd(2499) == "24.99"
    assert cents_to_usd(50) == "0.50"
    assert cents_to_usd(2_000_000) == "20000.00"


def test_cents_to_usd_rejects_non_integers():
    with pytest.raises(ValidationError):
        cents_to_usd(24.99)
    with pytest.raises(ValidationError):
        cents_to_usd(True)


# ---------- currency ----------

def test_assert_usd_defaults_to_usd():
    assert assert_usd() == "usd"


def test_assert_usd_rejects_other_currencies(monkeypatch):
    monkeypatch.setenv("STRIPE_CURRENCY", "eur")
    with pytest.raises(InternalError):
        assert_usd()
