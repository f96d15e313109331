from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

CENT = Decimal("0.01")


def parse_amount(value: str, *, allow_negative: bool = False) -> int:
    clean = value.strip().replace("€", "").replace("₱", "").replace("$", "")
    clean = clean.replace(" ", "").replace(",", ".")
    if clean.count(".") > 1:
        parts = clean.split(".")
        clean = "".join(parts[:-1]) + "." + parts[-1]
    try:
        amount = Decimal(clean)
    except InvalidOperation as exc:
        raise ValueError("Invalid amount") from exc
    if not amount.is_finite():
        raise ValueError("Invalid amount")
    cents = to_cents(amount)
    if cents < 0 and not allow_negative:
        raise ValueError("Amount must be positive")
    return cents


def to_cents(amount: Decimal) -> int:
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def cents_to_decimal(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(CENT)


def format_cents(cents: int) -> str:
    return f"{cents_to_decimal(cents):.2f}"


def percent_of(part: int, whole: int) -> int:
    """Whole percent of ``part`` in ``whole``, rounded half up; 0 if whole is 0."""
    if whole == 0:
        return 0
    ratio = Decimal(part) * 100 / Decimal(whole)
    return int(ratio.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def ratio_bps(part: int, whole: int) -> int:
    if whole == 0:
        return 0
    ratio = Decimal(part) * 10_000 / Decimal(whole)
    return int(ratio.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def apply_bps(cents: int, bps: int) -> int:
    amount = Decimal(cents) * Decimal(bps) / Decimal(10_000)
    return int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
