"""Rule-based Vietnamese transaction extraction (deterministic, no AI).

Used by the parse pipeline when the model output is unusable. Input such as
``"sáng cf 25k, trưa cơm 45k, nhận lương 15tr"`` is split into segments and
each segment with an amount becomes one candidate transaction.
"""

from __future__ import annotations

import logging
import math
import re
from datetime import date

from expense_parser.services.ai.transaction_parse.contracts import PartialTransaction

logger = logging.getLogger(__name__)

EXTRACTION_NOTE = "Extracted directly from Vietnamese text"
EXTRACTION_CONFIDENCE = 0.6
DEFAULT_CATEGORY = "Khác"
MAX_ESTIMATE = 10

# Unit -> multiplier to VND
UNITS: dict[str, int] = {
    "k": 1_000,
    "nghìn": 1_000,
    "ngàn": 1_000,
    "tr": 1_000_000,
    "triệu": 1_000_000,
    "đ": 1,
    "đồng": 1,
    "vnd": 1,
    "vnđ": 1,
}

# First match wins, in this order.
CATEGORY_KEYWORDS: list[tuple[str, tuple[str, ...]]] = [
    (
        "Ăn uống",
        ("ăn", "uống", "trà", "cà phê", "cafe", "cf", "phở", "cơm", "bún", "quán", "nhà hàng", "food", "drink"),
    ),
    ("Di chuyển", ("xe", "grab", "taxi", "xăng", "gas", "uber", "bus", "metro")),
    ("Mua sắm", ("mua", "shopping", "shopee", "lazada", "mall", "siêu thị")),
    ("Giải trí", ("phim", "game", "net", "nhậu", "karaoke", "bar", "club", "giải trí")),
]

INCOME_KEYWORDS = ("nhận", "lương", "thưởng", "bán", "thu")
TRANSFER_KEYWORDS = ("chuyển", "gửi")


def _keyword_pattern(words: tuple[str, ...]) -> re.Pattern[str]:
    alternatives = "|".join(re.escape(word) for word in sorted(words, key=len, reverse=True))
    return re.compile(rf"(?<!\w)(?:{alternatives})(?!\w)", re.IGNORECASE)


_CATEGORY_PATTERNS = [(name, _keyword_pattern(words)) for name, words in CATEGORY_KEYWORDS]
_INCOME_PATTERN = _keyword_pattern(INCOME_KEYWORDS)
_TRANSFER_PATTERN = _keyword_pattern(TRANSFER_KEYWORDS)

_UNIT_ALTERNATIVES = "|".join(sorted(UNITS, key=len, reverse=True))
_AMOUNT = re.compile(
    r"(?<![\w.,])"
    r"(?P<number>\d{1,3}(?:[.,]\d{3})+(?!\d)|\d+(?:[.,]\d+)?)"
    rf"\s*(?P<unit>{_UNIT_ALTERNATIVES})?"
    r"(?P<tail>(?<=[a-zà-ỹ])\d{1,3})?"
    r"(?!\w)",
    re.IGNORECASE,
)
_DATE = re.compile(r"(?<!\d)(\d{1,2})/(\d{1,2})/(\d{4})(?!\d)")
_SEGMENT_SPLIT = re.compile(r"[;\n]|,(?!\d)|(?<!\d),")
_SEPARATORS = re.compile(r"[,;]")

_ESTIMATE_PATTERNS = (
    re.compile(r"(?:^|[,.\s])(?:ăn|uống|mua|chi|tiêu|nhận|được|trả|nộp|đóng|taxi|grab|bơm)\s"),
    re.compile(r"\d+\s?(?:k|tr|triệu|đồng|vnd)"),
    re.compile(r"(?:sáng|trưa|chiều|tối|đêm)\s"),
    re.compile(r"hôm\s+qua|hôm\s+nay|ngày\s+mai"),
)


def _number_value(raw: str) -> float:
    if re.fullmatch(r"\d{1,3}(?:[.,]\d{3})+", raw):
        return float(re.sub(r"[.,]", "", raw))
    return float(raw.replace(",", "."))


def _as_vnd(value: float) -> int | float:
    value = round(value, 2)
    return int(value) if value.is_integer() else value


def _amount_match(text: str) -> tuple[int | float, re.Match[str]] | None:
    """Pick the last amount with a unit, else the last bare number."""
    with_unit = None
    bare = None
    for match in _AMOUNT.finditer(text):
        if match.group("unit"):
            with_unit = match
        else:
            bare = match
    chosen = with_unit or bare
    if chosen is None:
        return None

    value = _number_value(chosen.group("number"))
    unit = (chosen.group("unit") or "").lower()
    tail = chosen.group("tail")
    if tail and unit:
        # "1tr5" means 1.5 million
        value += int(tail) / 10 ** len(tail)
    value *= UNITS.get(unit, 1)
    return _as_vnd(value), chosen


def parse_vietnamese_amount(text: str) -> int | float | None:
    """Parse an amount such as ``25k``, ``1tr5``, ``1.500.000đ`` or ``2 triệu`` into VND."""
    if not text:
        return None
    found = _amount_match(text)
    return found[0] if found else None


def _extract_date(segment: str) -> tuple[str | None, str]:
    match = _DATE.search(segment)
    if not match:
        return None, segment
    day, month, year = (int(part) for part in match.groups())
    rest = (segment[: match.start()] + " " + segment[match.end() :]).strip()
    try:
        return date(year, month, day).isoformat(), rest
    except ValueError:
        return None, rest


def classify_category(description: str) -> str:
    for name, pattern in _CATEGORY_PATTERNS:
        if pattern.search(description):
            return name
    return DEFAULT_CATEGORY


def classify_type(description: str) -> str:
    if _INCOME_PATTERN.search(description):
        return "income"
    if _TRANSFER_PATTERN.search(description):
        return "transfer"
    return "expense"


def split_segments(text: str) -> list[str]:
    """Split on ``;``, newlines and commas that are not thousand separators."""
    return [part.strip() for part in _SEGMENT_SPLIT.split(text) if part and part.strip()]


def extract_vietnamese_transactions(text: str) -> list[PartialTransaction]:
    """Extract candidate transactions from free-form Vietnamese text.

    Segments without an amount or without any descriptive text are skipped.
    """
    if not text or not text.strip():
        return []

    transactions: list[PartialTransaction] = []
    for segment in split_segments(text):
        extracted_date, rest = _extract_date(segment)
        found = _amount_match(rest)
        if found is None:
            continue
        amount, match = found
        description = " ".join((rest[: match.start()] + " " + rest[match.end() :]).split())
        description = description.strip(" -:.")
        if not description or amount <= 0:
            continue

        transactions.append(
            PartialTransaction(
                transaction_type=classify_type(description),
                amount=amount,
                description=description,
                confidence_score=EXTRACTION_CONFIDENCE,
                suggested_category_id=None,
                suggested_category_name=classify_category(description),
                suggested_tags=[],
                suggested_wallet_id=None,
                extracted_merchant=None,
                extracted_date=extracted_date,
                notes=EXTRACTION_NOTE,
                is_unusual=False,
                unusual_reasons=[],
            )
        )

    logger.debug("Vietnamese extraction found %d transaction(s)", len(transactions))
    return transactions


def estimate_transaction_count(text: str) -> int:
    """Rough number of transactions described by *text*, between 1 and 10.

    Returns 0 for blank input.
    """
    if not text or not text.strip():
        return 0

    lowered = text.lower()
    matches = sum(len(pattern.findall(lowered)) for pattern in _ESTIMATE_PATTERNS)
    separators = len(_SEPARATORS.findall(lowered))

    from_separators = separators + 1
    from_patterns = max(1, math.ceil(matches / 2))
    estimate = math.ceil((from_separators + from_patterns) / 2)
    return max(1, min(MAX_ESTIMATE, estimate))
