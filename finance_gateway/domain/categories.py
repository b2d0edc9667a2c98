"""Category taxonomy, effective-category resolution and local keyword classification"""

import re
from decimal import Decimal
from typing import List, Optional, Pattern, Protocol, Tuple

UNCATEGORIZED = "Uncategorized"
INCOME = "Income"
OTHER = "Other"

CATEGORY_TAXONOMY: List[str] = [
    "Housing",
    "Transportation",
    "Food",
    "Utilities",
    "Insurance",
    "Healthcare",
    "Debt Payments",
    "Entertainment",
    "Shopping",
    "Personal Care",
    "Education",
    "Travel",
    "Gifts & Donations",
    INCOME,
    OTHER,
]

# Checked in order; first match wins
_KEYWORD_RULES: List[Tuple[str, Pattern[str]]] = [
    ("Housing", re.compile(r"rent|mortgage|property|real estate|apartment|housing|landlord|lease|condo|hoa")),
    ("Transportation", re.compile(r"uber|lyft|taxi|car|auto|gas|fuel|transit|train|bus|subway|metro|toll|parking")),
    (
        "Food",
        re.compile(r"grocery|restaurant|coffee|food|dining|doordash|grubhub|ubereats|meal|cafe|diner|pizza|burger|bakery"),
    ),
    (
        "Utilities",
        re.compile(r"electricity|water|gas|power|utility|internet|cable|phone|cell|mobile|telecom|broadband"),
    ),
    ("Insurance", re.compile(r"insurance|policy|premium|coverage|protect")),
    (
        "Healthcare",
        re.compile(r"doctor|medical|health|hospital|clinic|pharmacy|prescription|dental|optical|therapy|healthcare"),
    ),
    ("Debt Payments", re.compile(r"payment|loan|credit card|debt|interest|student loan|finance charge")),
    (
        "Entertainment",
        re.compile(r"movie|entertainment|game|music|concert|theater|netflix|spotify|hulu|disney|streaming|subscription"),
    ),
    (
        "Shopping",
        re.compile(r"amazon|walmart|target|store|mall|shop|retail|clothing|apparel|merchandise|purchase|online"),
    ),
    ("Personal Care", re.compile(r"salon|spa|haircut|beauty|gym|fitness|personal care|cosmetic|makeup")),
    ("Education", re.compile(r"tuition|school|college|university|class|course|education|book|student|learning")),
    ("Travel", re.compile(r"travel|flight|airline|hotel|vacation|airbnb|booking|trip|lodging")),
    ("Gifts & Donations", re.compile(r"gift|charity|donation|present|donate")),
    (INCOME, re.compile(r"payroll|salary|deposit|income|wage|earning|revenue|transfer")),
]


class Categorized(Protocol):
    user_category: Optional[str]
    auto_category: Optional[str]
    upstream_category: Optional[str]


def effective_category(txn: Categorized) -> str:
    """
    Category shown to the user.

    Precedence: user override, then automated classification, then the
    category Plaid supplied. Empty strings count as unset.
    """
    return txn.user_category or txn.auto_category or txn.upstream_category or UNCATEGORIZED


def is_known_category(label: str) -> bool:
    return label in CATEGORY_TAXONOMY


def classify_by_keywords(name: str, amount: Decimal, description: Optional[str] = None) -> str:
    """Deterministic keyword match against the taxonomy"""
    text = f"{name or ''} {description or ''}".lower()

    for category, pattern in _KEYWORD_RULES:
        if pattern.search(text):
            return category

    if amount < 0 or "deposit" in text or "payment received" in text:
        return INCOME

    return OTHER
