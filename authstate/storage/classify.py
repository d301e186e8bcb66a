# authstate/storage/classify.py
"""
Routing of legacy single-table identifiers ("sender-key-memory-<jid>",
"app-state-sync-key-<id>", ...) to their key category.

Several prefixes overlap ("sender-key-" is a prefix of "sender-key-memory-"),
so RULES is ordered most specific first and classify() returns the first hit.
"""

from __future__ import annotations
from typing import List, Optional, Tuple

from .models import KeyCategory


def _ordered_rules() -> Tuple[Tuple[str, KeyCategory], ...]:
    rules = [(c.prefix, c) for c in KeyCategory]
    # Longer prefix first; a prefix that extends another must win over it
    rules.sort(key=lambda r: len(r[0]), reverse=True)
    return tuple(rules)


RULES: Tuple[Tuple[str, KeyCategory], ...] = _ordered_rules()


def classify(identifier: str) -> Optional[KeyCategory]:
    for prefix, category in RULES:
        if identifier.startswith(prefix) and len(identifier) > len(prefix):
            return category
    return None


def split_identifier(identifier: str) -> Optional[Tuple[KeyCategory, str]]:
    """Return (category, bare id) for a legacy identifier, or None when it matches no category."""
    category = classify(identifier)
    if category is None:
        return None
    return category, identifier[len(category.prefix):]


def legacy_identifier(category: KeyCategory | str, key_id: str) -> str:
    return f"{KeyCategory.parse(category).prefix}{key_id}"


def more_specific_prefixes(category: KeyCategory) -> List[str]:
    """Prefixes of sibling categories that extend `category`'s prefix and must be excluded from its scan."""
    own = category.prefix
    return [p for p, c in RULES if c is not category and p.startswith(own)]
