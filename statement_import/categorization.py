"""Keyword-rule categorization of transactions.

A rule is a lower-cased keyword that must occur in "<merchant> <description>".
The user's own rules are consulted before the shared system rules, each group
in store order, and the first matching rule decides the category:

    user rule 'biedronka' -> Groceries (mine)      confidence 'high'
    system rule 'biedronka' -> Groceries            confidence 'medium'
    nothing matches                                 confidence 'none'
"""

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from . import store as store_lib
from .source import CONFIDENCE_HIGH, CONFIDENCE_MEDIUM, CONFIDENCE_NONE

logger = logging.getLogger(__name__)


@dataclass
class CategorizationResult:
    category_id: Optional[str] = None
    category_name: Optional[str] = None
    confidence: str = CONFIDENCE_NONE


@dataclass
class CategorizationInput:
    id: str
    description: str
    merchant_name: Optional[str] = None


def search_text(description: str, merchant_name: Optional[str]) -> str:
    return f'{merchant_name or ""} {description}'.lower()


def load_rules(store: store_lib.Store, user_id: str) -> List[store_lib.CategorizationRule]:
    """Return the user's rules followed by the system rules."""
    user_rules = store.select(store_lib.CATEGORIZATION_RULES, where=[
        ('user_id', '=', user_id),
        ('is_system', '=', False),
    ])
    system_rules = store.select(store_lib.CATEGORIZATION_RULES, where=[
        ('is_system', '=', True),
    ])
    return user_rules + system_rules


class Categorizer:
    """Applies one user's rules; rules and category names are read once."""

    def __init__(self, store: store_lib.Store, user_id: str):
        if not user_id:
            raise ValueError('user_id is required')
        self.rules = load_rules(store, user_id)
        self.category_names: Dict[str, str] = {
            category.id: category.name
            for category in store.select(store_lib.CATEGORIES)
        }

    def categorize(self, description: str,
                   merchant_name: Optional[str] = None) -> CategorizationResult:
        text = search_text(description, merchant_name)
        for rule in self.rules:
            keyword = rule.keyword.lower()
            if not keyword or keyword not in text:
                continue
            # A rule pointing at a deleted category is ignored
            if rule.category_id not in self.category_names:
                continue
            return CategorizationResult(
                category_id=rule.category_id,
                category_name=self.category_names[rule.category_id],
                confidence=CONFIDENCE_MEDIUM if rule.is_system else CONFIDENCE_HIGH,
            )
        return CategorizationResult()


def categorize_transaction(store: store_lib.Store, user_id: str, description: str,
                           merchant_name: Optional[str] = None) -> CategorizationResult:
    return Categorizer(store, user_id).categorize(description, merchant_name)


def categorize_transactions(
        store: store_lib.Store, user_id: str,
        transactions: Iterable[CategorizationInput]) -> Dict[str, CategorizationResult]:
    """Categorize a batch, keyed by transaction id."""
    categorizer = Categorizer(store, user_id)
    return {
        txn.id: categorizer.categorize(txn.description, txn.merchant_name)
        for txn in transactions
    }


def recategorize_uncategorized(store: store_lib.Store, user_id: str) -> int:
    """Assign categories to the user's uncategorized transactions.

    Only rows without a category are touched, so running it again changes
    nothing.

    Returns:
        Number of transactions that received a category.
    """
    categorizer = Categorizer(store, user_id)
    uncategorized = store.select(store_lib.TRANSACTIONS, where=[
        ('user_id', '=', user_id),
        ('category_id', 'is null', None),
    ])

    updated = 0
    for txn in uncategorized:
        result = categorizer.categorize(txn.description, txn.merchant_name)
        if result.category_id is None:
            continue
        store.update(store_lib.TRANSACTIONS, txn.id, category_id=result.category_id)
        updated += 1

    logger.info('categorization: %d of %d uncategorized transactions assigned',
                updated, len(uncategorized))
    return updated
