"""
IntentClassifier - ordered, first-match-wins intent table.

Rules are evaluated strictly in the order of ``IntentClassifier.rules``.
Session-bound rules come first so that short generic replies ("1", "si")
are captured by the pending question before the generic rules see them:

 1. owner commands (owner identity only)
 2. reply to a disambiguation (number or cancel)
 3. bare yes/no for a pending item confirmation
 4. order history, cancel/clear, remove item N, confirm, cart view
 5. "1"/"2" while the delivery question is pending
 6. photo request for a product
 7. catalog / price list
 8. short text naming a category
 9. greeting
10. FAQ: hours, location, payment, contact
11. product phrase found in the catalog index
12. stock question without a product
13. AI fallback

Keyword tables live in ``data/intent_patterns.yaml``.
"""

from __future__ import annotations

import functools
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Pattern

import yaml
from langsmith import traceable

from ..intents import DeliveryOption, IntentType, OwnerCommand
from ..models.catalog import Product
from .catalog_index import CatalogIndex
from .entity_extractor import ExtractedEntities, extract_entities, extract_index
from .session_manager import SessionState
from .text_normalizer import normalize_message, word_count

logger = logging.getLogger(__name__)

PATTERNS_PATH = Path(__file__).resolve().parents[1] / "data" / "intent_patterns.yaml"
DEFAULT_CATEGORY_MAX_WORDS = 4


def _phrases(values: Any) -> List[str]:
    return [normalize_message(str(value)) for value in values or [] if str(value).strip()]


def _compile_contains(phrases: List[str]) -> Optional[Pattern[str]]:
    if not phrases:
        return None
    ordered = sorted(set(phrases), key=len, reverse=True)
    return re.compile(r"\b(?:" + "|".join(re.escape(phrase) for phrase in ordered) + r")\b")


@dataclass(frozen=True)
class KeywordSet:
    """Phrases matched either as the whole message or as whole words inside it."""

    exact: FrozenSet[str] = frozenset()
    contains: Optional[Pattern[str]] = None

    @classmethod
    def from_config(cls, config: Any) -> "KeywordSet":
        config = config or {}
        return cls(
            exact=frozenset(_phrases(config.get("exact"))),
            contains=_compile_contains(_phrases(config.get("contains"))),
        )

    @classmethod
    def containing(cls, values: Any) -> "KeywordSet":
        return cls(contains=_compile_contains(_phrases(values)))

    def matches(self, text: str) -> bool:
        if text in self.exact:
            return True
        return bool(self.contains and self.contains.search(text))

    def strip(self, text: str) -> str:
        if self.contains is None:
            return text
        return " ".join(self.contains.sub(" ", text).split())


@dataclass(frozen=True)
class IntentPatterns:
    owner_commands: Dict[OwnerCommand, KeywordSet]
    disambiguation_cancel: KeywordSet
    affirm: KeywordSet
    reject: KeywordSet
    order_history: KeywordSet
    show_cart: KeywordSet
    confirm_order: KeywordSet
    clear_cart: KeywordSet
    remove_item: KeywordSet
    product_photo: KeywordSet
    photo_filler: KeywordSet
    catalog: KeywordSet
    category_max_words: int
    greeting: KeywordSet
    faq: Dict[IntentType, KeywordSet]
    stock_info: KeywordSet


@functools.lru_cache(maxsize=4)
def load_patterns(path: Path = PATTERNS_PATH) -> IntentPatterns:
    """Load and compile the keyword tables from YAML."""

    if not path.exists():
        raise FileNotFoundError(f"Intent patterns not found at {path}")
    with path.open("r", encoding="utf-8") as fp:
        data = yaml.safe_load(fp) or {}

    owner_commands: Dict[OwnerCommand, KeywordSet] = {}
    for name, phrases in (data.get("owner_commands") or {}).items():
        try:
            command = OwnerCommand(name)
        except ValueError:
            logger.warning("Unknown owner command in patterns: %s", name)
            continue
        owner_commands[command] = KeywordSet.containing(phrases)

    faq: Dict[IntentType, KeywordSet] = {}
    for name, phrases in (data.get("faq") or {}).items():
        try:
            intent = IntentType(name)
        except ValueError:
            logger.warning("Unknown FAQ intent in patterns: %s", name)
            continue
        faq[intent] = KeywordSet.containing(phrases)

    confirmation = data.get("item_confirmation") or {}
    photo = data.get("product_photo") or {}
    category = data.get("category_browse") or {}
    return IntentPatterns(
        owner_commands=owner_commands,
        disambiguation_cancel=KeywordSet.from_config(data.get("disambiguation_cancel")),
        affirm=KeywordSet.from_config(confirmation.get("affirm")),
        reject=KeywordSet.from_config(confirmation.get("reject")),
        order_history=KeywordSet.from_config(data.get("order_history")),
        show_cart=KeywordSet.from_config(data.get("show_cart")),
        confirm_order=KeywordSet.from_config(data.get("confirm_order")),
        clear_cart=KeywordSet.from_config(data.get("clear_cart")),
        remove_item=KeywordSet.from_config(data.get("remove_item")),
        product_photo=KeywordSet.containing(photo.get("contains")),
        photo_filler=KeywordSet.containing(photo.get("filler")),
        catalog=KeywordSet.from_config(data.get("catalog")),
        category_max_words=int(category.get("max_words", DEFAULT_CATEGORY_MAX_WORDS)),
        greeting=KeywordSet.from_config(data.get("greeting")),
        faq=faq,
        stock_info=KeywordSet.from_config(data.get("stock_info")),
    )


@dataclass
class IntentMatch:
    intent: IntentType
    parameters: Dict[str, Any] = field(default_factory=dict)
    products: List[Product] = field(default_factory=list)
    entities: Optional[ExtractedEntities] = None
    rule: str = ""

    def to_debug_dict(self) -> Dict[str, Any]:
        return {
            "intent": self.intent.value,
            "rule": self.rule,
            "parameters": self.parameters,
            "products": [product.id for product in self.products[:5]],
            "quantity": self.entities.quantity if self.entities else None,
        }


@dataclass(frozen=True)
class ClassifierInput:
    raw_text: str
    text: str
    state: SessionState
    is_owner: bool


@dataclass(frozen=True)
class IntentRule:
    name: str
    predicate: Callable[[ClassifierInput], Optional[IntentMatch]]


class IntentClassifier:
    """Deterministic classifier over the ordered rule table."""

    def __init__(self, catalog: CatalogIndex, patterns: IntentPatterns | None = None) -> None:
        self._catalog = catalog
        self._patterns = patterns or load_patterns()
        self.rules: List[IntentRule] = [
            IntentRule("owner_command", self._owner_command),
            IntentRule("disambiguation_reply", self._disambiguation_reply),
            IntentRule("item_confirmation", self._item_confirmation),
            IntentRule("order_history", self._keyword(IntentType.ORDER_HISTORY, self._patterns.order_history)),
            IntentRule("clear_cart", self._keyword(IntentType.CLEAR_CART, self._patterns.clear_cart)),
            IntentRule("remove_item", self._remove_item),
            IntentRule("confirm_order", self._keyword(IntentType.CONFIRM_ORDER, self._patterns.confirm_order)),
            IntentRule("show_cart", self._keyword(IntentType.SHOW_CART, self._patterns.show_cart)),
            IntentRule("delivery_choice", self._delivery_choice),
            IntentRule("product_photo", self._product_photo),
            IntentRule("catalog", self._keyword(IntentType.CATALOG, self._patterns.catalog)),
            IntentRule("category_browse", self._category_browse),
            IntentRule("greeting", self._keyword(IntentType.GREETING, self._patterns.greeting)),
            IntentRule("faq", self._faq),
            IntentRule("product_phrase", self._product_phrase),
            IntentRule("stock_info", self._keyword(IntentType.STOCK_INFO, self._patterns.stock_info)),
        ]

    @traceable(run_type="chain", name="intent_classify")
    def classify(
        self,
        text: str,
        *,
        state: SessionState = SessionState.IDLE,
        is_owner: bool = False,
    ) -> IntentMatch:
        payload = ClassifierInput(
            raw_text=text or "",
            text=normalize_message(text),
            state=state,
            is_owner=is_owner,
        )
        if payload.text:
            for rule in self.rules:
                match = rule.predicate(payload)
                if match is not None:
                    match.rule = rule.name
                    return match
        return IntentMatch(intent=IntentType.AI_FALLBACK, rule="ai_fallback")

    # ------------------------------------------------------------------
    # Predicates
    # ------------------------------------------------------------------
    @staticmethod
    def _keyword(intent: IntentType, keywords: KeywordSet) -> Callable[[ClassifierInput], Optional[IntentMatch]]:
        def predicate(payload: ClassifierInput) -> Optional[IntentMatch]:
            return IntentMatch(intent=intent) if keywords.matches(payload.text) else None

        return predicate

    def _owner_command(self, payload: ClassifierInput) -> Optional[IntentMatch]:
        if not payload.is_owner:
            return None
        for command, keywords in self._patterns.owner_commands.items():
            if keywords.matches(payload.text):
                return IntentMatch(intent=IntentType.OWNER_COMMAND, parameters={"command": command})
        return None

    def _disambiguation_reply(self, payload: ClassifierInput) -> Optional[IntentMatch]:
        if payload.state != SessionState.DISAMBIGUATING:
            return None
        if payload.text.isdecimal():
            return IntentMatch(intent=IntentType.DISAMBIGUATION_PICK, parameters={"index": int(payload.text)})
        if self._patterns.disambiguation_cancel.matches(payload.text):
            return IntentMatch(intent=IntentType.DISAMBIGUATION_CANCEL)
        return None

    def _item_confirmation(self, payload: ClassifierInput) -> Optional[IntentMatch]:
        if payload.state != SessionState.PENDING_ITEM_CONFIRM:
            return None
        if payload.text in self._patterns.affirm.exact:
            return IntentMatch(intent=IntentType.CONFIRM_ITEM)
        if payload.text in self._patterns.reject.exact:
            return IntentMatch(intent=IntentType.REJECT_ITEM)
        return None

    def _remove_item(self, payload: ClassifierInput) -> Optional[IntentMatch]:
        if not self._patterns.remove_item.matches(payload.text):
            return None
        return IntentMatch(intent=IntentType.REMOVE_ITEM, parameters={"index": extract_index(payload.text)})

    def _delivery_choice(self, payload: ClassifierInput) -> Optional[IntentMatch]:
        if payload.state != SessionState.AWAITING_DELIVERY_CHOICE:
            return None
        if payload.text not in {option.value for option in DeliveryOption}:
            return None
        return IntentMatch(intent=IntentType.DELIVERY_CHOICE, parameters={"option": payload.text})

    def _product_photo(self, payload: ClassifierInput) -> Optional[IntentMatch]:
        if not self._patterns.product_photo.matches(payload.text):
            return None
        query = self._patterns.photo_filler.strip(self._patterns.product_photo.strip(payload.text))
        products = self._catalog.search(query) if query else []
        return IntentMatch(intent=IntentType.PRODUCT_PHOTO, parameters={"query": query}, products=products)

    def _category_browse(self, payload: ClassifierInput) -> Optional[IntentMatch]:
        if word_count(payload.text) > self._patterns.category_max_words:
            return None
        category = self._catalog.find_category(payload.text)
        if category is None:
            return None
        return IntentMatch(
            intent=IntentType.CATEGORY_BROWSE,
            parameters={"category": category},
            products=self._catalog.by_category(category),
        )

    def _faq(self, payload: ClassifierInput) -> Optional[IntentMatch]:
        for intent, keywords in self._patterns.faq.items():
            if keywords.matches(payload.text):
                return IntentMatch(intent=intent)
        return None

    def _product_phrase(self, payload: ClassifierInput) -> Optional[IntentMatch]:
        products = self._catalog.search(payload.raw_text)
        if not products:
            return None
        # A fully named product narrows the word matches down to itself.
        named = self._catalog.named_in(payload.raw_text)
        return IntentMatch(
            intent=IntentType.PRODUCT_PHRASE,
            products=named or products,
            entities=extract_entities(payload.raw_text),
        )
