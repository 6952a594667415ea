from __future__ import annotations

from enum import StrEnum
from typing import Literal


class IntentType(StrEnum):
    """Intents recognised by the classifier, listed in evaluation order."""

    OWNER_COMMAND = "OWNER_COMMAND"

    DISAMBIGUATION_PICK = "DISAMBIGUATION_PICK"
    DISAMBIGUATION_CANCEL = "DISAMBIGUATION_CANCEL"

    CONFIRM_ITEM = "CONFIRM_ITEM"
    REJECT_ITEM = "REJECT_ITEM"

    ORDER_HISTORY = "ORDER_HISTORY"
    CLEAR_CART = "CLEAR_CART"
    REMOVE_ITEM = "REMOVE_ITEM"
    CONFIRM_ORDER = "CONFIRM_ORDER"
    SHOW_CART = "SHOW_CART"

    DELIVERY_CHOICE = "DELIVERY_CHOICE"

    PRODUCT_PHOTO = "PRODUCT_PHOTO"
    CATALOG = "CATALOG"
    CATEGORY_BROWSE = "CATEGORY_BROWSE"
    GREETING = "GREETING"

    FAQ_HOURS = "FAQ_HOURS"
    FAQ_LOCATION = "FAQ_LOCATION"
    FAQ_PAYMENT = "FAQ_PAYMENT"
    FAQ_CONTACT = "FAQ_CONTACT"

    PRODUCT_PHRASE = "PRODUCT_PHRASE"
    STOCK_INFO = "STOCK_INFO"
    AI_FALLBACK = "AI_FALLBACK"


class OwnerCommand(StrEnum):
    """Commands only the business owner may send."""

    PAUSE = "PAUSE"
    RESUME = "RESUME"
    AI_ON = "AI_ON"
    AI_OFF = "AI_OFF"
    NOTIFICATIONS_ON = "NOTIFICATIONS_ON"
    NOTIFICATIONS_OFF = "NOTIFICATIONS_OFF"
    STATUS = "STATUS"
    STATS = "STATS"


class DeliveryOption(StrEnum):
    PICKUP = "1"
    DELIVERY = "2"


IntentCategory = Literal["owner", "session", "cart", "info", "product", "fallback"]

SESSION_INTENTS: set[IntentType] = {
    IntentType.DISAMBIGUATION_PICK,
    IntentType.DISAMBIGUATION_CANCEL,
    IntentType.CONFIRM_ITEM,
    IntentType.REJECT_ITEM,
    IntentType.DELIVERY_CHOICE,
}

CART_INTENTS: set[IntentType] = {
    IntentType.SHOW_CART,
    IntentType.CONFIRM_ORDER,
    IntentType.CLEAR_CART,
    IntentType.REMOVE_ITEM,
}

INFO_INTENTS: set[IntentType] = {
    IntentType.ORDER_HISTORY,
    IntentType.CATALOG,
    IntentType.CATEGORY_BROWSE,
    IntentType.GREETING,
    IntentType.FAQ_HOURS,
    IntentType.FAQ_LOCATION,
    IntentType.FAQ_PAYMENT,
    IntentType.FAQ_CONTACT,
    IntentType.STOCK_INFO,
}

PRODUCT_INTENTS: set[IntentType] = {
    IntentType.PRODUCT_PHRASE,
    IntentType.PRODUCT_PHOTO,
}

_INTENT_CATEGORY_LOOKUP: dict[IntentType, IntentCategory] = {IntentType.OWNER_COMMAND: "owner"}
for intent in SESSION_INTENTS:
    _INTENT_CATEGORY_LOOKUP[intent] = "session"
for intent in CART_INTENTS:
    _INTENT_CATEGORY_LOOKUP[intent] = "cart"
for intent in INFO_INTENTS:
    _INTENT_CATEGORY_LOOKUP[intent] = "info"
for intent in PRODUCT_INTENTS:
    _INTENT_CATEGORY_LOOKUP[intent] = "product"


def get_intent_category(intent: str | IntentType | None) -> IntentCategory:
    """Map intent code to a coarse bucket used in metrics and logs."""

    if intent is None:
        return "fallback"
    if isinstance(intent, IntentType):
        intent_enum = intent
    else:
        try:
            intent_enum = IntentType(intent)
        except ValueError:
            return "fallback"
    return _INTENT_CATEGORY_LOOKUP.get(intent_enum, "fallback")
