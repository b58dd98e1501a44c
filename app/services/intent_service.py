"""Deterministic signal detectors for the order flow. All matching runs on normalized text."""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from app.services.text_utils import normalize


class Intent(str, Enum):
    GREETING = "greeting"
    CATALOG = "catalog"
    CATALOG_LIST = "catalog_list"
    ORDER_SUMMARY = "order_summary"
    CONFIRMATION_POSITIVE = "confirmation_positive"
    CONFIRMATION_NEGATIVE = "confirmation_negative"
    HUMAN_REQUEST = "human_request"
    AI_REPLY = "ai_reply"


PRODUCT_RE = re.compile(r"\b(camisetas?|chompas?|joggers?|pantalonetas?)\b")

POSITIVE_CONFIRMATION_RE = re.compile(r"\b(si|correct[oa]|confirmo|asi es|de acuerdo|perfecto)\b")
NEGATIVE_CONFIRMATION_RE = re.compile(r"\b(no|cambia\w*|cambiar|modific\w*|otra cosa)\b")
LEADING_NEGATION_RE = re.compile(r"^no\b")

QUANTITY_RE = re.compile(r"\b(\d{1,3})\b(?:\s*(?:unidades?|uds?|piezas?|pz)\b)?")
SIZE_RE = re.compile(r"\btalla\b\s*:?\s*([a-z0-9]{1,4})\b", re.IGNORECASE)
COLOR_RE = re.compile(r"\bcolor(?:es)?\s*:?\s*([a-záéíóúñ]+)", re.IGNORECASE)
PRICE_RE = re.compile(r"\b(precio\w*|cuanto vale|cuesta\w*|cost\w*|cotiza\w*)\b")

RESEND_RE = re.compile(r"\b(reenvia\w*|otra vez|de nuevo|nuevamente)\b")

HUMAN_REQUEST_PHRASES = (
    "quiero hablar con alguien",
    "hablar con alguien",
    "asesor humano",
    "atencion personalizada",
    "necesito un humano",
    "hablar con asesor",
    "hablar con un asesor",
    "atencion de una persona",
    "hablar con una persona",
)

NAME_RE = re.compile(r"\b(?:me llamo|mi nombre es)\s+([a-záéíóúñü]+)", re.IGNORECASE)


@dataclass
class OrderDetails:
    quantity: Optional[int] = None
    size: Optional[str] = None
    color: Optional[str] = None
    mentions_price: bool = False

    @property
    def has_any(self) -> bool:
        return bool(self.quantity or self.size or self.color or self.mentions_price)

    def to_dict(self) -> dict:
        return {
            "quantity": self.quantity,
            "size": self.size,
            "color": self.color,
            "mentions_price": self.mentions_price,
        }


def detect_product(text: Optional[str]) -> Optional[str]:
    match = PRODUCT_RE.search(normalize(text))
    return match.group(1) if match else None


def detect_order_details(text: Optional[str]) -> OrderDetails:
    raw = (text or "").strip()
    normalized = normalize(raw)
    if not normalized:
        return OrderDetails()

    quantity_match = QUANTITY_RE.search(normalized)
    size_match = SIZE_RE.search(raw)
    color_match = COLOR_RE.search(raw)

    quantity = int(quantity_match.group(1)) if quantity_match else None
    return OrderDetails(
        quantity=quantity if quantity else None,
        size=size_match.group(1).upper() if size_match else None,
        color=color_match.group(1).lower().capitalize() if color_match else None,
        mentions_price=PRICE_RE.search(normalized) is not None,
    )


def is_positive_confirmation(text: Optional[str]) -> bool:
    normalized = normalize(text)
    if LEADING_NEGATION_RE.match(normalized):
        # "no, no es correcto"
        return False
    return POSITIVE_CONFIRMATION_RE.search(normalized) is not None


def is_negative_confirmation(text: Optional[str]) -> bool:
    return NEGATIVE_CONFIRMATION_RE.search(normalize(text)) is not None


def is_resend_request(text: Optional[str]) -> bool:
    return RESEND_RE.search(normalize(text)) is not None


def is_human_request_message(text: Optional[str]) -> bool:
    normalized = normalize(text)
    if not normalized:
        return False
    return any(phrase in normalized for phrase in HUMAN_REQUEST_PHRASES)


def extract_customer_name(text: Optional[str]) -> Optional[str]:
    match = NAME_RE.search((text or "").strip())
    if not match:
        return None
    return match.group(1).lower().capitalize()
