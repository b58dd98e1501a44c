"""Canonical chat state and the adapter for legacy state documents.

Stored documents have been written by two older code paths with different
field names: a Spanish "handler" scheme (``estadoActual``, ``catalogoEnviado``,
``ultimoIntent``...) and an English "flow" scheme (``state``,
``has_sent_catalog``, ``last_intent``...). Everything past the store boundary
works with :class:`ChatState`; only this module knows the legacy names.
"""

from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from app.services.state_machine import ConversationPhase


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ChatFlags:
    greeted: bool = False
    name_captured: bool = False


@dataclass
class ChatState:
    phone: Optional[str] = None
    conversation_phase: ConversationPhase = ConversationPhase.GREETING
    current_product: Optional[str] = None
    catalog_sent: bool = False
    catalog_list_shown: bool = False
    order_in_progress: bool = False
    order_details: Optional[dict] = None
    last_intent: Optional[str] = None
    last_change_at: Optional[datetime] = None
    last_message_id: Optional[str] = None
    catalog_ref: Optional[str] = None
    catalog_sent_at: Optional[datetime] = None
    catalog_resend_attempts: int = 0
    human_mode: bool = False
    flags: ChatFlags = field(default_factory=ChatFlags)
    last_contact_at: Optional[datetime] = None
    customer_name: Optional[str] = None
    handoff: dict = field(default_factory=dict)
    last_ai_latency_ms: Optional[int] = None
    last_ai_used_fallback: Optional[bool] = None
    last_ai_error: Optional[str] = None
    last_operator_reply_at: Optional[datetime] = None


STATE_FIELDS = {f.name for f in fields(ChatState)} - {"phone"}

DATETIME_FIELDS = {
    "last_change_at",
    "catalog_sent_at",
    "last_contact_at",
    "last_operator_reply_at",
}
BOOL_FIELDS = {"catalog_sent", "catalog_list_shown", "order_in_progress", "human_mode"}

# Canonical field -> legacy keys, handler scheme first. Dotted keys address nested maps.
LEGACY_ALIASES: dict[str, tuple[str, ...]] = {
    "conversation_phase": ("estadoActual", "state"),
    "current_product": ("productoActual", "slots.referencia"),
    "catalog_sent": ("catalogoEnviado", "has_sent_catalog"),
    "order_in_progress": ("pedidoEnProceso",),
    "last_intent": ("ultimoIntent",),
    "last_change_at": ("ultimoCambio", "updatedAt"),
    "last_message_id": ("ultimoMessageId",),
    "catalog_ref": ("catalogoRef",),
    "catalog_sent_at": ("catalogoTimestamp",),
    "catalog_resend_attempts": ("catalogoIntentos",),
    "human_mode": ("modoHumano",),
    "last_contact_at": ("ultimoContacto",),
    "customer_name": ("nombre",),
    "last_ai_latency_ms": ("lastAiLatencyMs",),
    "last_ai_used_fallback": ("lastAiUsedFallback",),
}

LEGACY_FLAG_ALIASES = {
    "greeted": "saludoHecho",
    "name_captured": "nombreCapturado",
}

# Both schemes must exist together; when only one side is present it is copied across.
LEGACY_PAIRS = (
    ("estadoActual", "state"),
    ("catalogoEnviado", "has_sent_catalog"),
    ("ultimoIntent", "last_intent"),
)

PHASE_ALIASES = {
    "GREETING": ConversationPhase.GREETING,
    "DISCOVERY": ConversationPhase.DISCOVERY,
    "COTIZACION": ConversationPhase.DISCOVERY,
    "ASSISTED_SELECTION": ConversationPhase.DISCOVERY,
    "CATALOG_SENT": ConversationPhase.CATALOG_SENT,
    "CATALOGO_ENVIADO": ConversationPhase.CATALOG_SENT,
    "CONFIRMATION": ConversationPhase.CONFIRMATION,
    "CONFIRMACION": ConversationPhase.CONFIRMATION,
    "ORDER_IN_PROGRESS": ConversationPhase.CONFIRMATION,
    "CLOSING": ConversationPhase.CLOSING,
    "CIERRE": ConversationPhase.CLOSING,
    "POST_ORDER": ConversationPhase.CLOSING,
}

HANDLER_PHASE_NAMES = {
    ConversationPhase.GREETING: "GREETING",
    ConversationPhase.DISCOVERY: "DISCOVERY",
    ConversationPhase.CATALOG_SENT: "CATALOGO_ENVIADO",
    ConversationPhase.CONFIRMATION: "CONFIRMACION",
    ConversationPhase.CLOSING: "CIERRE",
}

FLOW_PHASE_NAMES = {
    ConversationPhase.GREETING: "GREETING",
    ConversationPhase.DISCOVERY: "DISCOVERY",
    ConversationPhase.CATALOG_SENT: "CATALOG_SENT",
    ConversationPhase.CONFIRMATION: "ORDER_IN_PROGRESS",
    ConversationPhase.CLOSING: "CLOSING",
}

# Nested maps merged key by key instead of replaced.
NESTED_MERGE_KEYS = {"flags", "slots", "handoff"}


def coerce_phase(value: Any) -> ConversationPhase:
    """Map any known phase name onto the canonical enum; unknown values fall back to GREETING."""
    if isinstance(value, ConversationPhase):
        return value
    if isinstance(value, str):
        return PHASE_ALIASES.get(value.strip().upper(), ConversationPhase.GREETING)
    return ConversationPhase.GREETING


def coerce_datetime(value: Any) -> Optional[datetime]:
    """Accept datetimes, ISO strings and epoch seconds or milliseconds."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        seconds = value / 1000 if value > 1e11 else value
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    if isinstance(value, dict):
        # Serialized document-store timestamps: {"_seconds": ..., "_nanoseconds": ...}
        seconds = value.get("_seconds", value.get("seconds"))
        return coerce_datetime(seconds) if seconds is not None else None
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return coerce_datetime(datetime.fromisoformat(text))
        except ValueError:
            return None
    return None


def _coerce_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "si", "sí"}
    return bool(value)


def _coerce_int(value: Any, default: int = 0) -> int:
    try:
        return max(int(value), 0)
    except (TypeError, ValueError):
        return default


def _lookup(raw: dict, key: str) -> Any:
    node: Any = raw
    for part in key.split("."):
        if not isinstance(node, dict) or part not in node:
            return None
        node = node[part]
    return node


def _resolve(raw: dict, name: str) -> Any:
    value = raw.get(name)
    if value is not None:
        return value
    for alias in LEGACY_ALIASES.get(name, ()):
        value = _lookup(raw, alias)
        if value is not None:
            return value
    return None


def _coerce_field(name: str, value: Any) -> Any:
    if name == "conversation_phase":
        return coerce_phase(value)
    if name in DATETIME_FIELDS:
        return coerce_datetime(value)
    if name in BOOL_FIELDS:
        return _coerce_bool(value)
    if name == "catalog_resend_attempts":
        return _coerce_int(value)
    if name == "last_ai_latency_ms":
        return _coerce_int(value, default=None)
    if name == "last_ai_used_fallback":
        return _coerce_bool(value)
    if name in {"order_details", "handoff"}:
        return dict(value) if isinstance(value, dict) else ({} if name == "handoff" else None)
    return value if value is None else str(value)


def merge_legacy_fields(raw: Optional[dict], phone: Optional[str] = None) -> ChatState:
    """Build the canonical state from a stored document of any known schema."""
    raw = raw or {}
    state = ChatState(phone=phone)
    for name in STATE_FIELDS - {"flags"}:
        value = _resolve(raw, name)
        if value is not None:
            setattr(state, name, _coerce_field(name, value))

    raw_flags = raw.get("flags") if isinstance(raw.get("flags"), dict) else {}
    for name, legacy in LEGACY_FLAG_ALIASES.items():
        value = raw_flags.get(name)
        if value is None:
            value = raw_flags.get(legacy)
        if value is not None:
            setattr(state.flags, name, _coerce_bool(value))
    return state


def _translate_pair_value(source: str, target: str, value: Any) -> Any:
    if {source, target} != {"estadoActual", "state"}:
        return value
    phase = coerce_phase(value)
    return FLOW_PHASE_NAMES[phase] if target == "state" else HANDLER_PHASE_NAMES[phase]


def fill_legacy_counterparts(raw: Optional[dict]) -> dict:
    """Copy each paired legacy field to its missing counterpart. Returns a new dict."""
    filled = dict(raw or {})
    for left, right in LEGACY_PAIRS:
        left_value = filled.get(left)
        right_value = filled.get(right)
        if left_value is not None and right_value is None:
            filled[right] = _translate_pair_value(left, right, left_value)
        elif right_value is not None and left_value is None:
            filled[left] = _translate_pair_value(right, left, right_value)
    return filled


def _serialize(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, ChatFlags):
        return asdict(value)
    if isinstance(value, dict):
        return {key: _serialize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_serialize(item) for item in value]
    return value


def _set_dotted(document: dict, key: str, value: Any) -> None:
    parts = key.split(".")
    node = document
    for part in parts[:-1]:
        node = node.setdefault(part, {})
    node[parts[-1]] = value


def to_document(patch: dict, *, legacy_write_back: bool = True) -> dict:
    """Serialize a canonical patch into document keys.

    With ``legacy_write_back`` every value is mirrored into both legacy
    schemes so older readers keep working during the migration.
    """
    unknown = set(patch) - STATE_FIELDS
    if unknown:
        raise KeyError(f"Unknown chat state fields: {sorted(unknown)}")

    document: dict = {}
    for name, value in patch.items():
        if name == "flags":
            flags = asdict(value) if isinstance(value, ChatFlags) else dict(value or {})
            flag_doc = dict(flags)
            if legacy_write_back:
                for flag_name, legacy in LEGACY_FLAG_ALIASES.items():
                    if flag_name in flags:
                        flag_doc[legacy] = flags[flag_name]
            document["flags"] = flag_doc
            continue

        document[name] = _serialize(value)
        if not legacy_write_back:
            continue
        for alias in LEGACY_ALIASES.get(name, ()):
            if name == "conversation_phase":
                phase = coerce_phase(value)
                names = HANDLER_PHASE_NAMES if alias == "estadoActual" else FLOW_PHASE_NAMES
                _set_dotted(document, alias, names[phase])
            else:
                _set_dotted(document, alias, _serialize(value))
    return document


def merge_document(document: Optional[dict], patch_document: dict) -> dict:
    """Merge-write semantics: untouched keys survive, nested maps merge one level deep."""
    merged = dict(document or {})
    for key, value in patch_document.items():
        current = merged.get(key)
        if key in NESTED_MERGE_KEYS and isinstance(current, dict) and isinstance(value, dict):
            merged[key] = {**current, **value}
        else:
            merged[key] = value
    return merged


def default_patch() -> dict:
    defaults = ChatState()
    return {name: getattr(defaults, name) for name in STATE_FIELDS}


def state_to_dict(state: ChatState) -> dict:
    """JSON-friendly view of the canonical state."""
    return {f.name: _serialize(getattr(state, f.name)) for f in fields(ChatState)}


def should_throttle_intent(
    state: ChatState,
    intent: str,
    now: datetime,
    threshold_seconds: float = 90.0,
) -> bool:
    """True when the same intent was used less than ``threshold_seconds`` ago."""
    if not intent or state.last_intent != intent or state.last_change_at is None:
        return False
    elapsed = (now - state.last_change_at).total_seconds()
    return elapsed < threshold_seconds
