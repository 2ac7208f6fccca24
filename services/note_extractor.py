# services/note_extractor.py
"""
Turn order-level notes, note attributes and line-item properties into
``Note`` rows. Categories come from keyword rules on the attribute or
property name, evaluated in order; the first match wins.
"""
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import or_
from sqlalchemy.orm import Session

import models
from utils import get_logger, first_match

logger = get_logger("linker")

NOTE_SOURCE = "shopify"


@dataclass(frozen=True)
class NoteCategory:
    note_type: str
    title: Optional[str]
    visibility: str
    priority: int = 5
    order_level: bool = False


def _has(*words: str):
    return lambda name: all(w in name for w in words)


def _any(*words: str):
    return lambda name: any(w in name for w in words)


# order-level note attributes; title None means "use the attribute name"
ATTRIBUTE_RULES = [
    (_has("gift", "note"), NoteCategory("gift_note", "Gift Note", "customer", priority=10)),
    (_any("card", "message"), NoteCategory("handwritten_card", "Card Message", "customer")),
    (_has("delivery", "instruction"), NoteCategory("delivery_instruction", "Delivery Instructions", "internal")),
    (_any("special", "instruction"), NoteCategory("order_note", "Special Instructions", "internal")),
]
ATTRIBUTE_DEFAULT = NoteCategory("custom_attribute", None, "internal")

# line-item properties; titles get " - <item name>" appended
PROPERTY_RULES = [
    (lambda n: "gift" in n and ("note" in n or "message" in n),
     NoteCategory("gift_note", "Gift Note", "customer", priority=10)),
    (_any("card"), NoteCategory("handwritten_card", "Card Message", "customer")),
    (_any("recipient"), NoteCategory("delivery_instruction", "Recipient", "internal", order_level=True)),
    (_any("delivery", "instruction"), NoteCategory("delivery_instruction", "Delivery Instructions", "internal")),
]
PROPERTY_DEFAULT = NoteCategory("order_note", None, "internal")

ORDER_NOTE = NoteCategory("internal", "Order Notes", "internal")


def categorize_attribute(name: str) -> NoteCategory:
    return first_match(ATTRIBUTE_RULES, (name or "").lower(), default=ATTRIBUTE_DEFAULT)


def categorize_property(name: str) -> NoteCategory:
    return first_match(PROPERTY_RULES, (name or "").lower(), default=PROPERTY_DEFAULT)


def _skip_property(name: str) -> bool:
    lowered = (name or "").lower()
    return not lowered or lowered.startswith("_") or "zapiet" in lowered


def _attr_pairs(raw: Any) -> List[tuple]:
    """Accepts [{name|key, value}, ...] lists as stored in staging."""
    pairs = []
    for attr in raw or []:
        if not isinstance(attr, dict):
            continue
        name = attr.get("name") or attr.get("key")
        value = attr.get("value")
        if name and value is not None and str(value).strip():
            pairs.append((str(name), str(value).strip()))
    return pairs


def build_order_notes(organization_id: str, order_id: int, staged: models.ShopifyOrder,
                      items: Sequence[models.OrderItem]) -> List[Dict[str, Any]]:
    """Note rows for one order, deduplicated by (entity, attribute name or title, content)."""
    notes: List[Dict[str, Any]] = []
    seen = set()

    def add(entity_type: str, entity_id: int, category: NoteCategory, title: str,
            content: str, attribute_name: Optional[str]):
        key = f"{entity_type}:{entity_id}:{attribute_name or title}:{content}"
        if key in seen:
            return
        seen.add(key)
        notes.append({
            "organization_id": organization_id,
            "entity_type": entity_type,
            "entity_id": entity_id,
            "order_id": order_id,
            "note_type": category.note_type,
            "title": title,
            "content": content,
            "visibility": category.visibility,
            "priority": category.priority,
            "attribute_name": attribute_name,
            "source": NOTE_SOURCE,
        })

    if staged.note and staged.note.strip():
        add("order", order_id, ORDER_NOTE, ORDER_NOTE.title, staged.note.strip(), None)

    for name, value in _attr_pairs(staged.note_attributes):
        if _skip_property(name):
            continue
        category = categorize_attribute(name)
        add("order", order_id, category, category.title or name, value, name)

    for index, line in enumerate(staged.line_items or []):
        if not isinstance(line, dict):
            continue
        item = items[index] if index < len(items) else None
        item_name = (item.name if item else None) or line.get("name") or line.get("title") or "Item"
        props = line.get("customAttributes") or line.get("properties") or []
        for name, value in _attr_pairs(props):
            if _skip_property(name):
                continue
            category = categorize_property(name)
            base = category.title or name
            if category.order_level or item is None:
                add("order", order_id, category, f"{base} - {item_name}", value, name)
            else:
                add("order_item", item.id, category, f"{base} - {item_name}", value, name)
    return notes


def replace_order_notes(db: Session, organization_id: str, order_id: int, staged: models.ShopifyOrder,
                        items: Sequence[models.OrderItem]) -> int:
    """
    Deletes every note this source previously wrote for the order (including
    its items) and inserts the current set. Does not commit.
    """
    item_ids = [i.id for i in items]
    clauses = [models.Note.order_id == order_id,
               (models.Note.entity_type == "order") & (models.Note.entity_id == order_id)]
    if item_ids:
        clauses.append((models.Note.entity_type == "order_item") & (models.Note.entity_id.in_(item_ids)))
    db.query(models.Note).filter(
        models.Note.organization_id == organization_id,
        models.Note.source == NOTE_SOURCE,
        or_(*clauses),
    ).delete(synchronize_session=False)

    rows = build_order_notes(organization_id, order_id, staged, items)
    if rows:
        db.bulk_insert_mappings(models.Note, rows)
    return len(rows)
