# services/tag_extractor.py
from typing import Dict, List

from sqlalchemy import func
from sqlalchemy.orm import Session

import models
from crud.utils import insert_ignore
from utils import get_logger, split_tags

logger = get_logger("linker")

TAG_DESCRIPTION = "Imported from Shopify"


def sync_entity_tags(db: Session, organization_id: str, taggable_type: str,
                     tag_strings: Dict[int, str]) -> Dict[str, int]:
    """
    Links comma-separated platform tags to internal entities.

    ``tag_strings`` maps internal entity id -> raw tag string. Tag names are
    matched case-insensitively; the first spelling seen becomes the display
    name. ``usage_count`` of every touched tag is recomputed from the live
    association count. Commits.
    """
    wanted: Dict[int, List[str]] = {}
    display: Dict[str, str] = {}
    for entity_id, raw in tag_strings.items():
        names = []
        for tag in split_tags(raw):
            key = tag.lower()
            display.setdefault(key, tag)
            if key not in names:
                names.append(key)
        if names:
            wanted[entity_id] = names
    if not wanted:
        return {"tags_created": 0, "links": 0}

    existing = {
        t.name: t for t in db.query(models.Tag).filter(
            models.Tag.organization_id == organization_id,
            models.Tag.name.in_(list(display.keys())),
        ).all()
    }
    missing = [name for name in display if name not in existing]
    if missing:
        insert_ignore(db, models.Tag, [
            {
                "organization_id": organization_id,
                "name": name,
                "display_name": display[name],
                "description": TAG_DESCRIPTION,
                "usage_count": 0,
            }
            for name in missing
        ], keys=["organization_id", "name"])
        db.flush()
        existing.update({
            t.name: t for t in db.query(models.Tag).filter(
                models.Tag.organization_id == organization_id,
                models.Tag.name.in_(missing),
            ).all()
        })

    linked = set(
        db.query(models.Taggable.tag_id, models.Taggable.taggable_id).filter(
            models.Taggable.taggable_type == taggable_type,
            models.Taggable.taggable_id.in_(list(wanted.keys())),
        ).all()
    )
    pairs = [
        (existing[name].id, entity_id)
        for entity_id, names in wanted.items()
        for name in names
        if name in existing
    ]
    links = [
        {
            "organization_id": organization_id,
            "tag_id": tag_id,
            "taggable_type": taggable_type,
            "taggable_id": entity_id,
        }
        for tag_id, entity_id in pairs
        if (tag_id, entity_id) not in linked
    ]
    if links:
        insert_ignore(db, models.Taggable, links, keys=["tag_id", "taggable_type", "taggable_id"])
        db.flush()

    tag_ids = sorted({tag_id for tag_id, _ in pairs})
    counts = dict(
        db.query(models.Taggable.tag_id, func.count(models.Taggable.id))
        .filter(models.Taggable.tag_id.in_(tag_ids))
        .group_by(models.Taggable.tag_id)
        .all()
    ) if tag_ids else {}
    for name, tag in existing.items():
        live = counts.get(tag.id, 0)
        if tag.id in counts and tag.usage_count != live:
            tag.usage_count = live
    db.commit()
    return {"tags_created": len(missing), "links": len(links)}
