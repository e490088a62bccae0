"""Re-map the whole tag table onto the current canonical tag form.

The tag name column is unique, so renames happen in two steps inside one
transaction: every tag that moves is first parked on a placeholder name
derived from its id, then moved to its canonical name. Tags whose names
collapse onto the same canonical name are merged into one survivor before
anything is renamed.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from flask import current_app
from sqlalchemy import delete, select, update

from app.extensions import db
from app.models import TAG_TYPE_SYSTEM, TAG_TYPE_USER, Tag, bookmark_tags
from app.services import storage
from app.services.tag_normalizer import is_degenerate_tag, normalize_tag

PLACEHOLDER_PREFIX = "__migrating__"


class TagMigrationError(Exception):
    """The vocabulary migration failed and was rolled back."""


@dataclass
class ConflictGroup:
    target: str
    survivor_id: int
    merged_ids: list[int] = field(default_factory=list)
    survivor_type: str = TAG_TYPE_SYSTEM

    def as_dict(self):
        return {
            "target": self.target,
            "survivor_id": self.survivor_id,
            "merged_ids": list(self.merged_ids),
            "survivor_type": self.survivor_type,
        }


@dataclass
class TagMigrationPlan:
    renames: dict[int, tuple[str, str]] = field(default_factory=dict)
    conflicts: list[ConflictGroup] = field(default_factory=list)
    unchanged: int = 0
    skipped: list[str] = field(default_factory=list)
    applied: bool = False

    @property
    def is_noop(self) -> bool:
        return not self.renames and not self.conflicts

    def as_dict(self):
        return {
            "renames": [
                {"id": tag_id, "from": old, "to": new}
                for tag_id, (old, new) in sorted(self.renames.items())
            ],
            "conflicts": [group.as_dict() for group in self.conflicts],
            "unchanged": self.unchanged,
            "skipped": list(self.skipped),
            "applied": self.applied,
        }


def _pick_survivor(members, target: str):
    for tag in members:
        if tag.name == target:
            return tag
    return sorted(members, key=lambda tag: (-(tag.count or 0), tag.id))[0]


def plan_tag_migration(tags) -> TagMigrationPlan:
    """Work out renames and merges for ``tags`` without touching the database."""
    plan = TagMigrationPlan()
    groups: dict[str, list] = {}
    for tag in sorted(tags, key=lambda item: item.id):
        target = normalize_tag(tag.name)
        if is_degenerate_tag(target):
            # Nothing usable to rename to; the row keeps its current name.
            plan.skipped.append(tag.name)
            continue
        groups.setdefault(target, []).append(tag)

    for target, members in groups.items():
        survivor = _pick_survivor(members, target)
        if len(members) > 1:
            plan.conflicts.append(
                ConflictGroup(
                    target=target,
                    survivor_id=survivor.id,
                    merged_ids=[tag.id for tag in members if tag.id != survivor.id],
                    survivor_type=(
                        TAG_TYPE_USER
                        if any(tag.type == TAG_TYPE_USER for tag in members)
                        else TAG_TYPE_SYSTEM
                    ),
                )
            )
        if survivor.name != target:
            plan.renames[survivor.id] = (survivor.name, target)
        elif len(members) == 1:
            plan.unchanged += 1
    return plan


def _merge_conflict_group(group: ConflictGroup) -> None:
    survivor_links = select(bookmark_tags.c.bookmark_id).where(
        bookmark_tags.c.tag_id == group.survivor_id
    )
    # One statement per merged tag, so a bookmark carrying several of them
    # is repointed once.
    for merged_id in group.merged_ids:
        db.session.execute(
            update(bookmark_tags)
            .where(
                bookmark_tags.c.tag_id == merged_id,
                bookmark_tags.c.bookmark_id.not_in(survivor_links),
            )
            .values(tag_id=group.survivor_id)
        )
    db.session.execute(
        delete(bookmark_tags).where(bookmark_tags.c.tag_id.in_(group.merged_ids))
    )
    db.session.execute(
        delete(Tag)
        .where(Tag.id.in_(group.merged_ids))
        .execution_options(synchronize_session=False)
    )
    db.session.execute(
        update(Tag)
        .where(Tag.id == group.survivor_id)
        .values(type=group.survivor_type)
        .execution_options(synchronize_session=False)
    )


def _placeholder_names(tag_ids, taken: set[str]) -> dict[int, str]:
    placeholders = {}
    for tag_id in tag_ids:
        name = f"{PLACEHOLDER_PREFIX}{tag_id}"
        while name in taken:
            name += "_"
        taken.add(name)
        placeholders[tag_id] = name
    return placeholders


def _rename(tag_id: int, name: str) -> None:
    db.session.execute(
        update(Tag)
        .where(Tag.id == tag_id)
        .values(name=name)
        .execution_options(synchronize_session=False)
    )


def _rename_to_placeholders(plan: TagMigrationPlan) -> None:
    taken = set(db.session.execute(select(Tag.name)).scalars())
    for tag_id, placeholder in _placeholder_names(plan.renames, taken).items():
        _rename(tag_id, placeholder)


def _rename_to_targets(plan: TagMigrationPlan) -> None:
    for tag_id, (_old, new) in plan.renames.items():
        _rename(tag_id, new)


def migrate_tag_vocabulary(dry_run: bool = False) -> TagMigrationPlan:
    """Rename every tag to its canonical name in a single transaction.

    Conflict groups are merged onto one survivor whose associations are the
    union of the group's; usage counts are then recounted from the
    association table. Any failure rolls back the whole run and raises
    ``TagMigrationError``.
    """
    plan = plan_tag_migration(Tag.query.all())
    if dry_run:
        return plan

    logger = current_app.logger
    try:
        if not plan.is_noop:
            for group in plan.conflicts:
                _merge_conflict_group(group)
            _rename_to_placeholders(plan)
            _rename_to_targets(plan)
        # Recounted on every run, including runs with nothing to rename.
        storage.recount_tag_usage()
        db.session.commit()
    except Exception as exc:
        db.session.rollback()
        logger.error("Tag vocabulary migration failed, rolled back: %s", exc)
        raise TagMigrationError(str(exc)) from exc
    finally:
        db.session.expire_all()

    if plan.is_noop:
        logger.info("Tag vocabulary already canonical, usage counts recounted")
        return plan

    plan.applied = True
    logger.info(
        "Tag vocabulary migrated: %s renamed, %s conflict groups merged",
        len(plan.renames),
        len(plan.conflicts),
    )
    return plan
