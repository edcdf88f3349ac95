"""Repository for tag storage and retrieval."""
import logging
from typing import Dict, List, Optional

from sqlalchemy import delete, func, select, text

from smartnote_mcp.exceptions import TagError
from smartnote_mcp.models.db_models import DBTag, note_tags
from smartnote_mcp.models.schema import Tag, normalize_tag_name

logger = logging.getLogger(__name__)


def _normalize(tag_name: str) -> str:
    try:
        return normalize_tag_name(tag_name)
    except ValueError as e:
        raise TagError(str(e), tag_name=tag_name) from e


class TagRepository:
    """Repository for managing per-owner tags.

    Tag names are normalized before every lookup, so "Machine Learning"
    and "machine-learning" resolve to the same row.
    """

    def __init__(self, session_factory):
        """Initialize the tag repository.

        Args:
            session_factory: SQLAlchemy session factory for database operations.
        """
        self.session_factory = session_factory

    def get_or_create(self, owner_id: str, tag_name: str) -> Tag:
        """Get an existing tag or create a new one.

        Raises:
            TagError: If the name normalizes to nothing or is too long.
        """
        name = _normalize(tag_name)
        with self.session_factory() as session:
            # INSERT OR IGNORE handles the concurrent creation race
            session.execute(
                text("INSERT OR IGNORE INTO tags (owner_id, name) VALUES (:owner, :name)"),
                {"owner": owner_id, "name": name},
            )
            session.commit()
            db_tag = session.scalar(
                select(DBTag).where(DBTag.owner_id == owner_id, DBTag.name == name)
            )
            return Tag(id=db_tag.id, name=db_tag.name)

    def get(self, owner_id: str, tag_name: str) -> Optional[Tag]:
        """Get a tag by (normalized) name, or None."""
        name = _normalize(tag_name)
        with self.session_factory() as session:
            db_tag = session.scalar(
                select(DBTag).where(DBTag.owner_id == owner_id, DBTag.name == name)
            )
            if not db_tag:
                return None
            return Tag(id=db_tag.id, name=db_tag.name)

    def get_all(self, owner_id: str) -> List[Tag]:
        """Get all tags of an owner, ordered by name."""
        with self.session_factory() as session:
            db_tags = session.scalars(
                select(DBTag).where(DBTag.owner_id == owner_id).order_by(DBTag.name)
            ).all()
            return [Tag(id=t.id, name=t.name) for t in db_tags]

    def get_with_counts(self, owner_id: str) -> Dict[str, int]:
        """Get all tags of an owner with their usage counts."""
        with self.session_factory() as session:
            result = session.execute(
                select(DBTag.name, func.count(note_tags.c.note_id))
                .select_from(DBTag)
                .outerjoin(note_tags, DBTag.id == note_tags.c.tag_id)
                .where(DBTag.owner_id == owner_id)
                .group_by(DBTag.name)
            ).all()
            return {name: count for name, count in result}

    def get_membership(self, owner_id: str) -> Dict[int, List[str]]:
        """Map each tag id of an owner to the ids of the notes carrying it.

        Tags without notes are omitted.
        """
        with self.session_factory() as session:
            rows = session.execute(
                select(note_tags.c.tag_id, note_tags.c.note_id)
                .select_from(note_tags)
                .join(DBTag, note_tags.c.tag_id == DBTag.id)
                .where(DBTag.owner_id == owner_id)
                .order_by(note_tags.c.tag_id, note_tags.c.note_id)
            ).all()

        membership: Dict[int, List[str]] = {}
        for tag_id, note_id in rows:
            membership.setdefault(tag_id, []).append(note_id)
        return membership

    def find_note_ids_by_tags(
        self, owner_id: str, tag_names: List[str], match_all: bool = False
    ) -> List[str]:
        """Find note IDs that have any (or all) of the specified tags."""
        names = [_normalize(n) for n in tag_names]
        if not names:
            return []
        with self.session_factory() as session:
            query = (
                select(note_tags.c.note_id)
                .select_from(note_tags)
                .join(DBTag, note_tags.c.tag_id == DBTag.id)
                .where(DBTag.owner_id == owner_id, DBTag.name.in_(names))
                .group_by(note_tags.c.note_id)
            )
            if match_all:
                query = query.having(
                    func.count(func.distinct(DBTag.name)) == len(set(names))
                )
            result = session.execute(query).all()
            return [row[0] for row in result]

    def delete_unused(self, owner_id: str) -> int:
        """Delete tags of an owner that are not attached to any note."""
        with self.session_factory() as session:
            unused_tags = session.scalars(
                select(DBTag)
                .outerjoin(note_tags, DBTag.id == note_tags.c.tag_id)
                .where(DBTag.owner_id == owner_id, note_tags.c.note_id.is_(None))
            ).all()

            count = len(unused_tags)
            for tag in unused_tags:
                session.delete(tag)
            session.commit()

        if count:
            logger.debug(f"Deleted {count} unused tags for owner {owner_id}")
        return count

    def rename(self, owner_id: str, old_name: str, new_name: str) -> Tag:
        """Rename a tag; every note carrying it follows.

        Raises:
            TagError: Unknown tag, invalid new name, or the new name is
                already taken by another tag of the owner.
        """
        old = _normalize(old_name)
        new = _normalize(new_name)
        with self.session_factory() as session:
            db_tag = session.scalar(
                select(DBTag).where(DBTag.owner_id == owner_id, DBTag.name == old)
            )
            if db_tag is None:
                raise TagError(f"Tag '{old}' not found", tag_name=old)
            if new != old:
                taken = session.scalar(
                    select(DBTag.id).where(DBTag.owner_id == owner_id, DBTag.name == new)
                )
                if taken is not None:
                    raise TagError(f"A tag named '{new}' already exists", tag_name=new)
                db_tag.name = new
                session.commit()
                logger.info(f"Renamed tag '{old}' to '{new}' for owner {owner_id}")
            return Tag(id=db_tag.id, name=db_tag.name)

    def delete(self, owner_id: str, tag_name: str) -> int:
        """Delete a tag and detach it from every note.

        Returns:
            Number of notes the tag was removed from.

        Raises:
            TagError: If the owner has no such tag.
        """
        name = _normalize(tag_name)
        with self.session_factory() as session:
            db_tag = session.scalar(
                select(DBTag).where(DBTag.owner_id == owner_id, DBTag.name == name)
            )
            if db_tag is None:
                raise TagError(f"Tag '{name}' not found", tag_name=name)
            detached = session.execute(
                delete(note_tags).where(note_tags.c.tag_id == db_tag.id)
            ).rowcount
            session.delete(db_tag)
            session.commit()
        logger.info(f"Deleted tag '{name}' from {detached} notes")
        return detached
