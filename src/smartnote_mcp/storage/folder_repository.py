"""Repository for the per-owner folder tree.

Folders nest at most three levels deep (depth 0, 1 and 2). Every create
and move is checked against that limit before anything is written, so a
violating tree can never be observed by readers.
"""
import logging
import threading
from typing import Dict, List, Optional, Union

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from smartnote_mcp.config import MAX_FOLDER_DEPTH, config
from smartnote_mcp.exceptions import (
    ErrorCode,
    FolderError,
    StructuralLimitViolation,
    ValidationError,
)
from smartnote_mcp.models.db_models import DBFolder, DBNote
from smartnote_mcp.models.schema import (
    Folder,
    FolderColor,
    ensure_timezone_aware,
    generate_id,
    to_naive_utc,
    utc_now,
)

logger = logging.getLogger(__name__)


def _to_color(color: Union[str, FolderColor]) -> FolderColor:
    try:
        return FolderColor(color)
    except ValueError as e:
        allowed = ", ".join(c.value for c in FolderColor)
        raise ValidationError(
            f"Invalid folder color '{color}'. Allowed: {allowed}",
            field="color",
            value=color,
        ) from e


class FolderRepository:
    """Repository for managing folders."""

    def __init__(self, session_factory, default_folder_name: Optional[str] = None):
        self.session_factory = session_factory
        self.default_folder_name = default_folder_name or config.default_folder_name
        # Serializes structural changes (create/move/delete) so depth and
        # sibling checks see a stable tree.
        self._tree_lock = threading.RLock()

    @staticmethod
    def _to_model(db_folder: DBFolder) -> Folder:
        return Folder(
            id=db_folder.id,
            owner_id=db_folder.owner_id,
            name=db_folder.name,
            color=FolderColor(db_folder.color),
            parent_id=db_folder.parent_id,
            depth=db_folder.depth,
            is_default=db_folder.is_default,
            created_at=ensure_timezone_aware(db_folder.created_at),
            updated_at=ensure_timezone_aware(db_folder.updated_at),
        )

    def _get_db_folder(self, session: Session, folder_id: str) -> DBFolder:
        db_folder = session.get(DBFolder, folder_id)
        if db_folder is None:
            raise FolderError(
                f"Folder with ID '{folder_id}' not found", folder_id=folder_id
            )
        return db_folder

    def _check_sibling_name(
        self,
        session: Session,
        owner_id: str,
        parent_id: Optional[str],
        name: str,
        exclude_id: Optional[str] = None,
    ) -> None:
        """Reject a case-insensitive duplicate name among siblings."""
        query = select(DBFolder.id).where(
            DBFolder.owner_id == owner_id,
            DBFolder.is_default.is_(False),
            func.lower(DBFolder.name) == name.lower(),
        )
        if parent_id is None:
            query = query.where(DBFolder.parent_id.is_(None))
        else:
            query = query.where(DBFolder.parent_id == parent_id)
        if exclude_id is not None:
            query = query.where(DBFolder.id != exclude_id)

        if session.scalar(query.limit(1)) is not None:
            raise FolderError(
                f"A folder named '{name}' already exists at this level",
                code=ErrorCode.FOLDER_DUPLICATE_NAME,
            )

    def _children_map(self, session: Session, owner_id: str) -> Dict[str, List[str]]:
        rows = session.execute(
            select(DBFolder.id, DBFolder.parent_id).where(DBFolder.owner_id == owner_id)
        ).all()
        children: Dict[str, List[str]] = {}
        for folder_id, parent_id in rows:
            if parent_id is not None:
                children.setdefault(parent_id, []).append(folder_id)
        return children

    def _subtree(self, session: Session, owner_id: str, root_id: str) -> Dict[str, int]:
        """Map every folder in the subtree to its depth relative to root_id."""
        children = self._children_map(session, owner_id)
        relative = {root_id: 0}
        stack = [root_id]
        while stack:
            current = stack.pop()
            for child_id in children.get(current, []):
                relative[child_id] = relative[current] + 1
                stack.append(child_id)
        return relative

    def ensure_default_folder(self, owner_id: str) -> Folder:
        """Return the owner's default folder, creating it on first use."""
        with self._tree_lock:
            with self.session_factory() as session:
                db_folder = session.scalar(
                    select(DBFolder).where(
                        DBFolder.owner_id == owner_id, DBFolder.is_default.is_(True)
                    )
                )
                if db_folder is None:
                    now = to_naive_utc(utc_now())
                    db_folder = DBFolder(
                        id=generate_id(),
                        owner_id=owner_id,
                        name=self.default_folder_name,
                        color=FolderColor.GRAY.value,
                        parent_id=None,
                        depth=0,
                        is_default=True,
                        created_at=now,
                        updated_at=now,
                    )
                    session.add(db_folder)
                    session.commit()
                    logger.info(
                        f"Created default folder '{self.default_folder_name}' "
                        f"for owner {owner_id}"
                    )
                return self._to_model(db_folder)

    def get(self, folder_id: str) -> Optional[Folder]:
        """Get a folder by ID, or None."""
        with self.session_factory() as session:
            db_folder = session.get(DBFolder, folder_id)
            return self._to_model(db_folder) if db_folder else None

    def get_all(self, owner_id: str) -> List[Folder]:
        """Get all folders of an owner, ordered by depth then name."""
        with self.session_factory() as session:
            db_folders = session.scalars(
                select(DBFolder)
                .where(DBFolder.owner_id == owner_id)
                .order_by(DBFolder.depth, func.lower(DBFolder.name), DBFolder.id)
            ).all()
            return [self._to_model(f) for f in db_folders]

    def find_child_by_name(
        self, owner_id: str, parent_id: Optional[str], name: str
    ) -> Optional[Folder]:
        """Find a folder by case-insensitive name among a parent's children."""
        with self.session_factory() as session:
            query = select(DBFolder).where(
                DBFolder.owner_id == owner_id,
                func.lower(DBFolder.name) == name.strip().lower(),
            )
            if parent_id is None:
                query = query.where(DBFolder.parent_id.is_(None))
            else:
                query = query.where(DBFolder.parent_id == parent_id)
            db_folder = session.scalars(query.order_by(DBFolder.id)).first()
            return self._to_model(db_folder) if db_folder else None

    def get_membership(self, owner_id: str) -> Dict[str, List[str]]:
        """Map each folder id of an owner to the ids of the notes it holds.

        Empty folders are omitted.
        """
        with self.session_factory() as session:
            rows = session.execute(
                select(DBNote.folder_id, DBNote.id)
                .where(DBNote.owner_id == owner_id, DBNote.folder_id.is_not(None))
                .order_by(DBNote.folder_id, DBNote.id)
            ).all()

        membership: Dict[str, List[str]] = {}
        for folder_id, note_id in rows:
            membership.setdefault(folder_id, []).append(note_id)
        return membership

    def create(
        self,
        owner_id: str,
        name: str,
        parent_id: Optional[str] = None,
        color: Union[str, FolderColor] = FolderColor.GRAY,
    ) -> Folder:
        """Create a folder under an optional parent.

        Raises:
            StructuralLimitViolation: If the folder would exceed the depth limit.
            FolderError: Unknown parent or duplicate sibling name.
            ValidationError: Empty name or unknown color.
        """
        name = (name or "").strip()
        if not name:
            raise ValidationError("Folder name cannot be empty", field="name")
        folder_color = _to_color(color)

        with self._tree_lock:
            with self.session_factory() as session:
                depth = 0
                if parent_id is not None:
                    parent = self._get_db_folder(session, parent_id)
                    if parent.owner_id != owner_id:
                        raise FolderError(
                            f"Folder with ID '{parent_id}' not found",
                            folder_id=parent_id,
                        )
                    depth = parent.depth + 1
                    if depth > MAX_FOLDER_DEPTH:
                        raise StructuralLimitViolation(
                            f"Cannot create '{name}': maximum folder depth is "
                            f"{MAX_FOLDER_DEPTH + 1} levels",
                            depth=depth,
                            max_depth=MAX_FOLDER_DEPTH,
                            folder_id=parent_id,
                        )

                self._check_sibling_name(session, owner_id, parent_id, name)

                now = to_naive_utc(utc_now())
                db_folder = DBFolder(
                    id=generate_id(),
                    owner_id=owner_id,
                    name=name,
                    color=folder_color.value,
                    parent_id=parent_id,
                    depth=depth,
                    is_default=False,
                    created_at=now,
                    updated_at=now,
                )
                session.add(db_folder)
                session.commit()
                logger.debug(f"Created folder {db_folder.id} '{name}' at depth {depth}")
                return self._to_model(db_folder)

    def update(
        self,
        folder_id: str,
        name: Optional[str] = None,
        color: Optional[Union[str, FolderColor]] = None,
    ) -> Folder:
        """Rename and/or recolor a folder."""
        with self._tree_lock:
            with self.session_factory() as session:
                db_folder = self._get_db_folder(session, folder_id)
                if name is not None:
                    name = name.strip()
                    if not name:
                        raise ValidationError("Folder name cannot be empty", field="name")
                    if not db_folder.is_default:
                        self._check_sibling_name(
                            session,
                            db_folder.owner_id,
                            db_folder.parent_id,
                            name,
                            exclude_id=folder_id,
                        )
                    db_folder.name = name
                if color is not None:
                    db_folder.color = _to_color(color).value
                db_folder.updated_at = to_naive_utc(utc_now())
                session.commit()
                return self._to_model(db_folder)

    def move(self, folder_id: str, new_parent_id: Optional[str]) -> Folder:
        """Reparent a folder, recomputing the depth of its whole subtree.

        Raises:
            FolderError: Default folder, unknown parent, or circular move.
            StructuralLimitViolation: If any descendant would exceed the limit.
        """
        with self._tree_lock:
            with self.session_factory() as session:
                db_folder = self._get_db_folder(session, folder_id)
                owner_id = db_folder.owner_id

                if db_folder.is_default and new_parent_id is not None:
                    raise FolderError(
                        "The default folder cannot be moved",
                        folder_id=folder_id,
                        code=ErrorCode.FOLDER_DEFAULT_PROTECTED,
                    )

                subtree = self._subtree(session, owner_id, folder_id)

                new_depth = 0
                if new_parent_id is not None:
                    if new_parent_id in subtree:
                        raise FolderError(
                            "Cannot move a folder into itself or one of its descendants",
                            folder_id=folder_id,
                            code=ErrorCode.FOLDER_CIRCULAR_REFERENCE,
                        )
                    parent = self._get_db_folder(session, new_parent_id)
                    if parent.owner_id != owner_id:
                        raise FolderError(
                            f"Folder with ID '{new_parent_id}' not found",
                            folder_id=new_parent_id,
                        )
                    new_depth = parent.depth + 1

                deepest = new_depth + max(subtree.values())
                if deepest > MAX_FOLDER_DEPTH:
                    raise StructuralLimitViolation(
                        f"Cannot move '{db_folder.name}': its subtree would reach "
                        f"depth {deepest} (maximum {MAX_FOLDER_DEPTH})",
                        depth=deepest,
                        max_depth=MAX_FOLDER_DEPTH,
                        folder_id=folder_id,
                    )

                self._check_sibling_name(
                    session, owner_id, new_parent_id, db_folder.name, exclude_id=folder_id
                )

                now = to_naive_utc(utc_now())
                db_folder.parent_id = new_parent_id
                for member_id, relative_depth in subtree.items():
                    session.execute(
                        update(DBFolder)
                        .where(DBFolder.id == member_id)
                        .values(depth=new_depth + relative_depth, updated_at=now)
                    )
                session.commit()
                session.refresh(db_folder)
                return self._to_model(db_folder)

    def delete(self, folder_id: str) -> int:
        """Delete a folder, moving its notes into the owner's default folder.

        Returns:
            Number of notes that were moved.
        """
        with self._tree_lock:
            with self.session_factory() as session:
                db_folder = self._get_db_folder(session, folder_id)
                if db_folder.is_default:
                    raise FolderError(
                        "The default folder cannot be deleted",
                        folder_id=folder_id,
                        code=ErrorCode.FOLDER_DEFAULT_PROTECTED,
                    )
                has_children = session.scalar(
                    select(DBFolder.id).where(DBFolder.parent_id == folder_id).limit(1)
                )
                if has_children is not None:
                    raise FolderError(
                        "Folder has subfolders; delete or move them first",
                        folder_id=folder_id,
                        code=ErrorCode.FOLDER_NOT_EMPTY,
                    )
                owner_id = db_folder.owner_id

            default_folder = self.ensure_default_folder(owner_id)

            with self.session_factory() as session:
                moved = session.execute(
                    update(DBNote)
                    .where(DBNote.folder_id == folder_id)
                    .values(folder_id=default_folder.id)
                ).rowcount
                session.delete(self._get_db_folder(session, folder_id))
                session.commit()

        logger.info(f"Deleted folder {folder_id}; moved {moved} notes to default folder")
        return moved
