"""Favorite folders and bookmarked entries."""

import logging
import uuid

from feed_sentry.database import Database
from feed_sentry.errors import DefaultFolderProtected, FolderNotFound
from feed_sentry.messaging import MessageBus, MessageType, broadcast_message
from feed_sentry.models import Favorite, FavoriteFolder, utcnow

logger = logging.getLogger(__name__)

MOVE_TO_DEFAULT = "move-to-default"
DELETE_ALL = "delete-all"

SORT_KEYS = {
    "created-desc": (lambda f: f.created_at, True),
    "created-asc": (lambda f: f.created_at, False),
    "title-asc": (lambda f: f.title.lower(), False),
    "title-desc": (lambda f: f.title.lower(), True),
}


def normalize_link(link: str | None) -> str:
    return (link or "").strip()


class FavoriteService:
    """Bookmarks that outlive entry retention, grouped into folders.

    Exactly one folder is the default; it is created on first access and is
    where favorites land when no valid folder is given.
    """

    def __init__(self, db: Database, bus: MessageBus):
        self.db = db
        self.bus = bus

    def default_folder(self) -> FavoriteFolder:
        return self.db.ensure_default_folder()

    def list_folders(self) -> list[FavoriteFolder]:
        """Folders in display order with their favorite counts."""
        self.default_folder()
        return self.db.list_folders()

    def create_folder(self, name: str) -> FavoriteFolder:
        name = (name or "").strip()
        if not name:
            raise ValueError("Folder name cannot be empty")
        folder = FavoriteFolder(
            id=uuid.uuid4().hex,
            name=name,
            is_default=False,
            order=self.db.max_folder_order() + 1,
        )
        self.db.insert_folder(folder)
        self._broadcast(MessageType.FAVORITE_FOLDERS_UPDATED)
        return folder

    def rename_folder(self, folder_id: str, name: str) -> None:
        if self.db.get_folder(folder_id) is None:
            raise FolderNotFound(f"Folder not found: {folder_id}")
        self.db.rename_folder(folder_id, name.strip(), utcnow())
        self._broadcast(MessageType.FAVORITE_FOLDERS_UPDATED)

    def delete_folder(self, folder_id: str, strategy: str) -> None:
        """Delete a non-default folder, moving or deleting its favorites.

        Raises:
            FolderNotFound: If the folder does not exist.
            DefaultFolderProtected: If it is the default folder.
            ValueError: If the strategy is unknown.
        """
        if strategy not in (MOVE_TO_DEFAULT, DELETE_ALL):
            raise ValueError(f"Unknown folder delete strategy: {strategy}")
        folder = self.db.get_folder(folder_id)
        if folder is None:
            raise FolderNotFound(f"Folder not found: {folder_id}")
        if folder.is_default:
            raise DefaultFolderProtected("Default folder cannot be deleted")

        default = self.default_folder()
        with self.db.transaction():
            if strategy == MOVE_TO_DEFAULT:
                self.db.move_favorites(None, default.id, utcnow(), from_folder_id=folder_id)
            else:
                self.db.delete_favorites(folder_id=folder_id)
            self.db.delete_folder(folder_id)
        logger.info("Deleted favorite folder %s (%s)", folder_id, strategy)

        self._broadcast(MessageType.FAVORITE_FOLDERS_UPDATED)
        self._broadcast(MessageType.FAVORITES_UPDATED)

    def move_favorites(self, favorite_ids: list[str], target_folder_id: str) -> int:
        if not favorite_ids:
            return 0
        if self.db.get_folder(target_folder_id) is None:
            raise FolderNotFound(f"Target folder not found: {target_folder_id}")
        moved = self.db.move_favorites(list(favorite_ids), target_folder_id, utcnow())
        self._broadcast_all()
        return moved

    def remove_favorites(self, favorite_ids: list[str]) -> int:
        if not favorite_ids:
            return 0
        removed = self.db.delete_favorites(list(favorite_ids))
        self._broadcast_all()
        return removed

    def find_by_entry(self, entry_id: str | None = None, link: str | None = None) -> Favorite | None:
        """Look up by entry id first, then by trimmed link."""
        if entry_id:
            favorite = self.db.find_favorite("entry_id", entry_id)
            if favorite:
                return favorite
        normalized = normalize_link(link)
        if normalized:
            return self.db.find_favorite("link", normalized)
        return None

    def is_favorited(self, entry_id: str | None = None, link: str | None = None) -> bool:
        return self.find_by_entry(entry_id, link) is not None

    def add_favorite(
        self,
        title: str,
        link: str | None = None,
        entry_id: str | None = None,
        folder_id: str | None = None,
        source: str | None = None,
        created_from: str = "popup",
    ) -> Favorite:
        """Bookmark an entry or link. Returns the existing favorite if present.

        Raises:
            ValueError: If neither an entry id nor a link is given.
        """
        link = normalize_link(link)
        if not entry_id and not link:
            raise ValueError("Favorite link is required.")

        existing = self.find_by_entry(entry_id, link)
        if existing:
            return existing

        favorite = Favorite(
            id=uuid.uuid4().hex,
            folder_id=self._resolve_folder_id(folder_id),
            entry_id=entry_id,
            title=title,
            link=link,
            source=source or ("subscription" if entry_id else "manual"),
            created_from=created_from or "popup",
        )
        self.db.insert_favorite(favorite)
        self._broadcast_all()
        return favorite

    def toggle_favorite(
        self, title: str, link: str | None = None, entry_id: str | None = None,
        folder_id: str | None = None,
    ) -> tuple[Favorite | None, bool]:
        """Remove the favorite if present, otherwise add it.

        Returns (favorite, is_favorite).
        """
        link = normalize_link(link)
        if not entry_id and not link:
            raise ValueError("Favorite link is required.")
        existing = self.find_by_entry(entry_id, link)
        if existing:
            self.db.delete_favorites([existing.id])
            self._broadcast_all()
            return None, False
        return self.add_favorite(title, link, entry_id, folder_id), True

    def remove_by_entry(self, entry_id: str | None = None, link: str | None = None) -> bool:
        existing = self.find_by_entry(entry_id, link)
        if existing is None:
            return False
        self.db.delete_favorites([existing.id])
        self._broadcast_all()
        return True

    def list_favorites(
        self,
        folder_id: str,
        keyword: str | None = None,
        limit: int | None = None,
        offset: int = 0,
        sort: str = "created-desc",
    ) -> tuple[list[Favorite], int]:
        """Favorites of one folder, filtered and sorted. Returns (page, total)."""
        items = self.db.list_favorites(folder_id)
        if keyword:
            needle = keyword.lower()
            items = [
                item for item in items
                if needle in item.title.lower() or needle in item.link.lower()
            ]

        key, reverse = SORT_KEYS.get(sort, SORT_KEYS["created-desc"])
        items.sort(key=key, reverse=reverse)

        total = len(items)
        end = None if limit is None else offset + limit
        return items[offset:end], total

    def list_all(self) -> list[Favorite]:
        return self.db.list_favorites()

    def _resolve_folder_id(self, folder_id: str | None) -> str:
        if folder_id:
            folder = self.db.get_folder(folder_id)
            if folder:
                return folder.id
        return self.default_folder().id

    def _broadcast(self, type: MessageType) -> None:
        broadcast_message(self.bus, type)

    def _broadcast_all(self) -> None:
        self._broadcast(MessageType.FAVORITES_UPDATED)
        self._broadcast(MessageType.FAVORITE_FOLDERS_UPDATED)
