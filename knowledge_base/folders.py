# knowledge_base/folders.py
import logging
import re
from typing import Dict, List, Optional

from sqlalchemy.exc import IntegrityError

from knowledge_base.errors import AuthorizationError, FolderCycleError, NotFoundError, ValidationError
from knowledge_base.models import DocumentFolder
from knowledge_base.repository import DocumentRepository
from knowledge_base.schemas import BreadcrumbItem, DocumentOut, FolderContents, FolderOut, FolderTreeNode

logger = logging.getLogger(__name__)

MAX_FOLDER_NAME = 255
COLOR_PATTERN = re.compile(r"^#[0-9a-fA-F]{6}$")
ROOT = "root"


def _is_root(folder_id: Optional[str]) -> bool:
    return folder_id is None or folder_id == ROOT


def validate_folder_name(name: Optional[str]) -> str:
    name = (name or "").strip()
    if not name or len(name) > MAX_FOLDER_NAME:
        raise ValidationError(f"Folder name must be between 1 and {MAX_FOLDER_NAME} characters")
    return name


def validate_color(color: Optional[str]) -> Optional[str]:
    if color is None or color == "":
        return None
    if not COLOR_PATTERN.match(color):
        raise ValidationError("Color must be a hex value like #3b82f6")
    return color


class FolderService:
    """
    User folders: a forest per user. Moves are checked against the ancestor
    chain of the destination so the parent graph never becomes cyclic; deleting
    a folder removes its whole subtree and moves the contained documents to root.
    """

    def __init__(self, repository: Optional[DocumentRepository] = None):
        self.repository = repository or DocumentRepository()

    async def _owned_folder(self, folder_id: str, user_id: str) -> DocumentFolder:
        folder = await self.repository.get_folder(folder_id)
        if folder is None or folder.user_id != user_id:
            raise NotFoundError(f"Folder not found: {folder_id}")
        return folder

    async def _ensure_unique(self, user_id: str, parent_id: Optional[str], name: str,
                             exclude_id: Optional[str] = None) -> None:
        if await self.repository.find_sibling(user_id, parent_id, name, exclude_id=exclude_id):
            raise ValidationError(f'A folder named "{name}" already exists here')

    async def _folder_out(self, folder: DocumentFolder) -> FolderOut:
        counts = await self.repository.document_counts(folder.user_id)
        return FolderOut.model_validate(folder).model_copy(update={"document_count": counts.get(folder.id, 0)})

    async def create_folder(self, user_id: str, name: str, parent_id: Optional[str] = None,
                            color: Optional[str] = None) -> FolderOut:
        name = validate_folder_name(name)
        color = validate_color(color)
        if _is_root(parent_id):
            parent_id = None
        else:
            await self._owned_folder(parent_id, user_id)
        await self._ensure_unique(user_id, parent_id, name)

        try:
            folder = await self.repository.add_folder(
                DocumentFolder(user_id=user_id, name=name, parent_id=parent_id, color=color)
            )
        except IntegrityError as e:
            raise ValidationError(f'A folder named "{name}" already exists here') from e
        logger.info("Created folder %s (%s) for %s", folder.id, name, user_id)
        return FolderOut.model_validate(folder)

    async def update_folder(self, folder_id: str, user_id: str, name: Optional[str] = None,
                            color: Optional[str] = None) -> FolderOut:
        folder = await self._owned_folder(folder_id, user_id)
        values = {}
        if name is not None:
            values["name"] = validate_folder_name(name)
            await self._ensure_unique(user_id, folder.parent_id, values["name"], exclude_id=folder_id)
        if color is not None:
            values["color"] = validate_color(color)
        if not values:
            return await self._folder_out(folder)
        try:
            folder = await self.repository.update_folder(folder_id, **values)
        except IntegrityError as e:
            raise ValidationError(f'A folder named "{values.get("name")}" already exists here') from e
        return await self._folder_out(folder)

    async def rename_folder(self, folder_id: str, user_id: str, name: str) -> FolderOut:
        return await self.update_folder(folder_id, user_id, name=name)

    async def move_folder(self, folder_id: str, user_id: str, new_parent_id: Optional[str]) -> FolderOut:
        folder = await self._owned_folder(folder_id, user_id)
        if _is_root(new_parent_id):
            new_parent_id = None
        elif new_parent_id == folder_id:
            raise FolderCycleError("Cannot move a folder into itself")
        else:
            await self._owned_folder(new_parent_id, user_id)
            ancestors = await self.repository.folder_ancestors(new_parent_id)
            if any(a.id == folder_id for a in ancestors):
                raise FolderCycleError("Cannot move a folder into one of its descendants")

        if new_parent_id == folder.parent_id:
            return await self._folder_out(folder)
        await self._ensure_unique(user_id, new_parent_id, folder.name, exclude_id=folder_id)
        folder = await self.repository.update_folder(folder_id, parent_id=new_parent_id)
        logger.info("Moved folder %s under %s", folder_id, new_parent_id or ROOT)
        return await self._folder_out(folder)

    async def delete_folder(self, folder_id: str, user_id: str) -> Dict[str, int]:
        await self._owned_folder(folder_id, user_id)
        subtree = await self.repository.folder_subtree_ids(folder_id)
        orphaned = await self.repository.delete_folders(subtree)
        logger.info("Deleted folder %s (%d folders, %d documents moved to root)", folder_id, len(subtree), orphaned)
        return {"deleted_folders": len(subtree), "orphaned_documents": orphaned}

    async def get_folder_tree(self, user_id: str) -> List[FolderTreeNode]:
        rows = await self.repository.folder_tree_rows(user_id)
        counts = await self.repository.document_counts(user_id)

        nodes: Dict[str, FolderTreeNode] = {}
        roots: List[FolderTreeNode] = []
        for folder, depth in rows:
            parent = nodes.get(folder.parent_id) if folder.parent_id else None
            node = FolderTreeNode.model_validate(folder).model_copy(update={
                "depth": depth,
                "document_count": counts.get(folder.id, 0),
                "path": (parent.path if parent else []) + [folder.name],
                "children": [],
            })
            nodes[folder.id] = node
            if parent is None:
                roots.append(node)
            else:
                parent.children.append(node)
        return roots

    async def get_folder_breadcrumb(self, folder_id: str, user_id: str) -> List[BreadcrumbItem]:
        await self._owned_folder(folder_id, user_id)
        return [BreadcrumbItem(id=f.id, name=f.name) for f in await self.repository.folder_ancestors(folder_id)]

    async def get_folder_contents(self, user_id: str, folder_id: Optional[str] = None,
                                  limit: int = 50, offset: int = 0,
                                  order_by: str = "created_at", order_dir: str = "desc") -> FolderContents:
        counts = await self.repository.document_counts(user_id)
        if _is_root(folder_id):
            folder_out, breadcrumb, parent_id, doc_filter = None, [], None, ROOT
        else:
            folder = await self._owned_folder(folder_id, user_id)
            folder_out = FolderOut.model_validate(folder).model_copy(
                update={"document_count": counts.get(folder.id, 0)}
            )
            breadcrumb = await self.get_folder_breadcrumb(folder_id, user_id)
            parent_id, doc_filter = folder.id, folder.id

        subfolders = [
            FolderOut.model_validate(f).model_copy(update={"document_count": counts.get(f.id, 0)})
            for f in await self.repository.subfolders(user_id, parent_id)
        ]
        documents, total = await self.repository.list_documents(
            user_id, folder_id=doc_filter, limit=limit, offset=offset, order_by=order_by, order_dir=order_dir
        )
        return FolderContents(
            folder=folder_out,
            breadcrumb=breadcrumb,
            subfolders=subfolders,
            documents=[DocumentOut.model_validate(d) for d in documents],
            total_documents=total,
        )

    async def move_document(self, document_id: str, user_id: str, folder_id: Optional[str]) -> DocumentOut:
        doc = await self.repository.get_document(document_id)
        if doc is None:
            raise NotFoundError(f"Document not found: {document_id}")
        if doc.user_id != user_id:
            raise AuthorizationError("Unauthorized")
        if _is_root(folder_id):
            folder_id = None
        else:
            await self._owned_folder(folder_id, user_id)
        await self.repository.update_document(document_id, folder_id=folder_id)
        return DocumentOut.model_validate(await self.repository.get_document(document_id))
