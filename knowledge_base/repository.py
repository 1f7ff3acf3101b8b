# knowledge_base/repository.py
"""
Relational persistence for documents, chunks and folders.

Every public coroutine opens its own session from ``session_factory`` so the
repository can be shared between the API, the inline dispatcher and Celery
workers. Folder tree and breadcrumb queries are recursive CTEs.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import Integer, delete, func, insert, literal, or_, select, update
from sqlalchemy.orm import aliased

from knowledge_base.models import Document, DocumentChunk, DocumentFolder, DocumentStatus

logger = logging.getLogger(__name__)

ORDERABLE_COLUMNS = {
    "created_at": Document.created_at,
    "name": Document.name,
    "size_bytes": Document.size_bytes,
    "file_type": Document.file_type,
}
MAX_PAGE_SIZE = 100


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _attrs(model, values: Dict[str, Any]) -> Dict[Any, Any]:
    """Key update values by mapped attribute, so renamed columns (metadata) resolve."""
    return {getattr(model, key): value for key, value in values.items()}


def batch_iterable(iterable: Iterable, batch_size: int):
    """
    Yield lists of items of size up to batch_size from iterable.
    """
    batch = []
    for item in iterable:
        batch.append(item)
        if len(batch) >= batch_size:
            yield batch
            batch = []
    if batch:
        yield batch


class DocumentRepository:
    def __init__(self, session_factory=None, insert_batch: int = 50):
        if session_factory is None:
            from knowledge_base.db import AsyncSessionLocal
            session_factory = AsyncSessionLocal
        self.session_factory = session_factory
        self.insert_batch = max(1, insert_batch)

    # ---------- documents ----------

    async def add_document(self, doc: Document) -> Document:
        async with self.session_factory() as session:
            session.add(doc)
            await session.commit()
            await session.refresh(doc)
            return doc

    async def get_document(self, document_id: str) -> Optional[Document]:
        async with self.session_factory() as session:
            return await session.get(Document, document_id)

    async def find_by_hash(self, user_id: str, content_hash: str) -> Optional[Document]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Document)
                .where(
                    Document.user_id == user_id,
                    Document.content_hash == content_hash,
                    Document.status != DocumentStatus.ARCHIVED.value,
                )
                .order_by(Document.created_at)
                .limit(1)
            )
            return result.scalars().first()

    async def update_document(self, document_id: str, **values) -> None:
        values.setdefault("updated_at", utcnow())
        async with self.session_factory() as session:
            await session.execute(update(Document).where(Document.id == document_id).values(_attrs(Document, values)))
            await session.commit()

    async def delete_document(self, document_id: str) -> None:
        async with self.session_factory() as session:
            async with session.begin():
                await session.execute(delete(DocumentChunk).where(DocumentChunk.document_id == document_id))
                await session.execute(delete(Document).where(Document.id == document_id))

    async def list_documents(
        self,
        user_id: str,
        scope: Optional[str] = None,
        thread_id: Optional[str] = None,
        status: Optional[str] = None,
        folder_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
        order_by: str = "created_at",
        order_dir: str = "desc",
    ) -> Tuple[List[Document], int]:
        """
        ``folder_id="root"`` restricts to documents outside any folder, None
        lists all folders. Archived documents are never listed.
        """
        conditions = [Document.user_id == user_id, Document.status != DocumentStatus.ARCHIVED.value]
        if scope:
            conditions.append(Document.scope == scope)
        if thread_id:
            conditions.append(Document.thread_id == thread_id)
        if status:
            conditions.append(Document.status == status)
        if folder_id == "root":
            conditions.append(Document.folder_id.is_(None))
        elif folder_id:
            conditions.append(Document.folder_id == folder_id)

        column = ORDERABLE_COLUMNS.get(order_by, Document.created_at)
        ordering = column.asc() if str(order_dir).lower() == "asc" else column.desc()
        limit = max(1, min(int(limit), MAX_PAGE_SIZE))
        offset = max(0, int(offset))

        async with self.session_factory() as session:
            total = await session.scalar(select(func.count()).select_from(Document).where(*conditions))
            result = await session.execute(
                select(Document).where(*conditions).order_by(ordering, Document.id).limit(limit).offset(offset)
            )
            return list(result.scalars().all()), int(total or 0)

    async def version_chain(self, user_id: str, root_id: str) -> List[Document]:
        """The root document and every version pointing at it, newest version first."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(Document)
                .where(
                    Document.user_id == user_id,
                    or_(Document.id == root_id, Document.parent_document_id == root_id),
                )
                .order_by(Document.version.desc(), Document.created_at.desc())
            )
            return list(result.scalars().all())

    async def mark_latest(self, root_id: str, latest_id: str) -> None:
        async with self.session_factory() as session:
            await session.execute(
                update(Document)
                .where(
                    or_(Document.id == root_id, Document.parent_document_id == root_id),
                    Document.id != latest_id,
                )
                .values(is_latest=False, updated_at=utcnow())
            )
            await session.commit()

    # ---------- chunks ----------

    async def get_chunks(self, document_id: str) -> List[DocumentChunk]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(DocumentChunk)
                .where(DocumentChunk.document_id == document_id)
                .order_by(DocumentChunk.chunk_index)
            )
            return list(result.scalars().all())

    async def count_chunks(self, document_id: str) -> int:
        async with self.session_factory() as session:
            total = await session.scalar(
                select(func.count()).select_from(DocumentChunk).where(DocumentChunk.document_id == document_id)
            )
            return int(total or 0)

    async def delete_chunks(self, document_id: str) -> None:
        async with self.session_factory() as session:
            await session.execute(delete(DocumentChunk).where(DocumentChunk.document_id == document_id))
            await session.commit()

    async def replace_chunks(
        self,
        document_id: str,
        rows: Sequence[Dict[str, Any]],
        document_values: Dict[str, Any],
        before_commit: Optional[Callable[[], Awaitable[Any]]] = None,
    ) -> None:
        """
        In one transaction: drop the document's chunks, insert ``rows`` in
        batches, update the document with ``document_values``. ``before_commit``
        runs last inside the transaction; if it raises, everything rolls back.
        """
        async with self.session_factory() as session:
            async with session.begin():
                await session.execute(delete(DocumentChunk).where(DocumentChunk.document_id == document_id))
                for batch in batch_iterable(rows, self.insert_batch):
                    await session.execute(insert(DocumentChunk), batch)
                values = dict(document_values)
                values.setdefault("updated_at", utcnow())
                await session.execute(update(Document).where(Document.id == document_id).values(_attrs(Document, values)))
                if before_commit is not None:
                    await before_commit()

    async def ready_document_ids(self, user_id: str, folder_id: str) -> List[str]:
        """Ids of the user's ready documents directly in ``folder_id`` ("root" = outside any folder)."""
        stmt = select(Document.id).where(
            Document.user_id == user_id,
            Document.status == DocumentStatus.READY.value,
        )
        if folder_id == "root":
            stmt = stmt.where(Document.folder_id.is_(None))
        else:
            stmt = stmt.where(Document.folder_id == folder_id)
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return [row[0] for row in result.all()]

    async def get_chunks_with_documents(
        self,
        chunk_ids: Sequence[str],
        user_id: str,
        folder_id: Optional[str] = None,
    ) -> List[Tuple[DocumentChunk, Document]]:
        """Hydrate vector hits; only ready documents owned by ``user_id`` survive."""
        if not chunk_ids:
            return []
        stmt = (
            select(DocumentChunk, Document)
            .join(Document, Document.id == DocumentChunk.document_id)
            .where(
                DocumentChunk.id.in_(list(chunk_ids)),
                Document.user_id == user_id,
                Document.status == DocumentStatus.READY.value,
            )
        )
        if folder_id == "root":
            stmt = stmt.where(Document.folder_id.is_(None))
        elif folder_id:
            stmt = stmt.where(Document.folder_id == folder_id)
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return [(row[0], row[1]) for row in result.all()]

    # ---------- folders ----------

    async def get_folder(self, folder_id: str) -> Optional[DocumentFolder]:
        async with self.session_factory() as session:
            return await session.get(DocumentFolder, folder_id)

    async def find_sibling(self, user_id: str, parent_id: Optional[str], name: str,
                           exclude_id: Optional[str] = None) -> Optional[DocumentFolder]:
        stmt = select(DocumentFolder).where(DocumentFolder.user_id == user_id, DocumentFolder.name == name)
        if parent_id is None:
            stmt = stmt.where(DocumentFolder.parent_id.is_(None))
        else:
            stmt = stmt.where(DocumentFolder.parent_id == parent_id)
        if exclude_id:
            stmt = stmt.where(DocumentFolder.id != exclude_id)
        async with self.session_factory() as session:
            result = await session.execute(stmt.limit(1))
            return result.scalars().first()

    async def add_folder(self, folder: DocumentFolder) -> DocumentFolder:
        async with self.session_factory() as session:
            session.add(folder)
            await session.commit()
            await session.refresh(folder)
            return folder

    async def update_folder(self, folder_id: str, **values) -> Optional[DocumentFolder]:
        values.setdefault("updated_at", utcnow())
        async with self.session_factory() as session:
            await session.execute(update(DocumentFolder).where(DocumentFolder.id == folder_id).values(_attrs(DocumentFolder, values)))
            await session.commit()
            return await session.get(DocumentFolder, folder_id, populate_existing=True)

    async def subfolders(self, user_id: str, parent_id: Optional[str]) -> List[DocumentFolder]:
        stmt = select(DocumentFolder).where(DocumentFolder.user_id == user_id)
        if parent_id is None:
            stmt = stmt.where(DocumentFolder.parent_id.is_(None))
        else:
            stmt = stmt.where(DocumentFolder.parent_id == parent_id)
        async with self.session_factory() as session:
            result = await session.execute(stmt.order_by(DocumentFolder.name))
            return list(result.scalars().all())

    async def document_counts(self, user_id: str) -> Dict[str, int]:
        """Non-archived documents directly inside each folder."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(Document.folder_id, func.count(Document.id))
                .where(
                    Document.user_id == user_id,
                    Document.folder_id.is_not(None),
                    Document.status != DocumentStatus.ARCHIVED.value,
                )
                .group_by(Document.folder_id)
            )
            return {folder_id: int(count) for folder_id, count in result.all()}

    async def folder_tree_rows(self, user_id: str) -> List[Tuple[DocumentFolder, int]]:
        """Every folder of the user with its depth, parents before children."""
        tree = (
            select(DocumentFolder.id, literal(0, type_=Integer).label("depth"))
            .where(DocumentFolder.user_id == user_id, DocumentFolder.parent_id.is_(None))
            .cte("folder_tree", recursive=True)
        )
        child = aliased(DocumentFolder)
        tree = tree.union_all(
            select(child.id, (tree.c.depth + 1).label("depth")).where(child.parent_id == tree.c.id)
        )
        async with self.session_factory() as session:
            result = await session.execute(
                select(DocumentFolder, tree.c.depth)
                .join(tree, DocumentFolder.id == tree.c.id)
                .order_by(tree.c.depth, DocumentFolder.name)
            )
            return [(row[0], int(row[1])) for row in result.all()]

    async def folder_ancestors(self, folder_id: str) -> List[DocumentFolder]:
        """Breadcrumb from the root folder down to ``folder_id`` (inclusive)."""
        chain = (
            select(DocumentFolder.id, DocumentFolder.parent_id, literal(0, type_=Integer).label("level"))
            .where(DocumentFolder.id == folder_id)
            .cte("folder_ancestors", recursive=True)
        )
        parent = aliased(DocumentFolder)
        chain = chain.union_all(
            select(parent.id, parent.parent_id, (chain.c.level + 1).label("level"))
            .where(parent.id == chain.c.parent_id)
        )
        async with self.session_factory() as session:
            result = await session.execute(
                select(DocumentFolder)
                .join(chain, DocumentFolder.id == chain.c.id)
                .order_by(chain.c.level.desc())
            )
            return list(result.scalars().all())

    async def folder_subtree_ids(self, folder_id: str) -> List[str]:
        subtree = (
            select(DocumentFolder.id)
            .where(DocumentFolder.id == folder_id)
            .cte("folder_subtree", recursive=True)
        )
        child = aliased(DocumentFolder)
        subtree = subtree.union_all(select(child.id).where(child.parent_id == subtree.c.id))
        async with self.session_factory() as session:
            result = await session.execute(select(subtree.c.id))
            return [row[0] for row in result.all()]

    async def delete_folders(self, folder_ids: Sequence[str]) -> int:
        """
        Delete folders and move the documents they contained to the root.
        Returns the number of orphaned documents.
        """
        if not folder_ids:
            return 0
        ids = list(folder_ids)
        async with self.session_factory() as session:
            async with session.begin():
                moved = await session.execute(
                    update(Document)
                    .where(Document.folder_id.in_(ids))
                    .values(folder_id=None, updated_at=utcnow())
                )
                # detach first so the batch delete never trips the parent FK
                await session.execute(
                    update(DocumentFolder).where(DocumentFolder.id.in_(ids)).values(parent_id=None)
                )
                await session.execute(delete(DocumentFolder).where(DocumentFolder.id.in_(ids)))
            return int(moved.rowcount or 0)
