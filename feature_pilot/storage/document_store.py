"""
JSON document store with atomic writes and per-document locking.

Documents are addressed by paths relative to the store root, for example
``{project_id}/{feature_id}/plan.json``. The store guarantees:

- Atomic writes using a temporary file and a rename
- One asyncio lock per document, so read-modify-write cycles on the same
  document are serialized while unrelated documents proceed concurrently
- Typed reads: documents are validated against a pydantic model on load

Directory Layout::

    {data_dir}/
        projects.json
        {project_id}/
            index.json
            {feature_id}/
                session.json
                plan.json
                questions.json
                status.json
                conversations.json
                decision-validation.json

Transaction Support:
    The ``transaction()`` context manager loads a typed document, yields it
    for in-place modification and saves it on successful exit::

        async with store.transaction(path, Plan) as plan:
            plan.steps[0].status = StepStatus.COMPLETED

Example:
    >>> store = DocumentStore("~/.feature-pilot")
    >>> await store.write("p1/f1/session.json", session)
    >>> session = await store.read_typed("p1/f1/session.json", Session)
"""

import asyncio
import json
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, TypeVar

import aiofiles
import structlog
from pydantic import BaseModel
from pydantic import ValidationError as SchemaError

from feature_pilot.exceptions import NotFoundError, ValidationError

log = structlog.get_logger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


class DocumentStore:
    """Persist pydantic documents as JSON files under a root directory.

    Attributes:
        root: Directory all document paths are resolved against.

    Thread Safety:
        Designed for single-threaded asyncio usage. Each document has its own
        lock; lock creation is guarded by a meta-lock.
    """

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root).expanduser()
        self.root.mkdir(parents=True, exist_ok=True)
        self._locks: dict[str, asyncio.Lock] = {}
        self._locks_lock = asyncio.Lock()

    async def _get_lock(self, relative_path: str) -> asyncio.Lock:
        async with self._locks_lock:
            if relative_path not in self._locks:
                self._locks[relative_path] = asyncio.Lock()
            return self._locks[relative_path]

    def resolve(self, relative_path: str) -> Path:
        """Absolute path of a document."""
        return self.root / relative_path

    async def exists(self, relative_path: str) -> bool:
        return self.resolve(relative_path).exists()

    async def ensure_dir(self, relative_path: str) -> None:
        """Create a directory (and parents) below the root."""
        self.resolve(relative_path).mkdir(parents=True, exist_ok=True)

    async def list_dirs(self, relative_path: str = "") -> list[str]:
        """Names of the subdirectories of a directory, sorted."""
        directory = self.resolve(relative_path)
        if not directory.is_dir():
            return []
        return sorted(entry.name for entry in directory.iterdir() if entry.is_dir())

    async def read_raw(self, relative_path: str) -> Any | None:
        """Load a document as plain JSON, or None when it does not exist."""
        lock = await self._get_lock(relative_path)
        async with lock:
            return await self._read_internal(relative_path)

    async def read_typed(self, relative_path: str, model: type[ModelT]) -> ModelT | None:
        """Load and validate a document.

        Args:
            relative_path: Document path relative to the root
            model: Pydantic model the document must satisfy

        Returns:
            The parsed document, or None when the file does not exist.

        Raises:
            ValidationError: If the file is not valid JSON or does not match
                the model.
        """
        data = await self.read_raw(relative_path)
        if data is None:
            return None
        return self._validate(relative_path, model, data)

    async def write(self, relative_path: str, value: BaseModel | Any) -> None:
        """Atomically write a document, creating parent directories."""
        lock = await self._get_lock(relative_path)
        async with lock:
            await self._write_internal(relative_path, value)

    async def delete(self, relative_path: str) -> None:
        lock = await self._get_lock(relative_path)
        async with lock:
            self.resolve(relative_path).unlink(missing_ok=True)

    @asynccontextmanager
    async def transaction(
        self,
        relative_path: str,
        model: type[ModelT],
        default: Callable[[], ModelT] | None = None,
    ) -> AsyncIterator[ModelT]:
        """Read, modify in place and save a document under its lock.

        If an exception occurs within the context, the document is NOT saved
        and the exception is re-raised after logging.

        Args:
            relative_path: Document path relative to the root
            model: Pydantic model of the document
            default: Factory for a fresh document when none exists yet

        Raises:
            NotFoundError: If the document is missing and no default is given
        """
        lock = await self._get_lock(relative_path)
        async with lock:
            data = await self._read_internal(relative_path)
            if data is not None:
                document = self._validate(relative_path, model, data)
            elif default is not None:
                document = default()
            else:
                raise NotFoundError("document", relative_path)

            try:
                yield document
                await self._write_internal(relative_path, document)
            except Exception:
                log.error("document_transaction_failed", path=relative_path)
                raise

    async def _read_internal(self, relative_path: str) -> Any | None:
        path = self.resolve(relative_path)
        if not path.exists():
            return None

        async with aiofiles.open(path) as f:
            content = await f.read()
        try:
            return json.loads(content)
        except json.JSONDecodeError as e:
            raise ValidationError(f"Document is not valid JSON: {relative_path}") from e

    async def _write_internal(self, relative_path: str, value: BaseModel | Any) -> None:
        path = self.resolve(relative_path)
        path.parent.mkdir(parents=True, exist_ok=True)

        if isinstance(value, BaseModel):
            content = value.model_dump_json(indent=2)
        else:
            content = json.dumps(value, indent=2, default=str)

        tmp_path = path.with_suffix(path.suffix + ".tmp")
        async with aiofiles.open(tmp_path, "w") as f:
            await f.write(content)

        # Atomic on POSIX when source and target share a filesystem
        tmp_path.replace(path)

    @staticmethod
    def _validate(relative_path: str, model: type[ModelT], data: Any) -> ModelT:
        try:
            return model.model_validate(data)
        except SchemaError as e:
            raise ValidationError(f"Document {relative_path} does not match {model.__name__}: {e}") from e
