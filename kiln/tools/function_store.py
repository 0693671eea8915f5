"""FunctionStore — durable, file-backed storage of FunctionDefinitions.

Layout: one JSON document per function, ``<store_dir>/<name>.json``::

    {
      "name": "add",
      "description": "Add two numbers",
      "parameter_schema": {"type": "object", "properties": {...}, "required": [...]},
      "code": "def add(params):\\n    ...",
      "is_internal": false
    }

Writes are atomic: the record is written to a temp file in the same
directory, fsynced, then moved over the old one with ``os.replace``. A failed
``put`` leaves the previous record untouched.

Known limitation: two concurrent ``put`` calls for the same name race with
no ordering guarantee — whichever ``os.replace`` lands last wins.
"""

from __future__ import annotations

import os
import tempfile
from pathlib import Path

import structlog
from pydantic import ValidationError

from kiln.models.errors import StorageError
from kiln.models.schemas import FunctionDefinition

logger = structlog.get_logger().bind(component="function_store")

_SUFFIX = ".json"
_TMP_PREFIX = ".tmp-"


class FunctionStore:
    """Keyed record store: put (overwrite), get (exact name), clear (bulk).

    Names are case-sensitive. ``case_variants`` lets callers refuse a second
    record whose name differs from an existing one only in casing.
    """

    def __init__(self, store_dir: Path) -> None:
        self.store_dir = Path(store_dir)

    def _path(self, name: str) -> Path:
        return self.store_dir / f"{name}{_SUFFIX}"

    # ── Write ─────────────────────────────────────────────────

    def put(self, definition: FunctionDefinition) -> Path:
        """Create or fully replace the record for ``definition.name``.

        Returns:
            Path of the record file.

        Raises:
            StorageError: the write failed; any prior record is intact.
        """
        path = self._path(definition.name)
        payload = definition.model_dump_json(indent=2)
        tmp_name: str | None = None
        try:
            self.store_dir.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                "w",
                encoding="utf-8",
                dir=self.store_dir,
                prefix=_TMP_PREFIX,
                suffix=_SUFFIX,
                delete=False,
            ) as tmp:
                tmp_name = tmp.name
                tmp.write(payload)
                tmp.flush()
                os.fsync(tmp.fileno())
            os.replace(tmp_name, path)
            tmp_name = None
        except OSError as exc:
            logger.error("function_store_put_failed", function=definition.name, error=str(exc))
            raise StorageError(
                f"Failed to store function definition {definition.name}. {exc}"
            ) from exc
        finally:
            if tmp_name is not None:
                Path(tmp_name).unlink(missing_ok=True)

        logger.info("function_stored", function=definition.name, path=str(path))
        return path

    def ensure_internal(self, definition: FunctionDefinition) -> bool:
        """Seed a reserved record if it is not already present.

        Returns True when a record was written.
        """
        existing = self.get(definition.name)
        if existing is not None and existing.is_internal:
            return False
        self.put(definition.model_copy(update={"is_internal": True}))
        return True

    # ── Read ──────────────────────────────────────────────────

    def get(self, name: str) -> FunctionDefinition | None:
        """Exact-name lookup. Returns None when no such record exists.

        Raises:
            StorageError: the record exists but cannot be read or parsed.
        """
        path = self._path(name)
        if not path.is_file():
            return None
        definition = self._load(path)
        # Case-insensitive filesystems map Foo.json and foo.json to one file.
        if definition.name != name:
            return None
        return definition

    def list_definitions(self) -> list[FunctionDefinition]:
        """All readable records, sorted by name. Unreadable files are skipped."""
        if not self.store_dir.is_dir():
            return []
        definitions: list[FunctionDefinition] = []
        for path in sorted(self.store_dir.glob(f"*{_SUFFIX}")):
            if path.name.startswith(_TMP_PREFIX):
                continue
            try:
                definitions.append(self._load(path))
            except StorageError as exc:
                logger.warning("function_store_skip_unreadable", path=str(path), error=exc.message)
        return definitions

    def case_variants(self, name: str) -> list[str]:
        """Names of stored records equal to ``name`` under casefold but not identical."""
        if not self.store_dir.is_dir():
            return []
        folded = name.casefold()
        variants: list[str] = []
        for path in sorted(self.store_dir.glob(f"*{_SUFFIX}")):
            if path.name.startswith(_TMP_PREFIX) or path.stem.casefold() != folded:
                continue
            try:
                stored = self._load(path).name
            except StorageError as exc:
                logger.warning("function_store_skip_unreadable", path=str(path), error=exc.message)
                continue
            if stored != name and stored.casefold() == folded:
                variants.append(stored)
        return variants

    def _load(self, path: Path) -> FunctionDefinition:
        try:
            return FunctionDefinition.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as exc:
            raise StorageError(f"Failed to read function record {path.name}: {exc}") from exc

    # ── Bulk clear ────────────────────────────────────────────

    def clear(self) -> int:
        """Remove every non-internal record. Returns the number removed.

        Raises:
            StorageError: a record could not be deleted.
        """
        if not self.store_dir.is_dir():
            return 0
        removed = 0
        for path in self.store_dir.glob(f"*{_SUFFIX}"):
            leftover_tmp = path.name.startswith(_TMP_PREFIX)
            if not leftover_tmp:
                try:
                    if self._load(path).is_internal:
                        continue
                except StorageError:
                    logger.warning("function_store_clearing_unreadable", path=str(path))
            try:
                path.unlink()
            except OSError as exc:
                raise StorageError(f"Failed to remove {path.name}: {exc}") from exc
            if not leftover_tmp:
                removed += 1
        logger.info("function_store_cleared", removed=removed, store_dir=str(self.store_dir))
        return removed
