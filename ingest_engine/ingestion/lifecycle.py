"""
Destination table lifecycle: per-rule acquisition by write mode, verbatim
table copies, and safe replacement of the engine's own control tables.
"""

import logging
import uuid
from datetime import datetime
from typing import Callable, Optional, Union

from ingest_engine.database.workbook import SQLTable, SQLWorkbook
from ingest_engine.errors import ResourceSystemError
from ingest_engine.ingestion.models import WriteMode, parse_write_mode

logger = logging.getLogger(__name__)

BACKUP_MARKER = '_backup_'
TEMP_MARKER = '_tmp_'
RETIRED_MARKER = '_retired_'

PopulateFn = Callable[[SQLTable, Optional[SQLTable]], None]


class LifecycleManager:
    """Opens, creates, clears and replaces table resources."""

    def __init__(self, max_backups: int = 3, clock: Callable[[], datetime] = datetime.now):
        self.max_backups = max_backups
        self.clock = clock

    def open(self, workbook: SQLWorkbook, table_name: str, mode: Union[WriteMode, str]) -> SQLTable:
        """Return a writable destination table prepared for ``mode``."""
        write_mode = parse_write_mode(mode)
        if write_mode is None:
            logger.warning(f"Unrecognized write mode '{mode}' for '{table_name}', using clear-and-reuse")
            write_mode = WriteMode.CLEAR_AND_REUSE

        try:
            table = workbook.get_table(table_name)

            if table is None:
                logger.info(f"Destination table '{table_name}' missing, creating it")
                return workbook.create_table(table_name)

            if write_mode == WriteMode.CLEAR_AND_REUSE:
                table.clear()
                logger.info(f"Cleared destination table '{table_name}'")
                return table

            if write_mode == WriteMode.RECREATE:
                position = table.position
                workbook.delete_table(table_name)
                table = workbook.create_table(table_name, position=position)
                logger.info(f"Recreated destination table '{table_name}' at position {position}")
                return table

            # append and copy-format keep the existing table untouched
            return table

        except ResourceSystemError:
            raise
        except Exception as e:
            raise ResourceSystemError(
                f"Cannot prepare destination '{table_name}' in {workbook.resource_id}: {e}"
            ) from e

    def copy_table(self, source: SQLTable, workbook: SQLWorkbook, table_name: str) -> SQLTable:
        """
        Replace ``table_name`` with a verbatim copy of ``source``.

        The copy keeps every row and the full column layout, and takes the
        position of the table it replaces.
        """
        try:
            position = None
            existing = workbook.get_table(table_name)
            if existing is not None:
                position = existing.position
                workbook.delete_table(table_name)

            if source.workbook.resource_id == workbook.resource_id:
                copy = workbook.copy_table(source.name, table_name, position=position)
            else:
                copy = workbook.import_table(source, table_name, position=position)

            logger.info(
                f"Copied '{source.name}' from {source.workbook.resource_id} "
                f"to '{table_name}' in {workbook.resource_id}"
            )
            return copy

        except ResourceSystemError:
            raise
        except Exception as e:
            raise ResourceSystemError(f"Cannot copy '{source.name}' to '{table_name}': {e}") from e

    def safe_replace(self, workbook: SQLWorkbook, target: str, populate: PopulateFn) -> SQLTable:
        """
        Swap ``target`` for a freshly built table.

        Phases: backup (best-effort), stage, populate, promote. A failure in
        stage, populate or promote rolls back so that ``target`` resolves to
        the original table or its backup, never to a half-built temporary.
        """
        original = workbook.get_table(target)
        backup_name = self._backup(workbook, original) if original is not None else None

        token = uuid.uuid4().hex[:8]
        temp_name = f"{target}{TEMP_MARKER}{token}"
        retired_name = f"{target}{RETIRED_MARKER}{token}"
        position = original.position if original is not None else None

        try:
            temp = workbook.create_table(temp_name, position=position)
            populate(temp, original)

            if original is not None:
                workbook.rename_table(target, retired_name)
            promoted = workbook.rename_table(temp_name, target)
        except Exception as e:
            logger.error(f"Safe replacement of '{target}' failed, rolling back: {e}")
            self._rollback(workbook, target, temp_name, retired_name, backup_name, original is not None)
            raise ResourceSystemError(f"Safe replacement of '{target}' failed: {e}") from e

        if original is not None:
            try:
                workbook.delete_table(retired_name)
            except Exception as e:
                logger.warning(f"Could not delete retired table '{retired_name}': {e}")

        self._prune_backups(workbook, target)
        logger.info(f"Safely replaced table '{target}' in {workbook.resource_id}")
        return promoted

    def _backup(self, workbook: SQLWorkbook, table: SQLTable) -> Optional[str]:
        # a failed backup never aborts the replacement
        stamp = self.clock().strftime('%Y%m%d_%H%M%S')
        name = f"{table.name}{BACKUP_MARKER}{stamp}"
        suffix = 1
        while workbook.has_table(name):
            name = f"{table.name}{BACKUP_MARKER}{stamp}_{suffix}"
            suffix += 1

        try:
            workbook.copy_table(table.name, name)
            logger.info(f"Backed up '{table.name}' as '{name}'")
            return name
        except Exception as e:
            logger.warning(f"Backup of '{table.name}' failed, continuing without one: {e}")
            return None

    def _rollback(
        self,
        workbook: SQLWorkbook,
        target: str,
        temp_name: str,
        retired_name: str,
        backup_name: Optional[str],
        had_original: bool,
    ) -> None:
        try:
            if workbook.has_table(temp_name):
                workbook.delete_table(temp_name)

            if workbook.has_table(target):
                return

            if workbook.has_table(retired_name):
                workbook.rename_table(retired_name, target)
                logger.info(f"Restored original '{target}'")
            elif backup_name and workbook.has_table(backup_name):
                workbook.rename_table(backup_name, target)
                logger.info(f"Restored '{target}' from backup '{backup_name}'")
            elif had_original:
                logger.error(f"No original or backup available to restore '{target}'")
        except Exception as e:
            logger.error(
                f"Rollback of '{target}' failed, manual inspection required "
                f"(temp={temp_name}, backup={backup_name}): {e}"
            )

    def _prune_backups(self, workbook: SQLWorkbook, target: str) -> None:
        prefix = f"{target}{BACKUP_MARKER}"
        backups = sorted(name for name in workbook.table_names() if name.startswith(prefix))
        for name in backups[:-self.max_backups] if self.max_backups > 0 else backups:
            try:
                workbook.delete_table(name)
                logger.info(f"Pruned old backup '{name}'")
            except Exception as e:
                logger.warning(f"Could not prune backup '{name}': {e}")
