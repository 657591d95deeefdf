"""Guarded runtime schema changes on the users table."""

import time
from typing import Optional, Sequence

import structlog

from authvault.dialects.base import AdapterConnection, SQLAdapter
from authvault.errors import ConflictError, MigrationError, ValidationError
from authvault.models.results import MigrationReport, MigrationResult
from authvault.models.schema import MAX_CUSTOM_FIELDS, FieldDescriptor, TableNames, coerce_descriptor
from authvault.services.credential_store import CredentialStore

logger = structlog.get_logger(__name__)

CONFIRMATION_MESSAGE = (
    "CONFIRMATION REQUIRED: this alters the live users table.\n"
    "    Take a backup, then call again with confirmed=True."
)
ATOMIC_UNAVAILABLE = "atomic_migration_unavailable"


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


class SchemaEvolution:
    """Adds custom columns to an initialized users table.

    Every check (confirmation, name grammar, reserved names, duplicates, field
    count, required-without-default) runs before the first ALTER statement.
    """

    def __init__(self, adapter: SQLAdapter, tables: TableNames, store: Optional[CredentialStore] = None):
        self.adapter = adapter
        self.tables = tables
        self.store = store

    @staticmethod
    def _require_confirmation(confirmed: bool) -> None:
        if confirmed is not True:
            raise MigrationError(CONFIRMATION_MESSAGE)

    def _prepare(self, field: FieldDescriptor | dict) -> FieldDescriptor:
        descriptor = coerce_descriptor(field)
        if descriptor.is_reserved:
            raise MigrationError(
                f"Field name '{descriptor.name}' is reserved and cannot be added as a custom column"
            )
        return descriptor

    def _check_capacity(self, descriptors: Sequence[FieldDescriptor]) -> None:
        existing = set(self.store.custom_fields) if self.store else set()
        total = existing | {d.name for d in descriptors}
        if len(total) > MAX_CUSTOM_FIELDS:
            raise ValidationError(
                f"At most {MAX_CUSTOM_FIELDS} custom fields are allowed; this change would make {len(total)}"
            )

    async def _check_required(
        self, descriptors: Sequence[FieldDescriptor], conn: AdapterConnection
    ) -> None:
        needs_default = [d for d in descriptors if d.required and d.default_value is None]
        if not needs_default:
            return
        names = ", ".join(f"'{d.name}'" for d in needs_default)
        if self.adapter.add_column_requires_default_for_not_null:
            raise MigrationError(
                f"Cannot add required column {names} without a default value: "
                f"{self.adapter.name} cannot add NOT NULL columns without a default"
            )
        if await self.adapter.table_has_rows(self.tables.users, conn=conn):
            raise MigrationError(
                f"Cannot add required column {names} without a default value "
                "to a table that already has rows"
            )

    def _register(self, descriptor: FieldDescriptor) -> None:
        if self.store is not None:
            self.store.register_field(descriptor)

    async def add_column(
        self,
        field: FieldDescriptor | dict,
        confirmed: bool = False,
        skip_if_exists: bool = True,
    ) -> MigrationResult:
        """Add one custom column.

        Args:
            field: Descriptor (or dict) for the new column
            confirmed: Must be True; anything else raises before any other check
            skip_if_exists: Report an existing column as skipped instead of failing

        Returns:
            MigrationResult for the column

        Raises:
            MigrationError: Unconfirmed, reserved name, existing column with
                skip_if_exists=False, or required-without-default that cannot apply
            ValidationError: Bad name or type, or too many custom fields
        """
        self._require_confirmation(confirmed)
        started = time.perf_counter()
        descriptor = self._prepare(field)
        self._check_capacity([descriptor])
        table = self.tables.users

        async with self.adapter.acquire() as conn:
            if await self.adapter.column_exists(table, descriptor.name, conn=conn):
                if not skip_if_exists:
                    raise MigrationError(f"Column '{descriptor.name}' already exists on {table}")
                self._register(descriptor)
                logger.info("column_add_skipped", table=table, column=descriptor.name)
                return MigrationResult(
                    success=True,
                    column=descriptor.name,
                    skipped=True,
                    reason="Column already exists",
                    duration_ms=_elapsed_ms(started),
                )

            await self._check_required([descriptor], conn)
            async with conn.transaction():
                await self.adapter.add_column(table, descriptor.to_column(), conn=conn)

        self._register(descriptor)
        logger.warning(
            "dangerous_column_added",
            table=table,
            column=descriptor.name,
            type=descriptor.type,
            dialect=self.adapter.name,
        )
        return MigrationResult(success=True, column=descriptor.name, duration_ms=_elapsed_ms(started))

    async def migrate_schema(
        self,
        fields: Sequence[FieldDescriptor | dict],
        confirmed: bool = False,
        use_transaction: bool = True,
    ) -> MigrationReport:
        """Add several custom columns.

        With use_transaction=True on a dialect with transactional DDL the batch
        is all-or-nothing and a failure propagates after rollback. Otherwise
        columns are applied one at a time; the report has atomic=False and a
        failure stops the batch and is reported on that column.

        Raises:
            MigrationError: Unconfirmed, reserved names, or required-without-default
            ConflictError: Duplicate names in the batch
            ValidationError: Bad names or types, or too many custom fields
        """
        self._require_confirmation(confirmed)
        started = time.perf_counter()
        descriptors = [self._prepare(f) for f in fields]
        if not descriptors:
            raise ValidationError("No fields to migrate")

        seen: set[str] = set()
        for descriptor in descriptors:
            key = descriptor.name.lower()
            if key in seen:
                raise ConflictError(f"Duplicate field name in migration: '{descriptor.name}'")
            seen.add(key)
        self._check_capacity(descriptors)

        table = self.tables.users
        atomic = use_transaction and self.adapter.supports_transactional_ddl
        warnings: list[str] = []
        results: list[MigrationResult] = []

        async with self.adapter.acquire() as conn:
            to_add = []
            for descriptor in descriptors:
                if await self.adapter.column_exists(table, descriptor.name, conn=conn):
                    results.append(
                        MigrationResult(
                            success=True,
                            column=descriptor.name,
                            skipped=True,
                            reason="Column already exists",
                        )
                    )
                    self._register(descriptor)
                else:
                    to_add.append(descriptor)

            await self._check_required(to_add, conn)

            if atomic:
                async with conn.transaction():
                    for descriptor in to_add:
                        column_started = time.perf_counter()
                        await self.adapter.add_column(table, descriptor.to_column(), conn=conn)
                        results.append(
                            MigrationResult(
                                success=True,
                                column=descriptor.name,
                                duration_ms=_elapsed_ms(column_started),
                            )
                        )
            else:
                warnings.append(ATOMIC_UNAVAILABLE)
                logger.warning(
                    ATOMIC_UNAVAILABLE,
                    dialect=self.adapter.name,
                    requested=use_transaction,
                    columns=[d.name for d in to_add],
                )
                for descriptor in to_add:
                    column_started = time.perf_counter()
                    try:
                        async with conn.transaction():
                            await self.adapter.add_column(table, descriptor.to_column(), conn=conn)
                    except Exception as e:
                        logger.error("column_add_failed", table=table, column=descriptor.name, error=str(e))
                        results.append(
                            MigrationResult(
                                success=False,
                                column=descriptor.name,
                                reason=str(e),
                                duration_ms=_elapsed_ms(column_started),
                            )
                        )
                        break
                    results.append(
                        MigrationResult(
                            success=True,
                            column=descriptor.name,
                            duration_ms=_elapsed_ms(column_started),
                        )
                    )

        by_name = {d.name: d for d in descriptors}
        for result in results:
            if result.success and not result.skipped:
                self._register(by_name[result.column])

        order = {d.name: i for i, d in enumerate(descriptors)}
        results.sort(key=lambda r: order[r.column])
        added = sum(1 for r in results if r.success and not r.skipped)
        skipped = sum(1 for r in results if r.skipped)
        success = all(r.success for r in results) and added + skipped == len(descriptors)

        report = MigrationReport(
            success=success,
            atomic=atomic,
            fields_added=added,
            fields_skipped=skipped,
            columns=results,
            warnings=warnings,
            duration_ms=_elapsed_ms(started),
        )
        logger.warning(
            "schema_migrated",
            table=table,
            success=success,
            atomic=atomic,
            fields_added=added,
            fields_skipped=skipped,
        )
        return report
