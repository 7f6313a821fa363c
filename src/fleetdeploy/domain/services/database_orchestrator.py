"""Data-store operations: migrations, backups, restores, health, schema sync, cleanup."""

from __future__ import annotations

import asyncio
import os
import re
import time
from collections.abc import Awaitable, Callable
from typing import Any

import structlog

from fleetdeploy.config import REMOTE_ENVIRONMENTS
from fleetdeploy.domain.errors import (
    FleetDeployError,
    raise_for_result,
    ReasonCode,
    StoreNotFoundError,
)
from fleetdeploy.domain.models.base import generate_short_id
from fleetdeploy.domain.models.results import (
    BackupResult,
    CleanupResult,
    CommandResult,
    EnvironmentMigrationReport,
    HealthResult,
    MigrationResult,
    OperationStatus,
    RestoreResult,
    SchemaSyncResult,
)
from fleetdeploy.domain.models.retry import RetryPolicy
from fleetdeploy.domain.ports.services import DataStoreClient
from fleetdeploy.domain.services.retry import retry_async, Sleep
from fleetdeploy.infrastructure.observability.metrics import DATABASE_OPERATIONS_TOTAL


logger = structlog.get_logger(__name__)

AuditSink = Callable[[str, dict[str, Any]], Awaitable[None]]

APPLIED_PATTERN = re.compile(r"Applied (\d+) migration")

CLEANUP_STATEMENTS: dict[str, list[str]] = {
    "logs-only": [
        "DELETE FROM logs WHERE created_at < datetime('now', '-30 days');",
    ],
    "partial": [
        "DELETE FROM logs WHERE created_at < datetime('now', '-7 days');",
        "DELETE FROM sessions WHERE expires_at < datetime('now');",
    ],
    "full": [
        "DELETE FROM logs;",
        "DELETE FROM sessions;",
        "DELETE FROM files;",
        "DELETE FROM user_profiles;",
        "DELETE FROM users;",
    ],
}


def parse_applied_count(output: str) -> int:
    match = APPLIED_PATTERN.search(output or "")
    return int(match.group(1)) if match else 0


class DatabaseOrchestrator:
    """Runs data-store operations with preconditions and bounded retry.

    Every operation returns a structured result; expected failures (missing
    store, failed command, exhausted retries) are reported through
    ``status``/``reason_code`` rather than raised. In dry-run mode nothing is
    probed or executed and results carry ``status="dry-run"``.
    """

    def __init__(
        self,
        client: DataStoreClient,
        retry_policy: RetryPolicy | None = None,
        backup_dir: str = "backups/database",
        dry_run: bool = False,
        sleep: Sleep = asyncio.sleep,
        remote_environments: frozenset[str] = REMOTE_ENVIRONMENTS,
        audit: AuditSink | None = None,
    ) -> None:
        self._client = client
        self._policy = retry_policy or RetryPolicy()
        self._backup_dir = backup_dir
        self._dry_run = dry_run
        self._sleep = sleep
        self._remote_environments = remote_environments
        self._audit = audit

    @property
    def dry_run(self) -> bool:
        return self._dry_run

    def with_dry_run(self) -> DatabaseOrchestrator:
        return DatabaseOrchestrator(
            self._client,
            retry_policy=self._policy,
            backup_dir=self._backup_dir,
            dry_run=True,
            sleep=self._sleep,
            remote_environments=self._remote_environments,
        )

    def is_remote(self, environment: str) -> bool:
        return environment in self._remote_environments

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _execute(
        self,
        operation: str,
        call: Callable[[], Awaitable[CommandResult]],
        reason: ReasonCode,
    ) -> tuple[CommandResult | None, int, FleetDeployError | None]:
        """Run ``call`` under the retry policy; returns (result, attempts, error)."""
        attempts = 0

        async def attempt_once(attempt: int) -> CommandResult:
            nonlocal attempts
            attempts = attempt
            result = await call()
            raise_for_result(result, operation, reason)
            return result

        try:
            result = await retry_async(
                attempt_once, self._policy, operation_name=operation, sleep=self._sleep
            )
        except FleetDeployError as e:
            DATABASE_OPERATIONS_TOTAL.labels(operation=operation, status="failed").inc()
            return None, attempts, e
        DATABASE_OPERATIONS_TOTAL.labels(operation=operation, status="success").inc()
        return result, attempts, None

    async def _require_store(self, store_name: str, environment: str) -> FleetDeployError | None:
        """Existence probe; returns the error that makes the store unusable, if any."""

        async def probe(attempt: int) -> bool:
            return await self._client.store_exists(store_name, environment)

        try:
            exists = await retry_async(
                probe, self._policy, operation_name="store_probe", sleep=self._sleep
            )
        except FleetDeployError as e:
            return e
        if not exists:
            return StoreNotFoundError(
                f"Data store '{store_name}' does not exist in {environment}"
            )
        return None

    async def _record(self, event: str, details: dict[str, Any]) -> None:
        if self._audit is not None:
            await self._audit(event, details)

    @staticmethod
    def _failure_fields(error: FleetDeployError) -> dict[str, Any]:
        return {
            "status": OperationStatus.FAILED,
            "error": str(error),
            "reason_code": error.reason_code,
        }

    # ------------------------------------------------------------------
    # Migrations
    # ------------------------------------------------------------------

    async def apply_migrations(
        self,
        store_name: str,
        binding: str = "DB",
        environment: str = "production",
        is_remote: bool | None = None,
    ) -> MigrationResult:
        remote = self.is_remote(environment) if is_remote is None else is_remote
        base = {"store_name": store_name, "binding": binding, "environment": environment}

        if self._dry_run:
            logger.info("migration_dry_run", **base, remote=remote)
            return MigrationResult(status=OperationStatus.DRY_RUN, **base)

        missing = await self._require_store(store_name, environment)
        if missing is not None:
            logger.warning("migration_precondition_failed", **base, error=str(missing))
            return MigrationResult(**base, **self._failure_fields(missing))

        result, attempts, error = await self._execute(
            "migrate",
            lambda: self._client.apply_migrations(store_name, environment, remote),
            ReasonCode.MIGRATION_FAILED,
        )
        if error is not None:
            logger.error("migration_failed", **base, attempts=attempts, error=str(error))
            await self._record(
                "MIGRATION_FAILED", {**base, "attempts": attempts, "error": str(error)}
            )
            return MigrationResult(**base, attempts=attempts, **self._failure_fields(error))

        assert result is not None
        applied = parse_applied_count(result.output)
        logger.info("migrations_applied", **base, migrations_applied=applied, attempts=attempts)
        await self._record("MIGRATION_COMPLETED", {**base, "migrations_applied": applied})
        return MigrationResult(
            status=OperationStatus.SUCCESS,
            migrations_applied=applied,
            attempts=attempts,
            output=result.stdout,
            **base,
        )

    async def apply_across_environments(
        self,
        store_name: str,
        environments: list[str],
        binding: str = "DB",
        continue_on_error: bool = False,
        backup_remote: bool = True,
    ) -> EnvironmentMigrationReport:
        """Migrate one store through several environments in order.

        Remote environments are backed up first when ``backup_remote`` is set;
        a failed backup counts as a failed environment.
        """
        results: dict[str, MigrationResult] = {}
        stopped_early = False

        for environment in environments:
            if backup_remote and self.is_remote(environment):
                backup = await self.create_backup(store_name, environment)
                if backup.status == OperationStatus.FAILED:
                    results[environment] = MigrationResult(
                        status=OperationStatus.FAILED,
                        store_name=store_name,
                        binding=binding,
                        environment=environment,
                        error=f"Backup before migration failed: {backup.error}",
                        reason_code=backup.reason_code,
                    )
                    if not continue_on_error:
                        stopped_early = True
                        break
                    continue

            result = await self.apply_migrations(store_name, binding, environment)
            results[environment] = result
            if result.status == OperationStatus.FAILED and not continue_on_error:
                stopped_early = True
                break

        report = EnvironmentMigrationReport(results=results, stopped_early=stopped_early)
        await self._record(
            "MIGRATION_ORCHESTRATION_COMPLETED" if report.succeeded
            else "MIGRATION_ORCHESTRATION_FAILED",
            {
                "store_name": store_name,
                "environments": {env: r.status.value for env, r in results.items()},
            },
        )
        return report

    # ------------------------------------------------------------------
    # Backup / restore
    # ------------------------------------------------------------------

    def backup_path(self, store_name: str, environment: str, backup_id: str) -> str:
        return os.path.join(
            self._backup_dir, environment, backup_id, f"{store_name}-{environment}.sql"
        )

    async def create_backup(
        self,
        store_name: str,
        environment: str,
        is_remote: bool | None = None,
        backup_id: str | None = None,
    ) -> BackupResult:
        remote = self.is_remote(environment) if is_remote is None else is_remote
        backup_file = self.backup_path(
            store_name, environment, backup_id or generate_short_id(f"backup-{environment}")
        )
        base = {"store_name": store_name, "environment": environment}

        if self._dry_run:
            return BackupResult(status=OperationStatus.DRY_RUN, backup_file=backup_file, **base)

        missing = await self._require_store(store_name, environment)
        if missing is not None:
            return BackupResult(**base, **self._failure_fields(missing))

        os.makedirs(os.path.dirname(backup_file), exist_ok=True)
        result, attempts, error = await self._execute(
            "backup",
            lambda: self._client.export(store_name, environment, remote, backup_file),
            ReasonCode.REMOTE_FATAL,
        )
        if error is not None:
            logger.error("backup_failed", **base, attempts=attempts, error=str(error))
            return BackupResult(**base, attempts=attempts, **self._failure_fields(error))

        size = os.path.getsize(backup_file) if os.path.exists(backup_file) else 0
        logger.info("backup_created", **base, backup_file=backup_file, size_bytes=size)
        await self._record("BACKUP_CREATED", {**base, "backup_file": backup_file})
        return BackupResult(
            status=OperationStatus.SUCCESS,
            backup_file=backup_file,
            size_bytes=size,
            attempts=attempts,
            **base,
        )

    async def restore_backup(
        self,
        store_name: str,
        environment: str,
        backup_file: str,
        is_remote: bool | None = None,
    ) -> RestoreResult:
        remote = self.is_remote(environment) if is_remote is None else is_remote
        base = {"store_name": store_name, "environment": environment, "backup_file": backup_file}

        if self._dry_run:
            return RestoreResult(status=OperationStatus.DRY_RUN, **base)

        if not os.path.exists(backup_file):
            return RestoreResult(
                status=OperationStatus.FAILED,
                error=f"Backup file not found: {backup_file}",
                reason_code=ReasonCode.VALIDATION_FAILED,
                **base,
            )
        missing = await self._require_store(store_name, environment)
        if missing is not None:
            return RestoreResult(**base, **self._failure_fields(missing))

        result, attempts, error = await self._execute(
            "restore",
            lambda: self._client.execute_file(store_name, environment, remote, backup_file),
            ReasonCode.REMOTE_FATAL,
        )
        if error is not None:
            logger.error("restore_failed", **base, attempts=attempts, error=str(error))
            return RestoreResult(**base, attempts=attempts, **self._failure_fields(error))

        logger.info("backup_restored", **base, attempts=attempts)
        await self._record("BACKUP_RESTORED", base)
        return RestoreResult(status=OperationStatus.SUCCESS, attempts=attempts, **base)

    # ------------------------------------------------------------------
    # Health and schema
    # ------------------------------------------------------------------

    async def check_health(
        self, store_name: str, environment: str, is_remote: bool | None = None
    ) -> HealthResult:
        remote = self.is_remote(environment) if is_remote is None else is_remote
        base = {"store_name": store_name, "environment": environment}

        if self._dry_run:
            return HealthResult(status=OperationStatus.DRY_RUN, **base)

        missing = await self._require_store(store_name, environment)
        if missing is not None:
            return HealthResult(**base, **self._failure_fields(missing))

        started = time.monotonic()
        result, attempts, error = await self._execute(
            "health_check",
            lambda: self._client.execute(store_name, environment, remote, "SELECT 1;"),
            ReasonCode.REMOTE_FATAL,
        )
        latency_ms = round((time.monotonic() - started) * 1000, 1)
        if error is not None:
            return HealthResult(
                **base, attempts=attempts, latency_ms=latency_ms, **self._failure_fields(error)
            )
        return HealthResult(
            status=OperationStatus.SUCCESS,
            healthy=True,
            latency_ms=latency_ms,
            attempts=attempts,
            **base,
        )

    async def diff_schema(
        self, store_name: str, source_environment: str, target_environment: str
    ) -> SchemaSyncResult:
        """Compare table definitions; ``intended_changes`` lists what sync would do."""
        base = {
            "store_name": store_name,
            "environment": target_environment,
            "source_environment": source_environment,
            "target_environment": target_environment,
        }
        if self._dry_run:
            return SchemaSyncResult(status=OperationStatus.DRY_RUN, **base)

        for environment in (source_environment, target_environment):
            missing = await self._require_store(store_name, environment)
            if missing is not None:
                return SchemaSyncResult(**base, **self._failure_fields(missing))

        try:
            source = await self._client.table_schemas(
                store_name, source_environment, self.is_remote(source_environment)
            )
            target = await self._client.table_schemas(
                store_name, target_environment, self.is_remote(target_environment)
            )
        except FleetDeployError as e:
            return SchemaSyncResult(**base, **self._failure_fields(e))

        changes: list[str] = []
        for table in sorted(source):
            if table not in target:
                changes.append(source[table].rstrip(";") + ";")
            elif _normalize_sql(source[table]) != _normalize_sql(target[table]):
                changes.append(f"-- {table}: definition differs in {target_environment}")
        for table in sorted(set(target) - set(source)):
            changes.append(f"-- {table}: only present in {target_environment}")

        return SchemaSyncResult(status=OperationStatus.SUCCESS, intended_changes=changes, **base)

    async def sync_schema(
        self,
        store_name: str,
        source_environment: str,
        target_environment: str,
        dry_run: bool = True,
    ) -> SchemaSyncResult:
        """Create tables missing from the target; differing tables are only reported."""
        diff = await self.diff_schema(store_name, source_environment, target_environment)
        if diff.status != OperationStatus.SUCCESS:
            return diff
        if dry_run:
            return diff.model_copy(update={"status": OperationStatus.DRY_RUN})

        remote = self.is_remote(target_environment)
        statements = [change for change in diff.intended_changes if not change.startswith("--")]
        total_attempts = 0
        for statement in statements:
            _, attempts, error = await self._execute(
                "schema_sync",
                lambda sql=statement: self._client.execute(
                    store_name, target_environment, remote, sql
                ),
                ReasonCode.REMOTE_FATAL,
            )
            total_attempts += attempts
            if error is not None:
                return diff.model_copy(update={
                    **self._failure_fields(error),
                    "attempts": total_attempts,
                })

        await self._record(
            "SCHEMA_SYNCED",
            {"store_name": store_name, "source": source_environment,
             "target": target_environment, "statements": len(statements)},
        )
        return diff.model_copy(update={"applied": True, "attempts": total_attempts})

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------

    async def perform_cleanup(
        self,
        store_name: str,
        environment: str,
        cleanup_type: str = "partial",
        force: bool = False,
        skip_backup: bool = False,
    ) -> CleanupResult:
        if cleanup_type not in CLEANUP_STATEMENTS:
            raise ValueError(
                f"Unknown cleanup type {cleanup_type!r}; "
                f"expected one of {sorted(CLEANUP_STATEMENTS)}"
            )
        statements = CLEANUP_STATEMENTS[cleanup_type]
        base = {"store_name": store_name, "environment": environment, "statements": statements}

        if environment == "production" and not force:
            return CleanupResult(
                status=OperationStatus.SKIPPED,
                error="Cleanup in production requires force",
                reason_code=ReasonCode.VALIDATION_FAILED,
                **base,
            )
        if self._dry_run:
            return CleanupResult(status=OperationStatus.DRY_RUN, **base)

        remote = self.is_remote(environment)
        if remote and not skip_backup:
            backup = await self.create_backup(store_name, environment)
            if backup.status == OperationStatus.FAILED:
                return CleanupResult(
                    status=OperationStatus.FAILED,
                    error=f"Backup before cleanup failed: {backup.error}",
                    reason_code=backup.reason_code,
                    **base,
                )

        executed = 0
        for statement in statements:
            _, _, error = await self._execute(
                "cleanup",
                lambda sql=statement: self._client.execute(store_name, environment, remote, sql),
                ReasonCode.REMOTE_FATAL,
            )
            if error is not None:
                await self._record(
                    "DATA_CLEANUP_FAILED",
                    {"store_name": store_name, "environment": environment, "executed": executed},
                )
                return CleanupResult(
                    **{**base, **self._failure_fields(error)},
                    output=f"{executed} of {len(statements)} statements executed",
                )
            executed += 1

        await self._record(
            "DATA_CLEANUP_COMPLETED",
            {"store_name": store_name, "environment": environment, "cleanup_type": cleanup_type},
        )
        return CleanupResult(status=OperationStatus.SUCCESS, tables=_tables_of(statements), **base)


def _normalize_sql(sql: str) -> str:
    return " ".join(sql.replace(";", " ").split()).lower()


def _tables_of(statements: list[str]) -> list[str]:
    tables = []
    for statement in statements:
        match = re.search(r"(?:FROM|UPDATE)\s+(\w+)", statement, re.I)
        if match and match.group(1) not in tables:
            tables.append(match.group(1))
    return tables
