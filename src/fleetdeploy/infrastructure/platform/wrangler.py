"""Adapters for the platform's deploy tool (wrangler)."""

from __future__ import annotations

import json
import re
import shlex
from typing import Any

import structlog

from fleetdeploy.config import PlatformSettings
from fleetdeploy.domain.errors import raise_for_result, ReasonCode, RemoteCommandError
from fleetdeploy.domain.models.fleet import Domain
from fleetdeploy.domain.models.results import CommandResult, DeployOutcome
from fleetdeploy.domain.ports.services import CommandRunner, DataStoreClient, RemoteDeployer


logger = structlog.get_logger(__name__)

WORKERS_DEV_URL = re.compile(r"https://[A-Za-z0-9.-]+\.workers\.dev\b")
VERSION_ID = re.compile(r"Current Version ID:\s*([0-9a-f-]{8,})", re.IGNORECASE)

TABLE_SCHEMA_QUERY = (
    "SELECT name, sql FROM sqlite_master WHERE type='table' "
    "AND name NOT LIKE 'sqlite_%' AND name NOT LIKE '_cf_%' AND name != 'd1_migrations'"
)


def _location_flag(remote: bool) -> str:
    return "--remote" if remote else "--local"


def parse_json_rows(output: str) -> list[dict[str, Any]]:
    """Rows from ``d1 execute --json`` output (a list of statement results)."""
    payload = json.loads(output)
    if isinstance(payload, dict):
        payload = [payload]
    rows: list[dict[str, Any]] = []
    for statement in payload:
        rows.extend(statement.get("results") or [])
    return rows


class WranglerCli:
    """Builds and runs wrangler invocations with the platform credentials."""

    def __init__(self, runner: CommandRunner, settings: PlatformSettings) -> None:
        self._runner = runner
        self._settings = settings
        self._base = shlex.split(settings.wrangler_command)

    def _env(self, extra: dict[str, str] | None = None) -> dict[str, str]:
        env: dict[str, str] = {}
        if self._settings.api_token:
            env["CLOUDFLARE_API_TOKEN"] = self._settings.api_token
        if self._settings.account_id:
            env["CLOUDFLARE_ACCOUNT_ID"] = self._settings.account_id
        env.update(extra or {})
        return env

    async def run(
        self,
        *args: str,
        timeout: float,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
    ) -> CommandResult:
        return await self._runner.run(
            [*self._base, *args],
            cwd=cwd or self._settings.service_path,
            timeout=timeout,
            env=self._env(env),
        )


class WranglerD1Client(DataStoreClient):
    """Managed SQL data store operations through ``wrangler d1``."""

    def __init__(self, runner: CommandRunner, settings: PlatformSettings) -> None:
        self._cli = WranglerCli(runner, settings)
        self._settings = settings

    async def store_exists(self, store_name: str, environment: str) -> bool:
        result = await self._cli.run(
            "d1", "list", "--json", timeout=self._settings.api_timeout_seconds * 3
        )
        raise_for_result(result, "store_probe", ReasonCode.STORE_NOT_FOUND)
        try:
            stores = json.loads(result.stdout or "[]")
        except json.JSONDecodeError:
            # Older wrangler releases print a table; fall back to a name match.
            return re.search(rf"\b{re.escape(store_name)}\b", result.stdout) is not None
        return any(store.get("name") == store_name for store in stores)

    async def apply_migrations(
        self, store_name: str, environment: str, remote: bool
    ) -> CommandResult:
        return await self._cli.run(
            "d1", "migrations", "apply", store_name,
            "--env", environment, _location_flag(remote),
            timeout=self._settings.migration_timeout_seconds,
            env={"CI": "true"},
        )

    async def export(
        self, store_name: str, environment: str, remote: bool, output_file: str
    ) -> CommandResult:
        return await self._cli.run(
            "d1", "export", store_name,
            "--env", environment, _location_flag(remote), "--output", output_file,
            timeout=self._settings.backup_timeout_seconds,
        )

    async def execute_file(
        self, store_name: str, environment: str, remote: bool, sql_file: str
    ) -> CommandResult:
        return await self._cli.run(
            "d1", "execute", store_name,
            "--env", environment, _location_flag(remote), "--file", sql_file, "--yes",
            timeout=self._settings.backup_timeout_seconds,
        )

    async def execute(
        self, store_name: str, environment: str, remote: bool, sql: str
    ) -> CommandResult:
        return await self._cli.run(
            "d1", "execute", store_name,
            "--env", environment, _location_flag(remote), "--command", sql, "--json", "--yes",
            timeout=self._settings.migration_timeout_seconds,
        )

    async def table_schemas(
        self, store_name: str, environment: str, remote: bool
    ) -> dict[str, str]:
        result = await self.execute(store_name, environment, remote, TABLE_SCHEMA_QUERY)
        raise_for_result(result, "table_schemas", ReasonCode.MIGRATION_FAILED)
        try:
            rows = parse_json_rows(result.stdout)
        except (json.JSONDecodeError, AttributeError) as e:
            raise RemoteCommandError(
                f"Unreadable schema listing for {store_name}: {e}",
                exit_code=result.exit_code,
                stdout=result.stdout,
                stderr=result.stderr,
            ) from e
        return {row["name"]: row.get("sql") or "" for row in rows if row.get("name")}


class WranglerDeployer(RemoteDeployer):
    """Worker deploy and rollback through ``wrangler``."""

    def __init__(self, runner: CommandRunner, settings: PlatformSettings) -> None:
        self._cli = WranglerCli(runner, settings)
        self._settings = settings

    async def deploy(self, domain: Domain) -> DeployOutcome:
        result = await self._cli.run(
            "deploy", "--env", domain.environment,
            cwd=domain.service_path or self._settings.service_path,
            timeout=self._settings.deploy_timeout_seconds,
        )
        if not result.succeeded:
            logger.warning(
                "worker_deploy_failed",
                worker=domain.routing.worker_name,
                exit_code=result.exit_code,
            )
            return DeployOutcome(
                success=False,
                exit_code=result.exit_code,
                stdout=result.stdout,
                stderr=result.stderr,
            )

        url_match = WORKERS_DEV_URL.search(result.output)
        version_match = VERSION_ID.search(result.output)
        url = url_match.group(0) if url_match else None
        if url is None and domain.routing.custom_domain:
            url = f"https://{domain.routing.custom_domain}"
        logger.info(
            "worker_deployed",
            worker=domain.routing.worker_name,
            url=url,
            version_id=version_match.group(1) if version_match else None,
        )
        return DeployOutcome(
            success=True,
            url=url,
            version_id=version_match.group(1) if version_match else None,
            exit_code=result.exit_code,
            stdout=result.stdout,
            stderr=result.stderr,
        )

    async def rollback(
        self,
        worker_name: str,
        environment: str,
        version_id: str | None = None,
        service_path: str | None = None,
    ) -> CommandResult:
        args = ["rollback"]
        if version_id:
            args.append(version_id)
        args += [
            "--name", worker_name,
            "--env", environment,
            "--message", "fleetdeploy automatic rollback",
            "--yes",
        ]
        return await self._cli.run(
            *args,
            cwd=service_path or self._settings.service_path,
            timeout=self._settings.deploy_timeout_seconds,
        )
