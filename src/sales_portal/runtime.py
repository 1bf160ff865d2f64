"""Wiring of settings, workbook, ERP client and services into one context."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import httpx

from . import data_manager, log
from .constants import EXPECTED_SCHEMA_VERSION
from .erp_client import BusinessCentralClient
from .identity import UserDirectory
from .lifecycle import OrderLifecycleEngine
from .order_store import OrderStore, WorkbookSession
from .reporting import OrderReportingAggregator
from .validation import OrderValidator


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration, persistence and the service objects."""

    settings: data_manager.ConfigSettings
    session: WorkbookSession
    store: OrderStore
    users: UserDirectory
    directory: BusinessCentralClient
    engine: OrderLifecycleEngine
    reporting: OrderReportingAggregator

    async def aclose(self) -> None:
        await self.directory.aclose()


def build_runtime_context(
    settings: data_manager.ConfigSettings,
    *,
    http_client: Optional[httpx.AsyncClient] = None,
) -> RuntimeContext:
    """Open the workbook named by ``settings`` and assemble the services.

    Args:
        settings (data_manager.ConfigSettings): Parsed configuration.
        http_client (httpx.AsyncClient | None): Optional client handed to the
            ERP client instead of one it creates itself.

    Raises:
        FileNotFoundError: If the workbook does not exist.
        KeyError: If the workbook lacks one of the expected sheets.
    """
    workbook = data_manager.open_workbook(settings.data_file)
    session = WorkbookSession(workbook=workbook, data_file=settings.data_file)
    store = OrderStore(session)
    users = UserDirectory(session)
    directory = BusinessCentralClient(settings.erp, client=http_client)
    validator = OrderValidator(directory, settings.policy)
    return RuntimeContext(
        settings=settings,
        session=session,
        store=store,
        users=users,
        directory=directory,
        engine=OrderLifecycleEngine(store, directory, users, validator),
        reporting=OrderReportingAggregator(store, directory, users, settings.policy),
    )


def load_runtime_context(
    config_path: Optional[Path] = None,
    *,
    http_client: Optional[httpx.AsyncClient] = None,
) -> RuntimeContext:
    """Load configuration settings and a live workbook for the services.

    The helper resolves ``config.ini``, parses settings, opens the order store
    workbook and wires the ERP client, validator, lifecycle engine and
    reporting aggregator around them.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer performs its upward search from
            the current working directory.
        http_client (httpx.AsyncClient | None): Optional preconfigured HTTP
            client for the ERP connection.

    Returns:
        RuntimeContext: Fully populated context ready for service calls.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    context = build_runtime_context(settings, http_client=http_client)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return context


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before mutating state.

    Raises:
        RuntimeError: If the schema version declared in the configuration does
            not match ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


__all__ = ["RuntimeContext", "build_runtime_context", "load_runtime_context", "ensure_schema_version"]
