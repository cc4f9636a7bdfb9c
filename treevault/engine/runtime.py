"""
TreeVault Runtime — Process-start construction of every shared component.

Ties together:
- Session factory (SQLAlchemy) with a retried connectivity check
- Blob gateway (constructed once, injected everywhere)
- Decision cache (Redis, optional)
- Hierarchy/permission stores, lifecycle services, resolver

Provides:
- runtime.delete_folder() / runtime.delete_file(): lifecycle delete plus
  removal of grants that pointed at the deleted resources
- runtime.startup() / runtime.shutdown(): event-log lifecycle
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from treevault.db.session import check_connection, init_db
from treevault.engine.cache import DecisionCache, create_decision_cache
from treevault.engine.config import PlatformConfig, get_platform_config
from treevault.engine.errors import TreeVaultDependencyError
from treevault.engine.logging import init_logging, log, log_system_event, shutdown_logging
from treevault.engine.retry import retry
from treevault.hierarchy.models import DeletionReport, File
from treevault.hierarchy.service import FileService, FolderService
from treevault.hierarchy.store import HierarchyStore
from treevault.security.access import ResourceTarget, ResourceType
from treevault.security.permissions import PermissionService
from treevault.security.resolver import AuthorizationResolver
from treevault.security.store import PermissionStore
from treevault.storage.gateway import BlobGateway, LocalBlobGateway

logger = logging.getLogger("treevault.engine.runtime")


class TreeVaultRuntime:
    """
    Single owner of the wired component graph.

    Lifecycle:
        runtime = TreeVaultRuntime.from_config(config)
        runtime.startup()
        runtime.folders.create_folder(...)
        runtime.shutdown()
    """

    def __init__(
        self,
        config: PlatformConfig,
        session_factory: sessionmaker,
        gateway: BlobGateway,
        decision_cache: Optional[DecisionCache] = None,
    ):
        self.config = config
        self.session_factory = session_factory
        self.gateway = gateway
        self.decision_cache = decision_cache

        self.hierarchy_store = HierarchyStore(session_factory)
        self.permission_store = PermissionStore(session_factory)

        presign_ttl = config.storage.presign_ttl
        self.folders = FolderService(
            self.hierarchy_store, gateway, config.names.folder_name_max_length, presign_ttl,
        )
        self.files = FileService(
            self.hierarchy_store, gateway, config.names.file_name_max_length, presign_ttl,
        )
        self.permissions = PermissionService(self.permission_store, self.hierarchy_store, decision_cache)
        self.resolver = AuthorizationResolver(self.hierarchy_store, self.permission_store, decision_cache)

        self._started = False

    @classmethod
    def from_config(
        cls,
        config: Optional[PlatformConfig] = None,
        create_tables: bool = False,
        **overrides: Any,
    ) -> "TreeVaultRuntime":
        """
        Build the runtime from treevault.yaml settings.

        overrides may supply session_factory, gateway or decision_cache
        directly (tests, embedding applications).
        """
        config = config or get_platform_config()
        db = config.database

        session_factory = overrides.get("session_factory")
        if session_factory is None:
            session_factory = init_db(
                db.url,
                create_tables=create_tables,
                pool_size=db.pool_size,
                max_overflow=db.max_overflow,
                pool_timeout=db.pool_timeout,
                pool_recycle=db.pool_recycle,
                pool_pre_ping=db.pool_pre_ping,
            )
            engine = session_factory.kw["bind"]
            try:
                retry(
                    lambda: check_connection(engine),
                    attempts=db.connect_attempts,
                    retry_on=(SQLAlchemyError,),
                )
            except SQLAlchemyError as e:
                raise TreeVaultDependencyError(
                    "Database unreachable at startup",
                    dependency="database",
                    operation="startup",
                ) from e

        gateway = overrides.get("gateway")
        if gateway is None:
            gateway = LocalBlobGateway(
                root=config.storage.root,
                base_url=config.storage.base_url,
                signing_secret=config.storage.signing_secret,
            )

        decision_cache = overrides.get("decision_cache")
        if decision_cache is None and config.security.permission_cache_enabled:
            try:
                decision_cache = create_decision_cache(
                    config.redis.url, ttl=config.security.permission_cache_ttl, db=config.redis.db,
                )
            except Exception as e:
                logger.warning(f"Redis unavailable (running without decision cache): {e}")
                decision_cache = None

        return cls(config, session_factory, gateway, decision_cache)

    # -------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------

    def startup(self) -> None:
        if self._started:
            logger.warning("Runtime already started")
            return
        queue_cfg = self.config.logging.async_queue
        init_logging(
            log_dir=self.config.logging.directory,
            flush_interval_ms=queue_cfg.flush_interval_ms,
            flush_batch_size=queue_cfg.flush_batch_size,
            max_queue_size=queue_cfg.max_queue_size,
        )
        self._started = True
        log(log_system_event("treevault_started", details={
            "environment": self.config.environment,
            "decision_cache": self.decision_cache is not None,
        }))
        logger.info("TreeVault runtime started")

    def shutdown(self) -> None:
        if not self._started:
            return
        log(log_system_event("treevault_shutdown"))
        shutdown_logging()
        self._started = False
        logger.info("TreeVault runtime shut down")

    # -------------------------------------------------------------------
    # Deletes with grant cleanup
    # -------------------------------------------------------------------

    def delete_folder(self, folder_id: str) -> DeletionReport:
        """Recursive folder delete, then removal of every grant on the removed resources."""
        report = self.folders.delete_folder(folder_id)
        targets = [ResourceTarget(type=ResourceType.FOLDER, id=fid) for fid in report.folder_ids]
        targets.extend(ResourceTarget(type=ResourceType.FILE, id=fid) for fid in report.file_ids)
        self.permissions.purge_targets(targets)
        return report

    def delete_file(self, file_id: str) -> File:
        file = self.files.delete_file(file_id)
        self.permissions.purge_targets([ResourceTarget(type=ResourceType.FILE, id=file.id)])
        return file


# ---------------------------------------------------------------------------
# Module-level singleton
# ---------------------------------------------------------------------------

_runtime: Optional[TreeVaultRuntime] = None


def get_runtime() -> TreeVaultRuntime:
    """
    Get the global runtime singleton.

    Raises RuntimeError if init_runtime() has not been called.
    """
    if _runtime is None:
        raise RuntimeError("TreeVault runtime not initialized. Call init_runtime() first.")
    return _runtime


def init_runtime(config: Optional[PlatformConfig] = None, **kwargs: Any) -> TreeVaultRuntime:
    """Create (but do not start) the global runtime."""
    global _runtime
    _runtime = TreeVaultRuntime.from_config(config, **kwargs)
    return _runtime
