"""
TreeVault Permission Store — Persistence of global and resource-scoped grants.

One row per (user_id, scope) where scope is "global" or "<type>:<id>".
Upserts have replace semantics: the stored access-level set becomes exactly
the requested one.

Upsert strategy:
    single — select by (user, scope) → update or insert; an insert that loses
             a race on the unique key is retried as an update
    bulk   — chunked select of existing rows → update those, insert the rest
             in one transaction; on a unique-key race the batch falls back to
             single upserts
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Dict, FrozenSet, Generator, Iterable, List, Optional, Sequence

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from treevault.db.base import utcnow
from treevault.db.models import PermissionRow
from treevault.db.session import session_scope
from treevault.engine.errors import TreeVaultDependencyError
from treevault.hierarchy.models import new_id
from treevault.hierarchy.store import chunked
from treevault.security.access import (
    GLOBAL_SCOPE,
    AccessLevel,
    Permission,
    ResourceTarget,
    ResourceType,
)

logger = logging.getLogger("treevault.security.store")


def scope_for(target: Optional[ResourceTarget]) -> str:
    return GLOBAL_SCOPE if target is None else target.scope


def _serialize_levels(levels: Iterable[AccessLevel]) -> List[str]:
    return sorted(AccessLevel(level).value for level in levels)


class PermissionStore:
    """Grant persistence over an injected session factory."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    @contextmanager
    def _session(self, operation: str, resource_id: Optional[str] = None) -> Generator[Session, None, None]:
        try:
            with session_scope(self._session_factory) as session:
                yield session
        except IntegrityError:
            raise
        except SQLAlchemyError as e:
            logger.error(f"Database failure during {operation} ({resource_id}): {e}")
            raise TreeVaultDependencyError(
                f"Database failure during {operation}",
                dependency="database",
                operation=operation,
                resource_id=resource_id,
            ) from e

    @staticmethod
    def _to_permission(row: PermissionRow) -> Permission:
        target = None
        if row.target_type is not None:
            target = ResourceTarget(type=ResourceType(row.target_type), id=row.target_id)
        return Permission(
            id=row.id,
            user_id=row.user_id,
            target=target,
            access_levels=frozenset(AccessLevel(v) for v in row.access_levels),
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    @staticmethod
    def _new_row(user_id: str, target: Optional[ResourceTarget], levels: List[str]) -> PermissionRow:
        return PermissionRow(
            id=new_id(),
            user_id=user_id,
            scope=scope_for(target),
            target_type=target.type.value if target is not None else None,
            target_id=target.id if target is not None else None,
            access_levels=levels,
        )

    # -------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------

    def get(self, user_id: str, target: Optional[ResourceTarget]) -> Optional[Permission]:
        with self._session("get_permission", user_id) as session:
            row = session.scalars(
                select(PermissionRow).where(
                    PermissionRow.user_id == user_id,
                    PermissionRow.scope == scope_for(target),
                )
            ).first()
            return self._to_permission(row) if row is not None else None

    def get_by_id(self, permission_id: str) -> Optional[Permission]:
        with self._session("get_permission", permission_id) as session:
            row = session.get(PermissionRow, permission_id)
            return self._to_permission(row) if row is not None else None

    def list_for_user(self, user_id: str) -> List[Permission]:
        with self._session("list_for_user", user_id) as session:
            rows = session.scalars(
                select(PermissionRow).where(PermissionRow.user_id == user_id).order_by(PermissionRow.scope)
            ).all()
            return [self._to_permission(row) for row in rows]

    def list_for_target(self, target_id: str) -> List[Permission]:
        with self._session("list_for_target", target_id) as session:
            rows = session.scalars(
                select(PermissionRow).where(PermissionRow.target_id == target_id).order_by(PermissionRow.user_id)
            ).all()
            return [self._to_permission(row) for row in rows]

    # -------------------------------------------------------------------
    # Upserts
    # -------------------------------------------------------------------

    def _try_upsert(self, user_id: str, target: Optional[ResourceTarget], levels: List[str]) -> Permission:
        with self._session("upsert_permission", user_id) as session:
            row = session.scalars(
                select(PermissionRow).where(
                    PermissionRow.user_id == user_id,
                    PermissionRow.scope == scope_for(target),
                )
            ).first()
            if row is None:
                row = self._new_row(user_id, target, levels)
                session.add(row)
            else:
                row.access_levels = levels
                row.updated_at = utcnow()
            session.flush()
            return self._to_permission(row)

    def upsert(
        self,
        user_id: str,
        target: Optional[ResourceTarget],
        access_levels: FrozenSet[AccessLevel],
    ) -> Permission:
        """Create or replace the single record for (user_id, target)."""
        levels = _serialize_levels(access_levels)
        try:
            return self._try_upsert(user_id, target, levels)
        except IntegrityError:
            # A concurrent insert won; the row now exists, so this is an update
            logger.debug(f"Upsert race on {user_id}/{scope_for(target)}; retrying as update")
            return self._try_upsert(user_id, target, levels)

    def bulk_upsert(
        self,
        user_id: str,
        targets: Sequence[ResourceTarget],
        access_levels: FrozenSet[AccessLevel],
    ) -> int:
        """
        Create or replace (user_id, target) records for many targets.
        Returns the number of records written.
        """
        if not targets:
            return 0
        levels = _serialize_levels(access_levels)
        by_scope: Dict[str, ResourceTarget] = {t.scope: t for t in targets}
        try:
            with self._session("bulk_upsert_permissions", user_id) as session:
                existing: Dict[str, PermissionRow] = {}
                for chunk in chunked(list(by_scope)):
                    for row in session.scalars(
                        select(PermissionRow).where(
                            PermissionRow.user_id == user_id,
                            PermissionRow.scope.in_(chunk),
                        )
                    ).all():
                        existing[row.scope] = row

                now = utcnow()
                for scope, target in by_scope.items():
                    row = existing.get(scope)
                    if row is None:
                        session.add(self._new_row(user_id, target, levels))
                    else:
                        row.access_levels = levels
                        row.updated_at = now
        except IntegrityError:
            logger.warning(f"Bulk upsert race for user {user_id}; falling back to single upserts")
            for target in by_scope.values():
                self.upsert(user_id, target, frozenset(AccessLevel(v) for v in levels))
        return len(by_scope)

    # -------------------------------------------------------------------
    # Deletes
    # -------------------------------------------------------------------

    def delete_by_id(self, permission_id: str) -> Optional[Permission]:
        """Delete one record. Returns it, or None when it did not exist."""
        with self._session("revoke_permission", permission_id) as session:
            row = session.get(PermissionRow, permission_id)
            if row is None:
                return None
            permission = self._to_permission(row)
            session.delete(row)
            return permission

    def delete_for_user(self, user_id: str) -> int:
        with self._session("purge_user", user_id) as session:
            result = session.execute(delete(PermissionRow).where(PermissionRow.user_id == user_id))
            return result.rowcount or 0

    def delete_for_targets(self, targets: Sequence[ResourceTarget]) -> List[str]:
        """Delete every record on any of the targets. Returns the affected user ids."""
        scopes = sorted({t.scope for t in targets})
        users: set = set()
        if not scopes:
            return []
        with self._session("purge_targets") as session:
            for chunk in chunked(scopes):
                users.update(session.scalars(
                    select(PermissionRow.user_id).where(PermissionRow.scope.in_(chunk))
                ).all())
                session.execute(delete(PermissionRow).where(PermissionRow.scope.in_(chunk)))
        return sorted(users)
