from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging
from typing import Any, Callable, Iterable, Sequence, Union
from uuid import uuid4

from franchisecore.core.errors import (
    AccessDeniedError,
    DatabaseError,
    GrantNotFoundError,
    InsufficientGranterPrivilege,
    InvalidGrantError,
    NodeNotFoundError,
    UpstreamFetchError,
)
from franchisecore.domain.types import (
    NODE_TYPES,
    WILDCARD_RESOURCE_ID,
    FranchiseNode,
    Grant,
    Revocation,
    ensure_utc,
    utc_now,
)
from franchisecore.persistence.store import RecordStore
from franchisecore.services.audit import record_security_event
from franchisecore.services.authz.conditions import ConditionContext, GrantConditions
from franchisecore.services.authz.levels import PermissionLevel, implied_level
from franchisecore.services.hierarchy import HierarchyStore, ancestry_is_complete


logger = logging.getLogger(__name__)

GRANTS_TABLE = "permission_grants"
REVOCATIONS_TABLE = "permission_revocations"

RESOURCE_TENANT = "tenant"
# Grants on these resource types name hierarchy nodes and flow down the tree.
HIERARCHY_RESOURCE_TYPES = NODE_TYPES


@dataclass(frozen=True)
class Direct:
    pass


@dataclass(frozen=True)
class TypeWide:
    pass


@dataclass(frozen=True)
class Inherited:
    # Node ids from the granting ancestor down to the resource.
    path: tuple[str, ...]


GrantSource = Union[Direct, TypeWide, Inherited]

# Tie-break at equal level: exact grant, then type-wide, then inherited.
_SOURCE_PRECEDENCE: dict[type, int] = {Direct: 2, TypeWide: 1, Inherited: 0}


def source_label(source: GrantSource) -> str:
    if isinstance(source, Inherited):
        return "inherited"
    if isinstance(source, TypeWide):
        return "type_wide"
    return "direct"


@dataclass(frozen=True)
class ActiveGrant:
    grant: Grant
    level: PermissionLevel
    conditions: GrantConditions


@dataclass(frozen=True)
class EffectiveGrant:
    grant: Grant
    level: PermissionLevel
    source: GrantSource
    conditions: GrantConditions

    @property
    def precedence(self) -> tuple[int, int]:
        return int(self.level), _SOURCE_PRECEDENCE[type(self.source)]

    def to_dict(self) -> dict[str, Any]:
        payload = self.grant.to_dict()
        payload["effective_level"] = self.level.label
        payload["source"] = source_label(self.source)
        if isinstance(self.source, Inherited):
            payload["is_inherited"] = True
            payload["inheritance_path"] = list(self.source.path)
        return payload


@dataclass(frozen=True)
class GrantSnapshot:
    """Grants usable by one subject, frozen at the start of a resolution."""

    subject_id: str
    now: datetime
    grants: tuple[ActiveGrant, ...]

    @classmethod
    def build(
        cls,
        *,
        subject_id: str,
        now: datetime,
        grant_rows: Iterable[dict[str, Any]],
        revoked_ids: Iterable[str],
    ) -> "GrantSnapshot":
        grants = [Grant.from_record(row) for row in grant_rows]
        revoked = set(revoked_ids)
        superseded = {grant.supersedes_id for grant in grants if grant.supersedes_id}
        active: list[ActiveGrant] = []
        for grant in grants:
            if grant.id in revoked or grant.id in superseded:
                continue
            if grant.expires_at is not None and grant.expires_at <= now:
                continue
            try:
                level = PermissionLevel.parse(grant.level)
                conditions = GrantConditions.parse(grant.conditions)
            except InvalidGrantError:
                # Malformed stored grants never grant access.
                logger.warning(
                    "authz_grant_ignored grant_id=%s subject_id=%s reason=malformed",
                    grant.id,
                    subject_id,
                )
                continue
            active.append(ActiveGrant(grant=grant, level=level, conditions=conditions))
        return cls(subject_id=subject_id, now=now, grants=tuple(active))


def resolve_against(
    snapshot: GrantSnapshot,
    resource_type: str,
    resource_id: str,
    ancestry: Sequence[FranchiseNode] | None = None,
) -> list[EffectiveGrant]:
    """Merge the snapshot's grants that apply to one resource, best first.

    ``ancestry`` is the resource node followed by its ancestors nearest first,
    ``None`` for resources outside the hierarchy, and empty when the node is
    missing (which yields no access).
    """
    if ancestry is not None and not ancestry:
        return []
    location_path = ancestry[0].path_ids if ancestry else None
    ancestors = {node.id: node for node in (ancestry or [])[1:]}
    context = ConditionContext(now=snapshot.now, location_path_ids=location_path)

    merged: list[EffectiveGrant] = []
    for active in snapshot.grants:
        grant = active.grant
        source: GrantSource | None = None
        level = active.level
        if grant.is_type_wide:
            if grant.resource_type == resource_type:
                source = TypeWide()
        elif grant.resource_id == resource_id and grant.resource_type == resource_type:
            source = Direct()
        elif grant.resource_id in ancestors:
            ancestor = ancestors[grant.resource_id]
            if grant.resource_type == ancestor.node_type and location_path is not None:
                start = location_path.index(ancestor.id)
                source = Inherited(path=location_path[start:])
                level = implied_level(active.level)
        if source is None:
            continue
        if not active.conditions.matches(context):
            continue
        merged.append(
            EffectiveGrant(grant=grant, level=level, source=source, conditions=active.conditions)
        )
    merged.sort(key=lambda item: (item.precedence, item.grant.granted_at), reverse=True)
    return merged


class PermissionResolver:
    """Resolve, check, grant, and revoke permissions for one tenant."""

    def __init__(
        self,
        store: RecordStore,
        tenant_id: str,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self.tenant_id = tenant_id
        self._clock = clock or utc_now
        self._hierarchy = HierarchyStore(store, tenant_id)

    async def snapshot(self, subject_id: str) -> GrantSnapshot:
        now = self._clock()
        scope = {"tenant_id": self.tenant_id, "subject_id": subject_id}
        try:
            grant_rows = await self._store.read(GRANTS_TABLE, scope)
            revocations = await self._store.read(REVOCATIONS_TABLE, scope, projection=["grant_id"])
        except DatabaseError as exc:
            logger.warning("authz_snapshot_failed tenant_id=%s subject_id=%s", self.tenant_id, subject_id)
            raise UpstreamFetchError("permission_grants") from exc
        return GrantSnapshot.build(
            subject_id=subject_id,
            now=now,
            grant_rows=grant_rows,
            revoked_ids=[row["grant_id"] for row in revocations],
        )

    async def active_subjects(self) -> set[str]:
        # Subjects holding at least one unrevoked, unexpired grant in the tenant.
        now = self._clock()
        scope = {"tenant_id": self.tenant_id}
        grant_rows = await self._store.read(
            GRANTS_TABLE, scope, projection=["id", "subject_id", "expires_at"]
        )
        revoked = {
            row["grant_id"]
            for row in await self._store.read(REVOCATIONS_TABLE, scope, projection=["grant_id"])
        }
        return {
            row["subject_id"]
            for row in grant_rows
            if row["id"] not in revoked
            and (row.get("expires_at") is None or ensure_utc(row["expires_at"]) > now)
        }

    async def _ancestry(self, resource_type: str, resource_id: str) -> list[FranchiseNode] | None:
        if resource_type not in HIERARCHY_RESOURCE_TYPES or resource_id == WILDCARD_RESOURCE_ID:
            return None
        chain = await self._hierarchy.get_ancestry(resource_id)
        if not chain or chain[0].id != resource_id or chain[0].node_type != resource_type:
            logger.info(
                "authz_resource_missing tenant_id=%s resource_type=%s resource_id=%s",
                self.tenant_id,
                resource_type,
                resource_id,
            )
            return []
        if not ancestry_is_complete(chain[0], chain):
            # Keep direct grants but never trust inheritance through a broken chain.
            logger.warning(
                "authz_ancestry_incomplete tenant_id=%s resource_id=%s path=%s",
                self.tenant_id,
                resource_id,
                chain[0].path,
            )
            return chain[:1]
        return chain

    async def resolve_effective_permissions(
        self,
        user_id: str,
        resource_type: str | None = None,
        resource_id: str | None = None,
    ) -> list[EffectiveGrant]:
        snapshot = await self.snapshot(user_id)
        if resource_id is None:
            # Location restrictions only apply against a concrete resource.
            return [
                EffectiveGrant(
                    grant=active.grant,
                    level=active.level,
                    source=TypeWide() if active.grant.is_type_wide else Direct(),
                    conditions=active.conditions,
                )
                for active in snapshot.grants
                if (resource_type is None or active.grant.resource_type == resource_type)
                and active.conditions.matches_time(snapshot.now)
            ]
        if resource_type is None:
            raise InvalidGrantError("resource_type is required when resource_id is given")
        ancestry = await self._ancestry(resource_type, resource_id)
        return resolve_against(snapshot, resource_type, resource_id, ancestry)

    async def effective_grant(
        self, user_id: str, resource_type: str, resource_id: str
    ) -> EffectiveGrant | None:
        grants = await self.resolve_effective_permissions(user_id, resource_type, resource_id)
        return grants[0] if grants else None

    async def effective_level(
        self, user_id: str, resource_type: str, resource_id: str
    ) -> PermissionLevel | None:
        winner = await self.effective_grant(user_id, resource_type, resource_id)
        return winner.level if winner else None

    async def check_access(
        self,
        user_id: str,
        resource_type: str,
        resource_id: str,
        required_level: str | PermissionLevel,
    ) -> bool:
        required = PermissionLevel.parse(required_level)
        level = await self.effective_level(user_id, resource_type, resource_id)
        return level is not None and level >= required

    async def require_access(
        self,
        user_id: str,
        resource_type: str,
        resource_ids: Iterable[str],
        required_level: str | PermissionLevel,
    ) -> None:
        # Evaluate every id against one snapshot and report all offenders together.
        required = PermissionLevel.parse(required_level)
        snapshot = await self.snapshot(user_id)
        denied: list[str] = []
        for resource_id in dict.fromkeys(resource_ids):
            ancestry = await self._ancestry(resource_type, resource_id)
            grants = resolve_against(snapshot, resource_type, resource_id, ancestry)
            if not grants or grants[0].level < required:
                denied.append(resource_id)
        if not denied:
            return
        logger.warning(
            "authz_denied subject_id=%s tenant_id=%s resource_type=%s resource_ids=%s required_level=%s",
            user_id,
            self.tenant_id,
            resource_type,
            ",".join(denied),
            required.label,
        )
        await record_security_event(
            self._store,
            tenant_id=self.tenant_id,
            subject_id=user_id,
            event_type="authz.denied",
            outcome="failure",
            resource_type=resource_type,
            resource_id=",".join(denied),
            requested_level=required.label,
        )
        raise AccessDeniedError(
            subject_id=user_id,
            resource_type=resource_type,
            resource_ids=denied,
            required_level=required.label,
        )

    async def _validate_target(self, resource_type: str, resource_id: str) -> None:
        if not resource_type or not resource_id:
            raise InvalidGrantError("resource_type and resource_id are required")
        if resource_id == WILDCARD_RESOURCE_ID:
            return
        if resource_type == RESOURCE_TENANT and resource_id != self.tenant_id:
            raise InvalidGrantError("Tenant grants must target the current tenant")
        if resource_type in HIERARCHY_RESOURCE_TYPES:
            node = await self._hierarchy.get_node(resource_id)
            if node.node_type != resource_type:
                raise NodeNotFoundError(resource_id)

    async def _authority_level(
        self, user_id: str, resource_type: str, resource_id: str
    ) -> PermissionLevel | None:
        # Type-wide grants are tenant administration; everything else needs standing on the resource.
        if resource_id == WILDCARD_RESOURCE_ID:
            return await self.effective_level(user_id, RESOURCE_TENANT, self.tenant_id)
        return await self.effective_level(user_id, resource_type, resource_id)

    def _current_grant(
        self, snapshot: GrantSnapshot, resource_type: str, resource_id: str
    ) -> ActiveGrant | None:
        candidates = [
            active
            for active in snapshot.grants
            if active.grant.resource_type == resource_type and active.grant.resource_id == resource_id
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda active: active.grant.granted_at)

    async def grant_permission(
        self,
        *,
        subject_id: str,
        resource_type: str,
        resource_id: str,
        level: str | PermissionLevel,
        conditions: dict[str, Any] | None,
        granted_by: str,
        expires_at: datetime | str | None = None,
    ) -> Grant:
        requested = PermissionLevel.parse(level)
        GrantConditions.parse(conditions)
        granted_at = self._clock()
        expires = ensure_utc(expires_at)
        if expires is not None and expires <= granted_at:
            raise InvalidGrantError("expires_at must be after granted_at")
        await self._validate_target(resource_type, resource_id)

        granter_level = await self._authority_level(granted_by, resource_type, resource_id)
        previous = self._current_grant(await self.snapshot(subject_id), resource_type, resource_id)
        # Replacing an existing grant needs at least that grant's level too.
        needed = max(requested, previous.level) if previous else requested
        if granter_level is None or granter_level < needed:
            logger.warning(
                "authz_grant_denied granted_by=%s subject_id=%s resource_type=%s resource_id=%s "
                "requested_level=%s granter_level=%s",
                granted_by,
                subject_id,
                resource_type,
                resource_id,
                needed.label,
                granter_level.label if granter_level else None,
            )
            await record_security_event(
                self._store,
                tenant_id=self.tenant_id,
                subject_id=granted_by,
                event_type="authz.grant_denied",
                outcome="failure",
                resource_type=resource_type,
                resource_id=resource_id,
                requested_level=needed.label,
                metadata={"grantee": subject_id},
            )
            raise InsufficientGranterPrivilege(
                granted_by=granted_by,
                resource_type=resource_type,
                resource_id=resource_id,
                requested_level=needed.label,
                granter_level=granter_level.label if granter_level else None,
            )

        grant = Grant(
            id=uuid4().hex,
            tenant_id=self.tenant_id,
            subject_id=subject_id,
            resource_type=resource_type,
            resource_id=resource_id,
            level=requested.label,
            conditions=dict(conditions or {}),
            granted_by=granted_by,
            granted_at=granted_at,
            expires_at=expires,
            supersedes_id=previous.grant.id if previous else None,
        )
        stored = Grant.from_record(await self._store.insert(GRANTS_TABLE, grant.to_record()))
        logger.info(
            "authz_grant_created grant_id=%s subject_id=%s resource_type=%s resource_id=%s level=%s supersedes=%s",
            stored.id,
            subject_id,
            resource_type,
            resource_id,
            requested.label,
            stored.supersedes_id,
        )
        await record_security_event(
            self._store,
            tenant_id=self.tenant_id,
            subject_id=granted_by,
            event_type="authz.grant_created",
            outcome="success",
            resource_type=resource_type,
            resource_id=resource_id,
            requested_level=requested.label,
            metadata={"grant_id": stored.id, "grantee": subject_id},
        )
        return stored

    async def get_grant(self, grant_id: str) -> Grant:
        rows = await self._store.read(GRANTS_TABLE, {"tenant_id": self.tenant_id, "id": grant_id})
        if not rows:
            raise GrantNotFoundError(grant_id)
        return Grant.from_record(rows[0])

    async def revoke_permission(
        self, *, grant_id: str, revoked_by: str, reason: str | None = None
    ) -> Revocation:
        grant = await self.get_grant(grant_id)
        existing = await self._store.read(
            REVOCATIONS_TABLE, {"tenant_id": self.tenant_id, "grant_id": grant_id}
        )
        if existing:
            return Revocation.from_record(existing[0])

        needed = max(PermissionLevel.ADMIN, PermissionLevel.parse(grant.level))
        revoker_level = await self._authority_level(revoked_by, grant.resource_type, grant.resource_id)
        if revoker_level is None or revoker_level < needed:
            logger.warning(
                "authz_revoke_denied revoked_by=%s grant_id=%s required_level=%s",
                revoked_by,
                grant_id,
                needed.label,
            )
            await record_security_event(
                self._store,
                tenant_id=self.tenant_id,
                subject_id=revoked_by,
                event_type="authz.revoke_denied",
                outcome="failure",
                resource_type=grant.resource_type,
                resource_id=grant.resource_id,
                requested_level=needed.label,
                metadata={"grant_id": grant_id},
            )
            raise AccessDeniedError(
                subject_id=revoked_by,
                resource_type=grant.resource_type,
                resource_ids=[grant.resource_id],
                required_level=needed.label,
            )

        stored = await self._store.insert(
            REVOCATIONS_TABLE,
            {
                "id": uuid4().hex,
                "tenant_id": self.tenant_id,
                "grant_id": grant_id,
                "subject_id": grant.subject_id,
                "revoked_by": revoked_by,
                "revoked_at": self._clock(),
                "reason": reason,
            },
        )
        logger.info("authz_grant_revoked grant_id=%s revoked_by=%s", grant_id, revoked_by)
        await record_security_event(
            self._store,
            tenant_id=self.tenant_id,
            subject_id=revoked_by,
            event_type="authz.grant_revoked",
            outcome="success",
            resource_type=grant.resource_type,
            resource_id=grant.resource_id,
            metadata={"grant_id": grant_id},
        )
        return Revocation.from_record(stored)


async def issue_bootstrap_grant(
    store: RecordStore,
    *,
    tenant_id: str,
    subject_id: str,
    resource_type: str,
    resource_id: str,
    level: str = "owner",
    granted_by: str = "system",
) -> Grant:
    # Seed the first owner of a tenant; every later grant goes through grant_permission.
    grant = Grant(
        id=uuid4().hex,
        tenant_id=tenant_id,
        subject_id=subject_id,
        resource_type=resource_type,
        resource_id=resource_id,
        level=PermissionLevel.parse(level).label,
        conditions={},
        granted_by=granted_by,
        granted_at=utc_now(),
    )
    stored = await store.insert(GRANTS_TABLE, grant.to_record())
    logger.info(
        "authz_bootstrap_grant tenant_id=%s subject_id=%s resource_type=%s resource_id=%s",
        tenant_id,
        subject_id,
        resource_type,
        resource_id,
    )
    return Grant.from_record(stored)
