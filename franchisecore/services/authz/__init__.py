from franchisecore.services.authz.conditions import ConditionContext, GrantConditions
from franchisecore.services.authz.levels import INHERITANCE_POLICY, PermissionLevel, implied_level
from franchisecore.services.authz.resolver import (
    Direct,
    EffectiveGrant,
    GrantSnapshot,
    Inherited,
    PermissionResolver,
    TypeWide,
    issue_bootstrap_grant,
    resolve_against,
)

__all__ = [
    "ConditionContext",
    "Direct",
    "EffectiveGrant",
    "GrantConditions",
    "GrantSnapshot",
    "INHERITANCE_POLICY",
    "Inherited",
    "PermissionLevel",
    "PermissionResolver",
    "TypeWide",
    "implied_level",
    "issue_bootstrap_grant",
    "resolve_against",
]
