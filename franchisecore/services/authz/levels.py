from __future__ import annotations

from enum import IntEnum

from franchisecore.core.errors import InvalidGrantError


class PermissionLevel(IntEnum):
    # Totally ordered so merges can take the maximum.
    READ = 1
    WRITE = 2
    ADMIN = 3
    OWNER = 4

    @property
    def label(self) -> str:
        return self.name.lower()

    @classmethod
    def parse(cls, value: "str | PermissionLevel") -> "PermissionLevel":
        if isinstance(value, PermissionLevel):
            return value
        try:
            return cls[str(value).strip().upper()]
        except KeyError as exc:
            raise InvalidGrantError(f"Unknown permission level: {value}") from exc


# Level a grant on an ancestor node implies on every node beneath it.
# Applied once regardless of distance, so depth never erodes access further.
INHERITANCE_POLICY: dict[PermissionLevel, PermissionLevel] = {
    PermissionLevel.OWNER: PermissionLevel.ADMIN,
    PermissionLevel.ADMIN: PermissionLevel.WRITE,
    PermissionLevel.WRITE: PermissionLevel.READ,
    PermissionLevel.READ: PermissionLevel.READ,
}


def implied_level(ancestor_level: PermissionLevel) -> PermissionLevel:
    return INHERITANCE_POLICY[ancestor_level]
