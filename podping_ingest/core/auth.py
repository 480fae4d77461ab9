from dataclasses import dataclass
from enum import Enum


class PrincipalRole(str, Enum):
    VIEWER = "viewer"
    ADMIN = "admin"


@dataclass(slots=True)
class Principal:
    role: PrincipalRole
    subject: str
    scopes: set[str]

    def require_scopes(self, required: set[str]) -> None:
        missing = required - self.scopes
        if missing:
            raise PermissionError(f"missing required scopes: {sorted(missing)}")


def parse_key_hashes(raw: str | None) -> list[str]:
    if not raw:
        return []
    return [chunk.strip().lower() for chunk in raw.split(",") if chunk.strip()]
