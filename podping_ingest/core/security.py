import hashlib
import hmac

from fastapi import Depends, Header, HTTPException, status

from podping_ingest.core.auth import Principal, PrincipalRole, parse_key_hashes
from podping_ingest.core.config import Settings, get_settings

ROLE_SCOPES: dict[PrincipalRole, set[str]] = {
    PrincipalRole.VIEWER: {"ingest:read"},
    PrincipalRole.ADMIN: {"ingest:read", "ingest:write"},
}


async def get_operator_principal(
    settings: Settings = Depends(get_settings),
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
) -> Principal:
    admin_hashes = parse_key_hashes(settings.admin_api_key_hashes)
    viewer_hashes = parse_key_hashes(settings.viewer_api_key_hashes)
    if not admin_hashes and not viewer_hashes:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="operator auth is not configured",
        )

    if not x_api_key:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="operator auth requires X-API-Key")

    key_hash = hashlib.sha256(x_api_key.encode("utf-8")).hexdigest()
    for role, hashes in ((PrincipalRole.ADMIN, admin_hashes), (PrincipalRole.VIEWER, viewer_hashes)):
        if any(hmac.compare_digest(candidate, key_hash) for candidate in hashes):
            return Principal(role=role, subject=f"{role.value}:{key_hash[:12]}", scopes=set(ROLE_SCOPES[role]))

    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid operator credentials")
