from __future__ import annotations

from threading import RLock
from typing import Dict, Mapping, Optional, Protocol

from .errors import TenantNotFoundError


class TenantDirectory(Protocol):
    """External directory mapping users to their clinic (tenant). Trusted as-is."""

    def resolve_tenant(self, user_id: str) -> str:
        ...


class StaticTenantDirectory:
    """In-process user -> tenant mapping."""

    def __init__(self, mapping: Optional[Mapping[str, str]] = None) -> None:
        self._lock = RLock()
        self._mapping: Dict[str, str] = dict(mapping or {})

    def assign(self, user_id: str, tenant_id: str) -> None:
        if not str(user_id).strip() or not str(tenant_id).strip():
            raise ValueError("user_id and tenant_id are required")
        with self._lock:
            self._mapping[str(user_id).strip()] = str(tenant_id).strip()

    def resolve_tenant(self, user_id: str) -> str:
        with self._lock:
            tenant_id = self._mapping.get(str(user_id).strip())
        if tenant_id is None:
            raise TenantNotFoundError(user_id)
        return tenant_id
