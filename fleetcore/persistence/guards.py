from __future__ import annotations

from fleetcore.core.errors import ValidationError


def require_tenant_id(tenant_id: str | None) -> str:
    # Every read and write is partitioned by tenant; a blank tenant is a caller bug.
    if not isinstance(tenant_id, str) or not tenant_id.strip():
        raise ValidationError("tenant is required")
    return tenant_id.strip()


def tenant_predicate(model, tenant_id: str) -> object:
    # Build tenant predicates through a single helper to guarantee guard coverage.
    return model.tenant_id == require_tenant_id(tenant_id)
