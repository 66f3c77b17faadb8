"""Operational endpoints for administrators."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from tutor_ingest.api.dependencies import get_key_pool, require_super_admin
from tutor_ingest.llm.key_pool import CredentialStatus, KeyPool
from tutor_ingest.schemas.events import CredentialView, KeyPoolSnapshotResponse

router = APIRouter(prefix="/admin", tags=["Admin"])


@router.get(
    "/key-pool",
    response_model=KeyPoolSnapshotResponse,
    summary="LLM key pool status",
    dependencies=[Depends(require_super_admin)],
)
async def key_pool_status(pool: KeyPool = Depends(get_key_pool)) -> KeyPoolSnapshotResponse:
    entries = pool.snapshot()
    return KeyPoolSnapshotResponse(
        size=pool.size,
        healthy=sum(1 for e in entries if e.status is CredentialStatus.HEALTHY),
        credentials=[
            CredentialView(
                id=e.id,
                masked_key=e.masked_key,
                status=e.status.value,
                cooldown_until=e.cooldown_until or None,
                cooldown_step=e.cooldown_step,
                requests=e.requests,
                errors=e.errors,
                last_error_code=e.last_error_code,
                last_error_at=e.last_error_at,
            )
            for e in entries
        ],
    )
