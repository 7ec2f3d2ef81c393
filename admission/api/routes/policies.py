from __future__ import annotations

from fastapi import APIRouter, HTTPException, status

from admission.core.errors import ConfigurationAppError
from admission.core.policies import POLICIES, get_policy
from admission.schemas.policies import PolicyListResponse, PolicyResponse

router = APIRouter(prefix="/policies", tags=["Policies"])


@router.get("", response_model=PolicyListResponse)
async def list_policies() -> PolicyListResponse:
    """List every named rate limit policy."""

    return PolicyListResponse(
        policies=[PolicyResponse.from_config(name, config) for name, config in POLICIES.items()]
    )


@router.get("/{name}", response_model=PolicyResponse)
async def read_policy(name: str) -> PolicyResponse:
    """Return one policy by name (case-insensitive).

    Raises:
        HTTPException: 404 if no policy has that name.
    """

    try:
        config = get_policy(name.upper())
    except ConfigurationAppError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=exc.message,
        ) from exc
    return PolicyResponse.from_config(name.upper(), config)
