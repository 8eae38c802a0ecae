"""User profile, guardian list and push-token endpoints."""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field, field_validator

from nari_suraksha.api.deps import domain_errors, get_storage
from nari_suraksha.middleware.auth import current_user_id
from nari_suraksha.models import Guardian, LanguageCode, UserProfile, UserRole, normalise_phone

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/users", tags=["users"])


class CreateUserRequest(BaseModel):
    phone: str
    name: str = Field(..., min_length=1, max_length=100)
    role: UserRole = UserRole.COMMUTER
    lang: LanguageCode = LanguageCode.en
    guardians: list[Guardian] = Field(default_factory=list)

    @field_validator("phone")
    @classmethod
    def _phone(cls, v: str) -> str:
        return normalise_phone(v)


class PushTokenRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=4096)


async def _require_user(request: Request, user_id: str) -> UserProfile:
    user = await get_storage(request).get_user(user_id)
    if user is None:
        raise HTTPException(status_code=404, detail="User profile not found")
    return user


@router.post("", status_code=201)
async def create_user(
    body: CreateUserRequest,
    request: Request,
    caller_id: str = Depends(current_user_id),
) -> dict:
    """Create the caller's profile. Repeating the call returns the stored profile."""
    storage = get_storage(request)
    profile = UserProfile(
        id=caller_id,
        phone=body.phone,
        name=body.name,
        role=body.role,
        lang=body.lang,
        guardians=body.guardians,
    )
    with domain_errors():
        profile = await storage.create_user(profile)
    logger.info("api.users.created", user_id=caller_id, role=profile.role)
    return profile.to_wire()


@router.get("/me")
async def get_me(request: Request, caller_id: str = Depends(current_user_id)) -> dict:
    with domain_errors():
        user = await _require_user(request, caller_id)
    return user.to_wire()


@router.get("/me/guardians")
async def list_guardians(request: Request, caller_id: str = Depends(current_user_id)) -> dict:
    with domain_errors():
        user = await _require_user(request, caller_id)
    return {"guardians": [g.to_wire() for g in user.guardians]}


@router.post("/me/guardians", status_code=201)
async def add_guardian(
    body: Guardian,
    request: Request,
    caller_id: str = Depends(current_user_id),
) -> dict:
    storage = get_storage(request)
    with domain_errors():
        user = await _require_user(request, caller_id)
        if any(g.phone == body.phone for g in user.guardians):
            raise HTTPException(status_code=409, detail="Guardian with this phone already added")
        guardians = [g.model_dump() for g in user.guardians] + [body.model_dump()]
        user = await storage.update_user(caller_id, {"guardians": guardians}) or user
    logger.info("api.users.guardian_added", user_id=caller_id, count=len(user.guardians))
    return {"guardians": [g.to_wire() for g in user.guardians]}


@router.delete("/me/guardians/{index}")
async def remove_guardian(
    index: int,
    request: Request,
    caller_id: str = Depends(current_user_id),
) -> dict:
    storage = get_storage(request)
    with domain_errors():
        user = await _require_user(request, caller_id)
        if not 0 <= index < len(user.guardians):
            raise HTTPException(status_code=404, detail="Guardian not found")
        guardians = [g.model_dump() for i, g in enumerate(user.guardians) if i != index]
        user = await storage.update_user(caller_id, {"guardians": guardians}) or user
    logger.info("api.users.guardian_removed", user_id=caller_id, count=len(user.guardians))
    return {"guardians": [g.to_wire() for g in user.guardians]}


@router.post("/me/push-tokens")
async def register_push_token(
    body: PushTokenRequest,
    request: Request,
    caller_id: str = Depends(current_user_id),
) -> dict:
    """Register a device push token; registering a known token is a no-op."""
    storage = get_storage(request)
    with domain_errors():
        user = await _require_user(request, caller_id)
        if body.token not in user.push_tokens:
            user = await storage.update_user(caller_id, {"push_tokens": [*user.push_tokens, body.token]}) or user
    return {"pushTokens": len(user.push_tokens)}
