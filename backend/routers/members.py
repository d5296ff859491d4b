"""
Member area routes:
  POST /members/register
  POST /members/login
  GET  /members/me        (Authorization: Bearer <member token>)
"""
from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

import member_service
from dependencies import get_db, require_member
from rate_limit import MEMBER_AUTH_LIMIT, limiter
from schemas import MemberCredentialsRequest

router = APIRouter(prefix="/members")


@router.post("/register", status_code=201)
@limiter.limit(MEMBER_AUTH_LIMIT)
async def register(body: MemberCredentialsRequest, request: Request, db: AsyncSession = Depends(get_db)):
    account = await member_service.register(db, body.email, body.password)
    return {"success": True, "message": "Account created", **account}


@router.post("/login")
@limiter.limit(MEMBER_AUTH_LIMIT)
async def login(body: MemberCredentialsRequest, request: Request, db: AsyncSession = Depends(get_db)):
    account = await member_service.login(db, body.email, body.password)
    return {"success": True, **account}


@router.get("/me")
async def me(email: str = Depends(require_member), db: AsyncSession = Depends(get_db)):
    return {"success": True, "user_data": await member_service.member_overview(db, email)}
