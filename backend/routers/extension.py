"""
Browser-extension routes (no bearer token; the license key or session token is the credential):
  POST /extension/challenge
  POST /extension/redeem
  POST /extension/heartbeat
  POST /extension/violations
"""
from fastapi import APIRouter, BackgroundTasks, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

import session_service
from dependencies import client_ip, get_db
from rate_limit import EXTENSION_LIMIT, limiter, log_request
from schemas import ChallengeRequest, HeartbeatRequest, RedeemRequest, ViolationReport

router = APIRouter(prefix="/extension", dependencies=[Depends(log_request)])


@router.post("/challenge")
@limiter.limit(EXTENSION_LIMIT)
async def challenge(
    body: ChallengeRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
):
    issued = await session_service.issue_challenge(db, body.device_fingerprint, body.extension_id)
    background_tasks.add_task(session_service.purge_stale_challenges)
    return {"success": True, **issued}


@router.post("/redeem")
@limiter.limit(EXTENSION_LIMIT)
async def redeem(body: RedeemRequest, request: Request, db: AsyncSession = Depends(get_db)):
    grant = await session_service.redeem_challenge(
        db,
        challenge_token=body.challenge_token,
        nonce=body.nonce,
        license_key=body.license_key,
        device_fingerprint=body.device_fingerprint,
        integrity_hash=body.integrity_hash,
        ip_address=client_ip(request),
    )
    return {"success": True, **session_service.grant_payload(grant)}


@router.post("/heartbeat")
@limiter.limit(EXTENSION_LIMIT)
async def heartbeat(body: HeartbeatRequest, request: Request, db: AsyncSession = Depends(get_db)):
    signed = await session_service.heartbeat(
        db,
        session_token=body.session_token,
        device_fingerprint=body.device_fingerprint,
        integrity_hash=body.integrity_hash,
        ip_address=client_ip(request),
    )
    return {"success": True, **signed}


@router.post("/violations", status_code=201)
@limiter.limit(EXTENSION_LIMIT)
async def report_violation(body: ViolationReport, request: Request, db: AsyncSession = Depends(get_db)):
    entry = await session_service.report_violation(
        db,
        action=body.action,
        session_token=body.session_token,
        ip_address=client_ip(request),
        details=body.details,
    )
    return {"success": True, "id": entry.id}
