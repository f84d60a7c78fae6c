"""
Internal API Router - back-office management of signature requests.
Not exposed to the public internet; every call needs X-Internal-Secret.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query

from signauth.auth import get_internal_actor, verify_internal_secret
from signauth.exceptions import NotFound, NotFoundError
from signauth.models import (
    ActorContext,
    AttachSignedDocumentRequest,
    CancelResponse,
    CreateSignatureRequest,
    CreateSignatureResponse,
    ErrorResponse,
    OtpRequestResponse,
    SignatureRequestDetail,
    SignatureRequestListResponse,
    SignatureStatus,
    SweepResponse,
)
from signauth.services.orchestrator import RequestOrchestrator, get_orchestrator

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/internal/v1/signatures",
    tags=["internal"],
    dependencies=[Depends(verify_internal_secret)],
    responses={
        401: {"model": ErrorResponse},
        403: {"model": ErrorResponse},
    },
)


@router.post(
    "",
    response_model=CreateSignatureResponse,
    status_code=201,
    summary="Create a signature request",
)
async def create_signature_request(
    body: CreateSignatureRequest,
    actor: ActorContext = Depends(get_internal_actor),
    orchestrator: RequestOrchestrator = Depends(get_orchestrator),
):
    """
    Create a request and return its signing link.

    The plaintext `public_token` appears only in this response; store the
    `sign_url` or send it to the signer right away.
    """
    return await orchestrator.create_request(body, actor)


@router.get(
    "",
    response_model=SignatureRequestListResponse,
    summary="List signature requests",
)
async def list_signature_requests(
    status: Optional[SignatureStatus] = Query(None),
    search: Optional[str] = Query(None, max_length=100),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    orchestrator: RequestOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.list_requests(status=status, search=search, page=page, limit=limit)


@router.post(
    "/sweep-expired",
    response_model=SweepResponse,
    summary="Expire overdue requests (scheduler hook)",
)
async def sweep_expired(
    limit: Optional[int] = Query(None, ge=1, le=1000),
    orchestrator: RequestOrchestrator = Depends(get_orchestrator),
):
    result = await orchestrator.sweep_expired(limit)
    logger.info(f"Sweep finished: {result.expired} expired")
    return result


@router.get(
    "/{request_id}",
    response_model=SignatureRequestDetail,
    responses={404: {"model": ErrorResponse}},
    summary="Request detail with OTP history and audit trail",
)
async def get_signature_request(
    request_id: str,
    actor: ActorContext = Depends(get_internal_actor),
    orchestrator: RequestOrchestrator = Depends(get_orchestrator),
):
    try:
        return await orchestrator.get_request(request_id, actor)
    except NotFound:
        raise NotFoundError("Signature request", request_id)


@router.post(
    "/{request_id}/cancel",
    response_model=CancelResponse,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def cancel_signature_request(
    request_id: str,
    actor: ActorContext = Depends(get_internal_actor),
    orchestrator: RequestOrchestrator = Depends(get_orchestrator),
):
    try:
        return await orchestrator.cancel(request_id, actor)
    except NotFound:
        raise NotFoundError("Signature request", request_id)


@router.post(
    "/{request_id}/send-otp",
    response_model=OtpRequestResponse,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}, 429: {"model": ErrorResponse}},
)
async def send_otp(
    request_id: str,
    actor: ActorContext = Depends(get_internal_actor),
    orchestrator: RequestOrchestrator = Depends(get_orchestrator),
):
    """Issue a new code to the signer on behalf of the requester."""
    try:
        return await orchestrator.resend_otp(request_id, actor)
    except NotFound:
        raise NotFoundError("Signature request", request_id)


@router.post(
    "/{request_id}/signed-document",
    response_model=SignatureRequestDetail,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def attach_signed_document(
    request_id: str,
    body: AttachSignedDocumentRequest,
    actor: ActorContext = Depends(get_internal_actor),
    orchestrator: RequestOrchestrator = Depends(get_orchestrator),
):
    try:
        return await orchestrator.attach_signed_document(request_id, body.signed_document_url, actor)
    except NotFound:
        raise NotFoundError("Signature request", request_id)
