"""
API Routes for the Compliance Notice Tracking System.
Thin orchestration over the notice pipeline: message intake, polling,
the periodic tick, notice status changes and notification settings.
"""

import logging
from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml
from fastapi import APIRouter, Depends, HTTPException

from src.api.models import (
    HealthResponse,
    MessageRequest,
    NoticeResponse,
    PollResponse,
    ProcessingResponse,
    SettingsRequest,
    SettingsResponse,
    TickResponse,
)
from src.processing.factory import build_pipeline
from src.processing.pipeline import InvalidStatusTransition, MessageSource, NoticePipeline
from src.storage.base import NoticeNotFoundError

logger = logging.getLogger(__name__)
router = APIRouter()

# Initialize components (singleton pattern)
_pipeline = None
_message_source = None


def get_pipeline() -> NoticePipeline:
    global _pipeline
    if _pipeline is None:
        _pipeline = build_pipeline()
    return _pipeline


def get_message_source() -> Optional[MessageSource]:
    """Mailbox integration, registered by the deployment through set_message_source."""
    return _message_source


def set_message_source(source: Optional[MessageSource]) -> None:
    global _message_source
    _message_source = source


def get_app_version() -> str:
    with open("config/model_config.yaml", 'r') as f:
        config = yaml.safe_load(f)
    return config.get('app', {}).get('version', '1.0.0')


@router.get("/health", response_model=HealthResponse, tags=["System"])
async def health_check(pipeline: NoticePipeline = Depends(get_pipeline)):
    """Health check endpoint."""
    return HealthResponse(
        status="healthy",
        version=get_app_version(),
        timestamp=datetime.now(timezone.utc).isoformat(),
        breakers=pipeline.breakers.snapshot(),
    )


@router.post("/messages", response_model=ProcessingResponse, tags=["Intake"])
def process_message(request: MessageRequest, pipeline: NoticePipeline = Depends(get_pipeline)):
    """Process one inbound message for a user."""
    try:
        outcome = pipeline.process_message(request.user_id, request.to_message())
    except Exception as e:
        logger.error(f"Processing failed for message {request.message_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Message processing failed")
    return ProcessingResponse.from_outcome(outcome)


@router.post("/users/{user_id}/poll", response_model=PollResponse, tags=["Intake"])
def poll_user(
    user_id: str,
    pipeline: NoticePipeline = Depends(get_pipeline),
    source: Optional[MessageSource] = Depends(get_message_source),
):
    """Fetch and process the user's messages received since the last poll."""
    if source is None:
        raise HTTPException(status_code=503, detail="No message source configured")
    try:
        outcomes = pipeline.poll_user(user_id, source)
    except Exception as e:
        logger.error(f"Polling failed for user {user_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Polling failed")
    return PollResponse(
        user_id=user_id,
        processed=[ProcessingResponse.from_outcome(o) for o in outcomes],
    )


@router.post("/tick", response_model=TickResponse, tags=["Maintenance"])
def run_tick(pipeline: NoticePipeline = Depends(get_pipeline)):
    """Run the periodic deadline, re-scoring and dispatch pass."""
    return TickResponse.from_report(pipeline.run_tick())


@router.post(
    "/users/{user_id}/notices/{notice_id}/acknowledge",
    response_model=NoticeResponse,
    tags=["Notices"],
)
def acknowledge_notice(user_id: str, notice_id: str, pipeline: NoticePipeline = Depends(get_pipeline)):
    try:
        notice = pipeline.acknowledge(user_id, notice_id)
    except NoticeNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidStatusTransition as e:
        raise HTTPException(status_code=409, detail=str(e))
    return NoticeResponse.from_notice(notice)


@router.post(
    "/users/{user_id}/notices/{notice_id}/complete",
    response_model=NoticeResponse,
    tags=["Notices"],
)
def complete_notice(user_id: str, notice_id: str, pipeline: NoticePipeline = Depends(get_pipeline)):
    try:
        notice = pipeline.complete(user_id, notice_id)
    except NoticeNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidStatusTransition as e:
        raise HTTPException(status_code=409, detail=str(e))
    return NoticeResponse.from_notice(notice)


@router.put("/users/{user_id}/settings", response_model=SettingsResponse, tags=["Settings"])
def update_settings(
    user_id: str, request: SettingsRequest, pipeline: NoticePipeline = Depends(get_pipeline)
):
    """Replace the user's channel priority, quiet hours and timezone."""
    try:
        ZoneInfo(request.timezone)
    except (ZoneInfoNotFoundError, ValueError):
        raise HTTPException(status_code=400, detail=f"Unknown timezone: {request.timezone}")

    unknown = [c.channel for c in request.channels if c.channel not in ("email", "sms", "in_app")]
    if unknown:
        raise HTTPException(status_code=400, detail=f"Unknown channels: {unknown}")

    settings = pipeline.update_settings(request.to_settings(user_id))
    return SettingsResponse(**settings.to_dict())
