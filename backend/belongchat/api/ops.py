"""Operations endpoints providing health checks and metrics."""

from __future__ import annotations

from fastapi import APIRouter, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from belongchat.domain.messaging.channels import get_registry
from belongchat.settings import settings

router = APIRouter(prefix="", tags=["ops"])


@router.get("/health")
async def health() -> dict[str, object]:
	return {
		"status": "ok",
		"service": settings.service_name,
		"transport": settings.messaging_transport,
		"connections": len(get_registry().connections()),
	}


@router.get("/metrics")
async def prometheus_metrics() -> Response:
	payload = generate_latest()
	return Response(content=payload, media_type=CONTENT_TYPE_LATEST)
