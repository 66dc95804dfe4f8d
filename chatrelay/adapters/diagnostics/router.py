"""Diagnostic routes used by the browser debug panel."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from chatrelay.adapters.diagnostics.probes import (
    EchoModality,
    ImageUploadProbeModality,
    KeyDiagnosticModality,
    PingDiagnosticModality,
    utc_timestamp,
)
from chatrelay.adapters.openai.upstream import ProviderGateway, get_provider_gateway
from chatrelay.core.pipeline import RequestPipeline
from chatrelay.util.logger import logger


router = APIRouter()


@router.get("/key")
async def key_status(request: Request, provider: ProviderGateway = Depends(get_provider_gateway)):
    return await RequestPipeline(KeyDiagnosticModality(), provider).run(request)


@router.get("/openai")
async def provider_ping(request: Request, provider: ProviderGateway = Depends(get_provider_gateway)):
    return await RequestPipeline(PingDiagnosticModality(), provider).run(request)


@router.post("/image-upload")
async def image_upload_probe(request: Request):
    return await RequestPipeline(ImageUploadProbeModality()).run(request)


@router.get("/echo")
async def echo_get() -> dict:
    logger.debug("echo get")
    return {"status": "ok", "message": "Test endpoint is working", "timestamp": utc_timestamp()}


@router.post("/echo")
async def echo_post(request: Request):
    return await RequestPipeline(EchoModality()).run(request)
