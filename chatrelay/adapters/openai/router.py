"""Modality routes: chat, image-chat, transcribe."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from chatrelay.adapters.openai.modalities import ChatModality, ImageChatModality, TranscriptionModality
from chatrelay.adapters.openai.upstream import ProviderGateway, get_provider_gateway
from chatrelay.core.pipeline import RequestPipeline


router = APIRouter()


@router.post("/chat")
async def chat(request: Request, provider: ProviderGateway = Depends(get_provider_gateway)):
    return await RequestPipeline(ChatModality(), provider).run(request)


@router.post("/image-chat")
async def image_chat(request: Request, provider: ProviderGateway = Depends(get_provider_gateway)):
    return await RequestPipeline(ImageChatModality(), provider).run(request)


@router.post("/transcribe")
async def transcribe(request: Request, provider: ProviderGateway = Depends(get_provider_gateway)):
    return await RequestPipeline(TranscriptionModality(), provider).run(request)
