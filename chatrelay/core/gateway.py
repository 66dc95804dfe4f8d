"""FastAPI app entry."""

from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from chatrelay.adapters.diagnostics.router import router as diagnostics_router
from chatrelay.adapters.openai.router import router as openai_router
from chatrelay.adapters.openai.upstream import ProviderGateway, build_upstream_client
from chatrelay.config.settings import settings
from chatrelay.core.pipeline import api_key_configured
from chatrelay.util.logger import logger


app = FastAPI(title=settings.app_name)
app.include_router(openai_router)
app.include_router(diagnostics_router, prefix="/diagnostics")


def _cors_origins() -> list[str]:
    return [origin.strip() for origin in settings.cors_allow_origins.split(",") if origin.strip()]


if _cors_origins():
    app.add_middleware(
        CORSMiddleware,
        allow_origins=_cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


@app.middleware("http")
async def json_fault_middleware(request: Request, call_next):
    try:
        return await call_next(request)
    except Exception as exc:  # pragma: no cover - fail-safe
        logger.exception("unhandled exception method=%s path=%s", request.method, request.url.path)
        return JSONResponse(
            status_code=500,
            content={"error": "Internal server error", "details": str(exc)},
        )


@app.get("/health")
def health() -> dict:
    logger.debug("health check")
    return {"status": "ok"}


@app.on_event("startup")
async def startup_provider_gateway() -> None:
    app.state.provider_gateway = ProviderGateway(build_upstream_client())
    logger.info(
        "provider gateway ready base_url=%s api_key_configured=%s",
        settings.upstream_base_url,
        api_key_configured(),
    )
    if not api_key_configured():
        logger.warning("OPENAI_API_KEY is not set; modality endpoints will answer 500 until it is")


@app.on_event("shutdown")
async def shutdown_cleanup() -> None:
    provider = getattr(app.state, "provider_gateway", None)
    if provider is not None:
        await provider.aclose()
        app.state.provider_gateway = None
