from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from outbound_events.routers import (
    dead_letters,
    campaign_metrics,
    internal_events,
    webhooks,
)

app = FastAPI(title="Outbound Events", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def attach_request_id(request: Request, call_next):
    request_id = (
        request.headers.get("X-Request-ID")
        or request.headers.get("X-Correlation-ID")
        or str(uuid4())
    )
    request.state.request_id = request_id
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response

# Dead-letter routes share the /api/webhooks prefix and must match before /{provider}.
app.include_router(dead_letters.router)
app.include_router(webhooks.router)
app.include_router(campaign_metrics.router)
app.include_router(internal_events.router)


@app.get("/")
async def root():
    return {"status": "ok", "service": "outbound-events"}


@app.get("/health")
async def health():
    return {"status": "healthy"}
