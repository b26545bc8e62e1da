from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from src.routers import (
    internal_reconciliation,
    mail_pieces,
    observability,
    webhooks,
)

app = FastAPI(title="Mail Fulfillment API", version="0.1.0")

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

app.include_router(mail_pieces.router)
app.include_router(webhooks.router)
app.include_router(internal_reconciliation.router)
app.include_router(observability.router)


@app.get("/")
async def root():
    return {"status": "ok", "service": "mail-fulfillment-api"}


@app.get("/health")
async def health():
    return {"status": "healthy"}
