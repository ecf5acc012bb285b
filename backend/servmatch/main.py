import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.trustedhost import TrustedHostMiddleware

from servmatch import config
from servmatch.routers import catalog, notifications, proposals, requests

logging.basicConfig(
    level=getattr(logging, config.LOG_LEVEL, logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = FastAPI(title="Servmatch API", version="0.1.0")

allow_any_origin = len(config.CORS_ORIGINS) == 1 and config.CORS_ORIGINS[0] == "*"

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    # Browsers reject wildcard CORS with credentials enabled.
    allow_credentials=not allow_any_origin,
    allow_methods=["*"],
    allow_headers=["*"],
)

if not (len(config.TRUSTED_HOSTS) == 1 and config.TRUSTED_HOSTS[0] == "*"):
    app.add_middleware(TrustedHostMiddleware, allowed_hosts=config.TRUSTED_HOSTS)

app.include_router(catalog.router)
app.include_router(requests.router)
app.include_router(proposals.router)
app.include_router(notifications.router)


@app.get("/health")
def health():
    return {"status": "ok"}
