"""CORS for the web build of the app and the admin console."""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from partysnap.config import Settings

EXPOSED_HEADERS = ["X-Request-Id", "X-RateLimit-Limit", "X-RateLimit-Remaining", "Retry-After"]


def setup_cors(app: FastAPI, settings: Settings) -> None:
    # Browsers reject credentialed responses to a wildcard origin.
    wildcard = "*" in settings.cors_origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if wildcard else settings.cors_origins,
        allow_credentials=not wildcard,
        allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "X-Request-Id", "X-Webhook-Secret"],
        expose_headers=EXPOSED_HEADERS,
        max_age=600,
    )
