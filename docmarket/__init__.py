"""Initialize the document marketplace API application."""
from __future__ import annotations

from fastapi import FastAPI

from .database import init_db
from .errors import register_error_handlers
from .routes import admin, cart, orders, payment, webhooks


def create_app() -> FastAPI:
    """Create a FastAPI application and register routes."""
    init_db()

    app = FastAPI(title="Document Marketplace API")
    register_error_handlers(app)

    app.include_router(payment.router)
    app.include_router(webhooks.router)
    app.include_router(orders.router)
    app.include_router(cart.router)
    app.include_router(admin.router)

    @app.get("/health")
    def health() -> dict:
        return {"status": "ok"}

    return app
