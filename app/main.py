from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.api.v1.fee_payments.router import router as fee_payments_router
from app.core.logging import setup_logging


def create_app() -> FastAPI:
    setup_logging()
    app = FastAPI(title="Fee Payment Allocation Engine")

    # CORS: allow the presentation layer to call this API
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Routers
    app.include_router(fee_payments_router)

    return app


app = create_app()
