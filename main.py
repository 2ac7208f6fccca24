# main.py
from fastapi import FastAPI
from fastapi.responses import RedirectResponse
from dotenv import load_dotenv

import models  # noqa: F401  registers tables on Base.metadata
from database import engine, Base
from routes import base, sync_control, sync_status, webhooks
from services.sync_service import SyncContext, build_context

load_dotenv()


def create_app(ctx: SyncContext = None, create_tables: bool = True) -> FastAPI:
    app = FastAPI(title="Commerce Sync")
    app.state.sync_context = ctx or build_context()

    if create_tables:
        Base.metadata.create_all(bind=engine)

    @app.get("/", response_class=RedirectResponse, include_in_schema=False)
    async def read_root():
        return RedirectResponse(url="/docs")

    # Routers
    app.include_router(base.router)
    app.include_router(sync_control.router)
    app.include_router(sync_status.router)
    app.include_router(webhooks.router)
    return app


app = create_app()
