from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from services.sync_service import SyncContext

router = APIRouter()


def get_sync_context(request: Request) -> SyncContext:
    return request.app.state.sync_context


def get_session(ctx: SyncContext = Depends(get_sync_context)):
    """Request-scoped session from the same factory the sync runs use."""
    db: Session = ctx.session_factory()
    try:
        yield db
    finally:
        db.close()


@router.get("/health")
def health():
    return {"status": "ok"}
