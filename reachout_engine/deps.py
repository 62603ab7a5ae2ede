"""
FastAPI dependencies shared by the routers.
"""

from typing import Optional

from fastapi import Depends
from sqlalchemy.orm import Session

from .config import Settings, get_settings
from .db.base import get_db
from .engine.dispatch import AdapterFactory, MessageDispatcher


def get_adapter_factory() -> Optional[AdapterFactory]:
    """Adapter factory override hook; None means credentials from the settings table."""
    return None


def get_dispatcher(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    adapter_factory: Optional[AdapterFactory] = Depends(get_adapter_factory),
) -> MessageDispatcher:
    return MessageDispatcher(db, settings=settings, adapter_factory=adapter_factory)
