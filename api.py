"""
HTTP surface for the lead sync service.

- POST /leads/source/meta/sync        on-demand Meta sync
- POST /leads/source/knowlarity/sync  on-demand Knowlarity sync
- POST /leads/source/cardekho         CarDekho lead webhook
- POST /leads/source/carwale          CarWale lead webhook

The background scheduler is started with the app.
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from fastapi import APIRouter, Body, Depends, FastAPI, Header, HTTPException, status
from pydantic import BaseModel, Field

from lead_sync import SyncRegistry, get_registry
from leads import (
    ConfigurationError,
    LeadSourceError,
    SyncInProgressError,
    ValidationError,
    env_flag,
    normalize_marketplace_payload,
    validate_lead,
)
from leads.normalizer import CARDEKHO, CARWALE
from scheduler import SchedulerConfig, SyncScheduler

logger = logging.getLogger(__name__)

INTAKE_KEY_ENV = {
    CARDEKHO: "LEAD_API_KEY_CARDEKHO",
    CARWALE: "LEAD_API_KEY_CARWALE",
}


class SyncRequest(BaseModel):
    since: Optional[str] = Field(default=None, description="Window start (ISO timestamp)")
    until: Optional[str] = Field(default=None, description="Window end (ISO timestamp)")
    limit: Optional[int] = Field(default=None, gt=0, description="Page size override")
    form_ids: Optional[List[str]] = Field(default=None, description="Extra Meta form ids")


router = APIRouter(prefix="/leads", tags=["leads"])


def _run_sync(registry: SyncRegistry, source: str, options: Dict[str, Any]) -> Dict[str, Any]:
    try:
        summary = registry.sync(source, **options)
    except SyncInProgressError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except ConfigurationError as exc:
        logger.error("%s sync misconfigured: %s", source, exc)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc
    except LeadSourceError as exc:
        logger.error("%s sync failed: %s", source, exc)
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    return {"message": f"{source} lead sync completed.", **summary.to_dict()}


@router.post("/source/meta/sync", summary="Sync Meta lead ads on demand")
def sync_meta(
    request: Optional[SyncRequest] = Body(default=None),
    registry: SyncRegistry = Depends(get_registry),
) -> Dict[str, Any]:
    options = (request or SyncRequest()).model_dump(exclude_none=True)
    return _run_sync(registry, "meta", options)


@router.post("/source/knowlarity/sync", summary="Sync Knowlarity calls on demand")
def sync_knowlarity(
    request: Optional[SyncRequest] = Body(default=None),
    registry: SyncRegistry = Depends(get_registry),
) -> Dict[str, Any]:
    options = (request or SyncRequest()).model_dump(exclude_none=True, exclude={"form_ids"})
    return _run_sync(registry, "knowlarity", options)


def _check_source_key(platform: str, provided: Optional[str]) -> None:
    expected = os.environ.get(INTAKE_KEY_ENV[platform])
    if not expected:
        logger.error("API key for '%s' is not configured. Set %s.", platform, INTAKE_KEY_ENV[platform])
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Server configuration error. API key missing.",
        )
    if not provided:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing API key.")
    if provided != expected:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid API key.")


def _intake(platform: str, payload: Optional[Dict[str, Any]], api_key: Optional[str], registry: SyncRegistry) -> Dict[str, str]:
    _check_source_key(platform, api_key)

    try:
        lead = validate_lead(normalize_marketplace_payload(platform, payload or {}))
    except ValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    registry.store().insert_lead(lead.to_record())
    logger.info("%s lead received for %s", platform, lead.phone_number)
    return {"message": f"{platform} lead inserted successfully"}


@router.post("/source/cardekho", status_code=status.HTTP_201_CREATED, summary="CarDekho lead webhook")
def create_cardekho_lead(
    payload: Optional[Dict[str, Any]] = Body(default=None),
    x_api_key: Optional[str] = Header(default=None),
    registry: SyncRegistry = Depends(get_registry),
) -> Dict[str, str]:
    return _intake(CARDEKHO, payload, x_api_key, registry)


@router.post("/source/carwale", status_code=status.HTTP_201_CREATED, summary="CarWale lead webhook")
def create_carwale_lead(
    payload: Optional[Dict[str, Any]] = Body(default=None),
    x_api_key: Optional[str] = Header(default=None),
    registry: SyncRegistry = Depends(get_registry),
) -> Dict[str, str]:
    return _intake(CARWALE, payload, x_api_key, registry)


def _scheduler_enabled() -> bool:
    return env_flag("SYNC_SCHEDULER_ENABLED", True)


def create_app(scheduler: Optional[SyncScheduler] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        active = scheduler
        if active is None and _scheduler_enabled():
            active = SyncScheduler(lambda source: get_registry().sync(source), SchedulerConfig.from_env())
        if active is not None:
            active.start()
        try:
            yield
        finally:
            if active is not None:
                active.stop(timeout=5)

    app = FastAPI(title="Lead Sync Service", lifespan=lifespan)
    app.include_router(router)
    return app


if __name__ == "__main__":
    import uvicorn

    load_dotenv()
    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(create_app(), host="0.0.0.0", port=int(os.environ.get("PORT", "8000")))
