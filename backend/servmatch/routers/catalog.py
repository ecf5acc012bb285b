from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from servmatch.deps import Services, get_services, raise_engine_http_error
from servmatch.errors import EngineError
from servmatch.models import Category, Location, ProviderProfile, ServiceRequest
from servmatch.services.geo import validate_coordinate

router = APIRouter(tags=["catalog"])


@router.get("/categories", response_model=list[Category])
async def list_categories(services: Services = Depends(get_services)):
    try:
        categories = await services.catalog.all()
    except EngineError as exc:
        raise_engine_http_error(exc)
    return sorted(categories.values(), key=lambda item: item.name)


@router.get("/providers", response_model=list[ProviderProfile])
async def list_providers(
    category_id: Optional[str] = Query(default=None),
    q: Optional[str] = Query(default=None),
    services: Services = Depends(get_services),
):
    try:
        return await services.marketplace.list_providers(category_id=category_id, query=q)
    except EngineError as exc:
        raise_engine_http_error(exc)


@router.get("/opportunities", response_model=list[ServiceRequest])
async def list_opportunities(
    provider_id: str = Query(...),
    q: Optional[str] = Query(default=None),
    status: Optional[List[str]] = Query(default=None),
    lat: Optional[float] = Query(default=None),
    lng: Optional[float] = Query(default=None),
    services: Services = Depends(get_services),
):
    try:
        viewer_location = None
        if lat is not None and lng is not None:
            validate_coordinate(lat, lng)
            viewer_location = Location(lat=lat, lng=lng)
        return await services.marketplace.list_opportunities(
            provider_id,
            query=q,
            statuses=status,
            viewer_location=viewer_location,
        )
    except EngineError as exc:
        raise_engine_http_error(exc)
