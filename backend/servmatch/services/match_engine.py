import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, List, Mapping, Optional, Sequence

from servmatch import config
from servmatch.models import Category, Location, ProviderProfile, ServiceRequest
from servmatch.services.category_policy import CategoryCatalog, is_within_range
from servmatch.services.notification_dispatcher import NotificationDispatcher
from servmatch.services.record_store import LocationSource, RecordStore

logger = logging.getLogger(__name__)

NEW_OPPORTUNITY = "new_opportunity"


def by_created_at(request: ServiceRequest) -> str:
    return request.created_at


def _matches_query(request: ServiceRequest, query: str) -> bool:
    searchable = " ".join([request.title, request.description, request.location_text()]).lower()
    return query in searchable


@dataclass
class FanOutResult:
    request_id: str
    recipients: List[str] = field(default_factory=list)
    notified: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)


class MatchEngine:
    """Category + radius matching between requests and providers.

    The filtering methods are pure: they read only their arguments. The async
    methods pull inputs from the injected store and catalog.
    """

    def __init__(
        self,
        store: RecordStore,
        catalog: Optional[CategoryCatalog] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
    ):
        self._store = store
        self._catalog = catalog or CategoryCatalog(store)
        self._dispatcher = dispatcher or NotificationDispatcher(store)

    @property
    def catalog(self) -> CategoryCatalog:
        return self._catalog

    def find_opportunities_for_provider(
        self,
        provider: ProviderProfile,
        requests: Iterable[ServiceRequest],
        categories: Mapping[str, Category],
        *,
        statuses: Optional[Sequence[str]] = None,
        query: Optional[str] = None,
        viewer_location: Optional[Location] = None,
        use_base_location: bool = True,
        sort_key: Callable[[ServiceRequest], Any] = by_created_at,
        reverse: bool = True,
    ) -> List[ServiceRequest]:
        wanted_statuses = set(config.OPPORTUNITY_STATUSES if statuses is None else statuses)
        skills = set(provider.skills)
        origin = viewer_location
        if origin is None and use_base_location:
            origin = provider.location
        needle = (query or "").strip().lower()

        result: List[ServiceRequest] = []
        for request in requests:
            if request.status not in wanted_statuses:
                continue
            if request.buyer_id == provider.user_id:
                continue
            if request.category_id not in skills:
                continue
            category = categories.get(request.category_id)
            if category is None:
                continue
            if not is_within_range(category, request.location, origin):
                continue
            if needle and not _matches_query(request, needle):
                continue
            result.append(request)
        return sorted(result, key=sort_key, reverse=reverse)

    def find_eligible_notification_recipients(
        self,
        request: ServiceRequest,
        providers: Iterable[ProviderProfile],
        categories: Mapping[str, Category],
    ) -> List[str]:
        """Provider ids to notify about a new request.

        Unknown categories yield no recipients instead of an error. The result
        is sorted and de-duplicated so a retried fan-out targets the same set.
        """
        category = categories.get(request.category_id)
        if category is None:
            logger.warning("Request %s has unknown category %r; nobody notified", request.id, request.category_id)
            return []

        recipients = set()
        for provider in providers:
            if provider.user_id == request.buyer_id:
                continue
            if category.id not in provider.skills:
                continue
            if is_within_range(category, request.location, provider.location):
                recipients.add(provider.user_id)
        return sorted(recipients)

    def find_providers_for_buyer(
        self,
        providers: Iterable[ProviderProfile],
        *,
        category_id: Optional[str] = None,
        query: Optional[str] = None,
    ) -> List[ProviderProfile]:
        needle = (query or "").strip().lower()
        result = []
        for provider in providers:
            if category_id and category_id not in provider.skills:
                continue
            if needle and needle not in f"{provider.full_name} {provider.bio}".lower():
                continue
            result.append(provider)
        result.sort(key=lambda p: (-p.rating, -p.review_count, p.full_name))
        return result

    async def browse_opportunities(
        self,
        provider: ProviderProfile,
        location_source: Optional[LocationSource] = None,
        *,
        query: Optional[str] = None,
        statuses: Optional[Sequence[str]] = None,
    ) -> List[ServiceRequest]:
        """Opportunities around the provider's current position.

        A denied or failed location lookup disables radius filtering; the
        provider's stored base location is not substituted.
        """
        location: Optional[Location] = None
        if location_source is not None:
            try:
                location = await location_source.get_current_location()
            except Exception:
                logger.warning("Location lookup failed for %s; radius filtering disabled", provider.user_id, exc_info=True)
                location = None
        wanted = tuple(config.OPPORTUNITY_STATUSES if statuses is None else statuses)
        requests = await self._store.list_requests(wanted)
        categories = await self._catalog.all()
        return self.find_opportunities_for_provider(
            provider,
            requests,
            categories,
            statuses=wanted,
            query=query,
            viewer_location=location,
            use_base_location=location_source is None,
        )

    async def notify_new_request(self, request: ServiceRequest) -> FanOutResult:
        result = FanOutResult(request_id=request.id)
        category = await self._catalog.get(request.category_id)
        if category is None:
            logger.warning("Skipping fan-out for %s: unknown category %r", request.id, request.category_id)
            return result

        providers = await self._store.list_providers_by_category(category.id)
        result.recipients = self.find_eligible_notification_recipients(request, providers, {category.id: category})

        title = "New Service Request!"
        body = f'"{request.title}" in {category.name} - Budget: {request.budget_min:g}-{request.budget_max:g}'
        payload: dict[str, Any] = {"type": NEW_OPPORTUNITY, "request_id": request.id, "screen": "requests/detail"}
        for provider_id in result.recipients:
            record = await self._dispatcher.send(provider_id, NEW_OPPORTUNITY, title, body, payload)
            if record is None:
                result.failed.append(provider_id)
            else:
                result.notified.append(provider_id)

        logger.info(
            "Request %s fan-out: %d recipients, %d notified, %d failed",
            request.id,
            len(result.recipients),
            len(result.notified),
            len(result.failed),
        )
        return result
