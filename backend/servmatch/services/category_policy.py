import logging
import time
from typing import Callable, Dict, Optional

from servmatch import config
from servmatch.models import Category, Location, RadiusScope
from servmatch.services.geo import distance_km

logger = logging.getLogger(__name__)

# A bounded-radius category still matches when either side has no usable
# coordinates. Providers who never granted location keep seeing requests.
INCLUDE_WHEN_LOCATION_UNKNOWN = True


def is_within_range(
    category: Category,
    request_location: Optional[Location],
    candidate_location: Optional[Location],
) -> bool:
    if category.match_radius_km is None:
        return True
    if not _locatable(request_location) or not _locatable(candidate_location):
        return INCLUDE_WHEN_LOCATION_UNKNOWN
    return distance_km(request_location, candidate_location) <= category.match_radius_km


def radius_scope(category: Category, local_radius_km: Optional[float] = None) -> RadiusScope:
    if category.match_radius_km is None:
        return "unlimited"
    threshold = config.LOCAL_RADIUS_KM if local_radius_km is None else local_radius_km
    if category.match_radius_km <= threshold:
        return "local"
    return "city_wide"


def _locatable(location: Optional[Location]) -> bool:
    return location is not None and location.is_locatable


class CategoryCatalog:
    """Read-through cache of category reference data."""

    def __init__(
        self,
        store,
        ttl_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._store = store
        self._ttl = config.CATEGORY_CACHE_TTL_SECONDS if ttl_seconds is None else ttl_seconds
        self._clock = clock
        self._categories: Dict[str, Category] = {}
        self._loaded_at: Optional[float] = None

    def _is_fresh(self) -> bool:
        if self._loaded_at is None:
            return False
        return self._clock() - self._loaded_at < self._ttl

    async def all(self) -> Dict[str, Category]:
        if self._is_fresh():
            return dict(self._categories)
        categories = await self._store.list_categories()
        self._categories = {category.id: category for category in categories}
        self._loaded_at = self._clock()
        logger.debug("Loaded %d categories", len(self._categories))
        return dict(self._categories)

    async def get(self, category_id: Optional[str]) -> Optional[Category]:
        if not category_id:
            return None
        categories = await self.all()
        return categories.get(category_id)

    def invalidate(self) -> None:
        self._loaded_at = None


def _category(id: str, name: str, description: str, icon: str, radius: Optional[float]) -> Category:
    return Category(id=id, name=name, description=description, icon=icon, match_radius_km=radius)


# Seeded into a fresh database. None radius = online, matched anywhere.
DEFAULT_CATEGORIES = [
    _category("plumbing", "Plumbing", "Plumbing repairs, installations, and maintenance", "wrench", 5),
    _category("electrical", "Electrical", "Electrical repairs, wiring, and installations", "bolt", 5),
    _category("appliance-repair", "Appliance Repair", "Repair and maintenance of home appliances", "tools", 5),
    _category("house-painting", "House Painting", "Interior and exterior painting services", "paint-brush", 30),
    _category("pest-control", "Pest Control", "Pest removal and prevention services", "bug", 30),
    _category("cleaning", "Cleaning", "House cleaning and deep cleaning services", "broom", 30),
    _category("landscaping", "Landscaping", "Garden design, maintenance, and lawn care", "leaf", 30),
    _category("carpentry", "Carpentry", "Furniture making, repairs, and woodwork", "hammer", 30),
    _category("hvac", "HVAC Services", "Heating, ventilation, and air conditioning", "snowflake", 30),
    _category("roofing", "Roofing", "Roof repairs, installations, and maintenance", "home", 30),
    _category("moving", "Moving & Packing", "Relocation, packing, and moving services", "truck", 30),
    _category("photography", "Photography", "Event, portrait, and commercial photography", "camera", 30),
    _category("web-development", "Web Development", "Website design and development services", "code", None),
    _category("mobile-development", "Mobile Development", "iOS and Android app development", "mobile", None),
    _category("graphic-design", "Graphic Design", "Logo, branding, and visual design services", "paint", None),
    _category("content-writing", "Content Writing", "Blog posts, articles, and copywriting", "pencil", None),
    _category("digital-marketing", "Digital Marketing", "SEO, social media, and online advertising", "bullhorn", None),
    _category("video-editing", "Video Editing", "Video production and post-production", "film", None),
    _category("virtual-assistant", "Virtual Assistant", "Administrative and business support services", "user", None),
    _category("consulting", "Business Consulting", "Strategy, planning, and business advice", "briefcase", None),
    _category("tutoring", "Online Tutoring", "Academic tutoring and training services", "graduation-cap", None),
    _category("translation", "Translation", "Document and content translation services", "language", None),
]
