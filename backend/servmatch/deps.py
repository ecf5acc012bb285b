from functools import lru_cache
from typing import NoReturn, Optional

from fastapi import HTTPException

from servmatch import config
from servmatch.errors import (
    ConflictError,
    EngineError,
    NotFoundError,
    PermissionDenied,
    PreconditionFailed,
    TransportError,
    WorkflowInterrupted,
)
from servmatch.services.acceptance import AcceptanceOrchestrator, RequestClaims
from servmatch.services.category_policy import DEFAULT_CATEGORIES, CategoryCatalog
from servmatch.services.marketplace import MarketplaceService
from servmatch.services.match_engine import MatchEngine
from servmatch.services.notification_dispatcher import NotificationDispatcher
from servmatch.services.push_sender import PushSender
from servmatch.services.record_store import RecordStore, SqliteRecordStore


class Services:
    """Everything the routers need, wired around one record store."""

    def __init__(
        self,
        store: RecordStore,
        push_sender: Optional[PushSender] = None,
        await_follow_up: Optional[bool] = None,
    ):
        self.store = store
        self.dispatcher = NotificationDispatcher(store, push_sender)
        self.catalog = CategoryCatalog(store)
        self.engine = MatchEngine(store, self.catalog, self.dispatcher)
        # One claim set, so marketplace edits cannot interleave with an acceptance.
        self.claims = RequestClaims()
        self.marketplace = MarketplaceService(store, self.engine, self.dispatcher, claims=self.claims)
        if await_follow_up is None:
            await_follow_up = config.AWAIT_FOLLOW_UP
        self.acceptance = AcceptanceOrchestrator(
            store,
            self.dispatcher,
            await_follow_up=await_follow_up,
            claims=self.claims,
        )


@lru_cache(maxsize=1)
def get_services() -> Services:
    seed = DEFAULT_CATEGORIES if config.SEED_DEFAULT_CATEGORIES else ()
    return Services(SqliteRecordStore(config.DB_PATH, seed_categories=seed))


def raise_engine_http_error(exc: EngineError) -> NoReturn:
    if isinstance(exc, NotFoundError):
        raise HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, PermissionDenied):
        raise HTTPException(status_code=403, detail=str(exc))
    if isinstance(exc, (PreconditionFailed, ConflictError)):
        raise HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, (TransportError, WorkflowInterrupted)):
        raise HTTPException(status_code=503, detail=str(exc))
    raise HTTPException(status_code=400, detail=str(exc))
