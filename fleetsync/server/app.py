"""FastAPI application serving the peer-facing sync endpoints."""

import logging
from datetime import datetime
from typing import Any

from fastapi import APIRouter, FastAPI, HTTPException, Request
from fastapi.responses import PlainTextResponse, Response

from ..config import Config
from ..log import SQLiteLogStore
from ..ranges import InvalidRangeError, RangeSet
from ..repository import FileRepository, NotMasterError
from ..wire import Descriptor, Event, LowestID, MalformedRecordError

logger = logging.getLogger(__name__)

SEND_BATCH_SIZE = 100


def _parse_int(name: str, value: str | None) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid {name}: {value!r}")


def _lines(records: list[Any]) -> PlainTextResponse:
    text = "".join(f"{r.to_representation()}\n" for r in records)
    return PlainTextResponse(text)


def _log_router(log_store: SQLiteLogStore) -> APIRouter:
    router = APIRouter()

    def matching(tid: str | None, log_id: int | None) -> list[Descriptor]:
        descriptors = log_store.descriptors(tid)
        if log_id is not None:
            descriptors = [d for d in descriptors if d.log_id == log_id]
        return descriptors

    @router.get("/query")
    async def query(tid: str | None = None, logid: str | None = None):
        """Descriptors of the logs held here.

        With ``tid`` and ``logid`` exactly one line is returned, describing
        an empty log when nothing is known about it.
        """
        log_id = _parse_int("logid", logid)
        if tid is not None and log_id is not None:
            return _lines([log_store.descriptor(tid, log_id)])
        return _lines(matching(tid, log_id))

    @router.post("/send")
    async def send(request: Request):
        """Store streamed event lines.

        Valid events are kept even when other lines are malformed; the
        response is then 400 so the sender notices.
        """
        batch: list[Event] = []
        received = 0
        stored = 0
        malformed = 0

        def handle(raw: bytes) -> None:
            nonlocal received, stored, malformed
            if not raw.strip():
                return
            try:
                batch.append(Event.parse(raw.decode("utf-8")))
                received += 1
            except (UnicodeDecodeError, MalformedRecordError) as e:
                malformed += 1
                logger.warning(f"Dropping malformed event line: {e}")
            if len(batch) >= SEND_BATCH_SIZE:
                stored += log_store.append(batch)
                batch.clear()

        # Bytes of the line still being received, possibly spanning many chunks
        pending = bytearray()
        async for chunk in request.stream():
            start = 0
            newline = chunk.find(b"\n")
            while newline != -1:
                pending += chunk[start:newline]
                handle(bytes(pending))
                pending.clear()
                start = newline + 1
                newline = chunk.find(b"\n", start)
            pending += chunk[start:]
        handle(bytes(pending))
        if batch:
            stored += log_store.append(batch)

        logger.info(
            f"Received {received} events ({stored} new), {malformed} malformed lines"
        )
        if malformed:
            return PlainTextResponse(
                f"{malformed} malformed lines\n", status_code=400
            )
        return PlainTextResponse("OK\n")

    @router.get("/receive")
    async def receive(
        tid: str | None = None,
        logid: str | None = None,
        range: str | None = None,
    ):
        """Events held here, narrowed by owner, log and range set."""
        log_id = _parse_int("logid", logid)
        if tid is not None and log_id is not None:
            if range is not None:
                try:
                    ranges = RangeSet.parse(range)
                except InvalidRangeError as e:
                    raise HTTPException(status_code=400, detail=str(e))
            else:
                ranges = log_store.descriptor(tid, log_id).ranges
            return _lines(log_store.events(Descriptor(tid, log_id, ranges)))

        events: list[Event] = []
        for descriptor in matching(tid, log_id):
            events.extend(log_store.events(descriptor))
        return _lines(events)

    @router.post("/sendids")
    async def send_ids(request: Request):
        """Record lowest retained IDs, pruning older events."""
        body = (await request.body()).decode("utf-8", errors="replace")
        malformed = 0
        for line in body.splitlines():
            if not line.strip():
                continue
            try:
                lowest = LowestID.parse(line)
            except MalformedRecordError as e:
                malformed += 1
                logger.warning(f"Dropping malformed lowest ID line: {e}")
                continue
            log_store.set_lowest_id(lowest.owner_id, lowest.log_id, lowest.lowest_id)

        if malformed:
            return PlainTextResponse(f"{malformed} malformed lines\n", status_code=400)
        return PlainTextResponse("OK\n")

    @router.get("/receiveids")
    async def receive_ids(tid: str | None = None, logid: str | None = None):
        log_id = _parse_int("logid", logid)
        if tid is not None and log_id is not None:
            keys = [(tid, log_id)]
        else:
            keys = [(d.owner_id, d.log_id) for d in matching(tid, log_id)]

        records = []
        for owner_id, key_log_id in keys:
            lowest = log_store.lowest_id(owner_id, key_log_id)
            if lowest > 0:
                records.append(LowestID(owner_id, key_log_id, lowest))
        return _lines(records)

    return router


def _repository_router(
    repositories: dict[str, FileRepository],
    allow_commit: bool,
) -> APIRouter:
    router = APIRouter()

    def lookup(name: str) -> FileRepository:
        repository = repositories.get(name)
        if repository is None:
            raise HTTPException(status_code=404, detail=f"Unknown repository {name!r}")
        return repository

    def fetch(name: str, version: str | None) -> Response:
        repository = lookup(name)
        number = _parse_int("version", version)
        if number is None:
            raise HTTPException(status_code=400, detail="Missing version")
        try:
            data = repository.checkout(number)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        if data is None:
            raise HTTPException(status_code=404, detail=f"Version {number} not found")
        return Response(content=data, media_type="application/octet-stream")

    @router.get("/{name}/range")
    async def version_range(name: str):
        return PlainTextResponse(f"{lookup(name).range().to_representation()}\n")

    @router.get("/{name}/get")
    async def get(name: str, version: str | None = None):
        return fetch(name, version)

    @router.get("/{name}/checkout")
    async def checkout(name: str, version: str | None = None):
        return fetch(name, version)

    @router.post("/{name}/put")
    async def put(name: str, request: Request, version: str | None = None):
        repository = lookup(name)
        number = _parse_int("version", version)
        if number is None:
            raise HTTPException(status_code=400, detail="Missing version")
        data = await request.body()
        try:
            stored = repository.put(data, number)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return PlainTextResponse("OK\n") if stored else Response(status_code=304)

    if allow_commit:

        @router.post("/{name}/commit")
        async def commit(name: str, request: Request):
            repository = lookup(name)
            from_version = _parse_int("from", request.query_params.get("from"))
            if from_version is None:
                raise HTTPException(status_code=400, detail="Missing from version")
            data = await request.body()
            try:
                committed = repository.commit(data, from_version)
            except NotMasterError as e:
                raise HTTPException(status_code=406, detail=str(e))
            except ValueError as e:
                raise HTTPException(status_code=400, detail=str(e))
            return PlainTextResponse("OK\n") if committed else Response(status_code=304)

    return router


def create_app(
    config: Config,
    log_store: SQLiteLogStore | None = None,
    repositories: dict[str, FileRepository] | None = None,
) -> FastAPI:
    """Create the FastAPI application.

    Args:
        config: Application configuration.
        log_store: Store behind the log endpoints; they are omitted without one.
        repositories: Repositories served by name under ``/repository`` and
            ``/replication``.

    Returns:
        Configured FastAPI application.
    """
    app = FastAPI(
        title="fleetsync",
        description="Log and repository reconciliation endpoints",
        version="0.1.0",
    )

    repositories = repositories or {}

    # Store references for route handlers
    app.state.config = config
    app.state.log_store = log_store
    app.state.repositories = repositories

    if log_store is not None:
        app.include_router(
            _log_router(log_store), prefix=f"/{config.log_sync.endpoint.strip('/')}"
        )
    app.include_router(
        _repository_router(repositories, allow_commit=True), prefix="/repository"
    )
    app.include_router(
        _repository_router(repositories, allow_commit=False), prefix="/replication"
    )

    @app.get("/api/stats")
    async def api_stats() -> dict[str, Any]:
        """Get store and repository statistics."""
        stats: dict[str, Any] = {
            "node_id": config.node.id,
            "revision": config.revision,
            "timestamp": datetime.now().isoformat(),
        }
        if log_store:
            stats["log"] = log_store.stats()
        stats["repositories"] = {
            name: repository.stats() for name, repository in repositories.items()
        }
        return stats

    @app.get("/api/health")
    async def api_health() -> dict[str, Any]:
        """Health check endpoint for monitoring and load balancers.

        Always returns 200 OK even if components are unavailable.
        """
        health: dict[str, Any] = {
            "status": "ok",
            "timestamp": datetime.now().isoformat(),
            "node_id": config.node.id,
            "components": {
                "log_store": log_store is not None,
                "repositories": sorted(repositories),
            },
        }

        if log_store:
            try:
                health["components"]["log_events"] = log_store.stats()["total_events"]
            except Exception as e:
                health["components"]["log_store_error"] = str(e)

        return health

    return app
