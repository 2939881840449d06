import logging

from fastapi import APIRouter, HTTPException, Request

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/databases")
async def list_databases(request: Request) -> dict:
    sources = request.app.state.sync_service.sources
    return {"databases": sources.registered_names()}


@router.get("/databases/{name}/test")
async def test_database(name: str, request: Request) -> dict:
    sources = request.app.state.sync_service.sources
    if not sources.is_registered(name):
        raise HTTPException(status_code=404, detail=f'Database "{name}" is not registered')
    result = await sources.test_connection(name)
    if not result["ok"]:
        logger.warning("Connection test for %s failed: %s", name, result["error"])
    return {"db": name, **result}
