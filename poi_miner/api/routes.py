"""REST endpoints: GET /status, GET /solutions, GET /solutions/{epoch}, GET /stats."""
from fastapi import APIRouter, HTTPException, Query, Request

from poi_miner.database import fetch_claims, fetch_solution, fetch_solutions
from poi_miner.services.stats import summarize_solutions

router = APIRouter()


def _coordinator(request: Request):
    coordinator = getattr(request.app.state, "coordinator", None)
    if coordinator is None:
        raise HTTPException(status_code=503, detail="Coordinator not running")
    return coordinator


@router.get("/status")
async def status(request: Request):
    coordinator = _coordinator(request)
    return {"status": "ok", "service": "PoI Miner", **coordinator.status()}


@router.get("/solutions")
async def list_solutions(limit: int = Query(100, ge=1, le=1000)):
    """Most recent solutions from the local log, newest epoch first."""
    return {"solutions": await fetch_solutions(limit)}


@router.get("/solutions/{epoch}")
async def get_solution(epoch: int):
    solution = await fetch_solution(epoch)
    if solution is None:
        raise HTTPException(status_code=404, detail="No solution recorded for epoch")
    return {"epoch": epoch, "solution": solution, "claims": await fetch_claims(epoch)}


@router.get("/stats")
async def stats(limit: int = Query(500, ge=1, le=10_000)):
    """Solve-time and hash-rate summary over the last ``limit`` solutions."""
    return summarize_solutions(await fetch_solutions(limit))
