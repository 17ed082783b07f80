"""
Drift API — evidence periods and pending manifest changes.

GET /api/drift/periods  period history, active period and manifest hash
GET /api/drift/status   whether tracked artifacts changed since the active period
"""

import asyncio
from dataclasses import asdict

from fastapi import APIRouter, Depends

from openledger.api.deps import AppServices, get_services

router = APIRouter(prefix="/api/drift", tags=["drift"])


@router.get("/periods")
async def list_periods(services: AppServices = Depends(get_services)):
    tracker = services.registry.tracker
    history = await asyncio.to_thread(tracker.period_history)
    current = await asyncio.to_thread(tracker.current_period)
    return {
        "current": asdict(current) if current else None,
        "current_hash": await asyncio.to_thread(tracker.current_hash),
        "periods": [asdict(p) for p in history],
    }


@router.get("/status")
async def drift_status(services: AppServices = Depends(get_services)):
    tracker = services.registry.tracker
    changed = await asyncio.to_thread(tracker.has_changes)
    diff = await asyncio.to_thread(tracker.compare_with_previous)
    return {"has_changes": changed, **diff.to_dict()}
