"""
MosaicMatch — Main API Router

Aggregates all sub-routers under a single prefix so that
``mosaic_match.main`` can mount the entire API surface with one
``include_router`` call.
"""

from fastapi import APIRouter

from mosaic_match.api import matching, traits

router = APIRouter()

router.include_router(matching.router, prefix="/matching", tags=["Matching"])
router.include_router(traits.router, prefix="/traits", tags=["Traits"])
