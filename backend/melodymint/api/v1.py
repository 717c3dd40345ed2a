from fastapi import APIRouter

from melodymint.features.artists.routes import router as artists_router
from melodymint.features.payments.routes import router as payments_router
from melodymint.features.tracks.routes import router as tracks_router

api_v1_router = APIRouter()

api_v1_router.include_router(artists_router, tags=["artists"])
api_v1_router.include_router(tracks_router, tags=["tracks"])
api_v1_router.include_router(payments_router, tags=["payments"])
