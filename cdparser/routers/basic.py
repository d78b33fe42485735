import logging

from fastapi import APIRouter, status

# Convenience.
logit = logging.getLogger("app")
router = APIRouter()


# ----------------------------------------------------------------------
# Basic Routes.
# ----------------------------------------------------------------------


@router.get("/")
def get_root() -> dict:
    return {"status": "ok"}


@router.get("/healthz")
def get_healthz() -> int:
    """Health check endpoint. Always returns 200."""
    return status.HTTP_200_OK
