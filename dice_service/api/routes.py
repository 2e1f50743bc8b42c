"""
API routes: greeting, dice roll, Prometheus scrape endpoint.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Request
from fastapi.responses import PlainTextResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, generate_latest
from starlette.types import Receive, Scope, Send

from ..dice import DiceRoller
from ..observability.http import InstrumentedRoute

logger = logging.getLogger(__name__)

GREETING = "Hola, Mundo!"

# Routes registered here get a route-level span each
dice_router = APIRouter(route_class=InstrumentedRoute, tags=["Dice"])
monitoring_router = APIRouter(tags=["Monitoring"])


class GuardedPlainTextResponse(PlainTextResponse):
    """
    Plain-text response whose body write never fails the request.

    By the time the body is written the roll has already been traced,
    counted and logged; a client that went away only costs a warning.
    """

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        except OSError as e:
            logger.warning(f"Response write failed: {e}")


def get_dice_roller(request: Request) -> DiceRoller:
    return request.app.state.dice_roller


def roll_response(request: Request, player: Optional[str]) -> Response:
    value = get_dice_roller(request).roll(player)
    return GuardedPlainTextResponse(f"{value}\n")


@dice_router.get("/", response_class=PlainTextResponse)
async def hello() -> Response:
    logger.info(GREETING)
    return GuardedPlainTextResponse(GREETING)


@dice_router.get("/dice", response_class=PlainTextResponse)
async def roll_dice(request: Request, player: Optional[str] = None) -> Response:
    """Roll a die; ``player`` is read from the query string."""
    return roll_response(request, player)


@dice_router.get("/dice/{player}", response_class=PlainTextResponse)
async def roll_dice_for_player(request: Request, player: str) -> Response:
    """Roll a die for the player named in the path."""
    return roll_response(request, player)


@monitoring_router.get("/metrics")
async def metrics() -> Response:
    """Prometheus text exposition of the default registry."""
    return Response(content=generate_latest(REGISTRY), media_type=CONTENT_TYPE_LATEST)
