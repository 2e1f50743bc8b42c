"""
FastAPI application factory.

The app never reaches for global providers: the ``Telemetry`` bundle is
handed in, stored on ``app.state`` and used by the route instrumentation
and the dice roller.
"""
import random
from typing import Optional

from fastapi import FastAPI

from .. import __version__
from ..dice import DiceRoller
from ..observability.http import instrument_app
from ..observability.telemetry import Telemetry
from .routes import dice_router, monitoring_router


def create_app(telemetry: Telemetry, rng: Optional[random.Random] = None) -> FastAPI:
    """
    Build the instrumented application.

    Args:
        telemetry: Initialized provider bundle
        rng: Random source for rolls (tests pass a seeded one)
    """
    app = FastAPI(
        title="Dice Service",
        description="Dice rolls with correlated traces, metrics and logs",
        version=__version__,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.state.telemetry = telemetry
    app.state.dice_roller = DiceRoller(telemetry, rng=rng)

    app.include_router(dice_router)
    app.include_router(monitoring_router)

    return instrument_app(app, telemetry)
