"""
Dice roll handler logic.

One roll produces three signals that share the trace context of the
``roll`` span: the span itself (attribute ``roll.value``), one point on the
``dice.rolls`` counter (same attribute as a dimension), and an INFO log
record carrying ``result``.
"""

import random
from typing import Optional

from dice_service.observability.telemetry import Telemetry

INSTRUMENTATION_NAME = "dice_service.dice"
ROLL_VALUE = "roll.value"


def roll_message(player: Optional[str]) -> str:
    if player:
        return f"{player} is rolling the dice"
    return "Anonymous player is rolling the dice"


class DiceRoller:
    """
    Rolls a six-sided die and records the roll.

    Instruments are created once from the bundle and shared by all requests;
    span start/end, counter add and log emit are safe for concurrent use.
    """

    def __init__(self, telemetry: Telemetry, rng: Optional[random.Random] = None):
        self.tracer = telemetry.get_tracer(INSTRUMENTATION_NAME)
        self.meter = telemetry.get_meter(INSTRUMENTATION_NAME)
        self.logger = telemetry.get_logger(INSTRUMENTATION_NAME)
        self.rng = rng or random.Random()
        self.roll_counter = self.meter.create_counter(
            "dice.rolls",
            unit="{roll}",
            description="The total number of dice rolls",
        )

    def roll(self, player: Optional[str] = None) -> int:
        """
        Roll once under a ``roll`` span child of the current context.

        Args:
            player: Player name; None or "" means anonymous

        Returns:
            The rolled value, 1 to 6 inclusive
        """
        with self.tracer.start_as_current_span("roll") as span:
            value = self.rng.randint(1, 6)

            self.logger.info(roll_message(player), extra={"result": value})

            span.set_attribute(ROLL_VALUE, value)
            self.roll_counter.add(1, {ROLL_VALUE: value})

        return value
