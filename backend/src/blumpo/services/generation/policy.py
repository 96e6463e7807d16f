"""Pricing and product rules for generation jobs."""

from dataclasses import dataclass
from typing import Iterable, Optional

SQUARE_FORMATS = frozenset({"1:1", "square"})
STORY_FORMATS = frozenset({"9:16", "story"})

SINGLE_FORMAT_COST = 50
MULTI_FORMAT_COST = 80


def calculate_token_cost(formats: Optional[Iterable[str]]) -> int:
    """Tokens reserved for a customized-ads job.

    Square and story together are priced as one discounted bundle rather than
    the sum of both. Jobs without a recognized format pay the single-format price.

    Examples:
        >>> calculate_token_cost(["1:1", "9:16"])
        80
        >>> calculate_token_cost(["story"])
        50
        >>> calculate_token_cost([])
        50
    """
    requested = set(formats or ())
    has_square = bool(requested & SQUARE_FORMATS)
    has_story = bool(requested & STORY_FORMATS)

    if has_square and has_story:
        return MULTI_FORMAT_COST
    return SINGLE_FORMAT_COST


@dataclass(frozen=True)
class GenerationPolicy:
    """Billing and visibility rules applied by the orchestrator and callback ingestor.

    Attributes:
        free_plan_code: Plan whose fresh output is hidden from the library at ingest
        partial_charge_tokens: Tokens re-charged when a user keeps partial output
    """

    free_plan_code: str = "FREE"
    partial_charge_tokens: int = SINGLE_FORMAT_COST

    def should_hide_on_ingest(self, plan_code: Optional[str]) -> bool:
        """Whether newly generated images are soft-deleted as soon as they arrive.

        Users without a token account are treated as free-tier.
        """
        return plan_code is None or plan_code == self.free_plan_code

    def charges_at_start(self, auto_generated: bool) -> bool:
        """Whether tokens are reserved when generation starts.

        Quick ads are billed later, when the ads are displayed, by a separate flow.
        """
        return not auto_generated

    def cost_for(self, auto_generated: bool, formats: Optional[Iterable[str]]) -> int:
        """Tokens to reserve at start for a job of this kind."""
        if not self.charges_at_start(auto_generated):
            return 0
        return calculate_token_cost(formats)
