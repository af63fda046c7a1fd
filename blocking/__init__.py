"""
Blocking package: block rules and the block decision engine.
"""

from blocking.rules import BlockRule
from blocking.decision import BlockVerdict, should_block

__all__ = ["BlockRule", "BlockVerdict", "should_block"]
