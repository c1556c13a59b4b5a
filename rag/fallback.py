"""
Ordered fallback chains.

A chain is a list of named strategies tried in order. Each strategy
returns a StrategyOutcome; the first successful outcome wins. A strategy
that raises is logged and treated as a skip, so one link's failure never
aborts the rest of the chain.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class StrategyOutcome(Generic[T]):
    """Uniform result of one fallback link."""
    success: bool
    result: T | None = None
    reason: str = ""

    @classmethod
    def ok(cls, result: T) -> "StrategyOutcome[T]":
        return cls(success=True, result=result)

    @classmethod
    def skip(cls, reason: str = "") -> "StrategyOutcome[T]":
        return cls(success=False, reason=reason)


@dataclass
class Strategy(Generic[T]):
    name: str
    run: Callable[[], StrategyOutcome[T]]


@dataclass
class ChainResult(Generic[T]):
    """Outcome of a whole chain, with which link produced it."""
    result: T | None
    strategy: str | None
    attempts: list[tuple[str, str]] = field(default_factory=list)
    errors: list[Exception] = field(default_factory=list)

    @property
    def exhausted(self) -> bool:
        return self.strategy is None


class FallbackChain(Generic[T]):
    """
    Run strategies in order until one succeeds.

    Usage:
        chain = FallbackChain("search", [
            Strategy("hybrid", run_hybrid),
            Strategy("vector", run_vector),
        ])
        outcome = chain.run()
    """

    def __init__(self, name: str, strategies: list[Strategy[T]]):
        self.name = name
        self.strategies = strategies

    def run(self) -> ChainResult[T]:
        attempts: list[tuple[str, str]] = []
        errors: list[Exception] = []

        for strategy in self.strategies:
            try:
                outcome = strategy.run()
            except Exception as e:
                logger.warning(f"[{self.name}] strategy '{strategy.name}' failed: {e}")
                attempts.append((strategy.name, f"error: {e}"))
                errors.append(e)
                continue

            if outcome.success:
                if attempts:
                    logger.info(
                        f"[{self.name}] fell back to '{strategy.name}' after "
                        f"{', '.join(name for name, _ in attempts)}"
                    )
                return ChainResult(
                    result=outcome.result,
                    strategy=strategy.name,
                    attempts=attempts,
                    errors=errors,
                )

            logger.debug(f"[{self.name}] strategy '{strategy.name}' skipped: {outcome.reason}")
            attempts.append((strategy.name, outcome.reason or "skipped"))

        return ChainResult(result=None, strategy=None, attempts=attempts, errors=errors)


def non_empty(items: Any, reason: str = "no results") -> StrategyOutcome:
    """Success when ``items`` is non-empty, skip otherwise."""
    return StrategyOutcome.ok(items) if items else StrategyOutcome.skip(reason)
