"""Termination criteria for iterative relaxation.

Both the tile optimizer and the spring mesh stop when the error drops below
an epsilon, when the iteration budget is spent, or when the error has not
improved for a plateau of consecutive iterations.
"""
import logging
from dataclasses import dataclass, field

import numpy as np

logger = logging.getLogger(__name__)

# Smallest decrease in error that counts as an improvement
MIN_IMPROVEMENT = 1e-6


@dataclass
class ConvergenceMonitor:
    """Tracks the error of an iterative optimization and decides when to stop."""
    max_epsilon: float
    max_iterations: int
    max_plateau_width: int
    iterations: int = 0
    best_error: float = np.inf
    last_error: float = np.inf
    since_improvement: int = 0
    history: list[float] = field(default_factory=list)

    def converged(self, error: float) -> bool:
        return error < self.max_epsilon

    def update(self, error: float) -> bool:
        """Record the error of one iteration; return True to keep iterating."""
        self.iterations += 1
        self.last_error = error
        self.history.append(error)
        if error < self.best_error - MIN_IMPROVEMENT:
            self.best_error = error
            self.since_improvement = 0
        else:
            self.since_improvement += 1

        if self.converged(error):
            logger.debug(f"Converged after {self.iterations} iterations, error {error:.4f}")
            return False
        if self.iterations >= self.max_iterations:
            logger.debug(f"Stopped after {self.iterations} iterations, error {error:.4f}")
            return False
        if self.since_improvement >= self.max_plateau_width:
            logger.debug(
                f"Error plateaued at {self.best_error:.4f} for {self.since_improvement} iterations"
            )
            return False
        return True
