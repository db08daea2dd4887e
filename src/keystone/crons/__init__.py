"""Background jobs: APScheduler-based activity simulation."""

from keystone.crons.simulator import ActivitySimulator

__all__ = [
    "ActivitySimulator",
]
