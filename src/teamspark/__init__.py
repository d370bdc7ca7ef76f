"""
TeamSpark background job core.

Durable named queues, a recurring-job scheduler that fans work out per
organization, and worker pools that execute kind-specific handlers with
bounded concurrency, retries, and progress reporting.

Typical wiring lives in :mod:`teamspark.app`; the operator surface is the
``teamspark-jobs`` CLI in :mod:`teamspark.cli`.
"""

__version__ = "0.1.0"
